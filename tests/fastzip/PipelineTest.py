#!/usr/bin/env python
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
#
# FastZip - Fast, adaptive ZIP archiving
# Copyright (C) 2025-2026 FastZip contributors
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import random
import threading
import time
import unittest

from fastzip.BufferPolicy import BufferPlan
from fastzip.Errors import ArchiveError, ErrorKind, OperationResult, ResultStatus
from fastzip.Pipeline import CancellationToken, EntryOutcome, Pipeline, PipelineTask, Sink
from fastzip.Settings import EngineConfig
from fastzip.Walker import ArchiveEntry, EntryKind


def makeTasks(count, presets=None):
    presets = presets or {}
    for ordinal in range(count):
        entry = ArchiveEntry(arcname=f'e{ordinal}', kind=EntryKind.FILE, size=30)
        yield PipelineTask(ordinal, entry, BufferPlan(65536, False), presetResult=presets.get(ordinal))


class RecordingSink(Sink):

    def __init__(self, failOn=None, fatal=True, delay=0):
        self.entries = []
        self.aborted = []
        self.finalized = 0
        self.failOn = failOn
        self.fatal = fatal
        self.delay = delay
        self.current = None
        self.onCommit = None

    def beginEntry(self, task):
        self.current = [task.name, b'']

    def writeChunk(self, task, chunk):
        if task.name == self.failOn:
            raise ArchiveError(ErrorKind.DESTINATION_UNWRITABLE, 'disk says no', task.name, fatal=self.fatal)
        if self.delay:
            time.sleep(self.delay)
        self.current[1] += chunk

    def commitEntry(self, task, outcome):
        self.entries.append(tuple(self.current))
        if self.onCommit:
            self.onCommit(task)
        return len(self.current[1])

    def abortEntry(self, task):
        self.aborted.append(task.name)
        self.current = None

    def finalize(self, token):
        self.finalized += 1


class ListBus:

    def __init__(self):
        self.events = []

    def publish(self, event):
        self.events.append(event)


def chunkingProcessor(delays=None, chunks=3):
    """Processor emitting `chunks` chunks per entry, sleeping a random time between them."""
    rng = random.Random(42)
    lock = threading.Lock()

    def processor(task, emit, token, report):
        produced = 0
        for index in range(chunks):
            token.raiseIfCancelled(task.name)
            if delays:
                with lock:
                    delay = rng.uniform(0, delays)
                time.sleep(delay)
            data = f'{task.name}:{index};'.encode()
            emit(data)
            produced += len(data)
            report(produced)
        return EntryOutcome(bytesRead=produced)

    return processor


class PipelineTest(unittest.TestCase):

    def setUp(self):
        self.config = EngineConfig(workers=4, queueDepth=2)

    def testOrderedOutputUnderRandomDelays(self):
        """Whatever order workers finish in, the writer commits entries by ordinal."""
        sink = RecordingSink()
        pipeline = Pipeline(chunkingProcessor(delays=0.01), sink, self.config)
        report = pipeline.run(makeTasks(30))

        self.assertIsNone(report.fatalError)
        self.assertEqual([name for name, _ in sink.entries], [f'e{i}' for i in range(30)])
        for name, data in sink.entries:
            self.assertEqual(data, f'{name}:0;{name}:1;{name}:2;'.encode())
        self.assertEqual([r.entryName for r in report.results], [f'e{i}' for i in range(30)])
        self.assertTrue(all(r.status == ResultStatus.SUCCEEDED for r in report.results))
        self.assertEqual(sink.finalized, 1)

    def testEntryFailureIsIsolated(self):
        """A processor error fails that entry only; its partial output is rolled back."""

        def processor(task, emit, token, report):
            emit(b'partial')
            report(7)
            if task.name == 'e2':
                raise ArchiveError(ErrorKind.SOURCE_UNREADABLE, 'read error', task.name)
            return EntryOutcome(bytesRead=7)

        sink = RecordingSink()
        report = Pipeline(processor, sink, self.config).run(makeTasks(5))

        self.assertIsNone(report.fatalError)
        statuses = [r.status for r in report.results]
        self.assertEqual(statuses[2], ResultStatus.FAILED)
        self.assertEqual(report.results[2].errorKind, ErrorKind.SOURCE_UNREADABLE)
        self.assertEqual(report.results[2].bytesRead, 7)
        self.assertEqual(statuses.count(ResultStatus.SUCCEEDED), 4)
        self.assertEqual(sink.aborted, ['e2'])
        self.assertNotIn('e2', [name for name, _ in sink.entries])
        self.assertEqual(sink.finalized, 1)

    def testPresetResults(self):
        """Entries decided up front are reported without running the processor."""
        called = []

        def processor(task, emit, token, report):
            called.append(task.name)
            return EntryOutcome()

        presets = {1: OperationResult.skipped('e1', 'exists')}
        report = Pipeline(processor, RecordingSink(), self.config).run(makeTasks(3, presets))

        self.assertNotIn('e1', called)
        self.assertEqual(report.results[1].status, ResultStatus.SKIPPED)
        self.assertEqual([r.entryName for r in report.results], ['e0', 'e1', 'e2'])

    def testFatalSinkErrorStopsEverything(self):
        """A destination failure ends the run; every unfinished entry is reported cancelled."""
        sink = RecordingSink(failOn='e3')
        report = Pipeline(chunkingProcessor(), sink, self.config).run(makeTasks(40))

        self.assertEqual(report.fatalError.kind, ErrorKind.DESTINATION_UNWRITABLE)
        self.assertEqual(len(report.results), 40)
        self.assertEqual([r.status for r in report.results[:3]], [ResultStatus.SUCCEEDED] * 3)
        for result in report.results[3:]:
            self.assertEqual(result.errorKind, ErrorKind.CANCELLED)
        self.assertEqual(sink.finalized, 0)

    def testEntryScopedSinkError(self):
        """Sink errors not flagged fatal only fail their own entry."""
        sink = RecordingSink(failOn='e1', fatal=False)
        report = Pipeline(chunkingProcessor(), sink, self.config).run(makeTasks(4))

        self.assertIsNone(report.fatalError)
        self.assertEqual(report.results[1].status, ResultStatus.FAILED)
        self.assertEqual(report.results[1].errorKind, ErrorKind.DESTINATION_UNWRITABLE)
        self.assertEqual([name for name, _ in sink.entries], ['e0', 'e2', 'e3'])
        self.assertEqual(sink.finalized, 1)

    def testCancellation(self):
        """Cancelling mid-run stops at a chunk boundary and still reports every entry."""
        token = CancellationToken()

        def processor(task, emit, token_, report):
            if task.name == 'e2':
                token.cancel('test')
            return chunkingProcessor()(task, emit, token_, report)

        sink = RecordingSink()
        report = Pipeline(processor, sink, self.config, token=token).run(makeTasks(50))

        self.assertEqual(report.fatalError.kind, ErrorKind.CANCELLED)
        self.assertEqual(len(report.results), 50)
        self.assertEqual([r.entryName for r in report.results], [f'e{i}' for i in range(50)])
        for result in report.results[2:]:
            self.assertEqual(result.status, ResultStatus.FAILED)
            self.assertEqual(result.errorKind, ErrorKind.CANCELLED)
        self.assertEqual(sink.finalized, 0)

    def testCancelledBeforeStart(self):
        """A token cancelled up front produces an all-cancelled report."""
        token = CancellationToken()
        token.cancel()
        report = Pipeline(chunkingProcessor(), RecordingSink(), self.config, token=token).run(makeTasks(5))
        self.assertEqual(report.fatalError.kind, ErrorKind.CANCELLED)
        self.assertEqual([r.errorKind for r in report.results], [ErrorKind.CANCELLED] * 5)

    def testBoundedLookahead(self):
        """The feeder never runs more than the ordering window ahead of the writer."""
        config = EngineConfig(workers=2, queueDepth=1, walkerLookahead=3)
        counters = {'pulled': 0, 'committed': 0, 'maxAhead': 0}
        lock = threading.Lock()

        def tasks():
            for task in makeTasks(20):
                with lock:
                    counters['pulled'] += 1
                    counters['maxAhead'] = max(counters['maxAhead'], counters['pulled'] - counters['committed'])
                yield task

        def onCommit(task):
            with lock:
                counters['committed'] += 1

        sink = RecordingSink(delay=0.005)
        sink.onCommit = onCommit
        report = Pipeline(chunkingProcessor(), sink, config).run(tasks())

        self.assertIsNone(report.fatalError)
        self.assertEqual(counters['committed'], 20)
        self.assertLessEqual(counters['maxAhead'], config.effectiveLookahead + 1)

    def testProgressEvents(self):
        """Per entry progress never goes backwards and ends with exactly one final event."""
        bus = ListBus()
        report = Pipeline(chunkingProcessor(delays=0.002), RecordingSink(), self.config, bus=bus).run(makeTasks(10))
        self.assertIsNone(report.fatalError)

        for ordinal in range(10):
            events = [e for e in bus.events if e.ordinal == ordinal]
            progress = [e.bytesProcessed for e in events]
            self.assertEqual(progress, sorted(progress))
            finals = [e for e in events if e.final]
            self.assertEqual(len(finals), 1)
            self.assertIs(events[-1], finals[0])
            self.assertTrue(finals[0].result.ok)
            self.assertEqual(finals[0].bytesProcessed, finals[0].result.bytesRead)

    def testUnexpectedCrashPropagates(self):
        """Programming errors in a processor are not turned into entry results."""

        def processor(task, emit, token, report):
            raise RuntimeError('bug')

        with self.assertRaises(RuntimeError):
            Pipeline(processor, RecordingSink(), self.config).run(makeTasks(3))


class CancellationTokenTest(unittest.TestCase):

    def testParentPropagation(self):
        """A child token sees its parent's cancellation, not the other way round."""
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        child.cancel()
        self.assertFalse(parent.cancelled)

        parent2 = CancellationToken()
        child2 = CancellationToken(parent=parent2)
        parent2.cancel('stop')
        self.assertTrue(child2.cancelled)
        with self.assertRaises(ArchiveError) as context:
            child2.raiseIfCancelled('x')
        self.assertEqual(context.exception.kind, ErrorKind.CANCELLED)


if __name__ == '__main__':
    unittest.main()
