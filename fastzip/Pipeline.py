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

import threading
import time

from collections import deque
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional

from fastzip.BufferPolicy import BufferPlan
from fastzip.Errors import ArchiveError, ErrorKind, OperationCancelled, OperationResult
from fastzip.Kernel import getLogger
from fastzip.Progress import ProgressEvent
from fastzip.Settings import EngineConfig
from fastzip.Walker import ArchiveEntry

logger = getLogger(__name__)

# Blocking waits wake up this often to look at the cancellation token.
POLL_INTERVAL = 0.05


class CancellationToken:
    """
    Cooperative cancellation flag, polled at every chunk boundary.

    A token created with a parent is also cancelled when the parent is, which
    lets the pipeline abort internally without touching the caller's token.
    """

    def __init__(self, parent=None):
        self._event = threading.Event()
        self._parent = parent
        self.reason = None

    def cancel(self, reason=None):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    @property
    def cancelled(self):
        return self._event.is_set() or (self._parent is not None and self._parent.cancelled)

    def raiseIfCancelled(self, path=None):
        if self.cancelled:
            raise OperationCancelled(path=path)


@dataclass(frozen=True)
class PipelineTask:
    """One entry travelling through the pipeline. `ordinal` is its enumeration index."""
    ordinal: int
    entry: ArchiveEntry
    plan: BufferPlan
    target: Optional[str] = None
    payload: Any = None
    presetResult: Optional[OperationResult] = None

    @property
    def name(self):
        return self.entry.arcname


@dataclass
class EntryOutcome:
    """What a worker reports back once an entry's codec work is over."""
    bytesRead: int = 0
    crc: int = 0
    error: Optional[ArchiveError] = None
    mappingFallback: bool = False


class EntrySlot:
    """Bounded chunk queue between the worker of one entry and the writer."""

    _END = object()

    def __init__(self, task: PipelineTask, depth: int):
        self.task = task
        self.depth = depth
        self.outcome: Optional[EntryOutcome] = None
        self.crash: Optional[BaseException] = None
        self.reported = 0
        self._chunks = deque()
        self._finished = False
        self._abandoned = False
        self._condition = threading.Condition()

    @property
    def finished(self):
        return self._finished

    def put(self, chunk, token):
        with self._condition:
            while len(self._chunks) >= self.depth and not self._abandoned:
                token.raiseIfCancelled(self.task.name)
                self._condition.wait(POLL_INTERVAL)
            if self._abandoned:
                raise OperationCancelled(path=self.task.name)
            self._chunks.append(chunk)
            self._condition.notify_all()

    def get(self, token):
        """Next chunk, or EntrySlot._END once the worker finished and everything was consumed."""
        with self._condition:
            while not self._chunks and not self._finished:
                token.raiseIfCancelled(self.task.name)
                self._condition.wait(POLL_INTERVAL)
            if self._chunks:
                chunk = self._chunks.popleft()
                self._condition.notify_all()
                return chunk
            return self._END

    def finish(self, outcome=None, crash=None):
        with self._condition:
            self.outcome = outcome
            self.crash = crash
            self._finished = True
            self._condition.notify_all()

    def abandon(self):
        with self._condition:
            self._abandoned = True
            self._chunks.clear()
            self._condition.notify_all()

    def waitFinished(self):
        """Block until the worker gave up or completed; only valid after abandon() or a started worker."""
        with self._condition:
            while not self._finished:
                self._condition.wait(POLL_INTERVAL)

    @property
    def bytesRead(self):
        if self.outcome is not None:
            return max(self.outcome.bytesRead, self.reported)
        return self.reported


class OrderingBuffer:
    """Bounded FIFO of slots in enumeration order; the writer drains it front to back."""

    def __init__(self, capacity: int):
        self.capacity = capacity
        self._slots = deque()
        self._closed = False
        self._condition = threading.Condition()

    def put(self, slot, token):
        with self._condition:
            while len(self._slots) >= self.capacity:
                token.raiseIfCancelled(slot.task.name)
                self._condition.wait(POLL_INTERVAL)
            self._slots.append(slot)
            self._condition.notify_all()

    def get(self, token):
        """Oldest slot, or None once closed and empty. The slot stays counted until release()."""
        with self._condition:
            while not self._slots and not self._closed:
                token.raiseIfCancelled()
                self._condition.wait(POLL_INTERVAL)
            if self._slots:
                return self._slots[0]
            return None

    def release(self, slot):
        with self._condition:
            if self._slots and self._slots[0] is slot:
                self._slots.popleft()
            self._condition.notify_all()

    def close(self):
        with self._condition:
            self._closed = True
            self._condition.notify_all()

    def drain(self):
        with self._condition:
            slots, self._slots = list(self._slots), deque()
            self._condition.notify_all()
            return slots


class Sink:
    """Destination of the single writer. Only the writer thread calls these."""

    def beginEntry(self, task: PipelineTask):
        raise NotImplementedError

    def writeChunk(self, task: PipelineTask, chunk):
        raise NotImplementedError

    def commitEntry(self, task: PipelineTask, outcome: EntryOutcome) -> int:
        raise NotImplementedError

    def abortEntry(self, task: PipelineTask):
        raise NotImplementedError

    def finalize(self, token):
        """Called once after the last entry when nothing went wrong."""
        pass


@dataclass
class PipelineReport:
    results: List[OperationResult]
    fatalError: Optional[ArchiveError] = None


Processor = Callable[[PipelineTask, Callable, CancellationToken, Callable], EntryOutcome]


class Pipeline:
    """
    Runs tasks through a bounded worker pool and writes them with one writer, in order.

    The calling thread enumerates tasks and feeds the ordering buffer; workers
    run `processor(task, emit, token, report)` which pushes output chunks with
    emit() and progress with report(); the writer thread drains slots strictly
    by ordinal into the sink. Entry errors become that entry's result, sink
    errors flagged fatal stop everything.
    """

    def __init__(self, processor: Processor, sink: Sink, config: EngineConfig, token=None, bus=None):
        self.processor = processor
        self.sink = sink
        self.config = config
        self.bus = bus
        self.userToken = token or CancellationToken()
        self.token = CancellationToken(parent=self.userToken)
        self.workers = config.effectiveWorkers
        self.queueDepth = config.effectiveQueueDepth
        self.ordering = OrderingBuffer(config.effectiveLookahead)
        self.fatalError: Optional[ArchiveError] = None
        self._crash: Optional[BaseException] = None
        self._results: Dict[int, OperationResult] = {}
        self._pending: Dict[int, EntrySlot] = {}
        self._pendingLock = threading.Lock()
        self._startTime = time.monotonic()
        self.finalized = False

    # Progress
    def _elapsed(self):
        return time.monotonic() - self._startTime

    def _publish(self, task, bytesProcessed, result=None):
        if self.bus is None:
            return
        self.bus.publish(
            ProgressEvent(
                entryName=task.name,
                ordinal=task.ordinal,
                bytesProcessed=bytesProcessed,
                totalBytes=task.entry.size,
                elapsed=self._elapsed(),
                result=result,
            )
        )

    def _record(self, task, result):
        self._results[task.ordinal] = result
        with self._pendingLock:
            self._pending.pop(task.ordinal, None)
        self._publish(task, result.bytesRead, result)

        if result.error is not None and result.error.kind != ErrorKind.CANCELLED:
            logger.warning("Entry %s failed: %s", task.name, result.error)
        else:
            logger.debug("Entry %s %s", task.name, result.status.value)

    # Worker side
    def _runTask(self, slot: EntrySlot):
        task = slot.task

        def emit(chunk):
            slot.put(chunk, self.token)

        def report(bytesProcessed):
            if bytesProcessed >= slot.reported:
                slot.reported = bytesProcessed
                self._publish(task, bytesProcessed)

        try:
            outcome = self.processor(task, emit, self.token, report)
        except ArchiveError as e:
            outcome = EntryOutcome(bytesRead=slot.reported, error=e)
        except BaseException as e:
            logger.exception("Unexpected failure while processing %s", task.name)
            slot.finish(crash=e)
            return
        slot.finish(outcome)

    # Writer side
    def _writeSlot(self, slot: EntrySlot):
        task = slot.task

        if task.presetResult is not None:
            self._record(task, task.presetResult)
            return

        chunk = slot.get(self.token)
        if slot.crash is not None:
            raise slot.crash

        # Failed before producing anything: nothing reaches the destination.
        if chunk is EntrySlot._END and slot.outcome.error is not None:
            self._recordFailure(slot, slot.outcome.error)
            return

        try:
            self.sink.beginEntry(task)
            while chunk is not EntrySlot._END:
                self.token.raiseIfCancelled(task.name)
                self.sink.writeChunk(task, chunk)
                chunk = slot.get(self.token)

            if slot.crash is not None:
                raise slot.crash

            outcome = slot.outcome
            if outcome.error is not None:
                self.sink.abortEntry(task)
                self._recordFailure(slot, outcome.error)
                return

            bytesWritten = self.sink.commitEntry(task, outcome)
        except ArchiveError as e:
            self.sink.abortEntry(task)
            if e.fatal or e.kind == ErrorKind.CANCELLED:
                raise
            # Entry-scoped destination problem (e.g. one unwritable file during extraction).
            slot.abandon()
            slot.waitFinished()
            self._recordFailure(slot, e)
            return
        except BaseException:
            self.sink.abortEntry(task)
            raise

        self._record(
            task, OperationResult.succeeded(task.name, slot.bytesRead, bytesWritten, outcome.mappingFallback)
        )

    def _recordFailure(self, slot, error):
        fallback = slot.outcome.mappingFallback if slot.outcome is not None else False
        self._record(slot.task, OperationResult.failed(slot.task.name, error, slot.bytesRead, mappingFallback=fallback))

    def _writerLoop(self):
        try:
            while True:
                slot = self.ordering.get(self.token)
                if slot is None:
                    break
                try:
                    self._writeSlot(slot)
                finally:
                    self.ordering.release(slot)

            self.token.raiseIfCancelled()
            self.sink.finalize(self.token)
            self.finalized = True
        except OperationCancelled:
            logger.debug("Writer stopped by cancellation")
        except ArchiveError as e:
            logger.error("Fatal error on destination: %s", e)
            self.fatalError = e
            self.token.cancel(e)
        except BaseException as e:
            self._crash = e
            self.token.cancel(e)

    # Driver
    def run(self, tasks: Iterable[PipelineTask]) -> PipelineReport:
        logger.debug(
            "Pipeline start: %d workers, window %d, queue depth %d",
            self.workers, self.ordering.capacity, self.queueDepth
        )
        writer = threading.Thread(target=self._writerLoop, name='fastzip-writer', daemon=True)
        executor = ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix='fastzip-worker')
        leftovers = []

        writer.start()
        try:
            iterator = iter(tasks)
            for task in iterator:
                if self.token.cancelled:
                    leftovers.append(task)
                    break

                slot = EntrySlot(task, self.queueDepth)
                with self._pendingLock:
                    self._pending[task.ordinal] = slot
                try:
                    self.ordering.put(slot, self.token)
                except OperationCancelled:
                    break

                if task.presetResult is None:
                    executor.submit(self._runTask, slot)
                else:
                    slot.finish()

            if self.token.cancelled:
                # Enumerate what is left so the summary lists every entry.
                leftovers.extend(iterator)
        except BaseException:
            self.token.cancel()
            raise
        finally:
            self.ordering.close()
            writer.join()

            for slot in self.ordering.drain():
                slot.abandon()
            with self._pendingLock:
                for slot in self._pending.values():
                    slot.abandon()
            executor.shutdown(wait=True, cancel_futures=True)

        if self._crash is not None:
            raise self._crash

        if self.fatalError is None and not self.finalized and self.userToken.cancelled:
            self.fatalError = OperationCancelled()

        self._settleUnfinished(leftovers)

        results = [self._results[ordinal] for ordinal in sorted(self._results)]
        return PipelineReport(results=results, fatalError=self.fatalError)

    def _settleUnfinished(self, leftovers):
        """Every entry that never reached the destination ends as CANCELLED."""
        with self._pendingLock:
            unfinished = [slot for _, slot in sorted(self._pending.items())]

        for slot in unfinished:
            if slot.task.ordinal in self._results:
                continue
            if slot.task.presetResult is not None:
                self._record(slot.task, slot.task.presetResult)
            else:
                self._recordFailure(slot, OperationCancelled(path=slot.task.name))

        for task in leftovers:
            if task.presetResult is not None:
                self._record(task, task.presetResult)
            else:
                self._record(task, OperationResult.failed(task.name, OperationCancelled(path=task.name)))
