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

import queue
import threading
import time

from dataclasses import dataclass
from typing import Optional

from signalslot import Signal
from tqdm import tqdm

from fastzip.Errors import OperationResult
from fastzip.Kernel import getLogger
from fastzip.Utils import formatSize, ONE_MB

logger = getLogger(__name__)


@dataclass(frozen=True)
class ProgressEvent:
    """Observation of one entry; `result` is only set on the entry's final event."""
    entryName: str
    ordinal: int
    bytesProcessed: int
    totalBytes: int
    elapsed: float
    result: Optional[OperationResult] = None

    @property
    def final(self):
        return self.result is not None


class ProgressBus:
    """
    Fire-and-forget delivery of ProgressEvents.

    publish() only enqueues; a dispatcher thread emits the events through a
    signalslot Signal, so a slow subscriber delays other subscribers but never
    the pipeline. Events are delivered in publish order.
    """

    _STOP = object()

    def __init__(self):
        self.signal = Signal(args=['event'], name='progress', threadsafe=True)
        self._queue = queue.SimpleQueue()
        self._slots = {}
        self._thread = None
        self._lock = threading.Lock()

    def subscribe(self, callback):
        """Register callback(event). Exceptions raised by it are logged and ignored."""

        def slot(event, **kwargs):
            try:
                callback(event)
            except Exception:
                logger.exception("Progress subscriber %r failed", callback)

        with self._lock:
            if callback in self._slots:
                return
            self._slots[callback] = slot
        self.signal.connect(slot)

    def unsubscribe(self, callback):
        with self._lock:
            slot = self._slots.pop(callback, None)
        if slot is not None:
            self.signal.disconnect(slot)

    def start(self):
        with self._lock:
            if self._thread is None:
                self._thread = threading.Thread(target=self._dispatch, name='fastzip-progress', daemon=True)
                self._thread.start()
        return self

    def publish(self, event: ProgressEvent):
        self._queue.put(event)

    def close(self, timeout=None):
        """Deliver everything already published, then stop the dispatcher."""
        with self._lock:
            thread, self._thread = self._thread, None
        if thread is None:
            return
        self._queue.put(self._STOP)
        thread.join(timeout)

    def _dispatch(self):
        while True:
            event = self._queue.get()
            if event is self._STOP:
                return
            self.signal.emit(event=event)

    def __enter__(self):
        return self.start()

    def __exit__(self, excType, excVal, excTb):
        self.close()


class BitmathTqdm(tqdm):
    """tqdm bar whose sizes and speeds go through formatSize."""

    def __init__(self, *args, sizeFormatter=None, unit='B', unitScale=False, **kwargs):
        self.sizeFormatter = sizeFormatter or formatSize

        if 'bar_format' not in kwargs:
            kwargs['bar_format'] = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]'
            )

        super().__init__(*args, unit=unit, unit_scale=unitScale, **kwargs)

    def _formatSpeed(self, rateBytesPerSec):
        if rateBytesPerSec <= 0:
            return "0/sec"
        return f"{self.sizeFormatter(int(rateBytesPerSec))}/sec"

    @property
    def format_dict(self):
        d = super().format_dict

        rate = d.get('rate', 0) or 0
        d['rate_fmt'] = self._formatSpeed(rate)
        d['n_fmt'] = self.sizeFormatter(d.get('n', 0))

        total = d.get('total')
        d['total_fmt'] = self.sizeFormatter(total) if total is not None else '?'

        return d

    def __bool__(self):
        # total=None would otherwise make bool(bar) raise
        return hasattr(self, 'n')


class Progress:
    """Overall byte counter shown as a tqdm bar, or as periodic log lines without one."""

    def __init__(
        self, totalSize, sizeFormatter=None, loggerCallback=print, logInterval=2.0, useBar=False, description=None
    ):
        self.totalSize = totalSize
        self.sizeFormatter = sizeFormatter or formatSize
        self.loggerCallback = loggerCallback
        self.logInterval = logInterval
        self.useBar = useBar
        self.description = description or 'Progress'

        self.transferred = 0
        self.startTime = time.monotonic()
        self.lastProgressTime = self.startTime
        self.lastProgressBytes = 0

        self.pbar = None
        if self.useBar:
            self._initProgressBar()

    def _initProgressBar(self):
        # Unknown totals (0) show bytes and speed without a percentage
        total = None if self.totalSize == 0 else self.totalSize

        if self.totalSize == 0:
            barFormat = '{desc}: {n_fmt} [{elapsed}, {rate_fmt}]{postfix}'
        else:
            barFormat = (
                '{desc}: {percentage:3.0f}%|{bar}| '
                '{n_fmt}/{total_fmt} [{elapsed}<{remaining}, {rate_fmt}]{postfix}'
            )

        self.pbar = BitmathTqdm(
            total=total,
            desc=self.description,
            sizeFormatter=self.sizeFormatter,
            leave=True,
            ncols=100,
            ascii=False,
            bar_format=barFormat
        )

    def update(self, bytesTransferred, forceLog=False, extraText=""):
        """Move the counter to an absolute byte position."""
        previousTransferred = self.transferred
        self.transferred = bytesTransferred
        currentTime = time.monotonic()

        if self.useBar and self.pbar:
            increment = self.transferred - previousTransferred
            if increment > 0:
                self.pbar.update(increment)
            self.pbar.set_postfix_str(f" {extraText}" if extraText else "")
        elif self._shouldLog(forceLog, currentTime):
            self._logProgress(currentTime, extraText)

    def _shouldLog(self, forceLog, currentTime):
        return (
            forceLog or self.transferred % (5 * ONE_MB) == 0 or
            (currentTime - self.lastProgressTime) >= self.logInterval
        )

    def _logProgress(self, currentTime, extraText):
        timeDelta = currentTime - self.lastProgressTime
        bytesDelta = self.transferred - self.lastProgressBytes

        speedBytesPerSec = bytesDelta / timeDelta if timeDelta > 0 else 0
        progressMsg = f"{self.description}: {self.sizeFormatter(self.transferred)}"
        if self.totalSize > 0:
            percentage = self.transferred * 100.0 / self.totalSize
            progressMsg += f"/{self.sizeFormatter(self.totalSize)} ({percentage:.2f}%)"
        progressMsg += f", {self.sizeFormatter(int(speedBytesPerSec))}/sec"
        if extraText:
            progressMsg += f', {extraText}'

        self.loggerCallback(progressMsg)

        self.lastProgressTime = currentTime
        self.lastProgressBytes = self.transferred

    def write(self, text):
        """Write text without tearing the progress bar."""
        if self.useBar and self.pbar:
            self.pbar.write(text)
        else:
            self.loggerCallback(text)

    def finishBar(self, complete=True):
        """Close the bar; complete=False leaves it at its current position (cancelled runs)."""
        if self.useBar and self.pbar:
            try:
                if complete and self.pbar.total:
                    remaining = self.pbar.total - self.pbar.n
                    if remaining > 0:
                        self.pbar.update(remaining)
                self.pbar.refresh()
                self.pbar.close()
            except (ValueError, AttributeError) as e:
                logger.debug(f"Exception during progress bar cleanup: {e}")
            finally:
                self.pbar = None

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.finishBar(complete=excType is None)


class ConsoleProgress:
    """
    ProgressBus subscriber that folds per-entry events into one Progress display.

    Runs on the dispatcher thread only, so it keeps plain counters.
    """

    def __init__(self, totalSize=0, useBar=True, loggerCallback=print, description=None):
        self.progress = Progress(
            totalSize, loggerCallback=loggerCallback, useBar=useBar, description=description
        )
        self._perEntry = {}
        self.processed = 0
        self.failures = []

    def __call__(self, event: ProgressEvent):
        previous = self._perEntry.get(event.ordinal, 0)
        if event.bytesProcessed > previous:
            self.processed += event.bytesProcessed - previous
            self._perEntry[event.ordinal] = event.bytesProcessed

        if event.final:
            self._perEntry.pop(event.ordinal, None)
            if not event.result.ok:
                self.failures.append(event.result)
                reason = event.result.error or event.result.reason
                self.progress.write(f"{event.result.status.value}: {event.entryName} ({reason})")

        self.progress.update(self.processed, extraText=event.entryName if not event.final else "")

    def close(self, complete=True):
        self.progress.finishBar(complete=complete)
