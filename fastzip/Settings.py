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

import os

from dataclasses import dataclass, field, replace
from enum import Enum

from fastzip.Kernel import getLogger
from fastzip.Utils import getEnv, ONE_KB, ONE_MB, formatSize

# Hard limits of the buffer sizing policy, configurable values must stay inside them.
MIN_BUFFER_SIZE = 64 * ONE_KB
MAX_BUFFER_SIZE = 2 * ONE_MB

DEFAULT_MMAP_THRESHOLD = 100 * ONE_MB
DEFAULT_MEMORY_BUDGET = 128 * ONE_MB
DEFAULT_QUEUE_DEPTH = 4
DEFAULT_WORKERS = min(8, os.cpu_count() or 1)

DEFAULT_COMPRESSION_LEVEL = 6

TEMP_SUFFIX = '.fastzip-tmp'

logger = getLogger(__name__)


class OverwritePolicy(Enum):
    FAIL = 'fail'
    SKIP = 'skip'
    REPLACE = 'replace'

    @classmethod
    def parse(cls, value):
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"Unknown overwrite policy: {value!r} (expected fail, skip or replace)")


def _envDefault(name, default):
    return field(default_factory=lambda: getEnv(name, default))


@dataclass(frozen=True)
class EngineConfig:
    """
    Tunables of one archive operation.

    Read once when an operation starts and passed down explicitly; nothing in the
    pipeline looks configuration up globally while it runs.
    """
    mmapThreshold: int = _envDefault('FASTZIP_MMAP_THRESHOLD', DEFAULT_MMAP_THRESHOLD)
    bufferFloor: int = _envDefault('FASTZIP_BUFFER_FLOOR', MIN_BUFFER_SIZE)
    bufferCeiling: int = _envDefault('FASTZIP_BUFFER_CEILING', MAX_BUFFER_SIZE)
    workers: int = _envDefault('FASTZIP_WORKERS', DEFAULT_WORKERS)
    memoryBudget: int = _envDefault('FASTZIP_MEMORY_BUDGET', DEFAULT_MEMORY_BUDGET)
    queueDepth: int = _envDefault('FASTZIP_QUEUE_DEPTH', DEFAULT_QUEUE_DEPTH)
    walkerLookahead: int = _envDefault('FASTZIP_WALKER_LOOKAHEAD', 0)

    def __post_init__(self):
        self.validate()

    @classmethod
    def fromEnv(cls, **overrides):
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return cls(**overrides)

    def withOverrides(self, **overrides):
        overrides = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **overrides) if overrides else self

    def validate(self):
        if not MIN_BUFFER_SIZE <= self.bufferFloor <= self.bufferCeiling <= MAX_BUFFER_SIZE:
            raise ValueError(
                f"Buffer bounds must satisfy {formatSize(MIN_BUFFER_SIZE)} <= floor <= ceiling <= "
                f"{formatSize(MAX_BUFFER_SIZE)}, got floor={self.bufferFloor} ceiling={self.bufferCeiling}"
            )
        if self.mmapThreshold < 0:
            raise ValueError(f"mmapThreshold cannot be negative: {self.mmapThreshold}")
        if self.workers < 1:
            raise ValueError(f"workers must be at least 1: {self.workers}")
        if self.queueDepth < 1:
            raise ValueError(f"queueDepth must be at least 1: {self.queueDepth}")
        if self.walkerLookahead < 0:
            raise ValueError(f"walkerLookahead cannot be negative: {self.walkerLookahead}")

        smallest = self._heldChunks(1, 1) * self.bufferFloor
        if self.memoryBudget < smallest:
            raise ValueError(
                f"memoryBudget {formatSize(self.memoryBudget)} cannot hold one worker, "
                f"at least {formatSize(smallest)} is needed"
            )

    def _heldChunks(self, workers, queueDepth):
        """
        Most chunks a run can hold at once.

        Every slot of the ordering window may have a full queue, each worker
        holds the chunk it is trying to hand over and the writer holds one.
        """
        lookahead = self.walkerLookahead or 2 * workers
        return lookahead * queueDepth + workers + 1

    @property
    def _floorChunks(self):
        return self.memoryBudget // self.bufferFloor

    @property
    def effectiveQueueDepth(self):
        """Queue depth lowered until a single worker fits the memory budget at the smallest chunk size."""
        depth = self.queueDepth
        while depth > 1 and self._heldChunks(1, depth) > self._floorChunks:
            depth -= 1
        return depth

    @property
    def effectiveWorkers(self):
        """Worker count clamped so that every chunk the run can hold fits in the memory budget."""
        depth = self.effectiveQueueDepth
        workers = self.workers
        while workers > 1 and self._heldChunks(workers, depth) > self._floorChunks:
            workers -= 1
        if workers < self.workers:
            logger.debug(
                f"Clamping workers {self.workers} -> {workers} for budget {formatSize(self.memoryBudget)}"
            )
        return workers

    @property
    def effectiveLookahead(self):
        """How many entries may be enumerated ahead of the writer."""
        return self.walkerLookahead or 2 * self.effectiveWorkers

    @property
    def heldChunks(self):
        return self._heldChunks(self.effectiveWorkers, self.effectiveQueueDepth)

    @property
    def chunkCeiling(self):
        """
        Largest chunk size the memory budget allows, a power of two within [bufferFloor, bufferCeiling].

        heldChunks * chunkCeiling never exceeds memoryBudget.
        """
        allowed = min(self.bufferCeiling, self.memoryBudget // self.heldChunks)
        allowed = 1 << (allowed.bit_length() - 1)
        return max(self.bufferFloor, allowed)
