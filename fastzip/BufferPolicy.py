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

from dataclasses import dataclass
from typing import Optional

from fastzip.Settings import MIN_BUFFER_SIZE, MAX_BUFFER_SIZE, EngineConfig

# A file is read in roughly this many chunks before the ceiling kicks in.
TARGET_CHUNKS_PER_FILE = 64


@dataclass(frozen=True)
class BufferPlan:
    """How one entry is read: chunk size and whether to memory-map the source."""
    chunkSize: int
    useMemoryMap: bool


def _nextPowerOfTwo(value: int) -> int:
    if value <= 1:
        return 1
    return 1 << (value - 1).bit_length()


def chunkSizeFor(
    size: int,
    ceiling: int = MAX_BUFFER_SIZE,
    floor: int = MIN_BUFFER_SIZE,
    memoryHint: Optional[int] = None,
    level: Optional[int] = None,
) -> int:
    """
    Chunk size for an entry of `size` bytes.

    The base grows with the file (one 64th of it, rounded up to a power of two),
    stored entries (level 0) get twice the base, and the result is clamped to
    [floor, ceiling]. A memory hint can lower the ceiling but never the floor.
    """
    if size < 0:
        raise ValueError(f"size cannot be negative: {size}")
    if not MIN_BUFFER_SIZE <= floor <= ceiling <= MAX_BUFFER_SIZE:
        raise ValueError(f"invalid buffer bounds floor={floor} ceiling={ceiling}")
    if level is not None and not 0 <= level <= 9:
        raise ValueError(f"compression level must be within 0-9: {level}")

    upper = ceiling
    if memoryHint is not None:
        upper = max(floor, min(upper, memoryHint))

    base = _nextPowerOfTwo(size // TARGET_CHUNKS_PER_FILE)
    if level == 0:
        base *= 2

    return max(floor, min(upper, base))


def planFor(size: int, config: EngineConfig, level: Optional[int] = None, memoryHint: Optional[int] = None):
    """
    BufferPlan of one entry under `config`.

    The chunk size is capped by config.chunkCeiling, so the chunks a run can
    hold at once stay within config.memoryBudget; memoryHint can lower it further.
    """
    if memoryHint is None:
        memoryHint = config.chunkCeiling
    else:
        memoryHint = min(memoryHint, config.chunkCeiling)
    chunkSize = chunkSizeFor(
        size, ceiling=config.bufferCeiling, floor=config.bufferFloor, memoryHint=memoryHint, level=level
    )
    return BufferPlan(chunkSize=chunkSize, useMemoryMap=size >= config.mmapThreshold)
