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

import unittest

from fastzip.BufferPolicy import BufferPlan, chunkSizeFor, planFor, TARGET_CHUNKS_PER_FILE
from fastzip.Settings import EngineConfig, MIN_BUFFER_SIZE, MAX_BUFFER_SIZE
from fastzip.Utils import ONE_KB, ONE_MB


class ChunkSizeForTest(unittest.TestCase):

    def testSmallFilesUseFloor(self):
        """Files whose 64th part is below the floor read in floor-sized chunks."""
        for size in (0, 1, 10, 100 * ONE_KB, 4 * ONE_MB):
            with self.subTest(size=size):
                self.assertEqual(chunkSizeFor(size), MIN_BUFFER_SIZE)

    def testLargeFilesUseCeiling(self):
        """Anything above 64 times the ceiling is capped at the ceiling."""
        for size in (200 * ONE_MB, 10 * 1024 * ONE_MB):
            with self.subTest(size=size):
                self.assertEqual(chunkSizeFor(size), MAX_BUFFER_SIZE)

    def testPowerOfTwoInBetween(self):
        """Between the bounds the chunk is the next power of two of size / 64."""
        self.assertEqual(chunkSizeFor(32 * ONE_MB), 512 * ONE_KB)
        self.assertEqual(chunkSizeFor(32 * ONE_MB + 1), 512 * ONE_KB)
        self.assertEqual(chunkSizeFor(33 * ONE_MB), ONE_MB)

    def testStoredDoublesBase(self):
        """Level 0 reads twice as much per chunk, still within bounds."""
        self.assertEqual(chunkSizeFor(16 * ONE_MB, level=6), 256 * ONE_KB)
        self.assertEqual(chunkSizeFor(16 * ONE_MB, level=0), 512 * ONE_KB)
        self.assertEqual(chunkSizeFor(200 * ONE_MB, level=0), MAX_BUFFER_SIZE)

    def testMemoryHintLowersCeilingOnly(self):
        """A memory hint caps the chunk but never pushes it below the floor."""
        self.assertEqual(chunkSizeFor(200 * ONE_MB, memoryHint=ONE_MB), ONE_MB)
        self.assertEqual(chunkSizeFor(200 * ONE_MB, memoryHint=ONE_KB), MIN_BUFFER_SIZE)
        self.assertEqual(chunkSizeFor(ONE_MB, memoryHint=ONE_KB), MIN_BUFFER_SIZE)

    def testCustomBounds(self):
        """Configured floor and ceiling replace the defaults."""
        self.assertEqual(chunkSizeFor(0, ceiling=ONE_MB, floor=128 * ONE_KB), 128 * ONE_KB)
        self.assertEqual(chunkSizeFor(500 * ONE_MB, ceiling=ONE_MB, floor=128 * ONE_KB), ONE_MB)

    def testMonotonicInSize(self):
        """Chunk size never shrinks as the file grows and stays within bounds."""
        previous = 0
        size = 0
        while size < 512 * ONE_MB:
            chunkSize = chunkSizeFor(size)
            self.assertGreaterEqual(chunkSize, previous)
            self.assertGreaterEqual(chunkSize, MIN_BUFFER_SIZE)
            self.assertLessEqual(chunkSize, MAX_BUFFER_SIZE)
            previous = chunkSize
            size = size * 3 // 2 + 4099

    def testInvalidArguments(self):
        """Out of range inputs are rejected."""
        invalid = [
            dict(size=-1),
            dict(size=1, floor=ONE_KB),
            dict(size=1, ceiling=4 * ONE_MB),
            dict(size=1, floor=ONE_MB, ceiling=512 * ONE_KB),
            dict(size=1, level=10),
        ]
        for kwargs in invalid:
            with self.subTest(**{k: str(v) for k, v in kwargs.items()}):
                with self.assertRaises(ValueError):
                    chunkSizeFor(**kwargs)

    def testTargetChunkCount(self):
        """A mid-sized file is read in about TARGET_CHUNKS_PER_FILE chunks."""
        size = 64 * ONE_MB
        self.assertEqual(size // chunkSizeFor(size), TARGET_CHUNKS_PER_FILE)


class PlanForTest(unittest.TestCase):

    def testMappingThreshold(self):
        """Files at or above the threshold are mapped."""
        config = EngineConfig(mmapThreshold=100 * ONE_MB)
        self.assertFalse(planFor(100 * ONE_MB - 1, config).useMemoryMap)
        self.assertTrue(planFor(100 * ONE_MB, config).useMemoryMap)

    def testPlanUsesConfigBounds(self):
        """The plan's chunk size honours the configured ceiling."""
        config = EngineConfig(bufferCeiling=256 * ONE_KB)
        plan = planFor(ONE_MB * 1024, config)
        self.assertEqual(plan, BufferPlan(chunkSize=256 * ONE_KB, useMemoryMap=True))

    def testPlanRespectsMemoryBudget(self):
        """A small memory budget shrinks chunks, an explicit hint can only lower them further."""
        config = EngineConfig(workers=4, memoryBudget=512 * ONE_KB)
        plan = planFor(200 * ONE_MB, config, level=0)
        self.assertEqual(plan.chunkSize, 64 * ONE_KB)
        self.assertLessEqual(plan.chunkSize * config.heldChunks, config.memoryBudget)

        roomy = EngineConfig(workers=1, memoryBudget=1024 * ONE_MB)
        self.assertEqual(planFor(200 * ONE_MB, roomy).chunkSize, MAX_BUFFER_SIZE)
        self.assertEqual(planFor(200 * ONE_MB, roomy, memoryHint=128 * ONE_KB).chunkSize, 128 * ONE_KB)
        self.assertEqual(planFor(200 * ONE_MB, config, memoryHint=ONE_MB).chunkSize, 64 * ONE_KB)

    def testPlanIsImmutable(self):
        """Plans are values."""
        plan = planFor(10, EngineConfig())
        with self.assertRaises(Exception):
            plan.chunkSize = 1


if __name__ == '__main__':
    unittest.main()
