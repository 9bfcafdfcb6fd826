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

import logging
import os
import unittest

from unittest.mock import patch

from fastzip.Utils import (
    ONE_MB, ONE_GB, decodeName, recoverMemberName, formatSize, formatRatio, getEnv, sendException
)


class TestFormatSize(unittest.TestCase):

    def testSmallSizesUseBytes(self):
        testCases = [0, 1, 500, 999]
        for size in testCases:
            with self.subTest(size=size):
                result = formatSize(size)
                print(f"formatSize({size}) = '{result}'")
                self.assertIn('Byte', result)
                self.assertTrue(result.startswith(str(size)))

    def testSingularByte(self):
        self.assertIn('Byte', formatSize(1, plural=False))
        self.assertNotIn('Bytes', formatSize(1, plural=False))

    def testByteUnitIsSpelledOut(self):
        self.assertEqual(formatSize(0), '0 Bytes')
        self.assertEqual(formatSize(500), '500 Bytes')
        self.assertEqual(formatSize(1, plural=False), '1 Byte')

    def testLargeSizesDropTheByteSuffix(self):
        result = formatSize(5 * 1000 * 1000)
        print(f"formatSize(5MB) = '{result}'")
        self.assertEqual(result, '5M')

    def testDecimalsGrowWithSize(self):
        self.assertEqual(formatSize(2 * ONE_MB).count('.'), 0)
        self.assertEqual(formatSize(3 * ONE_GB).count('.'), 1)


class TestFormatRatio(unittest.TestCase):

    def testSavedPercent(self):
        self.assertEqual(formatRatio(25, 100), 75)
        self.assertEqual(formatRatio(100, 100), 0)

    def testExpansionIsClampedToZero(self):
        self.assertEqual(formatRatio(150, 100), 0)

    def testEmptyEntry(self):
        self.assertEqual(formatRatio(0, 0), 0)


class TestGetEnv(unittest.TestCase):

    def testMissingReturnsDefault(self):
        with patch.dict(os.environ, {}, clear=False):
            os.environ.pop('FASTZIP_TEST_VALUE', None)
            self.assertEqual(getEnv('FASTZIP_TEST_VALUE', 7), 7)

    def testTypeFollowsDefault(self):
        testCases = [
            ('12', 3, 12),
            ('True', False, True),
            ('False', True, False),
            ('0.5', 1.0, 0.5),
            ('text', 'default', 'text'),
            ('raw', None, 'raw'),
        ]
        for value, default, expected in testCases:
            with self.subTest(value=value, default=default):
                with patch.dict(os.environ, {'FASTZIP_TEST_VALUE': value}):
                    self.assertEqual(getEnv('FASTZIP_TEST_VALUE', default), expected)

    def testInvalidValueFallsBack(self):
        with patch.dict(os.environ, {'FASTZIP_TEST_VALUE': 'many'}):
            with self.assertLogs('fastzip.Utils', level='WARNING'):
                self.assertEqual(getEnv('FASTZIP_TEST_VALUE', 4), 4)


class TestMemberNames(unittest.TestCase):

    def testStrIsUnchanged(self):
        self.assertEqual(decodeName('plain.txt'), 'plain.txt')

    def testAsciiBytes(self):
        self.assertEqual(decodeName(b'folder/file.txt'), 'folder/file.txt')

    def testUtf8FlaggedNameIsKept(self):
        self.assertEqual(recoverMemberName('café.txt', 0x800), 'café.txt')

    def testUnflaggedUtf8IsRecovered(self):
        # zipfile decodes names without the UTF-8 flag as cp437
        misread = 'café.txt'.encode('utf-8').decode('cp437')
        self.assertEqual(recoverMemberName(misread, 0), 'café.txt')


class TestSendException(unittest.TestCase):

    def testPrintsAndLogs(self):
        logger = logging.getLogger('fastzip.tests.sendException')
        with patch.dict(os.environ, {'RAISE_EXCEPTION': 'False'}):
            with patch('fastzip.Utils.flushPrint') as mockPrint, self.assertLogs(logger, level='ERROR'):
                sendException(logger, ValueError('boom'))
        mockPrint.assert_called_once_with('Oops, something went wrong: boom')

    def testRaisesWhenAsked(self):
        logger = logging.getLogger('fastzip.tests.sendException')
        with patch.dict(os.environ, {'RAISE_EXCEPTION': 'True'}), patch('fastzip.Utils.flushPrint'):
            with self.assertLogs(logger, level='ERROR'), self.assertRaises(ValueError):
                sendException(logger, ValueError('boom'))


if __name__ == '__main__':
    unittest.main()
