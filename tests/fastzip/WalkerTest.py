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
import shutil
import tempfile
import types
import unittest

from unittest.mock import patch

from fastzip import Walker
from fastzip.Errors import ArchiveError, ErrorKind
from fastzip.Walker import EntryKind, checkRoots, walkEntries


class WalkEntriesTest(unittest.TestCase):

    def setUp(self):
        self.tempDir = tempfile.mkdtemp()
        self.root = os.path.join(self.tempDir, 'src')
        self._write('src/b.txt', b'bbbb')
        self._write('src/a.txt', b'a' * 10)
        self._write('src/sub/d.txt', b'')
        self._write('src/sub/c.txt', b'cc')
        os.makedirs(os.path.join(self.root, 'empty'))

    def tearDown(self):
        shutil.rmtree(self.tempDir)

    def _write(self, relPath, data):
        path = os.path.join(self.tempDir, *relPath.split('/'))
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, 'wb') as f:
            f.write(data)
        return path

    def testDeterministicOrder(self):
        """Directories come before their contents, siblings sorted by name, depth first."""
        names = [e.arcname for e in walkEntries([self.root])]
        self.assertEqual(
            names, [
                'src/',
                'src/a.txt',
                'src/b.txt',
                'src/empty/',
                'src/sub/',
                'src/sub/c.txt',
                'src/sub/d.txt',
            ]
        )
        self.assertEqual(names, [e.arcname for e in walkEntries([self.root])])

    def testEntryDetails(self):
        """Entries carry kind, size, source path and the requested level."""
        entries = {e.arcname: e for e in walkEntries(self.root, level=3)}
        self.assertEqual(entries['src/'].kind, EntryKind.DIRECTORY)
        self.assertTrue(entries['src/'].isDirectory)
        self.assertEqual(entries['src/a.txt'].kind, EntryKind.FILE)
        self.assertEqual(entries['src/a.txt'].size, 10)
        self.assertEqual(entries['src/a.txt'].sourcePath, os.path.join(self.root, 'a.txt'))
        self.assertEqual({e.level for e in entries.values()}, {3})
        self.assertTrue(all(e.error is None for e in entries.values()))

    def testFileRootUsesBasename(self):
        """A single file root becomes an entry named after the file."""
        entries = list(walkEntries([os.path.join(self.root, 'sub', 'c.txt'), self.root]))
        self.assertEqual(entries[0].arcname, 'c.txt')
        self.assertEqual(entries[1].arcname, 'src/')

    def testRootNameForFilesystemRoot(self):
        """A root without a basename still gets a relative, non-empty name."""
        self.assertEqual(Walker.rootNameFor(os.path.join(self.root, '')), 'src')
        if os.name == 'posix':
            self.assertEqual(Walker.rootNameFor('/'), 'root')

    @unittest.skipUnless(os.name == 'posix', "requires a POSIX filesystem root")
    def testFilesystemRootArcnamesAreRelative(self):
        """Walking "/" names entries under "root/" rather than with a leading slash."""
        with patch.object(Walker, '_sortedListing', return_value=[]):
            entries = list(walkEntries(['/']))
        self.assertEqual([e.arcname for e in entries], ['root/'])
        self.assertFalse(entries[0].arcname.startswith('/'))

    def testIsLazy(self):
        """The walker is a generator, nothing is listed before the first next()."""
        with patch.object(Walker, '_sortedListing', wraps=Walker._sortedListing) as listing:
            entries = walkEntries([self.root])
            self.assertIsInstance(entries, types.GeneratorType)
            listing.assert_not_called()
            self.assertEqual(next(entries).arcname, 'src/')
            self.assertEqual(listing.call_count, 1)

    @unittest.skipUnless(hasattr(os, 'symlink') and os.name != 'nt', "requires POSIX symlinks")
    def testSymlinksAreNotFollowed(self):
        """Links inside a tree are reported as links with their target."""
        os.symlink('a.txt', os.path.join(self.root, 'link'))
        os.symlink(os.path.join(self.tempDir, 'elsewhere'), os.path.join(self.root, 'dangling'))
        entries = {e.arcname: e for e in walkEntries([self.root])}

        self.assertEqual(entries['src/link'].kind, EntryKind.SYMLINK)
        self.assertEqual(entries['src/link'].linkTarget, 'a.txt')
        self.assertEqual(entries['src/link'].size, len(b'a.txt'))
        self.assertEqual(entries['src/dangling'].kind, EntryKind.SYMLINK)

    @unittest.skipUnless(hasattr(os, 'mkfifo'), "requires FIFOs")
    def testSpecialFiles(self):
        """FIFOs are classified as special entries."""
        os.mkfifo(os.path.join(self.root, 'pipe'))
        entries = {e.arcname: e for e in walkEntries([self.root])}
        self.assertEqual(entries['src/pipe'].kind, EntryKind.SPECIAL)
        self.assertIsNone(entries['src/pipe'].error)

    def testUnreadableDirectory(self):
        """A directory that cannot be listed is reported with an error, the walk goes on."""
        original = Walker._sortedListing

        def listing(path):
            if os.path.basename(path) == 'sub':
                raise PermissionError(13, 'Permission denied', path)
            return original(path)

        with patch.object(Walker, '_sortedListing', side_effect=listing):
            entries = list(walkEntries([self.root]))

        names = [e.arcname for e in entries]
        self.assertEqual(names, ['src/', 'src/a.txt', 'src/b.txt', 'src/empty/', 'src/sub/'])
        failed = entries[-1]
        self.assertEqual(failed.error.kind, ErrorKind.SOURCE_UNREADABLE)

    def testExcludedPaths(self):
        """Excluded paths (like the archive being written) are left out."""
        excluded = os.path.join(self.root, 'b.txt')
        names = [e.arcname for e in walkEntries([self.root], exclude=[excluded])]
        self.assertNotIn('src/b.txt', names)
        self.assertIn('src/a.txt', names)

    def testMissingRoot(self):
        """A missing root fails before anything is enumerated."""
        with self.assertRaises(ArchiveError) as context:
            list(walkEntries([self.root, os.path.join(self.tempDir, 'missing')]))
        self.assertEqual(context.exception.kind, ErrorKind.SOURCE_UNREADABLE)
        self.assertTrue(context.exception.fatal)

    def testCheckRoots(self):
        """A single path is accepted as well as a list; an empty list is an error."""
        self.assertEqual(checkRoots(self.root), [self.root])
        with self.assertRaises(ArchiveError):
            checkRoots([])


if __name__ == '__main__':
    unittest.main()
