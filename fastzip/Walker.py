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
import stat

from dataclasses import dataclass, replace
from enum import Enum
from typing import Iterable, Iterator, Optional

from fastzip.Errors import ArchiveError, ErrorKind
from fastzip.Kernel import getLogger
from fastzip.Settings import DEFAULT_COMPRESSION_LEVEL

logger = getLogger(__name__)


class EntryKind(Enum):
    FILE = 'file'
    DIRECTORY = 'directory'
    SYMLINK = 'symlink'
    SPECIAL = 'special' # sockets, FIFOs, devices


@dataclass(frozen=True)
class ArchiveEntry:
    """One file, directory or link to archive, or one stored member to extract."""
    arcname: str
    kind: EntryKind
    sourcePath: Optional[str] = None
    size: int = 0
    compressedSize: int = 0
    mtime: Optional[float] = None
    mode: int = 0
    level: int = DEFAULT_COMPRESSION_LEVEL
    linkTarget: Optional[str] = None
    error: Optional[ArchiveError] = None

    @property
    def isDirectory(self):
        return self.kind == EntryKind.DIRECTORY


def _sortedListing(path):
    with os.scandir(path) as iterator:
        return sorted(iterator, key=lambda e: e.name)


def _classify(path, name, arcPrefix, statResult, level):
    mode = statResult.st_mode

    if stat.S_ISDIR(mode):
        return ArchiveEntry(
            arcname=f"{arcPrefix}{name}/",
            kind=EntryKind.DIRECTORY,
            sourcePath=path,
            mtime=statResult.st_mtime,
            mode=mode,
            level=level,
        )

    arcname = f"{arcPrefix}{name}"

    if stat.S_ISLNK(mode):
        try:
            target = os.readlink(path)
        except OSError as e:
            error = ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, path)
            return ArchiveEntry(arcname, EntryKind.SYMLINK, path, mode=mode, level=level, error=error)
        return ArchiveEntry(
            arcname=arcname,
            kind=EntryKind.SYMLINK,
            sourcePath=path,
            size=len(os.fsencode(target)),
            mtime=statResult.st_mtime,
            mode=mode,
            level=level,
            linkTarget=target,
        )

    if stat.S_ISREG(mode):
        return ArchiveEntry(
            arcname=arcname,
            kind=EntryKind.FILE,
            sourcePath=path,
            size=statResult.st_size,
            mtime=statResult.st_mtime,
            mode=mode,
            level=level,
        )

    logger.info("Special file %s (mode %o) cannot be archived", path, mode)
    return ArchiveEntry(arcname, EntryKind.SPECIAL, path, mtime=statResult.st_mtime, mode=mode, level=level)


def _walkDirectory(rootPath, rootEntry, level, excluded):
    """Depth first, children sorted by name; only one listing per open directory level is held."""
    try:
        listing = _sortedListing(rootPath)
    except OSError as e:
        yield replace(rootEntry, error=ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, rootPath))
        return

    yield rootEntry
    stack = [(rootEntry.arcname, iter(listing))]

    while stack:
        arcPrefix, children = stack[-1]
        dirEntry = next(children, None)
        if dirEntry is None:
            stack.pop()
            continue

        if excluded and os.path.abspath(dirEntry.path) in excluded:
            logger.debug("Skipping excluded path %s", dirEntry.path)
            continue

        try:
            statResult = dirEntry.stat(follow_symlinks=False)
        except OSError as e:
            yield ArchiveEntry(
                arcname=f"{arcPrefix}{dirEntry.name}",
                kind=EntryKind.FILE,
                sourcePath=dirEntry.path,
                level=level,
                error=ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, dirEntry.path),
            )
            continue

        entry = _classify(dirEntry.path, dirEntry.name, arcPrefix, statResult, level)

        if entry.kind != EntryKind.DIRECTORY:
            yield entry
            continue

        try:
            subListing = _sortedListing(dirEntry.path)
        except OSError as e:
            logger.warning("Cannot list directory %s: %s", dirEntry.path, e)
            yield replace(entry, error=ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, dirEntry.path))
            continue

        yield entry
        stack.append((entry.arcname, iter(subListing)))


def checkRoots(roots):
    """Normalize roots and fail early when one of them does not exist."""
    if isinstance(roots, (str, bytes, os.PathLike)):
        roots = [roots]

    normalized = []
    for root in roots:
        root = os.fspath(root)
        if not os.path.lexists(root):
            raise ArchiveError(ErrorKind.SOURCE_UNREADABLE, "Source does not exist", root, fatal=True)
        normalized.append(root)

    if not normalized:
        raise ArchiveError(ErrorKind.SOURCE_UNREADABLE, "No sources given", fatal=True)

    return normalized


def rootNameFor(path) -> str:
    """Archive name a root contributes: its basename, or the drive (or "root") for a filesystem root."""
    absPath = os.path.abspath(path)
    name = os.path.basename(absPath)
    if name:
        return name
    drive = os.path.splitdrive(absPath)[0].replace(':', '').strip('\\/')
    return drive or 'root'


def walkEntries(roots: Iterable, level: int = DEFAULT_COMPRESSION_LEVEL, exclude=()) -> Iterator[ArchiveEntry]:
    """
    Lazily enumerate archive entries for the given roots, in a stable order.

    A directory root contributes "name/" followed by its tree, a file root its
    basename. Roots are followed if they are links, links inside a tree are
    stored as links. Problems are attached to the entry instead of being raised.
    """
    excluded = {os.path.abspath(p) for p in exclude if p}

    for root in checkRoots(roots):
        rootPath = os.path.normpath(root)
        rootName = rootNameFor(rootPath)

        try:
            statResult = os.stat(rootPath)
        except OSError:
            # Dangling link given as root, store the link itself.
            statResult = os.lstat(rootPath)

        entry = _classify(rootPath, rootName, '', statResult, level)

        if entry.kind == EntryKind.DIRECTORY:
            yield from _walkDirectory(rootPath, entry, level, excluded)
        else:
            yield entry
