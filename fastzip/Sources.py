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

import io
import mmap
import os
import threading
import zipfile
import zlib

from typing import Callable, Iterator, Optional, Protocol, Union, runtime_checkable

from fastzip.BufferPolicy import BufferPlan
from fastzip.Errors import ArchiveError, ErrorKind
from fastzip.Kernel import getLogger
from fastzip.Utils import formatSize

logger = getLogger(__name__)

# Everything mmap may raise for a file it cannot map (empty file, 32-bit limits, FUSE, exported buffers).
MAPPING_ERRORS = (OSError, ValueError, OverflowError, BufferError)

# Errors of a damaged or unsupported member while it is being inflated.
CODEC_ERRORS = (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, RuntimeError)

Chunk = Union[bytes, memoryview]


@runtime_checkable
class ByteSource(Protocol):
    """Sequential byte source with a known length. Chunks are only valid until the next one is requested."""

    length: int
    mapped: bool

    def iterChunks(self, chunkSize: int, token=None) -> Iterator[Chunk]:
        ...

    def close(self) -> None:
        ...

    def __enter__(self) -> 'ByteSource':
        ...

    def __exit__(self, excType, excVal, excTb) -> None:
        ...


class _SourceBase:

    mapped = False

    def __init__(self, path, length):
        self.path = path
        self.length = length
        self.closed = False

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()

    def _checkCancelled(self, token):
        if token is not None:
            token.raiseIfCancelled(self.path)


class BufferedSource(_SourceBase):
    """Plain file reads, used below the mapping threshold and whenever mapping fails."""

    def __init__(self, path, length, fileObject):
        super().__init__(path, length)
        self._file = fileObject

    def iterChunks(self, chunkSize, token=None):
        while True:
            self._checkCancelled(token)
            try:
                chunk = self._file.read(chunkSize)
            except OSError as e:
                raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, self.path)
            if not chunk:
                return
            yield chunk

    def close(self):
        if not self.closed:
            self.closed = True
            self._file.close()


class MappedSource(_SourceBase):
    """Read-only map of a whole file, handed out as memoryview slices without copying."""

    mapped = True

    def __init__(self, path, fileObject, mapping):
        super().__init__(path, len(mapping))
        self._file = fileObject
        self._mapping = mapping
        self._view = None

    def iterChunks(self, chunkSize, token=None):
        self._view = memoryview(self._mapping)
        try:
            for offset in range(0, self.length, chunkSize):
                self._checkCancelled(token)
                piece = self._view[offset:offset + chunkSize]
                try:
                    yield piece
                finally:
                    piece.release()
        finally:
            self._releaseView()

    def _releaseView(self):
        if self._view is not None:
            self._view.release()
            self._view = None

    def close(self):
        if self.closed:
            return
        self.closed = True
        try:
            # The map cannot be closed while a view is still exported.
            self._releaseView()
            self._mapping.close()
        finally:
            self._file.close()


def openSource(
    path, size, plan: BufferPlan, onFallback: Optional[Callable[[ArchiveError], None]] = None
) -> ByteSource:
    """
    Open `path` for sequential reading following `plan`.

    Mapping is attempted when the plan asks for it. If mapping fails the same
    file handle is read with buffered I/O instead, the failure is logged and
    passed to onFallback, and nothing is raised. Failing to open the file at
    all raises ArchiveError(SOURCE_UNREADABLE).
    """
    try:
        fileObject = open(path, 'rb')
    except OSError as e:
        raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, path)

    if plan.useMemoryMap and size > 0:
        try:
            mapping = mmap.mmap(fileObject.fileno(), 0, access=mmap.ACCESS_READ)
        except MAPPING_ERRORS as e:
            logger.warning("mmap unavailable for %s (%s), using buffered reads", path, e)
            if onFallback:
                onFallback(ArchiveError(ErrorKind.MAPPING_FAILED, str(e), path, fatal=False))
        else:
            logger.debug("Mapped %s (%s)", path, formatSize(len(mapping)))
            return MappedSource(path, fileObject, mapping)

    return BufferedSource(path, size, fileObject)


class MemberSource(_SourceBase):
    """Decompressed bytes of one archive member."""

    def __init__(self, zipFile, info):
        super().__init__(info.filename, info.file_size)
        self._zipFile = zipFile
        self._info = info
        self._stream = None

    def iterChunks(self, chunkSize, token=None):
        try:
            self._stream = self._zipFile.open(self._info)
            while True:
                self._checkCancelled(token)
                chunk = self._stream.read(chunkSize)
                if not chunk:
                    return
                yield chunk
        except CODEC_ERRORS as e:
            error = ArchiveError(ErrorKind.CODEC_ERROR, f"{type(e).__name__}: {e}", self.path)
            raise error from e
        except OSError as e:
            raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, self.path)

    def close(self):
        if not self.closed:
            self.closed = True
            if self._stream is not None:
                self._stream.close()


class MappedArchiveReader(io.RawIOBase):
    """Seekable reader over a shared map, one per thread so positions never clash."""

    def __init__(self, mapping):
        super().__init__()
        self._mapping = mapping
        self._position = 0

    def readable(self):
        return True

    def seekable(self):
        return True

    def readinto(self, buffer):
        remaining = len(self._mapping) - self._position
        count = min(len(buffer), remaining)
        if count <= 0:
            return 0
        buffer[:count] = self._mapping[self._position:self._position + count]
        self._position += count
        return count

    def seek(self, offset, whence=io.SEEK_SET):
        if whence == io.SEEK_SET:
            position = offset
        elif whence == io.SEEK_CUR:
            position = self._position + offset
        elif whence == io.SEEK_END:
            position = len(self._mapping) + offset
        else:
            raise ValueError(f"invalid whence: {whence}")
        if position < 0:
            raise OSError(f"negative seek position {position}")
        self._position = position
        return position

    def tell(self):
        return self._position


class ArchiveHandle:
    """
    Read access to an existing archive for extraction and raw entry copies.

    Archives at or above the mapping threshold are mapped once and every
    thread reads through its own MappedArchiveReader. Mapping failures fall
    back to one plain file handle per thread.
    """

    def __init__(self, path, config, onFallback=None):
        self.path = path
        self.mapped = False
        self.mappingFallback = False
        self._mapping = None
        self._local = threading.local()
        self._opened = []
        self._lock = threading.Lock()

        try:
            self.size = os.path.getsize(path)
            self._file = open(path, 'rb')
        except OSError as e:
            raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, path, fatal=True)

        if self.size >= config.mmapThreshold and self.size > 0:
            try:
                self._mapping = mmap.mmap(self._file.fileno(), 0, access=mmap.ACCESS_READ)
                self.mapped = True
            except MAPPING_ERRORS as e:
                self.mappingFallback = True
                logger.warning("mmap unavailable for archive %s (%s), using buffered reads", path, e)
                if onFallback:
                    onFallback(ArchiveError(ErrorKind.MAPPING_FAILED, str(e), path, fatal=False))

    def __enter__(self):
        return self

    def __exit__(self, excType, excVal, excTb):
        self.close()

    def _newReader(self):
        if self._mapping is not None:
            return MappedArchiveReader(self._mapping)
        return open(self.path, 'rb')

    def zipFile(self):
        """ZipFile for the calling thread, created on first use."""
        zipFile = getattr(self._local, 'zipFile', None)
        if zipFile is None:
            reader = self._newReader()
            try:
                zipFile = zipfile.ZipFile(reader)
            except zipfile.BadZipFile as e:
                reader.close()
                raise ArchiveError(ErrorKind.CODEC_ERROR, f"Not a valid ZIP archive: {e}", self.path, fatal=True)
            except OSError as e:
                reader.close()
                raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, self.path, fatal=True)
            self._local.zipFile = zipFile
            with self._lock:
                self._opened.append((zipFile, reader))
        return zipFile

    def close(self):
        with self._lock:
            opened, self._opened = self._opened, []
        for zipFile, reader in opened:
            zipFile.close()
            reader.close()
        if self._mapping is not None:
            self._mapping.close()
            self._mapping = None
        self._file.close()
