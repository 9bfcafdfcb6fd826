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

import datetime
import stat
import struct
import zipfile

from dataclasses import dataclass
from typing import List, Optional

from fastzip.Errors import ArchiveError, ErrorKind
from fastzip.Kernel import getLogger

logger = getLogger(__name__)

# Signature constants - the Zip64 ones are not exposed by the zipfile module
LOCAL_FILE_HEADER_SIGNATURE = struct.unpack('<I', zipfile.stringFileHeader)[0] # 0x04034b50
CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringCentralDir)[0] # 0x02014b50
END_OF_CENTRAL_DIR_SIGNATURE = struct.unpack('<I', zipfile.stringEndArchive)[0] # 0x06054b50
DATA_DESCRIPTOR_SIGNATURE = 0x08074b50
ZIP64_END_OF_CENTRAL_DIR_SIGNATURE = 0x06064b50
ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE = 0x07064b50
ZIP64_EXTRA_TAG = 0x0001

# Compression methods (from zipfile module)
STORE = zipfile.ZIP_STORED # 0
DEFLATE = zipfile.ZIP_DEFLATED # 8

# General purpose bit flags
ENCRYPTED_FLAG = 0x0001
DATA_DESCRIPTOR_FLAG = 0x0008 # Bit 3: sizes/CRC in data descriptor
UTF8_FLAG = 0x0800 # Bit 11: filename and comment UTF-8 encoded

ZIP64_LIMIT = 0xFFFFFFFF # 4GiB - 1
ZIP64_ENTRY_COUNT_LIMIT = 65535 # Maximum entries in standard ZIP

LOCAL_FILE_HEADER_SIZE = 30

# Upper byte of "version made by": 3 = UNIX, so external attributes carry st_mode
MADE_BY_UNIX = 3 << 8

MS_DOS_DIRECTORY = 0x10
MS_DOS_ARCHIVE = 0x20

DEFAULT_FILE_MODE = stat.S_IFREG | 0o644
DEFAULT_DIR_MODE = stat.S_IFDIR | 0o755


def exceedsZip64Limit(value: int) -> bool:
    return value >= ZIP64_LIMIT


def maxCompressedSize(size: int) -> int:
    """Largest output deflate can produce for `size` input bytes (zlib's deflateBound)."""
    return size + (size >> 12) + (size >> 14) + (size >> 25) + 13


def unixToDosTime(timestamp):
    """
    Convert Unix timestamp to DOS (time, date) 16-bit integers.

    Anything before 1980 (or missing) becomes 1980-01-01 00:00:00.
    """
    if timestamp is None or timestamp <= 0:
        return 0, (1 << 5) | 1

    try:
        dt = datetime.datetime.fromtimestamp(timestamp)
    except (ValueError, OSError, OverflowError):
        return 0, (1 << 5) | 1

    return dateTimeToDos((dt.year, dt.month, dt.day, dt.hour, dt.minute, dt.second))


def dateTimeToDos(dateTime):
    year, month, day, hour, minute, second = dateTime[:6]
    if year < 1980:
        return 0, (1 << 5) | 1
    year = min(2107, year)

    dosTime = ((hour & 0x1F) << 11) | ((minute & 0x3F) << 5) | ((second // 2) & 0x1F)
    dosDate = (((year - 1980) & 0x7F) << 9) | ((month & 0x0F) << 5) | (day & 0x1F)
    return dosTime, dosDate


def encodeName(arcname: str):
    """Return (nameBytes, flags). Names that are not valid Unicode keep their raw bytes without the UTF-8 flag."""
    try:
        return arcname.encode('utf-8'), UTF8_FLAG
    except UnicodeEncodeError:
        return arcname.encode('utf-8', errors='surrogateescape'), 0


def externalAttributes(mode: int, isDir: bool) -> int:
    if not mode:
        mode = DEFAULT_DIR_MODE if isDir else DEFAULT_FILE_MODE
    return ((mode & 0xFFFF) << 16) | (MS_DOS_DIRECTORY if isDir else MS_DOS_ARCHIVE)


def compressionMethodFor(level: int, isDataEntry: bool = True) -> int:
    """Level 0 and non-file entries are stored, everything else deflated."""
    if not isDataEntry or level == 0:
        return STORE
    return DEFLATE


@dataclass
class _CentralRecord:
    nameBytes: bytes
    flags: int
    method: int
    dosTime: int
    dosDate: int
    crc: int
    compressedSize: int
    uncompressedSize: int
    offset: int
    externalAttr: int


@dataclass
class _OpenEntry:
    nameBytes: bytes
    flags: int
    method: int
    dosTime: int
    dosDate: int
    externalAttr: int
    offset: int
    dataStart: int
    hasDescriptor: bool
    useZip64: bool


class ZipStreamWriter:
    """
    Appends entries to a seekable binary file, one at a time, in call order.

    Sizes and CRC of data entries travel in a data descriptor after the data,
    so entries can be streamed without knowing their compressed size. An entry
    can be abandoned mid-way; the file is then truncated back to its local header.
    """

    def __init__(self, fileObject):
        self.fileObject = fileObject
        self.offset = fileObject.tell()
        self._records: List[_CentralRecord] = []
        self._current: Optional[_OpenEntry] = None
        self.finished = False

    @property
    def entryCount(self):
        return len(self._records)

    @property
    def currentCompressedSize(self):
        if self._current is None:
            return 0
        return self.offset - self._current.dataStart

    def _write(self, data):
        self.fileObject.write(data)
        self.offset += len(data)

    def beginEntry(self, arcname, method, isDir=False, mtime=None, mode=0, sizeHint=0, dateTime=None):
        if self._current is not None:
            raise RuntimeError(f"Entry still open while starting {arcname}")

        nameBytes, flags = encodeName(arcname)
        hasDescriptor = not isDir
        if hasDescriptor:
            flags |= DATA_DESCRIPTOR_FLAG

        if dateTime is not None:
            dosTime, dosDate = dateTimeToDos(dateTime)
        else:
            dosTime, dosDate = unixToDosTime(mtime)

        # Zip64 is decided up front from the offset and the worst case size the data can reach.
        useZip64 = hasDescriptor and (
            exceedsZip64Limit(maxCompressedSize(sizeHint)) or exceedsZip64Limit(self.offset)
        )

        entryOffset = self.offset
        header = self._makeLocalFileHeader(nameBytes, flags, method, dosTime, dosDate, useZip64)
        self._write(header)

        self._current = _OpenEntry(
            nameBytes=nameBytes,
            flags=flags,
            method=method,
            dosTime=dosTime,
            dosDate=dosDate,
            externalAttr=externalAttributes(mode, isDir),
            offset=entryOffset,
            dataStart=self.offset,
            hasDescriptor=hasDescriptor,
            useZip64=useZip64,
        )

    def writeData(self, data):
        if self._current is None:
            raise RuntimeError("No entry open")
        self._write(data)

    def endEntry(self, crc, uncompressedSize):
        """Close the open entry and return its compressed size."""
        entry = self._current
        if entry is None:
            raise RuntimeError("No entry open")

        compressedSize = self.offset - entry.dataStart
        if entry.hasDescriptor:
            useZip64 = entry.useZip64 or exceedsZip64Limit(compressedSize) or exceedsZip64Limit(uncompressedSize)
            self._write(self._makeDataDescriptor(crc, compressedSize, uncompressedSize, useZip64))

        self._records.append(
            _CentralRecord(
                nameBytes=entry.nameBytes,
                flags=entry.flags,
                method=entry.method,
                dosTime=entry.dosTime,
                dosDate=entry.dosDate,
                crc=crc,
                compressedSize=compressedSize,
                uncompressedSize=uncompressedSize,
                offset=entry.offset,
                externalAttr=entry.externalAttr,
            )
        )
        self._current = None
        return compressedSize

    def abortEntry(self):
        """Drop the open entry, truncating everything written for it."""
        entry = self._current
        if entry is None:
            return
        self._current = None
        self.fileObject.seek(entry.offset)
        self.fileObject.truncate()
        self.offset = entry.offset
        logger.debug("Rolled back entry %s to offset %d", entry.nameBytes, entry.offset)

    def copyRawEntry(self, info: zipfile.ZipInfo, sourceFile, chunkSize, token=None):
        """
        Copy an existing member's compressed bytes from another archive without recompressing.

        Returns the number of compressed bytes copied.
        """
        if info.flag_bits & ENCRYPTED_FLAG:
            raise ArchiveError(ErrorKind.CODEC_ERROR, "Encrypted entries are not supported", info.filename)

        sourceFile.seek(info.header_offset)
        header = sourceFile.read(LOCAL_FILE_HEADER_SIZE)
        if len(header) != LOCAL_FILE_HEADER_SIZE or header[:4] != zipfile.stringFileHeader:
            raise ArchiveError(ErrorKind.CODEC_ERROR, "Bad local file header", info.filename)
        nameLength, extraLength = struct.unpack('<HH', header[26:30])
        sourceFile.seek(info.header_offset + LOCAL_FILE_HEADER_SIZE + nameLength + extraLength)

        isDir = info.is_dir()
        mode = info.external_attr >> 16
        self.beginEntry(
            info.filename, info.compress_type, isDir=isDir, mode=mode,
            sizeHint=max(info.file_size, info.compress_size),
            dateTime=info.date_time
        )

        remaining = info.compress_size
        while remaining > 0:
            if token is not None:
                token.raiseIfCancelled(info.filename)
            chunk = sourceFile.read(min(chunkSize, remaining))
            if not chunk:
                self.abortEntry()
                raise ArchiveError(ErrorKind.CODEC_ERROR, "Truncated entry data", info.filename)
            self._write(chunk)
            remaining -= len(chunk)

        return self.endEntry(info.CRC, info.file_size)

    def finish(self):
        """Write the central directory and end records. Returns the final archive size."""
        if self._current is not None:
            raise RuntimeError("Cannot finish archive with an open entry")

        centralDirStart = self.offset
        for record in self._records:
            self._write(self._makeCentralDirHeader(record))
        centralDirSize = self.offset - centralDirStart

        needsZip64 = (
            len(self._records) > ZIP64_ENTRY_COUNT_LIMIT or
            exceedsZip64Limit(centralDirSize) or
            exceedsZip64Limit(centralDirStart)
        ) # yapf: disable

        if needsZip64:
            zip64EocdOffset = self.offset
            self._write(self._makeZip64EndOfCentralDir(len(self._records), centralDirSize, centralDirStart))
            self._write(self._makeZip64Locator(zip64EocdOffset))

        self._write(self._makeEndOfCentralDir(len(self._records), centralDirSize, centralDirStart))
        self.fileObject.flush()
        self.finished = True
        return self.offset

    def _makeLocalFileHeader(self, nameBytes, flags, method, dosTime, dosDate, useZip64):
        """Local header with zero CRC/sizes; real values follow in the data descriptor."""
        extraField = b''
        if useZip64:
            extraField = struct.pack('<HHQQ', ZIP64_EXTRA_TAG, 16, 0, 0)
        versionNeeded = 45 if useZip64 else 20

        header = struct.pack('<I', LOCAL_FILE_HEADER_SIGNATURE)
        header += struct.pack('<H', versionNeeded) # Version needed to extract
        header += struct.pack('<H', flags) # General purpose bit flag
        header += struct.pack('<H', method) # Compression method
        header += struct.pack('<H', dosTime) # File last modification time
        header += struct.pack('<H', dosDate) # File last modification date
        header += struct.pack('<I', 0) # CRC-32 (in data descriptor)
        header += struct.pack('<I', ZIP64_LIMIT if useZip64 else 0) # Compressed size
        header += struct.pack('<I', ZIP64_LIMIT if useZip64 else 0) # Uncompressed size
        header += struct.pack('<H', len(nameBytes)) # Filename length
        header += struct.pack('<H', len(extraField)) # Extra field length
        header += nameBytes
        header += extraField

        return header

    def _makeDataDescriptor(self, crc, compressedSize, uncompressedSize, useZip64):
        descriptor = struct.pack('<I', DATA_DESCRIPTOR_SIGNATURE)
        descriptor += struct.pack('<I', crc & 0xFFFFFFFF)
        if useZip64:
            descriptor += struct.pack('<QQ', compressedSize, uncompressedSize)
        else:
            descriptor += struct.pack('<II', compressedSize, uncompressedSize)
        return descriptor

    def _makeCentralDirHeader(self, record: _CentralRecord):
        """Central directory header with Zip64 extra field where sizes or offset overflow."""
        extraData = b''
        # Order is fixed by the format: uncompressed size, compressed size, header offset
        if exceedsZip64Limit(record.uncompressedSize):
            extraData += struct.pack('<Q', record.uncompressedSize)
        if exceedsZip64Limit(record.compressedSize):
            extraData += struct.pack('<Q', record.compressedSize)
        if exceedsZip64Limit(record.offset):
            extraData += struct.pack('<Q', record.offset)

        extraField = b''
        if extraData:
            extraField = struct.pack('<HH', ZIP64_EXTRA_TAG, len(extraData)) + extraData

        versionNeeded = 45 if extraData else 20
        versionMadeBy = MADE_BY_UNIX | versionNeeded

        header = struct.pack('<I', CENTRAL_DIR_SIGNATURE)
        header += struct.pack('<H', versionMadeBy) # Version made by
        header += struct.pack('<H', versionNeeded) # Version needed to extract
        header += struct.pack('<H', record.flags) # General purpose bit flag
        header += struct.pack('<H', record.method) # Compression method
        header += struct.pack('<H', record.dosTime) # Last mod file time
        header += struct.pack('<H', record.dosDate) # Last mod file date
        header += struct.pack('<I', record.crc & 0xFFFFFFFF) # CRC-32
        header += struct.pack('<I', min(record.compressedSize, ZIP64_LIMIT)) # Compressed size
        header += struct.pack('<I', min(record.uncompressedSize, ZIP64_LIMIT)) # Uncompressed size
        header += struct.pack('<H', len(record.nameBytes)) # Filename length
        header += struct.pack('<H', len(extraField)) # Extra field length
        header += struct.pack('<H', 0) # File comment length
        header += struct.pack('<H', 0) # Disk number start
        header += struct.pack('<H', 0) # Internal file attributes
        header += struct.pack('<I', record.externalAttr) # External file attributes
        header += struct.pack('<I', min(record.offset, ZIP64_LIMIT)) # Relative offset of local header
        header += record.nameBytes
        header += extraField

        return header

    def _makeZip64EndOfCentralDir(self, entryCount, centralDirSize, centralDirStart):
        record = struct.pack('<I', ZIP64_END_OF_CENTRAL_DIR_SIGNATURE)
        record += struct.pack('<Q', 44) # Size of the remaining record
        record += struct.pack('<H', MADE_BY_UNIX | 45) # Version made by
        record += struct.pack('<H', 45) # Version needed to extract
        record += struct.pack('<I', 0) # Number of this disk
        record += struct.pack('<I', 0) # Disk where central directory starts
        record += struct.pack('<Q', entryCount) # Number of entries on this disk
        record += struct.pack('<Q', entryCount) # Total number of entries
        record += struct.pack('<Q', centralDirSize) # Size of central directory
        record += struct.pack('<Q', centralDirStart) # Offset of start of central directory

        return record

    def _makeZip64Locator(self, zip64EocdOffset):
        locator = struct.pack('<I', ZIP64_END_OF_CENTRAL_DIR_LOCATOR_SIGNATURE)
        locator += struct.pack('<I', 0) # Disk number with zip64 EOCD
        locator += struct.pack('<Q', zip64EocdOffset) # Offset of zip64 EOCD
        locator += struct.pack('<I', 1) # Total number of disks

        return locator

    def _makeEndOfCentralDir(self, entryCount, centralDirSize, centralDirStart):
        # Overflowing values are capped, readers take them from the Zip64 record
        eocd = struct.pack('<I', END_OF_CENTRAL_DIR_SIGNATURE)
        eocd += struct.pack('<H', 0) # Number of this disk
        eocd += struct.pack('<H', 0) # Disk where central directory starts
        eocd += struct.pack('<H', min(entryCount, ZIP64_ENTRY_COUNT_LIMIT)) # Number of entries on this disk
        eocd += struct.pack('<H', min(entryCount, ZIP64_ENTRY_COUNT_LIMIT)) # Total number of entries
        eocd += struct.pack('<I', min(centralDirSize, ZIP64_LIMIT)) # Size of central directory
        eocd += struct.pack('<I', min(centralDirStart, ZIP64_LIMIT)) # Offset of start of central directory
        eocd += struct.pack('<H', 0) # Comment length

        return eocd
