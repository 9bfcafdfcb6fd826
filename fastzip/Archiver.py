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
import errno
import os
import stat
import threading
import time
import zipfile
import zlib

from dataclasses import dataclass

from fastzip.BufferPolicy import BufferPlan, planFor
from fastzip.Errors import ArchiveError, ErrorKind, OperationResult, Summary, ResultStatus
from fastzip.Kernel import getLogger
from fastzip.Pipeline import CancellationToken, EntryOutcome, Pipeline, PipelineTask, Sink
from fastzip.Progress import ProgressBus
from fastzip.Settings import DEFAULT_COMPRESSION_LEVEL, TEMP_SUFFIX, EngineConfig, OverwritePolicy
from fastzip.Sources import ArchiveHandle, ByteSource, MemberSource, openSource
from fastzip.Utils import formatRatio, formatSize, recoverMemberName
from fastzip.Walker import ArchiveEntry, EntryKind, checkRoots, walkEntries
from fastzip.ZipFormat import ENCRYPTED_FLAG, ZipStreamWriter, compressionMethodFor, DEFLATE

logger = getLogger(__name__)

PART_SUFFIX = '.fastzip-part'

# Only these make every later write fail too; other errors concern a single extracted file.
FATAL_ERRNOS = {code for code in (errno.ENOSPC, errno.EROFS, getattr(errno, 'EDQUOT', None)) if code is not None}

# Marks a task whose success replaces an entry carried over from the existing archive.
REPLACES_EXISTING = 'replaces-existing'


def _destinationError(error: OSError, path, alwaysFatal=False):
    fatal = alwaysFatal or error.errno in FATAL_ERRNOS
    return ArchiveError.fromOSError(ErrorKind.DESTINATION_UNWRITABLE, error, path, fatal=fatal)


def _validateLevel(level):
    if not isinstance(level, int) or isinstance(level, bool) or not 0 <= level <= 9:
        raise ValueError(f"compression level must be an integer within 0-9: {level!r}")
    return level


# Listing


@dataclass(frozen=True)
class EntryMetadata:
    path: str
    compressedSize: int
    uncompressedSize: int
    isDirectory: bool
    modified: datetime.datetime
    isSymlink: bool = False

    @property
    def ratio(self):
        """Space saved in percent."""
        return formatRatio(self.compressedSize, self.uncompressedSize)

    @classmethod
    def fromInfo(cls, info: zipfile.ZipInfo):
        mode = info.external_attr >> 16
        try:
            modified = datetime.datetime(*info.date_time)
        except ValueError:
            modified = datetime.datetime(1980, 1, 1)
        return cls(
            path=recoverMemberName(info.filename, info.flag_bits),
            compressedSize=info.compress_size,
            uncompressedSize=info.file_size,
            isDirectory=info.is_dir(),
            modified=modified,
            isSymlink=info.create_system == 3 and stat.S_ISLNK(mode),
        )


def _openZip(path):
    try:
        return zipfile.ZipFile(path)
    except zipfile.BadZipFile as e:
        raise ArchiveError(ErrorKind.CODEC_ERROR, f"Not a valid ZIP archive: {e}", os.fspath(path))
    except OSError as e:
        raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, os.fspath(path))


class ArchiveListing:
    """
    Entries of an archive in central directory order.

    Iterating is lazy and can be repeated; every pass reads the central directory again.
    """

    def __init__(self, archivePath):
        self.archivePath = os.fspath(archivePath)

    def __iter__(self):
        with _openZip(self.archivePath) as zipFile:
            for info in zipFile.infolist():
                yield EntryMetadata.fromInfo(info)

    def __repr__(self):
        return f"ArchiveListing({self.archivePath!r})"


def listArchive(archivePath):
    return ArchiveListing(archivePath)


# Sinks


class ZipArchiveSink(Sink):
    """Writes compressed entries into one archive file, then carries over kept entries of the old archive."""

    def __init__(self, fileObject, path, config, carried=(), carriedSource=None):
        self.path = path
        self.writer = ZipStreamWriter(fileObject)
        self.config = config
        self.carried = list(carried)
        self.carriedSource = carriedSource
        self.replaced = set()

    def _guard(self, func, *args):
        try:
            return func(*args)
        except OSError as e:
            raise _destinationError(e, self.path, alwaysFatal=True)

    def beginEntry(self, task):
        entry = task.entry
        method = compressionMethodFor(entry.level, entry.kind == EntryKind.FILE)
        self._guard(
            lambda: self.writer.beginEntry(
                entry.arcname, method, isDir=entry.isDirectory, mtime=entry.mtime, mode=entry.mode,
                sizeHint=entry.size
            )
        )

    def writeChunk(self, task, chunk):
        self._guard(self.writer.writeData, chunk)

    def commitEntry(self, task, outcome):
        compressedSize = self._guard(self.writer.endEntry, outcome.crc, outcome.bytesRead)
        if task.payload == REPLACES_EXISTING:
            self.replaced.add(task.name)
        return compressedSize

    def abortEntry(self, task):
        self._guard(self.writer.abortEntry)

    def finalize(self, token):
        kept = [info for info in self.carried if info.filename not in self.replaced]
        if kept:
            logger.info("Carrying over %d entries from %s", len(kept), self.carriedSource)
            try:
                with open(self.carriedSource, 'rb') as source:
                    for info in kept:
                        chunkSize = planFor(info.compress_size, self.config).chunkSize
                        self._guard(self.writer.copyRawEntry, info, source, chunkSize, token)
            except OSError as e:
                raise ArchiveError.fromOSError(ErrorKind.SOURCE_UNREADABLE, e, self.carriedSource, fatal=True)
            except ArchiveError as e:
                if e.fatal or e.kind == ErrorKind.CANCELLED:
                    raise
                raise ArchiveError(e.kind, f"Cannot carry over existing entry: {e.message}", e.path, fatal=True)

        self._guard(self.writer.finish)


class DirectorySink(Sink):
    """Materializes extracted entries below a root directory; file data goes through a .fastzip-part file."""

    def __init__(self, root, overwrite=False):
        self.root = os.path.realpath(root)
        self.overwrite = overwrite
        self._file = None
        self._partPath = None
        self._linkData = None

    def _guard(self, path, func, *args):
        try:
            return func(*args)
        except OSError as e:
            raise _destinationError(e, path)

    def beginEntry(self, task):
        entry, target = task.entry, task.target

        if entry.isDirectory:
            self._guard(target, os.makedirs, target, 0o777, True)
            return

        self._guard(target, os.makedirs, os.path.dirname(target), 0o777, True)

        if entry.kind == EntryKind.SYMLINK:
            self._linkData = bytearray()
            return

        self._partPath = target + PART_SUFFIX
        self._file = self._guard(target, open, self._partPath, 'wb')

    def writeChunk(self, task, chunk):
        if self._linkData is not None:
            self._linkData.extend(chunk)
        else:
            self._guard(task.target, self._file.write, chunk)

    def commitEntry(self, task, outcome):
        entry, target = task.entry, task.target

        if entry.isDirectory:
            return 0

        if entry.kind == EntryKind.SYMLINK:
            linkTarget = os.fsdecode(bytes(self._linkData))
            self._linkData = None
            self._checkLinkTarget(task, linkTarget)
            if os.path.lexists(target):
                self._guard(target, os.remove, target)
            self._guard(target, os.symlink, linkTarget, target)
            return len(os.fsencode(linkTarget))

        fileObject, self._file = self._file, None
        self._guard(target, fileObject.close)
        self._guard(target, os.replace, self._partPath, target)
        self._partPath = None
        self._restoreMetadata(task)
        return outcome.bytesRead

    def _checkLinkTarget(self, task, linkTarget):
        resolved = os.path.realpath(os.path.join(os.path.dirname(task.target), linkTarget))
        if os.path.isabs(linkTarget) or os.path.commonpath([self.root, resolved]) != self.root:
            raise ArchiveError(
                ErrorKind.UNSUPPORTED_ENTRY, f"Link target {linkTarget!r} points outside the destination", task.name
            )

    def _restoreMetadata(self, task):
        info = task.payload
        try:
            timestamp = time.mktime(info.date_time + (0, 0, -1))
            os.utime(task.target, (timestamp, timestamp))
            permissions = (info.external_attr >> 16) & 0o777
            if info.create_system == 3 and permissions:
                os.chmod(task.target, permissions)
        except (OSError, OverflowError, ValueError) as e:
            logger.debug("Cannot restore metadata of %s: %s", task.target, e)

    def abortEntry(self, task):
        self._linkData = None
        fileObject, self._file = self._file, None
        partPath, self._partPath = self._partPath, None
        if fileObject is not None:
            fileObject.close()
        if partPath is not None:
            try:
                os.remove(partPath)
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning("Cannot remove partial file %s: %s", partPath, e)


# Operation handle


class ArchiveOperation:
    """
    One compress or extract run, synchronous via run() or in the background via start()/wait().

    Subscribers registered before the run receive every ProgressEvent of it.
    """

    def __init__(self, job, token=None, name='operation'):
        self.job = job
        self.name = name
        self.token = token or CancellationToken()
        self.bus = ProgressBus()
        self.summary = None
        self._error = None
        self._thread = None

    def subscribe(self, callback):
        self.bus.subscribe(callback)
        return self

    def unsubscribe(self, callback):
        self.bus.unsubscribe(callback)
        return self

    def run(self) -> Summary:
        self.bus.start()
        try:
            self.summary = self.job(self.token, self.bus)
        finally:
            self.bus.close()
        return self.summary

    def _runInBackground(self):
        try:
            self.run()
        except BaseException as e:
            logger.exception("%s crashed", self.name)
            self._error = e

    def start(self):
        if self._thread is not None:
            raise RuntimeError(f"{self.name} already started")
        self._thread = threading.Thread(target=self._runInBackground, name=f'fastzip-{self.name}', daemon=True)
        self._thread.start()
        return self

    def wait(self, timeout=None):
        """Summary once finished, None if still running after timeout."""
        if self._thread is None:
            raise RuntimeError(f"{self.name} was not started")
        self._thread.join(timeout)
        if self._thread.is_alive():
            return None
        if self._error is not None:
            raise self._error
        return self.summary

    def cancel(self, reason=None):
        logger.info("Cancelling %s", self.name)
        self.token.cancel(reason)

    @property
    def done(self):
        return self.summary is not None or self._error is not None


def _withSubscribers(operation, subscribers):
    for callback in subscribers or ():
        operation.subscribe(callback)
    return operation


# Compression


def _pumpChunks(source: ByteSource, chunkSize, token, emit, report, encode=None, checksum=True):
    """Hand every chunk of `source` to emit(), encoded when asked. Returns (bytesRead, crc32)."""
    bytesRead = 0
    crc = 0
    for chunk in source.iterChunks(chunkSize, token):
        if checksum:
            crc = zlib.crc32(chunk, crc)
        bytesRead += len(chunk)
        emit(encode(chunk) if encode else bytes(chunk))
        report(bytesRead)
    return bytesRead, crc


def _compressProcessor(task, emit, token, report):
    entry = task.entry

    if entry.isDirectory:
        return EntryOutcome()

    if entry.kind == EntryKind.SYMLINK:
        data = os.fsencode(entry.linkTarget)
        emit(data)
        report(len(data))
        return EntryOutcome(bytesRead=len(data), crc=zlib.crc32(data))

    fallback = []
    compressor = None
    if compressionMethodFor(entry.level) == DEFLATE:
        compressor = zlib.compressobj(entry.level, zlib.DEFLATED, -zlib.MAX_WBITS)

    encode = compressor.compress if compressor else None
    try:
        with openSource(entry.sourcePath, entry.size, task.plan, onFallback=fallback.append) as source:
            bytesRead, crc = _pumpChunks(source, task.plan.chunkSize, token, emit, report, encode=encode)
        if compressor:
            emit(compressor.flush())
    except zlib.error as e:
        raise ArchiveError(ErrorKind.CODEC_ERROR, f"Compression failed: {e}", entry.sourcePath) from e

    return EntryOutcome(bytesRead=bytesRead, crc=crc, mappingFallback=bool(fallback))


def _compressTasks(roots, level, policy, existing, config, exclude):
    seen = {}

    for ordinal, entry in enumerate(walkEntries(roots, level, exclude=exclude)):
        name = entry.arcname
        plan = planFor(entry.size, config, level)
        preset = None
        payload = None

        if entry.error is not None:
            preset = OperationResult.failed(name, entry.error)
        elif entry.kind == EntryKind.SPECIAL:
            error = ArchiveError(ErrorKind.UNSUPPORTED_ENTRY, "Special files cannot be archived", entry.sourcePath)
            preset = OperationResult.failed(name, error)
        elif name in seen:
            if entry.isDirectory and seen[name]:
                preset = OperationResult.succeeded(name, 0, 0)
            else:
                error = ArchiveError(ErrorKind.CONFLICT, "Duplicate entry name in sources", entry.sourcePath)
                preset = OperationResult.failed(name, error)
        elif name in existing:
            if entry.isDirectory and existing[name].is_dir():
                # Directory already present, nothing to add.
                preset = OperationResult.succeeded(name, 0, 0)
            elif policy == OverwritePolicy.FAIL:
                error = ArchiveError(ErrorKind.CONFLICT, "Entry already exists in archive", entry.sourcePath)
                preset = OperationResult.failed(name, error)
            elif policy == OverwritePolicy.SKIP:
                logger.info("Skipping %s, already present in archive", name)
                preset = OperationResult.skipped(name, "already exists in archive")
            else:
                payload = REPLACES_EXISTING

        seen.setdefault(name, entry.isDirectory)
        yield PipelineTask(ordinal, entry, plan, target=None, payload=payload, presetResult=preset)


def _readExisting(destination, policy):
    """Entries of an existing destination archive, keyed by name. Raises a fatal ArchiveError if it cannot be updated."""
    if not os.path.lexists(destination):
        return {}

    if os.path.isdir(destination):
        raise ArchiveError(ErrorKind.DESTINATION_UNWRITABLE, "Destination is a directory", destination, fatal=True)

    if not zipfile.is_zipfile(destination):
        if policy == OverwritePolicy.REPLACE:
            logger.info("Replacing non-archive file %s", destination)
            return {}
        raise ArchiveError(
            ErrorKind.DESTINATION_UNWRITABLE,
            f"Destination exists and is not a ZIP archive (overwrite policy {policy.value})",
            destination,
            fatal=True,
        )

    try:
        with zipfile.ZipFile(destination) as zipFile:
            infos = zipFile.infolist()
    except (zipfile.BadZipFile, OSError) as e:
        raise ArchiveError(ErrorKind.CODEC_ERROR, f"Cannot read existing archive: {e}", destination, fatal=True)

    existing = {}
    for info in infos:
        existing.setdefault(info.filename, info)
    logger.info("Updating existing archive %s (%d entries)", destination, len(existing))
    return existing


def _runCompress(sources, destination, level, policy, config, token, bus):
    startTime = time.monotonic()
    destination = os.path.abspath(os.fspath(destination))
    summary = Summary(destination=destination)

    try:
        roots = checkRoots(sources)
        existing = _readExisting(destination, policy)
        parent = os.path.dirname(destination)
        if not os.path.isdir(parent):
            raise ArchiveError(
                ErrorKind.DESTINATION_UNWRITABLE, "Destination directory does not exist", parent, fatal=True
            )
    except ArchiveError as e:
        logger.error("Cannot compress into %s: %s", destination, e)
        summary.fatalError = e
        summary.elapsed = time.monotonic() - startTime
        return summary

    tempPath = os.path.join(parent, f".{os.path.basename(destination)}{TEMP_SUFFIX}")
    try:
        fileObject = open(tempPath, 'w+b')
    except OSError as e:
        summary.fatalError = _destinationError(e, tempPath, alwaysFatal=True)
        summary.elapsed = time.monotonic() - startTime
        return summary

    logger.info(
        "Compressing %s into %s (level %d, %d workers)", ', '.join(roots), destination, level, config.effectiveWorkers
    )

    sink = ZipArchiveSink(fileObject, destination, config, carried=existing.values(), carriedSource=destination)
    pipeline = Pipeline(_compressProcessor, sink, config, token=token, bus=bus)
    committed = False
    try:
        report = pipeline.run(_compressTasks(roots, level, policy, existing, config, exclude=(destination, tempPath)))
        summary.results = report.results
        summary.fatalError = report.fatalError

        fileObject.close()
        if report.fatalError is None:
            try:
                os.replace(tempPath, destination)
                committed = True
            except OSError as e:
                summary.fatalError = _destinationError(e, destination, alwaysFatal=True)
    finally:
        if not fileObject.closed:
            fileObject.close()
        if not committed:
            try:
                os.remove(tempPath)
            except FileNotFoundError:
                pass

    summary.elapsed = time.monotonic() - startTime
    _logSummary('Compression', summary)
    return summary


def compressOperation(
    sources, destination, level=DEFAULT_COMPRESSION_LEVEL, overwrite=OverwritePolicy.FAIL, config=None, token=None
):
    _validateLevel(level)
    policy = OverwritePolicy.parse(overwrite)
    config = config or EngineConfig.fromEnv()

    def job(jobToken, bus):
        return _runCompress(sources, destination, level, policy, config, jobToken, bus)

    return ArchiveOperation(job, token=token, name='compress')


def compress(
    sources,
    destination,
    level=DEFAULT_COMPRESSION_LEVEL,
    overwrite=OverwritePolicy.FAIL,
    config=None,
    token=None,
    subscribers=(),
) -> Summary:
    """
    Compress files and directories into a ZIP archive at `destination`.

    Output goes to a temporary file that replaces `destination` only when the
    run completes; cancelled or failed runs leave the destination untouched.
    An existing archive at `destination` is updated, `overwrite` deciding what
    happens to entries whose name is already present.
    """
    operation = compressOperation(sources, destination, level, overwrite, config, token)
    return _withSubscribers(operation, subscribers).run()


# Extraction


def _safeTarget(root, name):
    """Absolute target path for a member name, or None when the name would escape root."""
    parts = [p for p in name.replace('\\', '/').split('/') if p not in ('', '.')]
    if not parts or '..' in parts or os.path.splitdrive(parts[0])[0]:
        return None
    return os.path.join(root, *parts)


def _entryFromInfo(info, name):
    mode = info.external_attr >> 16
    if info.is_dir():
        kind = EntryKind.DIRECTORY
    elif info.create_system == 3 and stat.S_ISLNK(mode):
        kind = EntryKind.SYMLINK
    else:
        kind = EntryKind.FILE

    try:
        mtime = time.mktime(info.date_time + (0, 0, -1))
    except (OverflowError, ValueError):
        mtime = None

    return ArchiveEntry(
        arcname=name,
        kind=kind,
        size=info.file_size,
        compressedSize=info.compress_size,
        mtime=mtime,
        mode=mode,
    )


def _extractTasks(infos, root, overwrite, config, mapped):
    for ordinal, info in enumerate(infos):
        name = recoverMemberName(info.filename, info.flag_bits)
        entry = _entryFromInfo(info, name)
        plan = BufferPlan(planFor(info.file_size, config).chunkSize, mapped)
        target = _safeTarget(root, name)
        preset = None

        if target is None:
            error = ArchiveError(ErrorKind.CODEC_ERROR, "Unsafe member path", name)
            preset = OperationResult.failed(name, error)
        elif info.flag_bits & ENCRYPTED_FLAG:
            error = ArchiveError(ErrorKind.CODEC_ERROR, "Encrypted entries are not supported", name)
            preset = OperationResult.failed(name, error)
        elif not entry.isDirectory and os.path.lexists(target) and not overwrite:
            logger.info("Skipping existing file %s", target)
            preset = OperationResult.skipped(name, "file already exists")

        yield PipelineTask(ordinal, entry, plan, target=target, payload=info, presetResult=preset)


def _runExtract(archivePath, destinationDir, overwrite, config, token, bus):
    startTime = time.monotonic()
    archivePath = os.fspath(archivePath)
    root = os.path.abspath(os.fspath(destinationDir))
    summary = Summary(destination=root)
    fallback = []

    try:
        handle = ArchiveHandle(archivePath, config, onFallback=fallback.append)
    except ArchiveError as e:
        summary.fatalError = e
        summary.elapsed = time.monotonic() - startTime
        return summary

    with handle:
        try:
            infos = handle.zipFile().infolist()
            os.makedirs(root, exist_ok=True)
        except ArchiveError as e:
            summary.fatalError = e
        except OSError as e:
            summary.fatalError = _destinationError(e, root, alwaysFatal=True)

        if summary.fatalError is not None:
            logger.error("Cannot extract %s: %s", archivePath, summary.fatalError)
            summary.elapsed = time.monotonic() - startTime
            return summary

        logger.info("Extracting %s into %s (%d entries)", archivePath, root, len(infos))

        def processor(task, emit, jobToken, report):
            entry = task.entry
            if entry.isDirectory:
                return EntryOutcome(mappingFallback=handle.mappingFallback)

            source: ByteSource = MemberSource(handle.zipFile(), task.payload)
            with source:
                # zipfile checks the stored CRC itself
                bytesRead, _ = _pumpChunks(source, task.plan.chunkSize, jobToken, emit, report, checksum=False)
            return EntryOutcome(bytesRead=bytesRead, mappingFallback=handle.mappingFallback)

        sink = DirectorySink(root, overwrite)
        pipeline = Pipeline(processor, sink, config, token=token, bus=bus)
        report = pipeline.run(_extractTasks(infos, os.path.realpath(root), overwrite, config, handle.mapped))

    summary.results = report.results
    summary.fatalError = report.fatalError
    summary.elapsed = time.monotonic() - startTime
    _logSummary('Extraction', summary)
    return summary


def extractOperation(archivePath, destinationDir='.', overwrite=False, config=None, token=None):
    config = config or EngineConfig.fromEnv()

    def job(jobToken, bus):
        return _runExtract(archivePath, destinationDir, bool(overwrite), config, jobToken, bus)

    return ArchiveOperation(job, token=token, name='extract')


def extract(archivePath, destinationDir='.', overwrite=False, config=None, token=None, subscribers=()) -> Summary:
    """Extract every entry of `archivePath` below `destinationDir`; existing files are kept unless overwrite."""
    operation = extractOperation(archivePath, destinationDir, overwrite, config, token)
    return _withSubscribers(operation, subscribers).run()


def _logSummary(action, summary):
    logger.info(
        "%s finished in %.2fs: %d succeeded, %d skipped, %d failed, %s read, %s written%s",
        action,
        summary.elapsed,
        summary.count(ResultStatus.SUCCEEDED),
        summary.count(ResultStatus.SKIPPED),
        summary.count(ResultStatus.FAILED),
        formatSize(summary.totalBytes),
        formatSize(summary.bytesWritten),
        f", fatal: {summary.fatalError}" if summary.fatalError else "",
    )
