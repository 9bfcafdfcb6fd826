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

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class ErrorKind(Enum):
    SOURCE_UNREADABLE = 'SourceUnreadable'
    MAPPING_FAILED = 'MappingFailed' # Recovered by the buffered fallback, informational only
    DESTINATION_UNWRITABLE = 'DestinationUnwritable'
    CODEC_ERROR = 'CodecError'
    CANCELLED = 'Cancelled'
    CONFLICT = 'Conflict'
    UNSUPPORTED_ENTRY = 'UnsupportedEntry'


class ArchiveError(Exception):
    """
    Typed failure of an archive operation.

    fatal errors concern the shared destination and stop the whole operation,
    the others only fail the entry they belong to.
    """

    def __init__(self, kind: ErrorKind, message: str, path: Optional[str] = None, fatal: Optional[bool] = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.path = path
        self.fatal = (kind == ErrorKind.DESTINATION_UNWRITABLE) if fatal is None else fatal

    def __str__(self):
        if self.path:
            return f"{self.kind.value}: {self.message} ({self.path})"
        return f"{self.kind.value}: {self.message}"

    def __repr__(self):
        return f"ArchiveError({self.kind.name}, {self.message!r}, path={self.path!r}, fatal={self.fatal})"

    @classmethod
    def fromOSError(cls, kind, error, path=None, fatal=None):
        message = error.strerror or str(error)
        archiveError = cls(kind, message, path or error.filename, fatal=fatal)
        archiveError.__cause__ = error
        return archiveError


class OperationCancelled(ArchiveError):

    def __init__(self, message='Operation cancelled', path=None):
        super().__init__(ErrorKind.CANCELLED, message, path, fatal=False)


class ResultStatus(Enum):
    SUCCEEDED = 'succeeded'
    SKIPPED = 'skipped'
    FAILED = 'failed'


@dataclass(frozen=True)
class OperationResult:
    """Terminal outcome of one entry. Created once, never updated."""
    entryName: str
    status: ResultStatus
    bytesRead: int = 0
    bytesWritten: int = 0
    error: Optional[ArchiveError] = None
    mappingFallback: bool = False
    reason: Optional[str] = None

    @classmethod
    def succeeded(cls, entryName, bytesRead, bytesWritten, mappingFallback=False):
        return cls(entryName, ResultStatus.SUCCEEDED, bytesRead, bytesWritten, mappingFallback=mappingFallback)

    @classmethod
    def skipped(cls, entryName, reason):
        return cls(entryName, ResultStatus.SKIPPED, reason=reason)

    @classmethod
    def failed(cls, entryName, error, bytesRead=0, mappingFallback=False):
        return cls(entryName, ResultStatus.FAILED, bytesRead, 0, error=error, mappingFallback=mappingFallback)

    @property
    def ok(self):
        return self.status == ResultStatus.SUCCEEDED

    @property
    def errorKind(self):
        return self.error.kind if self.error else None


@dataclass
class Summary:
    results: List[OperationResult] = field(default_factory=list)
    elapsed: float = 0.0
    fatalError: Optional[ArchiveError] = None
    destination: Optional[str] = None

    @property
    def totalBytes(self):
        return sum(r.bytesRead for r in self.results)

    @property
    def bytesWritten(self):
        return sum(r.bytesWritten for r in self.results)

    @property
    def success(self):
        return self.fatalError is None and all(r.ok for r in self.results)

    # Name used by callers thinking in terms of the whole run.
    overallSuccess = success

    @property
    def cancelled(self):
        return self.fatalError is not None and self.fatalError.kind == ErrorKind.CANCELLED

    def resultFor(self, entryName):
        for result in self.results:
            if result.entryName == entryName:
                return result
        raise KeyError(entryName)

    def count(self, status):
        return sum(1 for r in self.results if r.status == status)
