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

from fastzip.Kernel import PUBLIC_VERSION as __version__
from fastzip.Errors import ArchiveError, ErrorKind, OperationCancelled, OperationResult, ResultStatus, Summary
from fastzip.Settings import EngineConfig, OverwritePolicy
from fastzip.Pipeline import CancellationToken
from fastzip.Progress import ProgressEvent
from fastzip.Archiver import (
    ArchiveOperation, EntryMetadata, compress, compressOperation, extract, extractOperation, listArchive
)
