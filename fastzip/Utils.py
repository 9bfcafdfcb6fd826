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

import locale
import os
import sys

import bitmath
import chardet

from fastzip.Kernel import getLogger

ONE_KB = int(bitmath.KiB(1).bytes)
ONE_MB = int(bitmath.MiB(1).bytes)
ONE_GB = int(bitmath.GiB(1).bytes)
ONE_TB = int(bitmath.TiB(1).bytes)

logger = getLogger(__name__)

_NAME_TRY_ENCODINGS = tuple(e for e in (locale.getlocale()[1], 'cp437') if e)


def decodeName(raw, encodings=None, confidence=0.8):
    """
    Decode a raw archive member name that was not flagged as UTF-8.

    @param raw Name bytes (str is returned unchanged).
    @param encodings Extra encodings tried before the locale fallbacks.
    @param confidence Minimum chardet confidence to try its guess first.
    @return str
    """
    if isinstance(raw, str):
        return raw

    candidates = list(encodings or [])
    guess = chardet.detect(raw)

    if guess['encoding'] and guess['confidence'] > confidence:
        candidates.insert(0, guess['encoding'])
    candidates.extend(_NAME_TRY_ENCODINGS)
    if guess['encoding'] and guess['encoding'] not in candidates:
        candidates.append(guess['encoding'])

    for encoding in candidates:
        try:
            return raw.decode(encoding)
        except (UnicodeDecodeError, LookupError):
            continue

    # cp437 maps every byte, but a broken locale can leave us here.
    return raw.decode('utf-8', errors='replace')


def recoverMemberName(name, flagBits):
    """
    Re-decode a zipfile member name that zipfile decoded as cp437.

    Members written with the UTF-8 flag (bit 11) are already correct.
    """
    if flagBits & 0x800:
        return name

    try:
        raw = name.encode('cp437')
    except UnicodeEncodeError:
        return name

    try:
        return raw.decode('utf-8')
    except UnicodeDecodeError:
        return decodeName(raw)


# flush is required when stdout is redirected to a pipe or frozen executable.
def flushPrint(text):
    try:
        print(text, flush=True)
    except UnicodeEncodeError as e:
        logger.debug(f"UnicodeEncodeError during print, using fallback encoding: {e}, {sys.stdout.encoding=}")

        buf = getattr(sys.stdout, "buffer", None)
        if buf is not None:
            buf.write(text.encode("utf-8", errors="replace"))
            buf.write(b"\n")
            buf.flush()
            return

        encoding = sys.stdout.encoding or 'ascii'
        print(text.encode(encoding, errors='replace').decode(encoding), flush=True)


def formatSize(size, decimal=None, plural=None):
    if decimal is None:
        if size < ONE_GB: # Less than 1GB
            decimal = 0
        elif size < ONE_TB: # Between 1GB and 1TB
            decimal = 1
        else: # Greater than 1TB
            decimal = 2

    if plural is None:
        plural = False if size > ONE_KB else True

    best = bitmath.Byte(size).best_prefix(system=bitmath.SI)

    # Plain bytes are spelled out; bitmath releases disagree on that unit's name.
    if type(best) is bitmath.Byte:
        return f"{best.value:.{decimal}f} {'Bytes' if plural else 'Byte'}"

    return best.format("{value:.%df}{unit}" % decimal).replace('B', '').upper()


def formatRatio(compressedSize, uncompressedSize):
    """Space saved in whole percent, 0 for empty entries."""
    if uncompressedSize <= 0:
        return 0
    return max(0, int(100.0 * (1.0 - compressedSize / uncompressedSize)))


def getEnv(envVar, default):
    """Safely get value from environment variable with automatic type detection based on default"""
    try:
        value = os.getenv(envVar)
        if value is not None:
            if default is None:
                return value

            # Automatically detect type based on default value
            if isinstance(default, bool):
                return value == "True"
            elif isinstance(default, int):
                return int(value)
            elif isinstance(default, float):
                return float(value)
            elif isinstance(default, str):
                return str(value)
            else:
                return type(default)(value)
        return default
    except (ValueError, TypeError):
        logger.warning(f"Ignoring invalid value for {envVar}: {os.getenv(envVar)!r}")
        return default


def sendException(logger, e, action=None, errorPrefix="Oops, something went wrong"):
    """Tell the user about an unexpected error and report it with traceback (to Sentry when enabled)."""
    if e and errorPrefix:
        flushPrint(f'{errorPrefix}: {e}')
    elif e:
        flushPrint(f'{e}')
    else:
        logger.error(f'Incorrect argument: {errorPrefix=} {e=}')

    if action:
        flushPrint(action)

    logger.exception(e)

    if os.getenv('RAISE_EXCEPTION', 'False') == 'True' and isinstance(e, BaseException):
        raise e
