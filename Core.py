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
import signal
import sys

from fastzip.CLI import EXIT_CANCELLED, EXIT_FAILED, runCLI
from fastzip.Kernel import getLogger
from fastzip.Utils import flushPrint, sendException

logger = getLogger(__name__)


def setupGracefulShutdown():
    """Setup signal handlers for graceful shutdown on multiple Ctrl+C"""
    context = {'shutdownInProgress': False}

    def signalHandler(signum, frame):
        if context['shutdownInProgress']:
            # Second Ctrl+C - give up on cleanup and leave immediately
            os._exit(EXIT_CANCELLED)
        else:
            # First Ctrl+C - let the running operation cancel itself
            context['shutdownInProgress'] = True
            raise KeyboardInterrupt()

    signal.signal(signal.SIGINT, signalHandler)


def main(argv=None):
    """Entry point of the fastzip command. Returns the process exit code."""
    setupGracefulShutdown()

    try:
        return runCLI(argv)
    except KeyboardInterrupt:
        flushPrint('\nExiting on user request (Ctrl+C)...')
        return EXIT_CANCELLED
    except PermissionError as e:
        flushPrint(f'Permission denied: {e}')
        return EXIT_FAILED
    except Exception as e:
        sendException(logger, e)
        return EXIT_FAILED


if __name__ == '__main__':
    sys.exit(main())
