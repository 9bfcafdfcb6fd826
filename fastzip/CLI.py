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

import argparse
import json
import os
import logging
import logging.config
import platform

import bitmath

from fastzip.Archiver import compressOperation, extractOperation, listArchive
from fastzip.Errors import ArchiveError, ResultStatus
from fastzip.Kernel import (
    PUBLIC_VERSION, LOG_LEVEL_MAPPING, getLogger, configureGlobalLogLevel, configureFileLogging
)
from fastzip.Progress import ConsoleProgress
from fastzip.Settings import DEFAULT_COMPRESSION_LEVEL, EngineConfig, OverwritePolicy
from fastzip.Utils import flushPrint, formatSize, formatRatio, getEnv

logger = getLogger(__name__)

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_CANCELLED = 130

NAME_COLUMN_WIDTH = 40
TIME_FORMAT = '%Y-%m-%d %H:%M:%S'

# How often the main thread wakes up while waiting, so Ctrl+C is handled promptly.
WAIT_INTERVAL = 0.2


def configureLogging(logLevel, logFile=None):
    """Configure logging level for the application using Kernel's centralized configuration or config file

    Priority order:
    1. logLevel parameter (from --log-level CLI argument)
    2. FASTZIP_LOGGING_LEVEL environment variable
    3. Default to None (no configuration change)

    Both can be a logging level name or a path to a logging configuration JSON file.
    """

    def suppressNoisyLogger():
        logging.getLogger('sentry_sdk').setLevel(logging.INFO)

    if logLevel is None:
        logLevel = getEnv('FASTZIP_LOGGING_LEVEL', None)

    if logFile:
        logPath = configureFileLogging(logFile)
        logger.info(f"Writing log to {logPath}")

    if logLevel is None:
        suppressNoisyLogger()
        return None

    if os.path.isfile(logLevel):
        try:
            with open(logLevel, 'r') as configFile:
                configDict = json.load(configFile)

            logging.config.dictConfig(configDict)
            logger.info(f"Logging configured from file: {logLevel}")
            suppressNoisyLogger()
            return logLevel

        except (json.JSONDecodeError, ValueError, KeyError) as e:
            flushPrint(f"Failed to load logging config from {logLevel}: {e}")
            flushPrint("Falling back to default logging level configuration")

    if logLevel.upper() in LOG_LEVEL_MAPPING:
        configureGlobalLogLevel(LOG_LEVEL_MAPPING[logLevel.upper()])
        logger.info(f"Logging level set to {logLevel}")
    else:
        logger.warning(f"Invalid logging level '{logLevel}', using WARNING as default")
        configureGlobalLogLevel(logging.WARNING)

    suppressNoisyLogger()
    return logLevel


def showVersion():
    flushPrint(f"FastZip v{PUBLIC_VERSION}")
    uname = platform.uname()
    flushPrint(f"Architecture: {uname.system} {uname.release} {uname.machine}")
    flushPrint(f"Python: {platform.python_version()}")


# Argument validators.
def validateLogLevel(logLevel):
    # Allow file paths (they'll be validated later)
    if os.path.exists(logLevel):
        return logLevel

    validLevels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
    if logLevel.upper() not in validLevels:
        raise argparse.ArgumentTypeError(f"Invalid log level '{logLevel}'. Valid levels are: {', '.join(validLevels)}")
    return logLevel.upper()


def validateLevel(levelStr):
    try:
        level = int(levelStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid compression level: {levelStr}")
    if not 0 <= level <= 9:
        raise argparse.ArgumentTypeError(f"Compression level {level} is out of range (0-9)")
    return level


def validateWorkers(workersStr):
    try:
        workers = int(workersStr)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid worker count: {workersStr}")
    if workers < 1:
        raise argparse.ArgumentTypeError(f"Worker count must be at least 1, got {workers}")
    return workers


def parseSize(sizeStr):
    """Byte count given as a plain integer or with a unit (64KiB, 100MB, 2MiB)."""
    try:
        return int(sizeStr)
    except ValueError:
        pass
    try:
        return int(bitmath.parse_string_unsafe(sizeStr, system=bitmath.SI).bytes)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid size: {sizeStr}")


def configureCLIParser():
    """Configure the parser with a global parent shared by every sub-command.

    Returns:
        tuple: (parser, globalsParent)
    """
    # === 1) Global parameters in a parent parser ===
    globalsParent = argparse.ArgumentParser(add_help=False, exit_on_error=False, allow_abbrev=False)
    globalsParent.add_argument("--version", action="store_true", help="Show version information")
    globalsParent.add_argument(
        "--log-level",
        type=validateLogLevel,
        help="Set logging level (DEBUG, INFO, WARNING, ERROR) or path to logging config JSON file (default: WARNING)",
        metavar="LEVEL_OR_FILE",
        dest="logLevel"
    )
    globalsParent.add_argument(
        "--log-file",
        metavar="PATH",
        help="Also write the log to a file, e.g. fastzip.log",
        dest="logFile"
    )
    globalsParent.add_argument(
        "--mmap-threshold",
        type=parseSize,
        metavar="SIZE",
        help="Memory-map files at least this large (default: 100MiB)",
        dest="mmapThreshold"
    )
    globalsParent.add_argument(
        "--buffer-ceiling",
        type=parseSize,
        metavar="SIZE",
        help="Largest read chunk, between 64KiB and 2MiB (default: 2MiB)",
        dest="bufferCeiling"
    )
    globalsParent.add_argument(
        "--workers", type=validateWorkers, metavar="N", help="Number of codec worker threads", dest="workers"
    )
    globalsParent.add_argument(
        "--no-progress", action="store_false", default=True, help="Do not show a progress bar", dest="progress"
    )

    # === 2) Main parser + subparsers; all inherit from globalsParent ===
    parser = argparse.ArgumentParser(
        prog='fastzip',
        description="FastZip creates and extracts ZIP archives with adaptive I/O.",
        parents=[globalsParent],
        exit_on_error=False,
    )
    subparsers = parser.add_subparsers(dest='command', help='Available commands')

    compressParser = subparsers.add_parser(
        'compress', help='Create or update a ZIP archive', parents=[globalsParent], exit_on_error=False
    )
    compressParser.add_argument("sources", metavar="SOURCE", nargs='+', help="Files or folders to archive")
    compressParser.add_argument(
        "--output", "-o", metavar="ARCHIVE", help="Archive path (default: derived from the first source)"
    )
    compressParser.add_argument(
        "--level",
        "-l",
        type=validateLevel,
        default=DEFAULT_COMPRESSION_LEVEL,
        help=f"Compression level 0-9, 0 stores without compression (default: {DEFAULT_COMPRESSION_LEVEL})"
    )
    compressParser.add_argument(
        "--overwrite",
        choices=[policy.value for policy in OverwritePolicy],
        default=OverwritePolicy.FAIL.value,
        help="What to do with entries already present in an existing archive (default: fail)"
    )

    extractParser = subparsers.add_parser(
        'extract', help='Extract a ZIP archive', parents=[globalsParent], exit_on_error=False
    )
    extractParser.add_argument("archive", metavar="ARCHIVE", help="Archive to extract")
    extractParser.add_argument(
        "--dest", "-d", metavar="DIR", default='.', help="Destination directory (default: current directory)"
    )
    extractParser.add_argument("--overwrite", action="store_true", help="Replace files that already exist")

    listParser = subparsers.add_parser(
        'list', help='List the entries of a ZIP archive', parents=[globalsParent], exit_on_error=False
    )
    listParser.add_argument("archive", metavar="ARCHIVE", help="Archive to list")

    return parser, globalsParent


def defaultOutputFor(source):
    """`folder` -> `folder.zip`, `notes.txt` -> `notes.zip`."""
    source = os.path.normpath(os.path.abspath(source))
    if os.path.isdir(source):
        return f"{source}.zip"
    return f"{os.path.splitext(source)[0]}.zip"


def buildConfig(args):
    return EngineConfig.fromEnv(
        workers=args.workers, mmapThreshold=args.mmapThreshold, bufferCeiling=args.bufferCeiling
    )


def runOperation(operation, totalSize=0, useBar=True, description=None):
    """Run an ArchiveOperation in the background; Ctrl+C cancels it and waits for the cleanup."""
    console = ConsoleProgress(totalSize, useBar=useBar, loggerCallback=flushPrint, description=description)
    operation.subscribe(console)

    operation.start()
    interrupted = False
    try:
        while True:
            try:
                summary = operation.wait(WAIT_INTERVAL)
            except KeyboardInterrupt:
                if interrupted:
                    raise
                interrupted = True
                flushPrint('\nCancelling, cleaning up...')
                operation.cancel('interrupted by user')
                continue
            if summary is not None:
                break
    finally:
        console.close(complete=not interrupted and operation.summary is not None and operation.summary.success)

    return summary


def printSummary(action, summary):
    succeeded = summary.count(ResultStatus.SUCCEEDED)
    skipped = summary.count(ResultStatus.SKIPPED)
    failed = summary.count(ResultStatus.FAILED)

    flushPrint(
        f"{action} finished in {summary.elapsed:.2f}s: {succeeded} succeeded, {skipped} skipped, {failed} failed"
        f" ({formatSize(summary.totalBytes)} read, {formatSize(summary.bytesWritten)} written)"
    )

    for result in summary.results:
        if result.status == ResultStatus.FAILED and result.errorKind is not None and not summary.cancelled:
            flushPrint(f"  failed: {result.entryName}: {result.error}")

    if summary.fatalError is not None:
        flushPrint(f"Error: {summary.fatalError}")


def exitCodeFor(summary):
    if summary.cancelled:
        return EXIT_CANCELLED
    return EXIT_OK if summary.success else EXIT_FAILED


def processCompress(args, config):
    destination = args.output or defaultOutputFor(args.sources[0])
    operation = compressOperation(args.sources, destination, args.level, args.overwrite, config)
    summary = runOperation(operation, useBar=args.progress, description='Compressing')
    printSummary('Compression', summary)
    if summary.fatalError is None:
        flushPrint(f"Archive: {destination}")
    return exitCodeFor(summary)


def processExtract(args, config):
    try:
        totalSize = sum(entry.uncompressedSize for entry in listArchive(args.archive))
    except ArchiveError as e:
        flushPrint(f"Error: {e}")
        return EXIT_FAILED

    operation = extractOperation(args.archive, args.dest, args.overwrite, config)
    summary = runOperation(operation, totalSize, useBar=args.progress, description='Extracting')
    printSummary('Extraction', summary)
    return exitCodeFor(summary)


def _shortName(name):
    if len(name) <= NAME_COLUMN_WIDTH:
        return name
    return '...' + name[-(NAME_COLUMN_WIDTH - 3):]


def processList(args):
    try:
        entries = list(listArchive(args.archive))
    except ArchiveError as e:
        flushPrint(f"Error: {e}")
        return EXIT_FAILED

    files = [e for e in entries if not e.isDirectory]
    totalSize = sum(e.uncompressedSize for e in files)
    compressedSize = sum(e.compressedSize for e in files)

    flushPrint(f"Archive: {args.archive}")
    flushPrint(f"Files: {len(files)}, Directories: {len(entries) - len(files)}")
    flushPrint(
        f"Total size: {formatSize(totalSize)}, Compressed: {formatSize(compressedSize)}, "
        f"Ratio: {formatRatio(compressedSize, totalSize)}%"
    )
    flushPrint("")
    flushPrint(f"{'Name':<{NAME_COLUMN_WIDTH}} {'Size':>12} {'Compressed':>12} {'Ratio':>6}  Modified")
    flushPrint('-' * (NAME_COLUMN_WIDTH + 55))

    for entry in entries:
        flushPrint(
            f"{_shortName(entry.path):<{NAME_COLUMN_WIDTH}} {formatSize(entry.uncompressedSize):>12} "
            f"{formatSize(entry.compressedSize):>12} {entry.ratio:>5}%  {entry.modified.strftime(TIME_FORMAT)}"
        )

    return EXIT_OK


def runCLI(argv=None):
    """Parse argv and run one command. Returns the process exit code."""
    parser, globalsParent = configureCLIParser()

    try:
        globalArgs, _ = globalsParent.parse_known_args(argv)
        args = parser.parse_args(argv)
    except argparse.ArgumentError as e:
        parser.error(str(e))

    # Sub-parsers reset global options to their defaults, the global pass saw them wherever they were given.
    for key, value in vars(globalArgs).items():
        setattr(args, key, value)

    configureLogging(globalArgs.logLevel, globalArgs.logFile)

    if args.version:
        showVersion()
        return EXIT_OK

    if args.command is None:
        parser.print_help()
        return EXIT_OK

    if args.command == 'list':
        return processList(args)

    try:
        config = buildConfig(args)
    except ValueError as e:
        flushPrint(f"Error: {e}")
        return EXIT_FAILED

    if args.command == 'compress':
        return processCompress(args, config)
    return processExtract(args, config)
