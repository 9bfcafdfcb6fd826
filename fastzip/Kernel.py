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
import json
import logging
import threading

# Error reporting stays off unless a SENTRY_DSN secret is configured explicitly.
import sentry_sdk

from pathlib import Path

from sentry_sdk.integrations.logging import SentryHandler, LoggingIntegration
from sentry_sdk.integrations import atexit as sentryAtexit

PUBLIC_VERSION = '1.2.0'

# Map string levels to logging constants for standard level names
LOG_LEVEL_MAPPING = {'DEBUG': logging.DEBUG, 'INFO': logging.INFO, 'WARNING': logging.WARNING, 'ERROR': logging.ERROR}

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'

DEFAULT_LOG_FILE_NAME = 'fastzip.log'


def configureGlobalLogLevel(logLevel):
    """
    Configure the global logging level for the application.
    This affects all loggers created via getLogger().

    Args:
        logLevel: Logging level (logging.DEBUG, logging.INFO, etc.)
    """
    rootLogger = logging.getLogger()
    rootLogger.setLevel(logLevel)

    formatter = logging.Formatter(LOG_FORMAT)

    # Add console handler if none exists
    if not rootLogger.handlers:
        consoleHandler = logging.StreamHandler()
        consoleHandler.setLevel(logLevel)
        consoleHandler.setFormatter(formatter)
        rootLogger.addHandler(consoleHandler)
    else:
        # Update existing handlers, file handlers keep their own level
        for handler in rootLogger.handlers:
            if isinstance(handler, logging.FileHandler) or isinstance(handler, SentryHandler):
                continue
            if isinstance(handler, logging.StreamHandler):
                handler.setLevel(logLevel)
                handler.setFormatter(formatter)


def configureFileLogging(logPath=None, logLevel=logging.INFO):
    """
    Mirror log records into a file (fastzip.log beside the working directory by default).

    Returns the path actually used so callers can report it.
    """
    logPath = os.path.abspath(logPath or DEFAULT_LOG_FILE_NAME)
    rootLogger = logging.getLogger()

    for handler in rootLogger.handlers:
        if isinstance(handler, logging.FileHandler) and handler.baseFilename == logPath:
            return logPath

    fileHandler = logging.FileHandler(logPath, encoding='utf-8')
    fileHandler.setLevel(logLevel)
    fileHandler.setFormatter(logging.Formatter(LOG_FORMAT))
    rootLogger.addHandler(fileHandler)

    if rootLogger.level == logging.NOTSET or rootLogger.level > logLevel:
        rootLogger.setLevel(logLevel)

    return logPath


if os.getenv('FASTZIP_LOGGING_LEVEL'):
    logLevel = LOG_LEVEL_MAPPING.get(os.getenv('FASTZIP_LOGGING_LEVEL').upper())
    if logLevel is not None:
        configureGlobalLogLevel(logLevel)


def getLogger(name, version=PUBLIC_VERSION, reinitialize=False):
    """
    Get a logger with Sentry integration. Uses Sentry's own client state to avoid duplicate setup.
    SENTRY_DSN is loaded via SecretGetter; without it Sentry is never initialized.

    Args:
        name: Logger name
        version: Version string for logging context
        reinitialize: If True, initialize Sentry again even if a client is already active
    """
    try:
        sentryDsn = None
        sentryInitialized = False

        if not sentry_sdk.get_client().is_active() or reinitialize:
            sentryDsn = SecretGetter.getInstance().get('SENTRY_DSN')

            if sentryDsn:
                # Suppress "sentry is attempting to send pending events..." at exit
                sentryAtexit.default_callback = lambda pending, timeout: None

                sentry_sdk.init(
                    dsn=sentryDsn,
                    release=f'fastzip@{version}',
                    default_integrations=False,
                    integrations=[
                        LoggingIntegration(),
                        sentryAtexit.AtexitIntegration(),
                    ],
                )
                sentryInitialized = True

        logger = logging.getLogger(name)

        if not any(isinstance(h, SentryHandler) for h in logger.handlers):
            syslog = SentryHandler()
            syslog.setFormatter(logging.Formatter('%(asctime)s version[%(version)s] : %(message)s'))
            logger.addHandler(syslog)

        adapter = logging.LoggerAdapter(logger, {'version': version or 'unknown'})

        if sentryInitialized:
            adapter.debug('Sentry initialized for %s', name)

        return adapter

    except Exception as e:
        fallbackLogger = logging.getLogger(name)

        # If Sentry setup fails, keep going with standard logging
        fallbackLogger.warning(f"Failed to initialize Sentry: {e}")

        return fallbackLogger


class Singleton:
    """
    Thread-safe singleton base class that can be inherited by other classes.
    Subclasses override initialize() for custom initialization.
    """

    _instances = {}
    _lock = threading.Lock()

    def __new__(cls, *args, **kwargs):
        if cls not in cls._instances:
            with cls._lock:
                if cls not in cls._instances:
                    cls._instances[cls] = super().__new__(cls)
        return cls._instances[cls]

    def __init__(self, *args, **kwargs):
        if not hasattr(self, '_initialized'):
            self.initialize(*args, **kwargs)
            self._initialized = True

    def initialize(self, *args, **kwargs):
        """Called once, when the singleton instance is first created."""
        pass

    @classmethod
    def getInstance(cls):
        if cls not in cls._instances:
            cls()
        return cls._instances[cls]


class SecretGetter(Singleton):
    """
    Looks secrets up in environment variables first, then in a JSON secret file.

    The secret file defaults to ~/.fastzip/.secret and can be moved with FASTZIP_SECRET_FILE.
    """

    DEFAULT_SECRET_FILE = os.path.join('~', '.fastzip', '.secret')

    def initialize(self, secretPath=None):
        self.secretPath = secretPath
        self._cache = {}
        self._secretData = None

    def getPath(self):
        path = self.secretPath or os.getenv('FASTZIP_SECRET_FILE') or self.DEFAULT_SECRET_FILE
        return os.path.expanduser(path)

    def _loadSecretFile(self):
        logger = logging.getLogger(__name__)

        if self._secretData is not None:
            return

        secretPath = self.getPath()

        if not os.path.exists(secretPath):
            self._secretData = {}
            return

        try:
            self._secretData = json.loads(Path(secretPath).read_text())
        except (json.JSONDecodeError, OSError) as e:
            logger.warning(f"Failed to load secret file {secretPath}: {e}")
            self._secretData = {}
            return

        logger.info(f"Loaded secret file {secretPath}")

    def get(self, key: str):
        """
        Get secret value by key with caching.

        Returns:
            str or None: Secret value if found, None otherwise
        """
        if self._cache.get(key):
            return self._cache[key]

        value = os.getenv(key)
        if value:
            self._cache[key] = value
            return value

        self._loadSecretFile()

        value = self._secretData.get(key)
        if value:
            self._cache[key] = value

        return value

    def reset(self):
        """Forget cached values; used by tests that change the environment."""
        self._cache.clear()
        self._secretData = None
