"""
pgtestkit

Ephemeral PostgreSQL for test suites: one server per run, one disposable
database per test case.
"""

import logging

from pgtestkit.config import ConfigManager, ConfigValidationError, ServerConfig
from pgtestkit.connectors import AsyncpgConnector, Connector
from pgtestkit.database import TestDatabase, close_database, reset_database
from pgtestkit.errors import (
    InvalidArgumentError,
    PgTestKitError,
    ProvisionError,
    ResetError,
    ServerAlreadyStoppedError,
    ServerNotRunningError,
    ServerStartError,
    ServerStopError,
    TeardownError,
)
from pgtestkit.logging_config import configure_logging
from pgtestkit.server import EmbeddedPostgres, ServerStatus

__version__ = "0.1.0"

logging.getLogger(__name__).addHandler(logging.NullHandler())

__all__ = [
    'AsyncpgConnector',
    'ConfigManager',
    'ConfigValidationError',
    'Connector',
    'EmbeddedPostgres',
    'InvalidArgumentError',
    'PgTestKitError',
    'ProvisionError',
    'ResetError',
    'ServerAlreadyStoppedError',
    'ServerConfig',
    'ServerNotRunningError',
    'ServerStartError',
    'ServerStatus',
    'ServerStopError',
    'TeardownError',
    'TestDatabase',
    'close_database',
    'configure_logging',
    'reset_database',
]
