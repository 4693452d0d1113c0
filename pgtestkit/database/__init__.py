"""
Database package for pgtestkit.

Provides per-test database provisioning, cleanup and reset.
"""

from .provisioner import (
    DatabaseProvisioner,
    TestDatabase,
    close_database,
    generate_database_name,
    reset_database,
)
from .sql import quote_identifier

__all__ = [
    'DatabaseProvisioner',
    'TestDatabase',
    'close_database',
    'generate_database_name',
    'quote_identifier',
    'reset_database',
]
