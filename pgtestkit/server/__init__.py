"""
Server package for pgtestkit.

Provides the embedded server lifecycle and the process managers it drives.
"""

from .lifecycle import EmbeddedPostgres, ServerState, ServerStatus, build_connection_string
from .process import ServerProcess, create_server_process, find_free_port

__all__ = [
    'EmbeddedPostgres',
    'ServerProcess',
    'ServerState',
    'ServerStatus',
    'build_connection_string',
    'create_server_process',
    'find_free_port',
]
