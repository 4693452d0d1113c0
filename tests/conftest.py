"""
Centralized test configuration and fixtures for pgtestkit.

This module provides shared test fixtures that:
1. Isolate configuration from the developer's environment and .env files
2. Provide fake server processes and admin connections for unit tests
3. Provide a recording connector to observe provisioning calls
4. Skip integration tests when Docker is not reachable
"""

import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Set
from unittest.mock import patch

import asyncpg
import pytest
import pytest_asyncio

from pgtestkit.config.config_manager import ConfigManager, ServerConfig
from pgtestkit.database.sql import DATABASE_EXISTS_QUERY, DATABASE_ROW_QUERY, TERMINATE_BACKENDS_QUERY
from pgtestkit.server.lifecycle import EmbeddedPostgres

# Configure logging for tests
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

TEST_PORT = 55432


class FakeServerProcess:
    """ServerProcess double recording start/stop calls."""

    def __init__(
        self,
        config: ServerConfig,
        start_error: Optional[Exception] = None,
        stop_error: Optional[Exception] = None,
        start_delay: float = 0.0,
        on_stop: Optional[Callable[[], None]] = None,
    ):
        self.config = config
        self.on_stop = on_stop
        self.start_error = start_error
        self.stop_error = stop_error
        self.start_delay = start_delay
        self.start_calls = 0
        self.stop_calls = 0

    def start(self) -> None:
        self.start_calls += 1
        if self.start_delay:
            time.sleep(self.start_delay)
        if self.start_error is not None:
            raise self.start_error

    def stop(self) -> None:
        self.stop_calls += 1
        if self.on_stop is not None:
            self.on_stop()
        if self.stop_error is not None:
            raise self.stop_error


class FakeProcessFactory:
    """Process factory handing out FakeServerProcess instances."""

    def __init__(self, **process_kwargs: Any):
        self.process_kwargs = process_kwargs
        self.processes: List[FakeServerProcess] = []

    def __call__(self, config: ServerConfig) -> FakeServerProcess:
        process = FakeServerProcess(config, **self.process_kwargs)
        self.processes.append(process)
        return process

    @property
    def process(self) -> FakeServerProcess:
        return self.processes[-1]


class FakeAdminConnection:
    """
    Stand-in for the asyncpg base connection.

    Keeps track of which databases exist so CREATE/DROP round trips can be
    asserted without a server.
    """

    def __init__(self):
        self.databases: Set[str] = set()
        self.executed: List[str] = []
        self.fail_terminate = False
        self.fail_create: Optional[Exception] = None
        self.close_error: Optional[Exception] = None
        self.closed = False
        self.terminated = False

    async def fetchval(self, query: str, *args: Any) -> Any:
        if query == DATABASE_EXISTS_QUERY:
            return args[0] in self.databases
        if query == DATABASE_ROW_QUERY:
            return 1 if args[0] in self.databases else None
        return 1

    async def execute(self, query: str, *args: Any) -> str:
        self.executed.append(query)
        if query == TERMINATE_BACKENDS_QUERY:
            if self.fail_terminate:
                raise asyncpg.PostgresError("must be a member of the role whose process is being terminated")
            return "SELECT 0"
        if query.startswith("CREATE DATABASE"):
            if self.fail_create is not None:
                raise self.fail_create
            self.databases.add(query.split('"')[1])
            return "CREATE DATABASE"
        if query.startswith("DROP DATABASE"):
            self.databases.discard(query.split('"')[1])
            return "DROP DATABASE"
        return "OK"

    async def close(self) -> None:
        self.closed = True
        if self.close_error is not None:
            raise self.close_error

    def terminate(self) -> None:
        self.terminated = True


class RecordingConnector:
    """Connector double recording every call it receives."""

    def __init__(
        self,
        connect_error: Optional[Exception] = None,
        reset_error: Optional[Exception] = None,
        close_error: Optional[Exception] = None,
    ):
        self.connect_error = connect_error
        self.reset_error = reset_error
        self.close_error = close_error
        self.connection_strings: List[str] = []
        self.reset_calls = 0
        self.close_calls = 0

    async def connect(self, connection_string: str) -> Dict[str, str]:
        self.connection_strings.append(connection_string)
        if self.connect_error is not None:
            raise self.connect_error
        return {'dsn': connection_string}

    async def reset(self) -> None:
        self.reset_calls += 1
        if self.reset_error is not None:
            raise self.reset_error

    async def close(self) -> None:
        self.close_calls += 1
        if self.close_error is not None:
            raise self.close_error


@pytest.fixture
def clean_environment():
    """Empty os.environ and ignore .env files for the duration of a test."""
    with patch.dict(os.environ, {}, clear=True):
        with patch.object(ConfigManager, '_load_env_files'):
            yield


@pytest.fixture
def server_config(tmp_path) -> ServerConfig:
    """Configuration pinned to a fixed port and a temporary runtime path."""
    return ServerConfig(
        port=TEST_PORT,
        runtime_path=tmp_path / "runtime",
        handle_signals=False,
        start_timeout=5,
    )


@pytest.fixture
def process_factory() -> FakeProcessFactory:
    return FakeProcessFactory()


@pytest.fixture
def admin_connection() -> FakeAdminConnection:
    return FakeAdminConnection()


@pytest.fixture
def embedded_server(server_config, process_factory) -> EmbeddedPostgres:
    """EmbeddedPostgres wired to fake processes; exit is never a real exit."""
    return EmbeddedPostgres(
        server_config,
        process_factory=process_factory,
        exit_func=lambda code: None,
    )


@pytest.fixture
def patched_connect(admin_connection):
    """Make asyncpg.connect hand out the fake admin connection."""
    async def connect(*args, **kwargs):
        return admin_connection

    with patch('asyncpg.connect', side_effect=connect) as mock_connect:
        yield mock_connect


@pytest_asyncio.fixture
async def running_server(embedded_server, patched_connect):
    """Started EmbeddedPostgres backed by fakes; stopped after the test."""
    await embedded_server.start()
    yield embedded_server
    if embedded_server.is_running:
        await embedded_server.stop()


def docker_available() -> bool:
    """True when a Docker daemon answers ping."""
    import docker

    try:
        client = docker.from_env()
        client.ping()
        client.close()
        return True
    except Exception:
        return False


def pytest_collection_modifyitems(config, items):
    """Skip integration tests when Docker is unavailable."""
    if any(item.get_closest_marker("integration") for item in items) and not docker_available():
        skip_docker = pytest.mark.skip(reason="Docker daemon not available")
        for item in items:
            if item.get_closest_marker("integration"):
                item.add_marker(skip_docker)
