"""
pytest plugin for pgtestkit.

Registered through the ``pytest11`` entry point. The server is a session
fixture living on the session event loop, so tests that use it run on that
loop as well:

    pytestmark = pytest.mark.asyncio(loop_scope="session")

    async def test_insert(pg_database):
        await pg_database.client.execute("CREATE TABLE t (id serial)")
"""

from typing import AsyncIterator, Awaitable, Callable, List

import pytest
import pytest_asyncio

from pgtestkit.config.config_manager import ConfigManager, ServerConfig
from pgtestkit.connectors.asyncpg_connector import AsyncpgConnector
from pgtestkit.connectors.base import Connector
from pgtestkit.database.provisioner import TestDatabase
from pgtestkit.errors import PgTestKitError, TeardownError
from pgtestkit.server.lifecycle import EmbeddedPostgres

DatabaseFactory = Callable[[Connector], Awaitable[TestDatabase]]


@pytest.fixture(scope="session")
def pg_config() -> ServerConfig:
    """Server configuration from PGTESTKIT_* variables and .env files."""
    return ConfigManager().server_config()


@pytest_asyncio.fixture(scope="session", loop_scope="session")
async def pg_server(pg_config: ServerConfig) -> AsyncIterator[EmbeddedPostgres]:
    """
    Session-scoped embedded PostgreSQL server.

    A failed start ends the whole session with exit status 1; a failed stop
    is reported as a teardown error.
    """
    server = EmbeddedPostgres(pg_config)
    try:
        await server.start()
    except PgTestKitError as e:
        pytest.exit(f"Failed to start embedded PostgreSQL server: {e}", returncode=1)
    yield server
    await server.stop()


@pytest_asyncio.fixture(loop_scope="session")
async def pg_database(pg_server: EmbeddedPostgres) -> AsyncIterator[TestDatabase]:
    """Isolated database with an asyncpg connection as its client."""
    handle = await pg_server.create_database(AsyncpgConnector())
    yield handle
    await handle.close()


@pytest_asyncio.fixture(loop_scope="session")
async def pg_database_factory(pg_server: EmbeddedPostgres) -> AsyncIterator[DatabaseFactory]:
    """
    Factory creating isolated databases with any connector.

    Every database created through the factory is closed after the test.
    """
    handles: List[TestDatabase] = []

    async def create(connector: Connector) -> TestDatabase:
        handle = await pg_server.create_database(connector)
        handles.append(handle)
        return handle

    yield create

    errors = []
    for handle in reversed(handles):
        try:
            await handle.close()
        except TeardownError as e:
            errors.append(e)
    if errors:
        raise TeardownError("closing test databases", errors)


async def must_reset(handle: TestDatabase) -> None:
    """Reset the database, failing the current test if that is not possible."""
    try:
        await handle.reset()
    except PgTestKitError as e:
        pytest.fail(f"Failed to reset database: {e}")
