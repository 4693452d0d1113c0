"""
Integration tests against a real PostgreSQL server running in Docker.

Skipped automatically when no Docker daemon is reachable.
"""

import asyncio

import asyncpg
import pytest
import pytest_asyncio

from pgtestkit import AsyncpgConnector, EmbeddedPostgres, ServerConfig
from pgtestkit.harness import run_with_server

pytestmark = [pytest.mark.integration, pytest.mark.asyncio(loop_scope="module")]


@pytest_asyncio.fixture(scope="module", loop_scope="module")
async def server(tmp_path_factory):
    """One server for the whole module."""
    config = ServerConfig(
        runtime_path=tmp_path_factory.mktemp("pgtestkit"),
        handle_signals=False,
        start_timeout=120,
    )
    server = EmbeddedPostgres(config)
    await server.start()
    yield server
    await server.stop()


async def database_exists(server: EmbeddedPostgres, name: str) -> bool:
    connection = await asyncpg.connect(server.connection_string())
    try:
        return await connection.fetchval("SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)", name)
    finally:
        await connection.close()


class TestProvisioningRoundTrip:
    """Create, use and drop real databases"""

    async def test_create_and_close(self, server):
        """A created database exists until its handle is closed"""
        # Act
        handle = await server.create_database(AsyncpgConnector())

        # Assert
        assert await database_exists(server, handle.name)
        assert await handle.client.fetchval("SELECT current_database()") == handle.name

        await handle.close()
        assert not await database_exists(server, handle.name)

    async def test_concurrent_creates_are_isolated(self, server):
        # Act
        first, second = await asyncio.gather(
            server.create_database(AsyncpgConnector()),
            server.create_database(AsyncpgConnector()),
        )

        # Assert
        try:
            assert first.name != second.name
            await first.client.execute("CREATE TABLE marker (id int)")
            tables = await second.client.fetch(
                "SELECT tablename FROM pg_tables WHERE schemaname = 'public'"
            )
            assert tables == []
        finally:
            await first.close()
            await second.close()

    async def test_reset_clears_rows_and_keeps_schema(self, server):
        """Reset empties tables, restarts identities and keeps migrations"""
        # Arrange
        async with await server.create_database(AsyncpgConnector()) as handle:
            client = handle.client
            await client.execute("CREATE TABLE users (id serial PRIMARY KEY, name text)")
            await client.execute(
                "CREATE TABLE posts (id serial PRIMARY KEY, "
                "user_id int REFERENCES users(id) DEFERRABLE INITIALLY IMMEDIATE)"
            )
            await client.execute("CREATE TABLE alembic_version (version_num text)")
            await client.execute("INSERT INTO users (name) VALUES ('a'), ('b')")
            await client.execute("INSERT INTO posts (user_id) VALUES (1)")
            await client.execute("INSERT INTO alembic_version VALUES ('abc123')")

            # Act
            await handle.reset()

            # Assert
            assert await client.fetchval("SELECT count(*) FROM users") == 0
            assert await client.fetchval("SELECT count(*) FROM posts") == 0
            assert await client.fetchval("SELECT version_num FROM alembic_version") == 'abc123'
            new_id = await client.fetchval("INSERT INTO users (name) VALUES ('c') RETURNING id")
            assert new_id == 1

    async def test_sqlalchemy_connector(self, server):
        pytest.importorskip("sqlalchemy")
        from sqlalchemy import text

        from pgtestkit.connectors.sqlalchemy_connector import SQLAlchemyConnector

        async with await server.create_database(SQLAlchemyConnector()) as handle:
            async with handle.client.connect() as conn:
                result = await conn.execute(text("SELECT current_database()"))
                assert result.scalar() == handle.name


class TestHarness:
    """Run a suite around a dedicated server"""

    async def test_run_with_server_returns_suite_status(self, tmp_path):
        # Arrange
        seen = {}

        async def suite(srv):
            seen['running'] = srv.is_running
            handle = await srv.create_database(AsyncpgConnector())
            await handle.close()
            return 0

        config = ServerConfig(runtime_path=tmp_path / "run", handle_signals=False, start_timeout=120)

        # Act
        code = await run_with_server(suite, config)

        # Assert
        assert code == 0
        assert seen['running'] is True
        assert not (tmp_path / "run").exists()
