"""
Database Provisioner for pgtestkit

Creates one uniquely named database per test case on the running server,
binds the caller's connector to it, and drops it again when the handle is
closed.
"""

import logging
import os
import uuid
from typing import TYPE_CHECKING, Generic, List, Optional

import asyncpg

from pgtestkit.connectors.base import ClientT, Connector
from pgtestkit.database.sql import (
    DATABASE_EXISTS_QUERY,
    DATABASE_ROW_QUERY,
    TERMINATE_BACKENDS_QUERY,
    create_database_statement,
    drop_database_statement,
)
from pgtestkit.errors import (
    InvalidArgumentError,
    ProvisionError,
    ResetError,
    ServerNotRunningError,
    TeardownError,
    wrap_error,
)

if TYPE_CHECKING:
    from pgtestkit.server.lifecycle import EmbeddedPostgres

logger = logging.getLogger(__name__)

TEST_DB_PREFIX = "testdb_"


def generate_database_name() -> str:
    """Unique database name: prefix, process id and random hex."""
    return f"{TEST_DB_PREFIX}{os.getpid()}_{uuid.uuid4().hex[:16]}"


class TestDatabase(Generic[ClientT]):
    """
    Handle for one provisioned test database.

    Attributes:
        name: Database name on the server
        connection_string: postgres:// URL for the database
        client: Whatever the connector's connect() returned
        connector: The connector bound to this database
    """

    __test__ = False  # not a pytest test class

    def __init__(
        self,
        name: str,
        connection_string: str,
        client: ClientT,
        connector: Connector[ClientT],
        provisioner: "DatabaseProvisioner",
    ):
        self.name = name
        self.connection_string = connection_string
        self.client = client
        self.connector = connector
        self._provisioner = provisioner
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def reset(self) -> None:
        """Restore a clean logical state without recreating the database."""
        await self._provisioner.reset(self)

    async def close(self) -> None:
        """
        Close the connector, then drop the database.

        Safe to call more than once. Both steps always run.

        Raises:
            TeardownError: With every failure that occurred
        """
        if self._closed:
            return
        self._closed = True

        log = logging.LoggerAdapter(self._provisioner.logger, {'database': self.name})
        log.info(f"Closing test database {self.name} and cleaning up resources")
        errors: List[BaseException] = []

        try:
            if self.connector is not None:
                try:
                    await self.connector.close()
                    log.debug("Closed database connector")
                except Exception as e:
                    log.error(f"Failed to close database connector: {e}")
                    errors.append(wrap_error("connector close error", e))
        finally:
            # Runs even when the connector close was cancelled
            try:
                await self._provisioner.drop(self.name)
            except Exception as e:
                log.error(f"Failed to drop test database: {e}")
                errors.append(wrap_error(f"failed to drop database {self.name}", e))

        if errors:
            raise TeardownError(f"closing test database {self.name}", errors)
        log.info(f"Closed test database {self.name}")

    async def __aenter__(self) -> "TestDatabase[ClientT]":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    def __repr__(self) -> str:
        state = "closed" if self._closed else "open"
        return f"<TestDatabase {self.name} ({state})>"


class DatabaseProvisioner:
    """
    Creates and drops test databases through the server's base connection.

    Administrative statements are serialized by the server lock; the lock is
    released as soon as the handle is built.
    """

    def __init__(self, server: "EmbeddedPostgres", logger: Optional[logging.Logger] = None):
        self.server = server
        self.logger = logger or logging.getLogger(__name__)

    def _base_connection(self) -> asyncpg.Connection:
        connection = self.server.base_connection
        if connection is None:
            raise ServerNotRunningError("base database connection is not initialized")
        return connection

    async def create(self, connector: Connector[ClientT]) -> TestDatabase[ClientT]:
        """
        Create an isolated database and bind the connector to it.

        Args:
            connector: Connector used to open the client for the new database

        Returns:
            TestDatabase handle owned by the caller

        Raises:
            InvalidArgumentError: If connector is None
            ServerNotRunningError: If the server is not running
            ProvisionError: If create, connect or reset failed (already rolled back)
        """
        if connector is None:
            raise InvalidArgumentError("connector must not be None")

        async with self.server.lock:
            if not self.server.is_running:
                raise ServerNotRunningError("database server is not running")

            name = generate_database_name()
            log = logging.LoggerAdapter(self.logger, {'database': name})
            log.info(f"Creating test database {name}")

            try:
                await self._create_database(name)
            except Exception as e:
                log.error(f"Failed to create test database: {e}")
                raise ProvisionError(f"failed to create test database {name}: {e}") from e

            connection_string = self.server.connection_string(name)
            try:
                client = await connector.connect(connection_string)
            except Exception as e:
                log.error(f"Failed to connect to test database, cleaning up: {e}")
                await self._rollback(name, log)
                raise ProvisionError(f"failed to connect to test database {name}: {e}") from e

            try:
                await connector.reset()
            except Exception as e:
                log.error(f"Failed to reset test database, cleaning up: {e}")
                try:
                    await connector.close()
                except Exception as close_error:
                    log.error(f"Failed to close connector after reset error: {close_error}")
                await self._rollback(name, log)
                raise ProvisionError(f"failed to reset test database {name}: {e}") from e

        log.info(f"Created and initialized test database {name}")
        return TestDatabase(
            name=name,
            connection_string=connection_string,
            client=client,
            connector=connector,
            provisioner=self,
        )

    async def _create_database(self, name: str):
        connection = self._base_connection()
        exists = await connection.fetchval(DATABASE_EXISTS_QUERY, name)
        if exists:
            self.logger.debug(f"Database {name} already exists, skipping creation")
            return
        await connection.execute(create_database_statement(name))

    async def _rollback(self, name: str, log: logging.LoggerAdapter):
        try:
            await self._drop_database(name)
        except Exception as e:
            log.error(f"Failed to clean up test database {name}: {e}")

    async def drop(self, name: str) -> None:
        """
        Drop a test database, terminating other sessions on it first.

        Raises:
            InvalidArgumentError: If name is empty
            ServerNotRunningError: If the server was never started
        """
        if not name:
            raise InvalidArgumentError("database name cannot be empty")

        async with self.server.lock:
            if self.server.is_stopped:
                # The cluster went away with the server
                self.logger.debug(f"Server already stopped, nothing to drop for {name}")
                return
            await self._drop_database(name)

    async def _drop_database(self, name: str):
        log = logging.LoggerAdapter(self.logger, {'database': name})
        connection = self._base_connection()

        exists = await connection.fetchval(DATABASE_ROW_QUERY, name)
        if not exists:
            log.debug(f"Database {name} does not exist, nothing to drop")
            return

        try:
            await connection.execute(TERMINATE_BACKENDS_QUERY, name)
        except asyncpg.PostgresError as e:
            # DROP ... IF EXISTS below still runs
            log.warning(f"Failed to terminate some connections to {name}: {e}")

        log.info(f"Dropping database {name}")
        await connection.execute(drop_database_statement(name))

    async def reset(self, handle: TestDatabase) -> None:
        """
        Reset a database through its connector.

        Raises:
            InvalidArgumentError: If the handle or its connector is missing
            ResetError: If the connector failed to reset
        """
        if handle is None or handle.connector is None:
            raise InvalidArgumentError("database connector is None")
        if handle.closed:
            raise InvalidArgumentError(f"test database {handle.name} is already closed")

        self.logger.debug(f"Resetting database {handle.name} to initial state")
        try:
            await handle.connector.reset()
        except Exception as e:
            self.logger.error(f"Failed to reset database {handle.name}: {e}")
            raise ResetError(f"failed to reset database {handle.name}: {e}") from e
        self.logger.info(f"Reset database {handle.name}")


async def reset_database(handle: TestDatabase) -> None:
    """Module-level shortcut for handle.reset()."""
    if handle is None:
        raise InvalidArgumentError("test database handle is None")
    await handle.reset()


async def close_database(handle: Optional[TestDatabase]) -> None:
    """Close a handle; None and already-closed handles are ignored."""
    if handle is None:
        return
    await handle.close()
