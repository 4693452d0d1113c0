"""
asyncpg connector.

Binds a single asyncpg connection to a test database.
"""

import logging
from typing import Any, Optional

import asyncpg

from pgtestkit.database.sql import LIST_TABLES_QUERY, reset_statements
from pgtestkit.errors import ConnectorError

logger = logging.getLogger(__name__)


class AsyncpgConnector:
    """Connector whose client is an asyncpg.Connection."""

    def __init__(self, timeout: float = 60, **connect_kwargs: Any):
        """
        Initialize the connector.

        Args:
            timeout: Connection timeout in seconds
            **connect_kwargs: Extra keyword arguments for asyncpg.connect
        """
        self.timeout = timeout
        self.connect_kwargs = connect_kwargs
        self._connection: Optional[asyncpg.Connection] = None

    @property
    def connection(self) -> Optional[asyncpg.Connection]:
        return self._connection

    async def connect(self, connection_string: str) -> asyncpg.Connection:
        self._connection = await asyncpg.connect(
            connection_string,
            timeout=self.timeout,
            **self.connect_kwargs
        )
        logger.debug("asyncpg connection established")
        return self._connection

    async def close(self) -> None:
        connection = self._connection
        if connection is None:
            return
        self._connection = None
        await connection.close()

    async def reset(self) -> None:
        """Truncate every public table in one transaction, keeping the schema."""
        if self._connection is None:
            raise ConnectorError("database connection is not open")

        rows = await self._connection.fetch(LIST_TABLES_QUERY)
        tables = [row['tablename'] for row in rows]
        async with self._connection.transaction():
            for statement in reset_statements(tables):
                await self._connection.execute(statement)
        logger.debug(f"Reset {len(tables)} table(s)")
