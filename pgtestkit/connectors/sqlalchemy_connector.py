"""
SQLAlchemy connector.

Binds an async SQLAlchemy engine (asyncpg dialect) to a test database. Models
are mapped and migrated by the test itself; reset only clears rows.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from sqlalchemy import text
from sqlalchemy.engine import URL, make_url
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from pgtestkit.database.sql import LIST_TABLES_QUERY, reset_statements
from pgtestkit.errors import ConnectorError

logger = logging.getLogger(__name__)

ASYNC_DRIVER = "postgresql+asyncpg"


def to_async_url(connection_string: str) -> Tuple[URL, Dict[str, Any]]:
    """
    Turn a libpq-style URL into an asyncpg dialect URL.

    asyncpg does not take sslmode/client_encoding as query parameters, so
    they are moved into connect_args.

    Returns:
        (url, connect_args) for create_async_engine
    """
    url = make_url(connection_string)
    query = dict(url.query)
    connect_args: Dict[str, Any] = {}

    sslmode = query.pop("sslmode", None)
    if sslmode == "disable":
        connect_args["ssl"] = False
    elif sslmode:
        connect_args["ssl"] = sslmode

    client_encoding = query.pop("client_encoding", None)
    if client_encoding:
        connect_args["server_settings"] = {"client_encoding": client_encoding}

    return url.set(drivername=ASYNC_DRIVER, query=query), connect_args


class SQLAlchemyConnector:
    """Connector whose client is a SQLAlchemy AsyncEngine."""

    def __init__(self, echo: bool = False, **engine_kwargs: Any):
        """
        Initialize the connector.

        Args:
            echo: Log emitted SQL through SQLAlchemy's logger
            **engine_kwargs: Extra keyword arguments for create_async_engine
        """
        self.echo = echo
        self.engine_kwargs = engine_kwargs
        self._engine: Optional[AsyncEngine] = None

    @property
    def engine(self) -> Optional[AsyncEngine]:
        return self._engine

    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        """Session factory bound to the connected engine."""
        if self._engine is None:
            raise ConnectorError("engine is not connected")
        return async_sessionmaker(self._engine, expire_on_commit=False)

    async def connect(self, connection_string: str) -> AsyncEngine:
        url, connect_args = to_async_url(connection_string)
        engine = create_async_engine(
            url,
            echo=self.echo,
            connect_args=connect_args,
            **self.engine_kwargs
        )
        try:
            async with engine.connect() as conn:
                await conn.execute(text("SELECT 1"))
        except Exception:
            await engine.dispose()
            raise
        self._engine = engine
        logger.debug("SQLAlchemy engine connected")
        return engine

    async def close(self) -> None:
        engine = self._engine
        if engine is None:
            return
        self._engine = None
        await engine.dispose()

    async def reset(self) -> None:
        """Truncate every public table in one transaction, keeping the schema."""
        if self._engine is None:
            raise ConnectorError("engine is not connected")

        async with self._engine.begin() as conn:
            result = await conn.execute(text(LIST_TABLES_QUERY))
            tables = [row[0] for row in result]
            for statement in reset_statements(tables):
                await conn.execute(text(statement))
        logger.debug(f"Reset {len(tables)} table(s)")
