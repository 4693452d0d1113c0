"""
Connector interface.

A connector binds a driver or ORM of the caller's choice to a test database.
The provisioner only talks to this interface and never imports a driver for
the databases it hands out.
"""

from typing import Protocol, TypeVar, runtime_checkable

ClientT = TypeVar("ClientT")
ClientT_co = TypeVar("ClientT_co", covariant=True)


@runtime_checkable
class Connector(Protocol[ClientT_co]):
    """
    Protocol for binding a client library to a test database.

    The provisioner calls connect() once, then reset(); the owning
    TestDatabase calls close() exactly once when it is closed. Each method may
    raise independently.
    """

    async def connect(self, connection_string: str) -> ClientT_co:
        """
        Open the client for the given database.

        Args:
            connection_string: postgres:// URL of the test database

        Returns:
            The client object handed to the test (connection, engine, ...)
        """
        ...

    async def close(self) -> None:
        """Release everything connect() opened."""
        ...

    async def reset(self) -> None:
        """Remove all rows from user tables, keeping the schema."""
        ...
