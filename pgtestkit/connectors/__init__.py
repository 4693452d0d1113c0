"""
Connectors bind a client library to a test database.

SQLAlchemyConnector lives in pgtestkit.connectors.sqlalchemy_connector and is
not imported here so SQLAlchemy stays optional.
"""

from .asyncpg_connector import AsyncpgConnector
from .base import ClientT, Connector

__all__ = ['AsyncpgConnector', 'ClientT', 'Connector']
