"""
SQL used for database administration and resets.

CREATE/DROP/TRUNCATE cannot take bind parameters for identifiers, so every
interpolated name goes through quote_identifier().
"""

from typing import Iterable, List

DATABASE_EXISTS_QUERY = "SELECT EXISTS(SELECT 1 FROM pg_database WHERE datname = $1)"

DATABASE_ROW_QUERY = "SELECT 1 FROM pg_database WHERE datname = $1"

TERMINATE_BACKENDS_QUERY = """
    SELECT pg_terminate_backend(pid)
    FROM pg_stat_activity
    WHERE datname = $1
    AND pid <> pg_backend_pid()
"""

LIST_TABLES_QUERY = "SELECT tablename FROM pg_tables WHERE schemaname = 'public' ORDER BY tablename"

DEFER_CONSTRAINTS = "SET CONSTRAINTS ALL DEFERRED"
IMMEDIATE_CONSTRAINTS = "SET CONSTRAINTS ALL IMMEDIATE"

# Migration bookkeeping survives resets
PRESERVED_TABLES = frozenset({"schema_migrations", "alembic_version"})


def quote_identifier(name: str) -> str:
    """Quote a PostgreSQL identifier, doubling any embedded double quote."""
    return '"' + name.replace('"', '""') + '"'


def create_database_statement(name: str) -> str:
    return f"CREATE DATABASE {quote_identifier(name)}"


def drop_database_statement(name: str) -> str:
    return f"DROP DATABASE IF EXISTS {quote_identifier(name)}"


def truncate_statement(table: str, schema: str = "public") -> str:
    """TRUNCATE one table, restarting its identity sequences."""
    return (
        f"TRUNCATE TABLE {quote_identifier(schema)}.{quote_identifier(table)} "
        f"RESTART IDENTITY CASCADE"
    )


def reset_statements(tables: Iterable[str]) -> List[str]:
    """
    Statements that empty every user table while keeping the schema.

    The truncations are bracketed by SET CONSTRAINTS so deferrable foreign
    keys do not care about the order tables are cleared in. Run them inside a
    single transaction.
    """
    statements = [DEFER_CONSTRAINTS]
    statements.extend(
        truncate_statement(table) for table in tables if table not in PRESERVED_TABLES
    )
    statements.append(IMMEDIATE_CONSTRAINTS)
    return statements
