"""Async SQLite database adapter.

``AsyncSQLiteAdapter`` runs on SQLAlchemy's ``aiosqlite`` dialect.  The
driver's own transaction handling is switched off and SQLAlchemy emits
``BEGIN`` itself, which makes DDL (``DROP TABLE``, ``CREATE TABLE``)
transactional so a failed restore rolls back completely.  Foreign keys
are enforced on every connection.

Usage:
    from crm_backup.adapters.sqlite import AsyncSQLiteAdapter

    adapter = AsyncSQLiteAdapter("sqlite:///crm.db")
    async with adapter.transaction() as tx:
        await tx.exec_raw('DROP TABLE IF EXISTS "contacts"')
    await adapter.close()
"""

from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from crm_backup.adapters.sql import AsyncSQLAdapter


def normalize_sqlite_url(database_url: str) -> str:
    """Rewrite ``sqlite://`` URLs to ``sqlite+aiosqlite://``."""
    if database_url.startswith("sqlite://"):
        return "sqlite+aiosqlite://" + database_url[len("sqlite://"):]
    return database_url


def _install_transaction_hooks(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")


class AsyncSQLiteAdapter(AsyncSQLAdapter):
    """Async SQLite implementation of the ``DatabaseClient`` protocol.

    Args:
        database_url: ``sqlite:///path`` or ``sqlite+aiosqlite:///path``.
        **engine_kwargs: Forwarded to ``create_async_engine``.
    """

    def __init__(self, database_url: str, **engine_kwargs: Any) -> None:
        engine = create_async_engine(normalize_sqlite_url(database_url), **engine_kwargs)
        _install_transaction_hooks(engine)
        super().__init__(engine)
