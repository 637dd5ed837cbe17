"""Database adapters package.

Provides the ``DatabaseClient`` and ``Transaction`` Protocols and the
async SQLAlchemy adapters for PostgreSQL and SQLite.

``AsyncSQLiteAdapter`` needs the ``aiosqlite`` driver (``sqlite`` extra)
only when an engine is actually created.

Usage:
    from crm_backup.adapters import DatabaseClient, AsyncPostgresAdapter
    from crm_backup.adapters import AsyncSQLiteAdapter
"""

from crm_backup.adapters.base import DatabaseClient, Transaction
from crm_backup.adapters.postgres import AsyncPostgresAdapter
from crm_backup.adapters.sql import AsyncSQLAdapter, SQLTransaction
from crm_backup.adapters.sqlite import AsyncSQLiteAdapter

__all__ = [
    "DatabaseClient",
    "Transaction",
    "AsyncSQLAdapter",
    "SQLTransaction",
    "AsyncPostgresAdapter",
    "AsyncSQLiteAdapter",
]
