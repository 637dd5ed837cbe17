"""Async SQLAlchemy database adapter.

Provides ``AsyncSQLAdapter``, an implementation of the ``DatabaseClient``
protocol over any SQLAlchemy ``AsyncEngine``, and ``SQLTransaction``, the
handle yielded by its ``transaction()`` and ``snapshot()`` blocks.
Dialect-specific adapters (``AsyncPostgresAdapter``,
``AsyncSQLiteAdapter``) only build the engine.

Usage:
    from sqlalchemy.ext.asyncio import create_async_engine
    from crm_backup.adapters.sql import AsyncSQLAdapter

    adapter = AsyncSQLAdapter(create_async_engine("sqlite+aiosqlite:///crm.db"))

    async with adapter.snapshot() as snap:
        ddl = await snap.table_ddl("schools")
        rows = await snap.select("schools", order_by="id")

    await adapter.close()
"""

from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import MetaData, Table, inspect, text
from sqlalchemy.engine import Connection
from sqlalchemy.ext.asyncio import AsyncConnection, AsyncEngine
from sqlalchemy.schema import CreateIndex, CreateTable


def _serialize_value(value: Any) -> Any:
    """Convert UUID to string and datetime to ISO format."""
    if isinstance(value, UUID):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def _serialize_row(row: dict) -> dict:
    return {k: _serialize_value(v) for k, v in row.items()}


def _where(filters: dict[str, Any] | None, prefix: str = "p") -> tuple[str, dict[str, Any]]:
    """Build a ``WHERE`` clause with named parameters."""
    params: dict[str, Any] = {}
    if not filters:
        return "", params
    conditions: list[str] = []
    for i, (k, v) in enumerate(filters.items()):
        param_name = f"{prefix}_{i}"
        conditions.append(f"{k} = :{param_name}")
        params[param_name] = v
    return " WHERE " + " AND ".join(conditions), params


def _postgres_table_objects(
    sync_conn: Connection, table: str
) -> tuple[list[tuple[str, str]], list[tuple[str, str]]]:
    """Exclusion constraints and user triggers of a table, as ``(name, definition)``."""
    rel = {"rel": sync_conn.dialect.identifier_preparer.quote(table)}
    exclusions = sync_conn.execute(
        text(
            "SELECT conname, pg_get_constraintdef(oid) FROM pg_constraint "
            "WHERE conrelid = CAST(:rel AS regclass) AND contype = 'x' ORDER BY conname"
        ),
        rel,
    ).all()
    triggers = sync_conn.execute(
        text(
            "SELECT tgname, pg_get_triggerdef(oid) FROM pg_trigger "
            "WHERE tgrelid = CAST(:rel AS regclass) AND NOT tgisinternal ORDER BY tgname"
        ),
        rel,
    ).all()
    return [tuple(r) for r in exclusions], [tuple(r) for r in triggers]


# Table-bound objects that Table reflection does not cover, per dialect
_TABLE_OBJECTS: dict[str, Callable[[Connection, str], tuple[list, list]]] = {
    "postgresql": _postgres_table_objects,
}


def table_object_ddl(
    quoted_table: str,
    exclusions: list[tuple[str, str]],
    triggers: list[tuple[str, str]],
    quote: Callable[[str], str],
) -> list[str]:
    """Re-runnable statements for a table's exclusion constraints and triggers.

    Each object is dropped if present and created again, so replay works on
    both a freshly created table and one that already has the objects.
    """
    statements: list[str] = []
    for name, definition in exclusions:
        statements.append(f"ALTER TABLE {quoted_table} DROP CONSTRAINT IF EXISTS {quote(name)}")
        statements.append(f"ALTER TABLE {quoted_table} ADD CONSTRAINT {quote(name)} {definition}")
    for name, definition in triggers:
        statements.append(f"DROP TRIGGER IF EXISTS {quote(name)} ON {quoted_table}")
        statements.append(definition)
    return statements


def _reflect_ddl(sync_conn: Connection, table: str) -> list[str]:
    meta = MetaData()
    reflected = Table(table, meta, autoload_with=sync_conn)
    dialect = sync_conn.dialect
    quote = dialect.identifier_preparer.quote

    exclusions: list[tuple[str, str]] = []
    triggers: list[tuple[str, str]] = []
    collect = _TABLE_OBJECTS.get(dialect.name)
    if collect is not None:
        exclusions, triggers = collect(sync_conn, table)
    # the index backing an exclusion constraint comes back with the constraint
    constraint_names = {name for name, _ in exclusions}

    statements = [
        str(CreateTable(reflected, if_not_exists=True).compile(dialect=dialect)).strip()
    ]
    for index in sorted(reflected.indexes, key=lambda ix: ix.name or ""):
        if index.name in constraint_names:
            continue
        statements.append(
            str(CreateIndex(index, if_not_exists=True).compile(dialect=dialect)).strip()
        )
    statements.extend(table_object_ddl(quote(table), exclusions, triggers, quote))
    return statements


def _referencing_tables(sync_conn: Connection, table: str) -> list[str]:
    inspector = inspect(sync_conn)
    referrers: list[str] = []
    for name in inspector.get_table_names():
        if name == table:
            continue
        for fk in inspector.get_foreign_keys(name):
            if fk.get("referred_table") == table:
                referrers.append(name)
                break
    return referrers


class SQLTransaction:
    """Statements executed on one ``AsyncConnection`` inside one transaction."""

    def __init__(self, conn: AsyncConnection) -> None:
        self._conn = conn

    def _quote(self, name: str) -> str:
        return self._conn.dialect.identifier_preparer.quote(name)

    async def execute(self, sql: str, params: dict | None = None) -> None:
        await self._conn.execute(text(sql), params or {})

    async def exec_raw(self, sql: str) -> None:
        # exec_driver_sql bypasses text() so ':name' inside literals is not
        # taken for a bind parameter
        await self._conn.exec_driver_sql(sql)

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        where_clause, params = _where(filters)
        order_clause = f" ORDER BY {order_by}" if order_by else ""
        query = text(
            f"SELECT {columns} FROM {self._quote(table)}{where_clause}{order_clause}"
        )
        result = await self._conn.execute(query, params)
        col_names = list(result.keys())
        return [_serialize_row(dict(zip(col_names, row))) for row in result.fetchall()]

    async def table_exists(self, table: str) -> bool:
        return await self._conn.run_sync(lambda c: inspect(c).has_table(table))

    async def table_ddl(self, table: str) -> list[str]:
        return await self._conn.run_sync(_reflect_ddl, table)

    async def referencing_tables(self, table: str) -> list[str]:
        return await self._conn.run_sync(_referencing_tables, table)


class AsyncSQLAdapter:
    """SQLAlchemy async implementation of the ``DatabaseClient`` protocol.

    Args:
        engine: Configured ``AsyncEngine``.
    """

    # Isolation level for snapshot() transactions; None keeps the engine default.
    snapshot_isolation: str | None = None

    def __init__(self, engine: AsyncEngine) -> None:
        self._engine = engine

    @property
    def engine(self) -> AsyncEngine:
        return self._engine

    # ------------------------------------------------------------------
    # CRUD Methods
    # ------------------------------------------------------------------

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table using raw SQL."""
        async with self._engine.connect() as conn:
            return await SQLTransaction(conn).select(table, columns, filters, order_by)

    async def insert(self, table: str, data: dict) -> dict:
        """Insert row and return created row with all fields.

        Uses ``engine.begin()`` for automatic commit on success, rollback on
        error.
        """
        columns = list(data.keys())
        placeholders = [f":{col}" for col in columns]

        query = text(f"""
            INSERT INTO {table} ({", ".join(columns)})
            VALUES ({", ".join(placeholders)})
            RETURNING *
        """)

        async with self._engine.begin() as conn:
            result = await conn.execute(query, data)
            row = result.fetchone()
            col_names = list(result.keys())
            return _serialize_row(dict(zip(col_names, row)))

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete rows from table.

        Uses ``engine.begin()`` for automatic commit on success, rollback on
        error.
        """
        where_clause, params = _where(filters)
        if not where_clause:
            raise ValueError("delete() requires at least one filter")
        async with self._engine.begin() as conn:
            await conn.execute(text(f"DELETE FROM {table}{where_clause}"), params)

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a raw SQL statement in its own transaction."""
        async with self._engine.begin() as conn:
            await conn.execute(text(sql), params or {})

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[SQLTransaction]:
        """Read-write transaction: commit on normal exit, rollback on error."""
        async with self._engine.begin() as conn:
            yield SQLTransaction(conn)

    @asynccontextmanager
    async def snapshot(self) -> AsyncIterator[SQLTransaction]:
        """Transaction whose reads all see one committed point in time."""
        async with self._engine.connect() as conn:
            if self.snapshot_isolation:
                conn = await conn.execution_options(isolation_level=self.snapshot_isolation)
            async with conn.begin():
                yield SQLTransaction(conn)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the async engine and dispose of the connection pool."""
        if self._engine:
            await self._engine.dispose()
