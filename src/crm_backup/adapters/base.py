"""Database client protocol definition.

Defines the ``DatabaseClient`` Protocol that all adapters must implement,
and the ``Transaction`` Protocol for the handle yielded by
``DatabaseClient.transaction()`` and ``DatabaseClient.snapshot()``.
All methods are ``async def`` -- the library is async-first.

Usage:
    from crm_backup.adapters.base import DatabaseClient

    async def do_work(client: DatabaseClient) -> None:
        rows = await client.select("schools", "id, name")

        async with client.transaction() as tx:
            await tx.exec_raw('DROP TABLE IF EXISTS "contacts"')
            await tx.exec_raw("INSERT INTO ...")   # rolled back together on error

        await client.close()
"""

from contextlib import AbstractAsyncContextManager
from typing import Any, Protocol


class Transaction(Protocol):
    """Handle for statements that share one datastore transaction.

    Leaving the ``async with`` block normally commits; leaving it with an
    exception rolls every statement back.
    """

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a statement with optional named parameters."""
        ...

    async def exec_raw(self, sql: str) -> None:
        """Execute a complete SQL statement verbatim, without bind parameters.

        Used to replay artifact statements, whose literals may contain
        text that looks like a parameter marker.
        """
        ...

    async def select(
        self,
        table: str,
        columns: str = "*",
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table inside the transaction."""
        ...

    async def table_exists(self, table: str) -> bool:
        ...

    async def table_ddl(self, table: str) -> list[str]:
        """Reflect the statements that re-create a live table.

        ``CREATE TABLE`` and ``CREATE INDEX`` carry ``IF NOT EXISTS``; on
        PostgreSQL, exclusion constraints and triggers follow as drop-and-add
        pairs.  Statements have no terminator.
        """
        ...

    async def referencing_tables(self, table: str) -> list[str]:
        """Live tables that hold a foreign key to ``table``."""
        ...


class DatabaseClient(Protocol):
    """Database client interface that all adapters must implement.

    This Protocol ensures type safety and consistent behavior across
    different database backends (PostgreSQL, SQLite).

    All methods are async -- callers must ``await`` every operation.
    """

    async def select(
        self,
        table: str,
        columns: str,
        filters: dict[str, Any] | None = None,
        order_by: str | None = None,
    ) -> list[dict]:
        """Select rows from table.

        Args:
            table: Table name.
            columns: Comma-separated column names (e.g., ``"id, name, city"``).
            filters: Optional dict of field=value filters (all must match via AND).
            order_by: Optional column name to sort by.

        Returns:
            List of dicts, one per row.  Empty list if no matches.

        Example:
            rows = await client.select(
                "contacts",
                "id, name, email",
                filters={"school_id": "abc-123"},
                order_by="name",
            )
        """
        ...

    async def insert(self, table: str, data: dict) -> dict:
        """Insert row into table and return the created row.

        Raises:
            Exception: If duplicate key or constraint violation.
        """
        ...

    async def delete(self, table: str, filters: dict[str, Any]) -> None:
        """Delete rows from table.

        Args:
            table: Table name.
            filters: Dict of field=value filters (all must match via AND).
        """
        ...

    async def execute(self, sql: str, params: dict | None = None) -> None:
        """Execute a raw SQL statement (DDL or other non-query operations).

        Args:
            sql: Raw SQL statement to execute.
            params: Optional dict of named parameters for the SQL statement.

        Example:
            await client.execute(
                "CREATE INDEX idx_contacts_school ON contacts (school_id)"
            )
        """
        ...

    def transaction(self) -> AbstractAsyncContextManager[Transaction]:
        """Open a read-write transaction.

        Commits when the block exits normally, rolls back on exception.
        """
        ...

    def snapshot(self) -> AbstractAsyncContextManager[Transaction]:
        """Open a transaction with a consistent point-in-time view.

        Every read inside the block sees the same committed state.
        """
        ...

    async def close(self) -> None:
        """Close database connection and clean up resources."""
        ...
