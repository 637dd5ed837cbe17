"""Shared fixtures: a file-backed SQLite CRM datastore and a backup engine over it."""

from pathlib import Path

import pytest

from crm_backup.adapters.sqlite import AsyncSQLiteAdapter
from crm_backup.backup.engine import BackupEngine
from crm_backup.schema.crm import CRM_TABLE_GRAPH

CRM_DDL = [
    """CREATE TABLE schools (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        city TEXT,
        enrollment INTEGER
    )""",
    """CREATE TABLE contacts (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
        name TEXT NOT NULL,
        email TEXT,
        is_primary BOOLEAN DEFAULT 0
    )""",
    "CREATE INDEX idx_contacts_school ON contacts (school_id)",
    """CREATE TABLE interactions (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
        contact_id TEXT REFERENCES contacts(id) ON DELETE SET NULL,
        kind TEXT NOT NULL,
        notes TEXT
    )""",
    """CREATE TABLE partnerships (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
        status TEXT NOT NULL
    )""",
    """CREATE TABLE preferences (
        id TEXT PRIMARY KEY,
        school_id TEXT NOT NULL REFERENCES schools(id) ON DELETE CASCADE,
        pref_key TEXT NOT NULL,
        pref_value TEXT
    )""",
]

# Values chosen to break naive SQL rendering
TRICKY_NAME = "O'Brien; DROP TABLE schools; --"
TRICKY_NOTES = "line one\nline two -- not a comment\n'quoted' :param $1 ;"


async def create_crm_tables(adapter: AsyncSQLiteAdapter) -> None:
    async with adapter.transaction() as tx:
        for statement in CRM_DDL:
            await tx.execute(statement)


async def seed_crm(adapter: AsyncSQLiteAdapter, schools: int = 3, contacts: int = 5) -> None:
    """Insert ``schools`` schools and ``contacts`` contacts spread across them."""
    async with adapter.transaction() as tx:
        for i in range(1, schools + 1):
            await tx.execute(
                "INSERT INTO schools (id, name, city, enrollment) VALUES (:id, :name, :city, :n)",
                {
                    "id": f"s{i}",
                    "name": TRICKY_NAME if i == 1 else f"School {i}",
                    "city": None if i == 2 else "Springfield",
                    "n": 100 * i,
                },
            )
        for i in range(1, contacts + 1):
            await tx.execute(
                "INSERT INTO contacts (id, school_id, name, email, is_primary) "
                "VALUES (:id, :school_id, :name, :email, :is_primary)",
                {
                    "id": f"c{i}",
                    "school_id": f"s{(i - 1) % schools + 1}",
                    "name": f"Contact {i}",
                    "email": f"c{i}@example.org",
                    "is_primary": i == 1,
                },
            )
        await tx.execute(
            "INSERT INTO interactions (id, school_id, contact_id, kind, notes) "
            "VALUES ('i1', 's1', 'c1', 'visit', :notes)",
            {"notes": TRICKY_NOTES},
        )
        await tx.execute(
            "INSERT INTO partnerships (id, school_id, status) VALUES ('p1', 's2', 'active')"
        )
        await tx.execute(
            "INSERT INTO preferences (id, school_id, pref_key, pref_value) "
            "VALUES ('f1', 's3', 'newsletter', '')"
        )


async def dump_tables(adapter: AsyncSQLiteAdapter) -> dict[str, list[dict]]:
    """Every CRM table's rows ordered by id; missing tables map to None."""
    result: dict[str, list[dict] | None] = {}
    async with adapter.snapshot() as snap:
        for table in CRM_TABLE_GRAPH.names:
            if await snap.table_exists(table):
                result[table] = await snap.select(table, "*", order_by="id")
            else:
                result[table] = None
    return result


async def clear_tables(adapter: AsyncSQLiteAdapter) -> None:
    async with adapter.transaction() as tx:
        for table in CRM_TABLE_GRAPH.reverse_order():
            await tx.execute(f"DELETE FROM {table}")


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "crm.db"


@pytest.fixture
async def adapter(db_path: Path):
    """SQLite adapter over a CRM schema with no rows."""
    adapter = AsyncSQLiteAdapter(f"sqlite:///{db_path}")
    await create_crm_tables(adapter)
    yield adapter
    await adapter.close()


@pytest.fixture
async def seeded(adapter):
    """Adapter with 3 schools, 5 contacts and one row in each other table."""
    await seed_crm(adapter)
    return adapter


@pytest.fixture
def backup_dir(tmp_path: Path) -> Path:
    return tmp_path / "backups"


@pytest.fixture
def engine(seeded, backup_dir: Path) -> BackupEngine:
    return BackupEngine(seeded, CRM_TABLE_GRAPH, backup_dir)
