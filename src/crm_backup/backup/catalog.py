"""Backup catalog: the list of backups and where their artifacts live.

Two implementations share the ``BackupCatalog`` protocol:

- ``FileCatalog`` keeps an append-only ``catalog.jsonl`` log next to the
  artifacts.  Each line is an ``add`` record (full metadata) or a
  ``delete`` tombstone; the current catalog is the replay of the log.
- ``DatabaseCatalog`` keeps one row per backup in a ``backup_catalog``
  table reached through a ``DatabaseClient``.

Deletion is two-phase in both: the artifact file is removed first and the
entry only afterwards, so a failed file removal never leaves an entry
pointing at nothing, and never leaves an unlisted artifact behind.

Usage:
    from crm_backup.backup.catalog import FileCatalog

    catalog = FileCatalog("./backups")
    await catalog.append(metadata)
    entries = await catalog.list()          # oldest first
    await catalog.delete(metadata.id)
"""

import asyncio
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path
from typing import Protocol

from crm_backup.adapters.base import DatabaseClient
from crm_backup.backup.models import BackupMetadata
from crm_backup.errors import BackupIOError, BackupNotFoundError, ValidationError

logger = logging.getLogger(__name__)

CATALOG_FILENAME = "catalog.jsonl"
CATALOG_TABLE = "backup_catalog"


class BackupCatalog(Protocol):
    """Persistent record of backups."""

    async def list(self) -> list[BackupMetadata]:
        """All entries in creation order, oldest first."""
        ...

    async def get(self, backup_id: str) -> BackupMetadata:
        """Look up one entry.

        Raises:
            BackupNotFoundError: If the id is not in the catalog.
        """
        ...

    async def append(self, metadata: BackupMetadata) -> None:
        ...

    async def delete(self, backup_id: str) -> BackupMetadata:
        """Remove the artifact, then the entry.

        Raises:
            BackupNotFoundError: If the id is not in the catalog.
            BackupIOError: If the artifact could not be removed; the entry
                is kept.
        """
        ...

    def artifact_path(self, metadata: BackupMetadata) -> Path:
        ...


def _remove_artifact(path: Path, backup_id: str) -> None:
    try:
        path.unlink()
    except FileNotFoundError:
        logger.warning("Backup %s: artifact %s already missing, removing entry", backup_id, path)
    except OSError as e:
        raise BackupIOError(
            f"Failed to delete artifact {path}: {e}", backup_id=backup_id
        ) from e


class FileCatalog:
    """Catalog stored as an append-only JSON-lines log.

    A ``threading.Lock`` guards every read-modify step, so one instance can
    be shared by concurrent backups (and by scheduler threads).  Log I/O
    runs in a worker thread to keep the event loop free.
    """

    def __init__(self, backup_dir: str | Path) -> None:
        self.backup_dir = Path(backup_dir)
        self.path = self.backup_dir / CATALOG_FILENAME
        self._lock = threading.Lock()

    def artifact_path(self, metadata: BackupMetadata) -> Path:
        return self.backup_dir / Path(metadata.filename).name

    # ------------------------------------------------------------------
    # Log handling
    # ------------------------------------------------------------------

    def _load(self) -> dict[str, BackupMetadata]:
        entries: dict[str, BackupMetadata] = {}
        if not self.path.exists():
            return entries

        try:
            with open(self.path, encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            raise BackupIOError(f"Failed to read catalog {self.path}: {e}") from e

        for lineno, line in enumerate(lines, start=1):
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
                op = record["op"]
                if op == "add":
                    metadata = BackupMetadata.model_validate(record["entry"])
                    entries[metadata.id] = metadata
                elif op == "delete":
                    entries.pop(record["id"], None)
                else:
                    raise ValueError(f"unknown op '{op}'")
            except (ValueError, KeyError, TypeError) as e:
                raise BackupIOError(
                    f"Unreadable catalog line {lineno} in {self.path}: {e}"
                ) from e
        return entries

    def _write_record(self, record: dict) -> None:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(json.dumps(record) + "\n")
                f.flush()
                os.fsync(f.fileno())
        except OSError as e:
            raise BackupIOError(f"Failed to write catalog {self.path}: {e}") from e

    def _load_locked(self) -> dict[str, BackupMetadata]:
        with self._lock:
            return self._load()

    def _append_locked(self, metadata: BackupMetadata) -> None:
        with self._lock:
            if metadata.id in self._load():
                raise ValidationError(
                    f"Backup id already in catalog: {metadata.id}", backup_id=metadata.id
                )
            self._write_record({"op": "add", "entry": metadata.model_dump(mode="json")})

    def _delete_locked(self, backup_id: str) -> BackupMetadata:
        with self._lock:
            entries = self._load()
            if backup_id not in entries:
                raise BackupNotFoundError(f"Backup not found: {backup_id}", backup_id=backup_id)
            metadata = entries[backup_id]
            _remove_artifact(self.artifact_path(metadata), backup_id)
            self._write_record({"op": "delete", "id": backup_id})
        return metadata

    # ------------------------------------------------------------------
    # Catalog operations
    # ------------------------------------------------------------------

    async def list(self) -> list[BackupMetadata]:
        entries = await asyncio.to_thread(self._load_locked)
        return sorted(entries.values(), key=lambda m: m.created_at)

    async def get(self, backup_id: str) -> BackupMetadata:
        entries = await asyncio.to_thread(self._load_locked)
        if backup_id not in entries:
            raise BackupNotFoundError(f"Backup not found: {backup_id}", backup_id=backup_id)
        return entries[backup_id]

    async def append(self, metadata: BackupMetadata) -> None:
        await asyncio.to_thread(self._append_locked, metadata)

    async def delete(self, backup_id: str) -> BackupMetadata:
        return await asyncio.to_thread(self._delete_locked, backup_id)


class DatabaseCatalog:
    """Catalog stored in a ``backup_catalog`` table.

    The table is created on first use.  Mutations are serialized by an
    ``asyncio.Lock`` held by the instance.

    Args:
        adapter: Client for the datastore holding the catalog table.
        backup_dir: Directory holding the artifact files.
    """

    def __init__(
        self,
        adapter: DatabaseClient,
        backup_dir: str | Path,
        table: str = CATALOG_TABLE,
    ) -> None:
        self._adapter = adapter
        self.backup_dir = Path(backup_dir)
        self.table = table
        self._lock = asyncio.Lock()
        self._init_lock = asyncio.Lock()
        self._ready = False

    def artifact_path(self, metadata: BackupMetadata) -> Path:
        return self.backup_dir / Path(metadata.filename).name

    async def _ensure_table(self) -> None:
        if self._ready:
            return
        async with self._init_lock:
            if not self._ready:
                await self._create_table()
                self._ready = True

    async def _create_table(self) -> None:
        await self._adapter.execute(f"""
            CREATE TABLE IF NOT EXISTS {self.table} (
                id TEXT PRIMARY KEY,
                filename TEXT NOT NULL,
                size BIGINT NOT NULL,
                checksum TEXT NOT NULL,
                tables TEXT NOT NULL,
                is_verified BOOLEAN NOT NULL,
                include_data BOOLEAN NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

    @staticmethod
    def _to_metadata(row: dict) -> BackupMetadata:
        try:
            return BackupMetadata(
                id=row["id"],
                filename=row["filename"],
                size=row["size"],
                checksum=row["checksum"],
                tables=json.loads(row["tables"]),
                is_verified=bool(row["is_verified"]),
                include_data=bool(row["include_data"]),
                created_at=datetime.fromisoformat(row["created_at"]),
            )
        except (ValueError, KeyError, TypeError) as e:
            raise BackupIOError(f"Unreadable catalog row {row.get('id')}: {e}") from e

    async def _get_optional(self, backup_id: str) -> BackupMetadata | None:
        rows = await self._adapter.select(self.table, "*", filters={"id": backup_id})
        return self._to_metadata(rows[0]) if rows else None

    async def list(self) -> list[BackupMetadata]:
        await self._ensure_table()
        rows = await self._adapter.select(self.table, "*")
        return sorted((self._to_metadata(r) for r in rows), key=lambda m: m.created_at)

    async def get(self, backup_id: str) -> BackupMetadata:
        await self._ensure_table()
        metadata = await self._get_optional(backup_id)
        if metadata is None:
            raise BackupNotFoundError(f"Backup not found: {backup_id}", backup_id=backup_id)
        return metadata

    async def append(self, metadata: BackupMetadata) -> None:
        await self._ensure_table()
        async with self._lock:
            if await self._get_optional(metadata.id) is not None:
                raise ValidationError(
                    f"Backup id already in catalog: {metadata.id}", backup_id=metadata.id
                )
            await self._adapter.insert(self.table, {
                "id": metadata.id,
                "filename": metadata.filename,
                "size": metadata.size,
                "checksum": metadata.checksum,
                "tables": json.dumps(metadata.tables),
                "is_verified": metadata.is_verified,
                "include_data": metadata.include_data,
                "created_at": metadata.created_at.isoformat(),
            })

    async def delete(self, backup_id: str) -> BackupMetadata:
        await self._ensure_table()
        async with self._lock:
            metadata = await self._get_optional(backup_id)
            if metadata is None:
                raise BackupNotFoundError(f"Backup not found: {backup_id}", backup_id=backup_id)
            _remove_artifact(self.artifact_path(metadata), backup_id)
            await self._adapter.delete(self.table, {"id": backup_id})
        return metadata
