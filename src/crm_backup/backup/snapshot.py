"""Point-in-time backups of the CRM tables.

The snapshotter reads every selected table inside one snapshot
transaction, renders structure and rows into a single artifact, writes
it atomically, and records it in the catalog.

Usage:
    from crm_backup.backup.snapshot import Snapshotter

    snapshotter = Snapshotter(adapter, CRM_TABLE_GRAPH, catalog)
    metadata = await snapshotter.create_backup(BackupOptions(include_data=True))
"""

import logging
import os
import uuid
from datetime import datetime, timezone
from pathlib import Path

from crm_backup.adapters.base import DatabaseClient
from crm_backup.backup.catalog import BackupCatalog
from crm_backup.backup.codec import ArtifactSection, encode_insert, render_artifact
from crm_backup.backup.models import BackupMetadata, BackupOptions
from crm_backup.backup.verifier import checksum_bytes, verify_backup
from crm_backup.errors import BackupIOError, ValidationError
from crm_backup.schema.models import TableGraph

logger = logging.getLogger(__name__)


def new_backup_id(now: datetime | None = None) -> str:
    """Timestamp plus random suffix, unique across concurrent backups."""
    now = now or datetime.now(timezone.utc)
    return f"{now:%Y-%m-%dT%H-%M-%S}_{uuid.uuid4().hex[:8]}"


def artifact_filename(backup_id: str) -> str:
    return f"backup_{backup_id}.sql"


class Snapshotter:
    """Produces backup artifacts and their catalog entries."""

    def __init__(
        self,
        adapter: DatabaseClient,
        graph: TableGraph,
        catalog: BackupCatalog,
        backup_dir: str | Path,
    ) -> None:
        self._adapter = adapter
        self._graph = graph
        self._catalog = catalog
        self.backup_dir = Path(backup_dir)

    def select_tables(self, options: BackupOptions) -> list[str]:
        """Tables a backup with ``options`` covers, in forward order.

        Raises:
            ValidationError: On unknown table names or an empty selection.
        """
        if options.include_tables is not None:
            self._graph.validate_names(options.include_tables)
        if options.exclude_tables:
            self._graph.validate_names(options.exclude_tables)

        selected = (
            set(options.include_tables)
            if options.include_tables is not None
            else set(self._graph.names)
        )
        selected -= set(options.exclude_tables or ())
        if not selected:
            raise ValidationError("Backup selection is empty")
        return self._graph.forward_order(selected)

    async def _read_sections(self, tables: list[str], include_data: bool) -> list[ArtifactSection]:
        sections: list[ArtifactSection] = []
        async with self._adapter.snapshot() as snap:
            for table in tables:
                if not await snap.table_exists(table):
                    raise ValidationError(f"Table does not exist: {table}", table=table)

                section = ArtifactSection(table=table)
                section.statements.extend(await snap.table_ddl(table))

                if include_data:
                    pk = self._graph.get(table).pk
                    rows = await snap.select(table, "*", order_by=pk)
                    section.statements.extend(encode_insert(table, row) for row in rows)
                    logger.debug("Read %d rows from %s", len(rows), table)

                sections.append(section)
        return sections

    def _write_artifact(self, path: Path, data: bytes, backup_id: str) -> None:
        partial = path.with_name(path.name + ".partial")
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            with open(partial, "xb") as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(partial, path)
        except OSError as e:
            partial.unlink(missing_ok=True)
            raise BackupIOError(
                f"Failed to write artifact {path}: {e}", backup_id=backup_id
            ) from e

    async def create_backup(self, options: BackupOptions | None = None) -> BackupMetadata:
        """Snapshot the selected tables into a new artifact.

        Args:
            options: What to include.  Defaults to every table with data.

        Returns:
            The catalog entry of the new backup.

        Raises:
            ValidationError: Unknown or missing tables, or empty selection.
            BackupIOError: Artifact could not be written; no entry is added.
        """
        options = options or BackupOptions()
        tables = self.select_tables(options)

        created_at = datetime.now(timezone.utc)
        backup_id = new_backup_id(created_at)
        logger.info("Creating backup %s of %s", backup_id, ", ".join(tables))

        sections = await self._read_sections(tables, options.include_data)
        data = render_artifact(backup_id, created_at, options.include_data, sections).encode("utf-8")

        filename = artifact_filename(backup_id)
        path = self.backup_dir / filename
        self._write_artifact(path, data, backup_id)

        metadata = BackupMetadata(
            id=backup_id,
            filename=filename,
            size=len(data),
            checksum=checksum_bytes(data),
            tables=tables,
            include_data=options.include_data,
            created_at=created_at,
        )
        try:
            metadata = metadata.model_copy(
                update={"is_verified": verify_backup(path, metadata)}
            )
            await self._catalog.append(metadata)
        except Exception:
            path.unlink(missing_ok=True)
            raise

        logger.info(
            "Backup %s complete: %d tables, %d bytes", backup_id, len(tables), metadata.size
        )
        return metadata
