"""Backup engine: the single entry point used by callers.

``BackupEngine`` wires the snapshotter, restorer, verifier and catalog
together over one adapter, one table graph, and one backup directory.

Usage:
    from crm_backup.backup import BackupEngine, BackupOptions
    from crm_backup.schema import CRM_TABLE_GRAPH

    engine = BackupEngine(adapter, CRM_TABLE_GRAPH, "./backups")

    metadata = await engine.create_backup(BackupOptions(include_data=True))
    result = await engine.restore_from_backup(metadata.id, drop_existing=True)

    for entry in await engine.get_restorable_backups():
        print(entry.id, entry.created_at)

    deleted = await engine.cleanup_old_backups(retention_days=30)
"""

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone
from pathlib import Path

from crm_backup.adapters.base import DatabaseClient
from crm_backup.backup.catalog import BackupCatalog, FileCatalog
from crm_backup.backup.models import (
    BackupMetadata,
    BackupOptions,
    RestoreCheck,
    RestorePreview,
    RestoreResult,
)
from crm_backup.backup.restore import Restorer, load_artifact
from crm_backup.backup.snapshot import Snapshotter
from crm_backup.backup.verifier import validate_artifact, verify_backup
from crm_backup.errors import BackupError, BackupIOError
from crm_backup.schema.models import TableGraph

logger = logging.getLogger(__name__)


class BackupEngine:
    """Backup, restore, and catalog maintenance for one datastore.

    Args:
        adapter: Client for the datastore being backed up.
        graph: FK dependency graph of the covered tables.
        backup_dir: Directory holding artifacts (created on first backup).
        catalog: Catalog to record backups in.  Defaults to a
            ``FileCatalog`` in ``backup_dir``.
    """

    def __init__(
        self,
        adapter: DatabaseClient,
        graph: TableGraph,
        backup_dir: str | Path,
        catalog: BackupCatalog | None = None,
    ) -> None:
        self.adapter = adapter
        self.graph = graph
        self.backup_dir = Path(backup_dir)
        self.catalog: BackupCatalog = catalog or FileCatalog(self.backup_dir)
        self.snapshotter = Snapshotter(adapter, graph, self.catalog, self.backup_dir)
        self.restorer = Restorer(adapter, graph, self.catalog, self.snapshotter)

    # ------------------------------------------------------------------
    # Backup and restore
    # ------------------------------------------------------------------

    async def create_backup(self, options: BackupOptions | None = None) -> BackupMetadata:
        return await self.snapshotter.create_backup(options)

    async def restore_from_backup(
        self,
        backup_id: str,
        drop_existing: bool = False,
        validate_before_restore: bool = True,
        create_backup_before_restore: bool = False,
    ) -> RestoreResult:
        return await self.restorer.restore_from_backup(
            backup_id,
            drop_existing=drop_existing,
            validate_before_restore=validate_before_restore,
            create_backup_before_restore=create_backup_before_restore,
        )

    async def restore_selective_tables(
        self,
        backup_id: str,
        tables: Iterable[str],
        validate_before_restore: bool = True,
        include_parents: bool = False,
        exclude_tables: Iterable[str] | None = None,
    ) -> RestoreResult:
        return await self.restorer.restore_selective_tables(
            backup_id,
            tables,
            validate_before_restore=validate_before_restore,
            include_parents=include_parents,
            exclude_tables=exclude_tables,
        )

    # ------------------------------------------------------------------
    # Catalog
    # ------------------------------------------------------------------

    async def list_backups(self) -> list[BackupMetadata]:
        return await self.catalog.list()

    async def get_backup(self, backup_id: str) -> BackupMetadata:
        return await self.catalog.get(backup_id)

    async def delete_backup(self, backup_id: str) -> BackupMetadata:
        metadata = await self.catalog.delete(backup_id)
        logger.info("Deleted backup %s", backup_id)
        return metadata

    def artifact_path(self, metadata: BackupMetadata) -> Path:
        return self.catalog.artifact_path(metadata)

    async def verify_backup(self, backup_id: str) -> bool:
        """Fresh size/checksum verification of one backup."""
        metadata = await self.catalog.get(backup_id)
        return verify_backup(self.catalog.artifact_path(metadata), metadata)

    async def validate_backup(self, backup_id: str) -> dict:
        """Integrity and structure report (``valid``, ``errors``, ``warnings``)."""
        metadata = await self.catalog.get(backup_id)
        return validate_artifact(self.catalog.artifact_path(metadata), metadata)

    async def cleanup_old_backups(self, retention_days: int = 30) -> list[str]:
        """Delete backups older than ``retention_days``.

        Each deletion is two-phase (artifact, then entry).  A backup whose
        artifact cannot be removed is kept and logged; the others are still
        processed.

        Returns:
            Ids of the deleted backups.
        """
        cutoff = datetime.now(timezone.utc) - timedelta(days=retention_days)
        deleted: list[str] = []
        for metadata in await self.catalog.list():
            if metadata.created_at >= cutoff:
                continue
            try:
                await self.catalog.delete(metadata.id)
            except BackupError as e:
                logger.warning("Could not delete old backup %s: %s", metadata.id, e)
                continue
            deleted.append(metadata.id)

        if deleted:
            logger.info("Cleaned up %d backup(s) older than %d days", len(deleted), retention_days)
        return deleted

    # ------------------------------------------------------------------
    # Recovery helpers
    # ------------------------------------------------------------------

    async def get_restorable_backups(self) -> list[BackupMetadata]:
        """Backups whose artifact currently verifies, newest first."""
        restorable: list[BackupMetadata] = []
        for metadata in await self.catalog.list():
            try:
                if verify_backup(self.catalog.artifact_path(metadata), metadata):
                    restorable.append(metadata)
            except BackupIOError as e:
                logger.warning("Skipping unreadable backup %s: %s", metadata.id, e)
        return sorted(restorable, key=lambda m: m.created_at, reverse=True)

    async def _live_tables(self) -> list[str]:
        async with self.adapter.snapshot() as snap:
            return [t for t in self.graph.names if await snap.table_exists(t)]

    async def preview_restore(self, backup_id: str) -> RestorePreview:
        """Describe what restoring a backup would touch.

        ``conflicts`` names the backup tables that already exist live.
        """
        metadata = await self.catalog.get(backup_id)
        current = await self._live_tables()
        conflicts = [
            f"Table '{t}' exists and will be affected by the restore"
            for t in metadata.tables
            if t in current
        ]
        return RestorePreview(
            backup=metadata,
            current_tables=current,
            backup_tables=list(metadata.tables),
            conflicts=conflicts,
        )

    async def test_restore(self, backup_id: str) -> RestoreCheck:
        """Check whether a backup could be restored, without touching data."""
        issues: list[str] = []
        try:
            metadata = await self.catalog.get(backup_id)
        except BackupError as e:
            return RestoreCheck(can_restore=False, issues=[str(e)])

        path = self.catalog.artifact_path(metadata)
        try:
            if not verify_backup(path, metadata):
                issues.append("Artifact failed size/checksum verification")
            else:
                artifact = load_artifact(path, metadata)
                self.graph.validate_names(artifact.tables)
                if not any(section.statements for section in artifact.sections):
                    issues.append("Artifact contains no statements")
        except BackupError as e:
            issues.append(str(e))

        return RestoreCheck(can_restore=not issues, issues=issues)
