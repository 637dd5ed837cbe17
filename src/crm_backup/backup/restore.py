"""Transactional restore of backup artifacts.

A restore runs through ``validating -> preparing -> applying ->
committed``.  Nothing is mutated before ``applying``, and everything in
``applying`` (drops and replay) happens in one datastore transaction, so
a failed restore leaves the datastore exactly as it was.

- ``validating``: fresh size/checksum verification against the catalog
  entry (``CorruptionError`` -> ``rejected``).
- ``preparing``: artifact parsed, tables resolved against the graph,
  dependency and primary-key checks run against the live datastore
  (``ValidationError`` / ``DependencyError`` -> ``rejected``).
- ``applying``: drops in reverse dependency order, then statements in
  forward order (``ApplyError`` -> ``rolled_back``).

Restores on one ``Restorer`` are mutually exclusive.

Usage:
    from crm_backup.backup.restore import Restorer

    restorer = Restorer(adapter, CRM_TABLE_GRAPH, catalog, snapshotter)
    result = await restorer.restore_from_backup(backup_id, drop_existing=True)
    result = await restorer.restore_selective_tables(backup_id, ["contacts"])
"""

import asyncio
import logging
import time
from collections.abc import Iterable
from pathlib import Path

from crm_backup.adapters.base import DatabaseClient, Transaction
from crm_backup.backup.catalog import BackupCatalog
from crm_backup.backup.codec import (
    Artifact,
    ArtifactFormatError,
    parse_artifact,
    parse_insert,
    quote_identifier,
)
from crm_backup.backup.models import BackupMetadata, BackupOptions, RestoreResult, RestoreState
from crm_backup.backup.snapshot import Snapshotter
from crm_backup.backup.verifier import verify_backup
from crm_backup.errors import (
    ApplyError,
    BackupError,
    BackupIOError,
    CorruptionError,
    DependencyError,
    ValidationError,
)
from crm_backup.schema.models import TableGraph

logger = logging.getLogger(__name__)


def load_artifact(path: Path, metadata: BackupMetadata) -> Artifact:
    """Read and parse an artifact, checking it against its catalog entry.

    Raises:
        BackupIOError: If the file cannot be read.
        CorruptionError: If the artifact is malformed, truncated, or its
            sections differ from the catalog's table list.
    """
    try:
        text = path.read_text(encoding="utf-8")
    except UnicodeDecodeError as e:
        raise CorruptionError(f"Artifact is not valid UTF-8: {e}", backup_id=metadata.id) from e
    except OSError as e:
        raise BackupIOError(f"Failed to read artifact {path}: {e}", backup_id=metadata.id) from e

    try:
        artifact = parse_artifact(text)
    except ArtifactFormatError as e:
        raise CorruptionError(f"Malformed artifact: {e}", backup_id=metadata.id) from e

    if not artifact.complete:
        raise CorruptionError("Artifact is truncated (no end marker)", backup_id=metadata.id)
    if artifact.tables != metadata.tables:
        raise CorruptionError(
            f"Artifact sections {artifact.tables} do not match catalog tables {metadata.tables}",
            backup_id=metadata.id,
        )
    return artifact


class Restorer:
    """Applies backup artifacts to the live datastore.

    Args:
        adapter: Client for the datastore being restored.
        graph: Table dependency graph.
        catalog: Catalog the backups are looked up in.
        snapshotter: Used for pre-restore safety backups.  Optional when
            ``create_backup_before_restore`` is never requested.
    """

    def __init__(
        self,
        adapter: DatabaseClient,
        graph: TableGraph,
        catalog: BackupCatalog,
        snapshotter: Snapshotter | None = None,
    ) -> None:
        self._adapter = adapter
        self._graph = graph
        self._catalog = catalog
        self._snapshotter = snapshotter
        self._lock = asyncio.Lock()
        self.state = RestoreState.IDLE

    @property
    def is_restoring(self) -> bool:
        return self._lock.locked()

    def _set_state(self, state: RestoreState) -> None:
        logger.debug("Restore state %s -> %s", self.state.value, state.value)
        self.state = state

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def restore_from_backup(
        self,
        backup_id: str,
        drop_existing: bool = False,
        validate_before_restore: bool = True,
        create_backup_before_restore: bool = False,
    ) -> RestoreResult:
        """Restore every table of a backup.

        Args:
            backup_id: Catalog id of the backup.
            drop_existing: Drop the backup's tables (children first) before
                replay instead of inserting into the existing tables.
            validate_before_restore: Verify size and checksum first.
            create_backup_before_restore: Take a safety backup of the live
                tables after validation and before any mutation.

        Raises:
            BackupNotFoundError: Unknown backup id.
            CorruptionError: Verification failed or artifact malformed.
            ValidationError: Unknown tables or primary-key collisions.
            DependencyError: Rows or tables would be left without parents.
            ApplyError: A statement failed; the transaction was rolled back.
        """
        metadata = await self._catalog.get(backup_id)
        async with self._lock:
            return await self._run(
                metadata,
                requested=None,
                drop_existing=drop_existing,
                validate=validate_before_restore,
                pre_backup=create_backup_before_restore,
            )

    async def restore_selective_tables(
        self,
        backup_id: str,
        tables: Iterable[str],
        validate_before_restore: bool = True,
        include_parents: bool = False,
        exclude_tables: Iterable[str] | None = None,
    ) -> RestoreResult:
        """Restore a subset of a backup's tables into the existing schema.

        A requested child whose parent is not requested is only restored if
        every parent row it references already exists.  With
        ``include_parents`` the parents are restored as well, unless one of
        them is in ``exclude_tables``.
        """
        requested = list(tables)
        if not requested:
            raise ValidationError("No tables requested", backup_id=backup_id)
        metadata = await self._catalog.get(backup_id)
        async with self._lock:
            return await self._run(
                metadata,
                requested=requested,
                drop_existing=False,
                validate=validate_before_restore,
                include_parents=include_parents,
                exclude=set(exclude_tables or ()),
            )

    # ------------------------------------------------------------------
    # Invocation
    # ------------------------------------------------------------------

    async def _run(
        self,
        metadata: BackupMetadata,
        requested: list[str] | None,
        drop_existing: bool,
        validate: bool,
        pre_backup: bool = False,
        include_parents: bool = False,
        exclude: set[str] | None = None,
    ) -> RestoreResult:
        started = time.monotonic()
        result = RestoreResult(backup_id=metadata.id)
        logger.info("Restoring backup %s", metadata.id)

        try:
            self._set_state(RestoreState.VALIDATING)
            path = self._catalog.artifact_path(metadata)
            if validate and not verify_backup(path, metadata):
                raise CorruptionError("Artifact failed size/checksum verification")

            self._set_state(RestoreState.PREPARING)
            artifact = load_artifact(path, metadata)
            self._graph.validate_names(artifact.tables)
            apply_order = self._plan(artifact, requested, include_parents, exclude or set())

            if pre_backup:
                result.pre_restore_backup_id = await self._pre_restore_backup()

            async with self._adapter.transaction() as tx:
                if drop_existing:
                    await self._check_drop(tx, apply_order)
                else:
                    await self._check_collisions(tx, artifact, apply_order)
                await self._check_parents(tx, artifact, apply_order)

                self._set_state(RestoreState.APPLYING)
                if drop_existing:
                    result.dropped_tables = await self._drop(tx, apply_order)
                result.restored_tables = await self._apply(tx, artifact, apply_order)

        except BackupError as e:
            if e.backup_id is None:
                e.backup_id = metadata.id
            if e.phase is None:
                e.phase = self.state
            self._fail()
            logger.error("Restore of %s failed: %s", metadata.id, e)
            raise
        except ArtifactFormatError as e:
            self._fail()
            raise CorruptionError(
                f"Malformed artifact statement: {e}", backup_id=metadata.id, phase=self.state
            ) from e
        except OSError as e:
            phase = self.state
            self._fail()
            raise BackupIOError(str(e), backup_id=metadata.id, phase=phase) from e
        except Exception as e:
            phase = self.state
            self._fail()
            logger.exception("Restore of %s failed", metadata.id)
            raise ApplyError(
                f"Restore transaction failed: {e}", backup_id=metadata.id, phase=phase
            ) from e

        self._set_state(RestoreState.COMMITTED)
        result.success = True
        result.state = RestoreState.COMMITTED
        result.duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Restored backup %s: %s (%.0f ms)",
            metadata.id, ", ".join(result.restored_tables), result.duration_ms,
        )
        return result

    def _fail(self) -> None:
        if self.state == RestoreState.APPLYING:
            self._set_state(RestoreState.ROLLED_BACK)
        else:
            self._set_state(RestoreState.REJECTED)

    def _plan(
        self,
        artifact: Artifact,
        requested: list[str] | None,
        include_parents: bool,
        exclude: set[str],
    ) -> list[str]:
        """Tables to apply, in forward order."""
        if requested is None:
            return self._graph.forward_order(artifact.tables)

        self._graph.validate_names(requested)
        self._graph.validate_names(exclude)
        missing = [t for t in requested if t not in artifact.tables]
        if missing:
            raise ValidationError(f"Table(s) not in backup: {', '.join(missing)}")

        selected = set(requested) - exclude
        if not selected:
            raise ValidationError("Every requested table is excluded")

        if include_parents:
            closure = set(self._graph.parent_closure(selected))
            blocked = sorted((closure - selected) & exclude)
            if blocked:
                raise DependencyError(
                    f"Required parent table(s) excluded: {', '.join(blocked)}",
                    table=blocked[0],
                )
            # parents absent from the artifact fall back to the live-row check
            selected |= closure & set(artifact.tables)

        return self._graph.forward_order(selected)

    async def _pre_restore_backup(self) -> str | None:
        if self._snapshotter is None:
            raise ValidationError("Pre-restore backup requested but no snapshotter configured")

        async with self._adapter.snapshot() as snap:
            live = [t for t in self._graph.names if await snap.table_exists(t)]
        if not live:
            logger.info("No live tables, skipping pre-restore backup")
            return None

        metadata = await self._snapshotter.create_backup(BackupOptions(include_tables=set(live)))
        logger.info("Pre-restore backup %s created", metadata.id)
        return metadata.id

    # ------------------------------------------------------------------
    # Checks (no mutation)
    # ------------------------------------------------------------------

    async def _check_drop(self, tx: Transaction, apply_order: list[str]) -> None:
        drop_set = set(apply_order)
        for table in apply_order:
            for referrer in await tx.referencing_tables(table):
                if referrer not in drop_set:
                    raise DependencyError(
                        f"Table '{referrer}' references '{table}' and is not part of the restore",
                        table=referrer,
                    )

    async def _check_collisions(
        self, tx: Transaction, artifact: Artifact, apply_order: list[str]
    ) -> None:
        for table in apply_order:
            inserts = artifact.section(table).inserts
            if not inserts or not await tx.table_exists(table):
                continue

            pk = self._graph.get(table).pk
            existing = {str(r[pk]) for r in await tx.select(table, quote_identifier(pk))}
            if not existing:
                continue

            collisions = []
            for statement in inserts:
                parsed = parse_insert(statement)
                if pk in parsed.columns and str(parsed.get(pk)) in existing:
                    collisions.append(str(parsed.get(pk)))
            if collisions:
                raise ValidationError(
                    f"{len(collisions)} row(s) in '{table}' collide with existing "
                    f"primary keys (e.g. {collisions[0]})",
                    table=table,
                )

    async def _check_parents(
        self, tx: Transaction, artifact: Artifact, apply_order: list[str]
    ) -> None:
        """Rows of tables restored without their parents must find their parent rows live."""
        apply_set = set(apply_order)
        for table in apply_order:
            for fk in self._graph.get(table).parents:
                if fk.table == table or fk.table in apply_set:
                    continue

                needed: set[str] = set()
                for statement in artifact.section(table).inserts:
                    parsed = parse_insert(statement)
                    if fk.field in parsed.columns and parsed.get(fk.field) is not None:
                        needed.add(str(parsed.get(fk.field)))
                if not needed:
                    continue

                present: set[str] = set()
                if await tx.table_exists(fk.table):
                    rows = await tx.select(fk.table, quote_identifier(fk.references))
                    present = {str(r[fk.references]) for r in rows}

                missing = needed - present
                if missing:
                    raise DependencyError(
                        f"{len(missing)} '{fk.table}' row(s) referenced by '{table}' "
                        f"are not present; restore '{fk.table}' too or use include_parents",
                        table=table,
                    )

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    async def _drop(self, tx: Transaction, apply_order: list[str]) -> list[str]:
        dropped: list[str] = []
        for table in reversed(apply_order):
            try:
                await tx.exec_raw(f"DROP TABLE IF EXISTS {quote_identifier(table)}")
            except Exception as e:
                raise ApplyError(
                    f"Failed to drop table {table}: {e}", table=table, phase=self.state
                ) from e
            dropped.append(table)
        return dropped

    async def _apply(self, tx: Transaction, artifact: Artifact, apply_order: list[str]) -> list[str]:
        restored: list[str] = []
        for table in apply_order:
            for index, statement in enumerate(artifact.section(table).statements):
                try:
                    await tx.exec_raw(statement)
                except Exception as e:
                    raise ApplyError(
                        f"Statement {index} for table {table} failed: {e}",
                        table=table,
                        statement_index=index,
                        phase=self.state,
                    ) from e
            restored.append(table)
            logger.debug("Applied %s", table)
        return restored
