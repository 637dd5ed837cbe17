"""Tests for transactional restore: full, selective, rejection and rollback paths."""

import asyncio
from collections.abc import Callable
from pathlib import Path
from unittest.mock import patch

import pytest
from sqlalchemy import event

from crm_backup.adapters.sqlite import AsyncSQLiteAdapter
from crm_backup.backup.codec import END_MARKER, parse_artifact
from crm_backup.backup.engine import BackupEngine
from crm_backup.backup.models import BackupMetadata, BackupOptions, RestoreState
from crm_backup.backup.verifier import checksum_bytes
from crm_backup.errors import (
    ApplyError,
    BackupIOError,
    BackupNotFoundError,
    CorruptionError,
    DependencyError,
    ValidationError,
)
from crm_backup.schema.crm import CRM_TABLE_GRAPH

from conftest import TRICKY_NAME, TRICKY_NOTES, clear_tables, dump_tables


async def _forge(
    engine: BackupEngine, metadata: BackupMetadata, transform: Callable[[str], str]
) -> BackupMetadata:
    """Register a rewritten copy of an artifact with a matching checksum."""
    data = transform(engine.artifact_path(metadata).read_text()).encode()
    forged_id = f"{metadata.id}-forged"
    forged = metadata.model_copy(update={
        "id": forged_id,
        "filename": f"backup_{forged_id}.sql",
        "size": len(data),
        "checksum": checksum_bytes(data),
    })
    engine.artifact_path(forged).write_bytes(data)
    await engine.catalog.append(forged)
    return forged


def _break_contact(text: str) -> str:
    """Point the c3 insert at a column that does not exist."""
    lines = text.split("\n")
    for i, line in enumerate(lines):
        if line.startswith('INSERT INTO "contacts"') and "'c3'" in line:
            lines[i] = line.replace('"email"', '"bogus"')
    return "\n".join(lines)


def _record_drops(adapter: AsyncSQLiteAdapter) -> list[str]:
    drops: list[str] = []

    @event.listens_for(adapter.engine.sync_engine, "before_cursor_execute")
    def _capture(conn, cursor, statement, parameters, context, executemany):
        if statement.startswith("DROP TABLE"):
            drops.append(statement.split()[-1].strip('"'))

    return drops


class TestFullRestore:
    async def test_round_trip_with_drop_existing(self, engine, seeded):
        before = await dump_tables(seeded)
        metadata = await engine.create_backup()

        async with seeded.transaction() as tx:
            await tx.exec_raw("UPDATE schools SET name = 'renamed' WHERE id = 's2'")
            await tx.exec_raw("DELETE FROM contacts WHERE id = 'c4'")
            await tx.exec_raw("INSERT INTO schools (id, name) VALUES ('s9', 'New')")

        result = await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert await dump_tables(seeded) == before
        assert result.success is True
        assert result.state == RestoreState.COMMITTED
        assert result.restored_tables == CRM_TABLE_GRAPH.forward_order()
        assert result.dropped_tables == CRM_TABLE_GRAPH.reverse_order()
        assert engine.restorer.state == RestoreState.COMMITTED

    async def test_cleared_datastore_gets_rows_back(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        await engine.restore_from_backup(metadata.id, drop_existing=True)

        rows = await dump_tables(seeded)
        assert len(rows["schools"]) == 3
        assert len(rows["contacts"]) == 5
        assert rows["schools"][0]["name"] == TRICKY_NAME
        assert rows["schools"][1]["city"] is None
        assert rows["interactions"][0]["notes"] == TRICKY_NOTES
        assert rows["preferences"][0]["pref_value"] == ""

    async def test_restore_into_empty_datastore(self, engine, seeded, tmp_path: Path):
        before = await dump_tables(seeded)
        metadata = await engine.create_backup()

        fresh = AsyncSQLiteAdapter(f"sqlite:///{tmp_path / 'fresh.db'}")
        try:
            fresh_engine = BackupEngine(fresh, CRM_TABLE_GRAPH, engine.backup_dir)
            result = await fresh_engine.restore_from_backup(metadata.id)

            assert result.dropped_tables == []
            assert await dump_tables(fresh) == before
        finally:
            await fresh.close()

    async def test_schema_only_restore_creates_empty_tables(self, engine, tmp_path: Path):
        metadata = await engine.create_backup(BackupOptions(include_data=False))

        fresh = AsyncSQLiteAdapter(f"sqlite:///{tmp_path / 'fresh.db'}")
        try:
            await BackupEngine(fresh, CRM_TABLE_GRAPH, engine.backup_dir).restore_from_backup(
                metadata.id
            )
            assert all(rows == [] for rows in (await dump_tables(fresh)).values())
        finally:
            await fresh.close()

    async def test_drops_children_before_parents(self, engine, seeded):
        metadata = await engine.create_backup()
        drops = _record_drops(seeded)

        await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert drops[-1] == "schools"
        assert set(drops) == set(CRM_TABLE_GRAPH.names)

    async def test_collision_without_drop_rejected(self, engine, seeded):
        before = await dump_tables(seeded)
        metadata = await engine.create_backup()

        with pytest.raises(ValidationError, match="collide") as exc_info:
            await engine.restore_from_backup(metadata.id)

        assert exc_info.value.table == "schools"
        assert exc_info.value.phase == RestoreState.PREPARING
        assert engine.restorer.state == RestoreState.REJECTED
        assert await dump_tables(seeded) == before

    async def test_drop_blocked_by_live_child_outside_backup(self, engine, seeded):
        before = await dump_tables(seeded)
        metadata = await engine.create_backup(BackupOptions(include_tables={"schools"}))

        with pytest.raises(DependencyError):
            await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert await dump_tables(seeded) == before

    async def test_unknown_backup(self, engine):
        with pytest.raises(BackupNotFoundError):
            await engine.restore_from_backup("no-such-backup")

    async def test_pre_restore_backup(self, engine, seeded):
        metadata = await engine.create_backup()
        async with seeded.transaction() as tx:
            await tx.exec_raw("DELETE FROM contacts WHERE id = 'c5'")

        result = await engine.restore_from_backup(
            metadata.id, drop_existing=True, create_backup_before_restore=True
        )

        assert result.pre_restore_backup_id is not None
        assert result.pre_restore_backup_id in [m.id for m in await engine.list_backups()]
        assert len((await dump_tables(seeded))["contacts"]) == 5

        await engine.restore_from_backup(result.pre_restore_backup_id, drop_existing=True)
        assert "c5" not in [r["id"] for r in (await dump_tables(seeded))["contacts"]]


class TestCorruption:
    async def test_corrupted_artifact_rejected_without_side_effects(self, engine, seeded):
        metadata = await engine.create_backup()
        path = engine.artifact_path(metadata)
        path.write_text(path.read_text().replace("School 2", "School X"))
        before = await dump_tables(seeded)

        with pytest.raises(CorruptionError) as exc_info:
            await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert exc_info.value.backup_id == metadata.id
        assert exc_info.value.phase == RestoreState.VALIDATING
        assert engine.restorer.state == RestoreState.REJECTED
        assert await dump_tables(seeded) == before

    async def test_unreadable_artifact_is_io_error(self, engine, seeded):
        metadata = await engine.create_backup()
        before = await dump_tables(seeded)

        with patch(
            "crm_backup.backup.verifier.compute_checksum",
            side_effect=PermissionError("denied"),
        ):
            with pytest.raises(BackupIOError, match="denied") as exc_info:
                await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert exc_info.value.backup_id == metadata.id
        assert exc_info.value.phase == RestoreState.VALIDATING
        assert engine.restorer.state == RestoreState.REJECTED
        assert await dump_tables(seeded) == before

    async def test_validation_can_be_skipped(self, engine, seeded):
        metadata = await engine.create_backup()
        path = engine.artifact_path(metadata)
        path.write_text(path.read_text().replace("School 2", "School X"))

        await engine.restore_from_backup(
            metadata.id, drop_existing=True, validate_before_restore=False
        )

        names = [r["name"] for r in (await dump_tables(seeded))["schools"]]
        assert "School X" in names

    async def test_truncated_artifact(self, engine, seeded):
        metadata = await engine.create_backup()
        forged = await _forge(engine, metadata, lambda text: text[: text.index(END_MARKER)])

        with pytest.raises(CorruptionError, match="truncated") as exc_info:
            await engine.restore_from_backup(forged.id, drop_existing=True)
        assert exc_info.value.phase == RestoreState.PREPARING


class TestRollback:
    async def test_failing_statement_rolls_back(self, engine, seeded):
        metadata = await engine.create_backup()
        forged = await _forge(engine, metadata, _break_contact)
        statements = parse_artifact(engine.artifact_path(forged).read_text()).section(
            "contacts"
        ).statements
        bad_index = next(i for i, s in enumerate(statements) if '"bogus"' in s)

        async with seeded.transaction() as tx:
            await tx.exec_raw("DELETE FROM contacts WHERE id = 'c1'")
        before = await dump_tables(seeded)

        with pytest.raises(ApplyError) as exc_info:
            await engine.restore_from_backup(forged.id, drop_existing=True)

        error = exc_info.value
        assert error.table == "contacts"
        assert error.statement_index == bad_index
        assert error.phase == RestoreState.APPLYING
        assert error.backup_id == forged.id
        assert engine.restorer.state == RestoreState.ROLLED_BACK
        assert await dump_tables(seeded) == before

    async def test_next_restore_after_rollback_succeeds(self, engine, seeded):
        metadata = await engine.create_backup()
        forged = await _forge(engine, metadata, _break_contact)

        with pytest.raises(ApplyError):
            await engine.restore_from_backup(forged.id, drop_existing=True)

        result = await engine.restore_from_backup(metadata.id, drop_existing=True)
        assert result.state == RestoreState.COMMITTED


class TestSelectiveRestore:
    async def test_parent_only(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        result = await engine.restore_selective_tables(metadata.id, ["schools"])

        rows = await dump_tables(seeded)
        assert result.restored_tables == ["schools"]
        assert len(rows["schools"]) == 3
        for table in ("contacts", "interactions", "partnerships", "preferences"):
            assert rows[table] == []

    async def test_child_without_parent_rows_rejected(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        with pytest.raises(DependencyError, match="include_parents") as exc_info:
            await engine.restore_selective_tables(metadata.id, ["contacts"])

        assert exc_info.value.table == "contacts"
        assert engine.restorer.state == RestoreState.REJECTED
        assert (await dump_tables(seeded))["contacts"] == []

    async def test_child_with_live_parent_rows(self, engine, seeded):
        metadata = await engine.create_backup()
        async with seeded.transaction() as tx:
            await tx.exec_raw("DELETE FROM contacts")

        result = await engine.restore_selective_tables(metadata.id, ["contacts"])

        assert result.restored_tables == ["contacts"]
        assert len((await dump_tables(seeded))["contacts"]) == 5

    async def test_include_parents(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        result = await engine.restore_selective_tables(
            metadata.id, ["contacts"], include_parents=True
        )

        rows = await dump_tables(seeded)
        assert result.restored_tables == ["schools", "contacts"]
        assert len(rows["schools"]) == 3
        assert len(rows["contacts"]) == 5
        assert rows["interactions"] == []

    async def test_interactions_need_their_contacts(self, engine, seeded):
        metadata = await engine.create_backup()
        async with seeded.transaction() as tx:
            await tx.exec_raw("DELETE FROM interactions")
            await tx.exec_raw("DELETE FROM contacts")

        with pytest.raises(DependencyError, match="'contacts'") as exc_info:
            await engine.restore_selective_tables(metadata.id, ["interactions"])

        assert exc_info.value.table == "interactions"
        assert (await dump_tables(seeded))["interactions"] == []

    async def test_include_parents_pulls_in_contacts(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        result = await engine.restore_selective_tables(
            metadata.id, ["interactions"], include_parents=True
        )

        rows = await dump_tables(seeded)
        assert result.restored_tables == ["schools", "contacts", "interactions"]
        assert rows["interactions"][0]["contact_id"] == "c1"
        assert rows["partnerships"] == []

    async def test_excluded_parent_rejected(self, engine, seeded):
        metadata = await engine.create_backup()
        await clear_tables(seeded)

        with pytest.raises(DependencyError, match="excluded"):
            await engine.restore_selective_tables(
                metadata.id, ["contacts"], include_parents=True, exclude_tables=["schools"]
            )

    async def test_parent_missing_from_backup_falls_back_to_live_rows(self, engine, seeded):
        metadata = await engine.create_backup(BackupOptions(include_tables={"contacts"}))
        await clear_tables(seeded)

        with pytest.raises(DependencyError):
            await engine.restore_selective_tables(
                metadata.id, ["contacts"], include_parents=True
            )

    async def test_table_not_in_backup(self, engine):
        metadata = await engine.create_backup(BackupOptions(include_tables={"schools"}))
        with pytest.raises(ValidationError, match="not in backup"):
            await engine.restore_selective_tables(metadata.id, ["contacts"])

    async def test_unknown_table(self, engine):
        metadata = await engine.create_backup()
        with pytest.raises(ValidationError, match="Unknown table"):
            await engine.restore_selective_tables(metadata.id, ["students"])

    async def test_everything_excluded(self, engine):
        metadata = await engine.create_backup()
        with pytest.raises(ValidationError, match="excluded"):
            await engine.restore_selective_tables(
                metadata.id, ["schools"], exclude_tables=["schools"]
            )

    async def test_no_tables(self, engine):
        metadata = await engine.create_backup()
        with pytest.raises(ValidationError):
            await engine.restore_selective_tables(metadata.id, [])


class TestMutualExclusion:
    async def test_restores_do_not_overlap(self, engine, monkeypatch):
        metadata = await engine.create_backup()
        restorer = engine.restorer
        original_apply = restorer._apply
        active = 0
        peak = 0
        seen_locked: list[bool] = []

        async def slow_apply(*args):
            nonlocal active, peak
            active += 1
            peak = max(peak, active)
            seen_locked.append(restorer.is_restoring)
            try:
                await asyncio.sleep(0.05)
                return await original_apply(*args)
            finally:
                active -= 1

        monkeypatch.setattr(restorer, "_apply", slow_apply)

        results = await asyncio.gather(
            engine.restore_from_backup(metadata.id, drop_existing=True),
            engine.restore_from_backup(metadata.id, drop_existing=True),
        )

        assert peak == 1
        assert seen_locked == [True, True]
        assert all(r.success for r in results)
        assert restorer.is_restoring is False


class TestFreshSchema:
    async def test_restore_recreates_dropped_table(self, engine, seeded):
        before = await dump_tables(seeded)
        metadata = await engine.create_backup()
        async with seeded.transaction() as tx:
            await tx.exec_raw("DROP TABLE preferences")

        await engine.restore_from_backup(metadata.id, drop_existing=True)

        assert await dump_tables(seeded) == before

