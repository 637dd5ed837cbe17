"""Tests for the crm-backup command line interface."""

import asyncio
from pathlib import Path
from unittest.mock import patch

import pytest

from crm_backup.adapters.sqlite import AsyncSQLiteAdapter
from crm_backup.backup.catalog import FileCatalog
from crm_backup.cli import build_parser, main
from crm_backup.config.loader import get_settings

from conftest import clear_tables, create_crm_tables, dump_tables, seed_crm


@pytest.fixture(autouse=True)
def isolated(tmp_path: Path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("DB_PROFILE", raising=False)
    monkeypatch.delenv("CRM_BACKUP_CONFIG", raising=False)
    get_settings.cache_clear()
    with patch("crm_backup.factory._PROFILE_LOCK_FILE", tmp_path / ".db-profile"):
        yield
    get_settings.cache_clear()


@pytest.fixture
def crm_db(tmp_path: Path) -> Path:
    """A seeded SQLite CRM datastore, prepared outside any running event loop."""
    path = tmp_path / "crm.db"

    async def setup() -> None:
        adapter = AsyncSQLiteAdapter(f"sqlite:///{path}")
        try:
            await create_crm_tables(adapter)
            await seed_crm(adapter)
        finally:
            await adapter.close()

    asyncio.run(setup())
    return path


@pytest.fixture
def cli_args(crm_db: Path, tmp_path: Path) -> list[str]:
    return ["--database-url", f"sqlite:///{crm_db}", "--backup-dir", str(tmp_path / "backups")]


def _backup_ids(tmp_path: Path) -> list[str]:
    entries = asyncio.run(FileCatalog(tmp_path / "backups").list())
    return [m.id for m in entries]


def _with_adapter(crm_db: Path, func):
    async def run():
        adapter = AsyncSQLiteAdapter(f"sqlite:///{crm_db}")
        try:
            return await func(adapter)
        finally:
            await adapter.close()

    return asyncio.run(run())


class TestParser:
    def test_command_required(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args([])

    def test_global_options(self):
        args = build_parser().parse_args(
            ["--env-prefix", "APP_", "--profile", "local", "-v", "backup", "--table", "schools"]
        )
        assert args.env_prefix == "APP_"
        assert args.profile == "local"
        assert args.verbose is True
        assert args.table == ["schools"]

    def test_restore_options(self):
        args = build_parser().parse_args(
            ["restore", "abc", "--tables", "contacts", "--include-parents", "--exclude", "schools", "-y"]
        )
        assert args.backup_id == "abc"
        assert args.include_parents is True
        assert args.exclude == ["schools"]
        assert args.yes is True


class TestBackupCommands:
    def test_backup_and_list(self, cli_args, tmp_path: Path, capsys):
        assert main([*cli_args, "backup"]) == 0
        assert "Backup created" in capsys.readouterr().out
        assert len(_backup_ids(tmp_path)) == 1

        assert main([*cli_args, "list"]) == 0
        assert "No backups" not in capsys.readouterr().out

    def test_list_empty(self, cli_args, capsys):
        assert main([*cli_args, "list"]) == 0
        assert "No backups" in capsys.readouterr().out

    def test_schema_only_backup(self, cli_args, tmp_path: Path):
        assert main([*cli_args, "backup", "--schema-only", "--table", "schools"]) == 0
        entries = asyncio.run(FileCatalog(tmp_path / "backups").list())
        assert entries[0].include_data is False
        assert entries[0].tables == ["schools"]

    def test_unknown_table(self, cli_args, capsys):
        assert main([*cli_args, "backup", "--table", "students"]) == 1
        assert "Unknown table" in capsys.readouterr().out

    def test_verify(self, cli_args, tmp_path: Path, capsys):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]

        assert main([*cli_args, "verify", backup_id]) == 0
        assert "valid" in capsys.readouterr().out

        artifact = next((tmp_path / "backups").glob("backup_*.sql"))
        artifact.write_bytes(artifact.read_bytes() + b"\n")
        assert main([*cli_args, "verify", backup_id]) == 1

    def test_check_and_preview(self, cli_args, tmp_path: Path):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]

        assert main([*cli_args, "check", backup_id]) == 0
        assert main([*cli_args, "preview", backup_id]) == 0

    def test_delete(self, cli_args, tmp_path: Path):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]

        assert main([*cli_args, "delete", backup_id, "--yes"]) == 0
        assert _backup_ids(tmp_path) == []

    def test_cleanup(self, cli_args, capsys):
        main([*cli_args, "backup"])
        assert main([*cli_args, "cleanup", "--retention-days", "30"]) == 0
        assert "No backups older than 30 days" in capsys.readouterr().out

    def test_schedule_once(self, cli_args, tmp_path: Path):
        assert main([*cli_args, "schedule", "--once"]) == 0
        assert len(_backup_ids(tmp_path)) == 1


class TestRestoreCommand:
    def test_restore_drop_existing(self, cli_args, crm_db: Path, tmp_path: Path):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]
        before = _with_adapter(crm_db, dump_tables)
        _with_adapter(crm_db, clear_tables)

        assert main([*cli_args, "restore", backup_id, "--drop-existing", "--yes"]) == 0
        assert _with_adapter(crm_db, dump_tables) == before

    def test_selective_restore(self, cli_args, crm_db: Path, tmp_path: Path):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]
        _with_adapter(crm_db, clear_tables)

        assert main([*cli_args, "restore", backup_id, "--tables", "contacts", "-y"]) == 1
        assert main(
            [*cli_args, "restore", backup_id, "--tables", "contacts", "--include-parents", "-y"]
        ) == 0

        rows = _with_adapter(crm_db, dump_tables)
        assert len(rows["contacts"]) == 5
        assert rows["interactions"] == []

    def test_tables_and_drop_conflict(self, cli_args):
        assert main([*cli_args, "restore", "x", "--tables", "schools", "--drop-existing", "-y"]) == 1

    def test_unknown_backup(self, cli_args, capsys):
        assert main([*cli_args, "restore", "nope", "--yes"]) == 1
        assert "nope" in capsys.readouterr().out

    def test_declined_confirmation(self, cli_args, crm_db: Path, tmp_path: Path):
        main([*cli_args, "backup"])
        backup_id = _backup_ids(tmp_path)[0]
        _with_adapter(crm_db, clear_tables)

        with patch("crm_backup.cli._confirm", return_value=False):
            assert main([*cli_args, "restore", backup_id, "--drop-existing"]) == 0

        assert _with_adapter(crm_db, dump_tables)["schools"] == []


class TestProfileCommands:
    def test_no_config(self, capsys):
        assert main(["backup"]) == 1
        assert "db.toml" in capsys.readouterr().out

    def test_status_without_lock(self, capsys):
        assert main(["status"]) == 0
        assert "No validated profile" in capsys.readouterr().out

    def test_connect_and_profiles(self, crm_db: Path, tmp_path: Path, capsys):
        (tmp_path / "db.toml").write_text(
            f'[profiles.local]\nurl = "sqlite:///{crm_db}"\nprovider = "sqlite"\n'
        )

        assert main(["connect", "local"]) == 0
        assert (tmp_path / ".db-profile").read_text() == "local"
        assert main(["profiles"]) == 0
        assert main(["status"]) == 0
        assert "local" in capsys.readouterr().out

        assert main(["backup"]) == 0
        assert (tmp_path / "backups").exists()

    def test_connect_unknown_profile(self, crm_db: Path, tmp_path: Path):
        (tmp_path / "db.toml").write_text(
            f'[profiles.local]\nurl = "sqlite:///{crm_db}"\nprovider = "sqlite"\n'
        )
        assert main(["connect", "staging"]) == 1
