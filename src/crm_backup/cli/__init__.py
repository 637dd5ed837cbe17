"""CLI for CRM backup, restore, and catalog maintenance.

Usage:
    DB_PROFILE=local crm-backup connect
    crm-backup status
    crm-backup profiles
    crm-backup backup
    crm-backup backup --schema-only
    crm-backup backup --table schools --table contacts
    crm-backup list
    crm-backup verify 2025-01-01T00-00-00_ab12cd34
    crm-backup preview 2025-01-01T00-00-00_ab12cd34
    crm-backup check 2025-01-01T00-00-00_ab12cd34
    crm-backup restore 2025-01-01T00-00-00_ab12cd34 --drop-existing --yes
    crm-backup restore 2025-01-01T00-00-00_ab12cd34 --tables contacts --include-parents
    crm-backup delete 2025-01-01T00-00-00_ab12cd34 --yes
    crm-backup cleanup --retention-days 30
    crm-backup schedule --interval 3600

Commands:
    connect   - Connect to a profile and check the CRM tables exist
    status    - Show current connection status
    profiles  - List available profiles
    backup    - Create a backup
    list      - List backups in the catalog
    verify    - Verify a backup's checksum and structure
    preview   - Show what a restore would touch
    check     - Check whether a backup can be restored
    restore   - Restore a backup (all tables or a selection)
    delete    - Delete a backup and its artifact
    cleanup   - Delete backups older than the retention period
    schedule  - Run periodic backups until interrupted
"""

import argparse
import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from crm_backup.backup.engine import BackupEngine
from crm_backup.backup.models import BackupMetadata, BackupOptions
from crm_backup.backup.scheduler import BackupScheduler
from crm_backup.config.loader import load_db_config
from crm_backup.config.models import DatabaseConfig
from crm_backup.errors import BackupError
from crm_backup.factory import (
    ProfileNotFoundError,
    build_engine,
    connect_and_validate,
    read_profile_lock,
)

console = Console()


# ============================================================================
# Helpers
# ============================================================================


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _split_tables(value: str | None) -> list[str]:
    if not value:
        return []
    return [t.strip() for t in value.split(",") if t.strip()]


def _load_config(args: argparse.Namespace) -> DatabaseConfig | None:
    """Load db.toml, or return None when running from ``--database-url`` alone."""
    path = Path(args.config) if getattr(args, "config", None) else None
    try:
        return load_db_config(path)
    except FileNotFoundError:
        if path is None and getattr(args, "database_url", None):
            return None
        raise


@asynccontextmanager
async def _engine_session(
    args: argparse.Namespace,
    config: DatabaseConfig | None = None,
) -> AsyncIterator[BackupEngine]:
    if config is None:
        config = _load_config(args)
    engine = await build_engine(
        profile_name=getattr(args, "profile", None),
        database_url=getattr(args, "database_url", None),
        env_prefix=getattr(args, "env_prefix", ""),
        config=config,
        backup_dir=getattr(args, "backup_dir", None),
    )
    try:
        yield engine
    finally:
        await engine.adapter.close()


def _confirm(prompt: str) -> bool:
    response = console.input(f"{prompt} [y/N] ")
    return response.strip().lower() in ("y", "yes")


def _print_metadata(metadata: BackupMetadata) -> None:
    table = Table(show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Backup id", f"[bold cyan]{metadata.id}[/bold cyan]")
    table.add_row("Created", metadata.created_at.isoformat(timespec="seconds"))
    table.add_row("File", metadata.filename)
    table.add_row("Size", _format_size(metadata.size))
    table.add_row("Tables", ", ".join(metadata.tables))
    table.add_row("Data", "yes" if metadata.include_data else "schema only")
    table.add_row("Checksum", metadata.checksum)
    table.add_row(
        "Verified", "[green]yes[/green]" if metadata.is_verified else "[red]no[/red]"
    )
    console.print(table)


# ============================================================================
# Async command implementations
# ============================================================================


async def _async_connect(args: argparse.Namespace) -> int:
    """Connect to a profile and write the lock file on success."""
    previous_profile = read_profile_lock()

    console.print("Connecting to database...", style="dim")
    result = await connect_and_validate(
        profile_name=args.profile_name, env_prefix=args.env_prefix
    )

    if not result.success:
        console.print()
        console.print(f"[bold red]x[/bold red] {result.error}")
        return 1

    console.print()
    console.print(
        f"[bold green]v[/bold green] Connected to profile: "
        f"[bold cyan]{result.profile_name}[/bold cyan]"
    )
    if previous_profile and previous_profile != result.profile_name:
        console.print(
            f"\n[dim]Switched from[/dim] [bold]{previous_profile}[/bold] "
            f"[dim]to[/dim] [bold cyan]{result.profile_name}[/bold cyan]"
        )
    return 0


async def _async_backup(args: argparse.Namespace) -> int:
    options = BackupOptions(
        include_data=not args.schema_only,
        include_tables=set(args.table) if args.table else None,
        exclude_tables=set(args.exclude) if args.exclude else None,
    )
    async with _engine_session(args) as engine:
        console.print("Creating backup...", style="dim")
        metadata = await engine.create_backup(options)

    console.print("[bold green]v[/bold green] Backup created")
    _print_metadata(metadata)
    return 0


async def _async_list(args: argparse.Namespace) -> int:
    async with _engine_session(args) as engine:
        entries = await engine.list_backups()

    if not entries:
        console.print("[yellow]No backups in catalog.[/yellow]")
        return 0

    table = Table(title="Backups", show_header=True, header_style="bold")
    table.add_column("ID", style="cyan")
    table.add_column("Created")
    table.add_column("Tables")
    table.add_column("Size", justify="right")
    table.add_column("Data")
    table.add_column("Verified")

    for m in entries:
        table.add_row(
            m.id,
            m.created_at.isoformat(timespec="seconds"),
            ", ".join(m.tables),
            _format_size(m.size),
            "yes" if m.include_data else "schema",
            "[green]yes[/green]" if m.is_verified else "[red]no[/red]",
        )

    console.print(table)
    return 0


async def _async_verify(args: argparse.Namespace) -> int:
    async with _engine_session(args) as engine:
        result = await engine.validate_backup(args.backup_id)

    console.print(f"Validating: [bold cyan]{args.backup_id}[/bold cyan]")

    if result["errors"]:
        console.print(f"\n[bold red]INVALID[/bold red] - Found {len(result['errors'])} errors:")
        for error in result["errors"]:
            console.print(f"   - {error}")

    if result["warnings"]:
        console.print(f"\n[yellow]Found {len(result['warnings'])} warnings:[/yellow]")
        for warning in result["warnings"]:
            console.print(f"   - {warning}")

    if result["valid"]:
        suffix = " (with warnings)" if result["warnings"] else ""
        console.print(f"\n[bold green]v[/bold green] Backup is valid{suffix}")
        return 0
    console.print("\n[bold red]x[/bold red] Backup is invalid")
    return 1


async def _async_preview(args: argparse.Namespace) -> int:
    async with _engine_session(args) as engine:
        preview = await engine.preview_restore(args.backup_id)

    _print_metadata(preview.backup)
    console.print(f"\nCurrent tables: {', '.join(preview.current_tables) or '-'}")
    console.print(f"Backup tables:  {', '.join(preview.backup_tables)}")
    if preview.conflicts:
        console.print(f"\n[yellow]Conflicts ({len(preview.conflicts)}):[/yellow]")
        for conflict in preview.conflicts:
            console.print(f"   - {conflict}")
    return 0


async def _async_check(args: argparse.Namespace) -> int:
    async with _engine_session(args) as engine:
        check = await engine.test_restore(args.backup_id)

    if check.can_restore:
        console.print("[bold green]v[/bold green] Backup can be restored")
        return 0
    console.print("[bold red]x[/bold red] Backup cannot be restored:")
    for issue in check.issues:
        console.print(f"   - {issue}")
    return 1


async def _async_restore(args: argparse.Namespace) -> int:
    tables = _split_tables(args.tables)
    if tables and args.drop_existing:
        console.print("[red]Error: --drop-existing cannot be combined with --tables[/red]")
        return 1

    if not args.yes:
        console.print(f"This will restore data from backup: [bold cyan]{args.backup_id}[/bold cyan]")
        if tables:
            console.print(f"   Tables: {', '.join(tables)}")
        if args.drop_existing:
            console.print("   [bold red]WARNING: the backup's tables will be dropped first![/bold red]")
        if not _confirm("Continue?"):
            console.print("Cancelled.")
            return 0

    async with _engine_session(args) as engine:
        console.print("Restoring...", style="dim")
        if tables:
            result = await engine.restore_selective_tables(
                args.backup_id,
                tables,
                validate_before_restore=not args.no_validate,
                include_parents=args.include_parents,
                exclude_tables=args.exclude,
            )
        else:
            result = await engine.restore_from_backup(
                args.backup_id,
                drop_existing=args.drop_existing,
                validate_before_restore=not args.no_validate,
                create_backup_before_restore=args.pre_backup,
            )

    console.print(
        f"[bold green]v[/bold green] Restored {', '.join(result.restored_tables)} "
        f"in {result.duration_ms:.0f} ms"
    )
    if result.dropped_tables:
        console.print(f"  Dropped first: [dim]{', '.join(result.dropped_tables)}[/dim]")
    if result.pre_restore_backup_id:
        console.print(f"  Pre-restore backup: [cyan]{result.pre_restore_backup_id}[/cyan]")
    return 0


async def _async_delete(args: argparse.Namespace) -> int:
    if not args.yes and not _confirm(f"Delete backup {args.backup_id}?"):
        console.print("Cancelled.")
        return 0

    async with _engine_session(args) as engine:
        await engine.delete_backup(args.backup_id)

    console.print(f"[bold green]v[/bold green] Deleted backup {args.backup_id}")
    return 0


async def _async_cleanup(args: argparse.Namespace) -> int:
    config = _load_config(args)
    retention_days = args.retention_days
    if retention_days is None:
        retention_days = config.backup.retention_days if config else 30

    async with _engine_session(args, config) as engine:
        deleted = await engine.cleanup_old_backups(retention_days)

    if not deleted:
        console.print(f"No backups older than {retention_days} days.")
        return 0
    console.print(
        f"[bold green]v[/bold green] Deleted {len(deleted)} backup(s) "
        f"older than {retention_days} days"
    )
    for backup_id in deleted:
        console.print(f"   - {backup_id}")
    return 0


async def _async_schedule(args: argparse.Namespace) -> int:
    config = _load_config(args)
    schedule = config.backup.schedule if config else None

    async with _engine_session(args, config) as engine:
        scheduler = BackupScheduler(engine, schedule)
        changes: dict = {"enabled": True}
        if args.interval:
            changes["interval_seconds"] = args.interval
        await scheduler.update_config(**changes)

        if args.once:
            metadata = await scheduler.run_once()
            console.print(f"[bold green]v[/bold green] Backup {metadata.id} created")
            return 0

        await scheduler.start()
        console.print(
            f"Scheduling backups every {scheduler.config.interval_seconds}s "
            "(Ctrl-C to stop)", style="dim",
        )
        try:
            await asyncio.Event().wait()
        finally:
            await scheduler.stop()
    return 0


# ============================================================================
# Sync command wrappers
# ============================================================================


def _run(impl, args: argparse.Namespace) -> int:
    """Run an async command, rendering expected failures as exit code 1."""
    try:
        return asyncio.run(impl(args))
    except (BackupError, ProfileNotFoundError, FileNotFoundError, KeyError, ValueError) as e:
        console.print(f"[bold red]x[/bold red] {e}")
        return 1


def cmd_connect(args: argparse.Namespace) -> int:
    return _run(_async_connect, args)


def cmd_status(args: argparse.Namespace) -> int:
    """Show current connection status.

    Reads only local files (lock file and TOML config) -- no database calls.
    """
    profile = read_profile_lock()

    if not profile:
        console.print("[yellow]No validated profile.[/yellow]")
        console.print("[dim]Run:[/dim] [cyan]crm-backup connect <profile>[/cyan]")
        return 0

    table = Table(title="Connection Status", show_header=False)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Current profile", f"[bold cyan]{profile}[/bold cyan]")
    table.add_row("Profile source", ".db-profile (validated)")

    try:
        config = _load_config(args)
    except FileNotFoundError:
        table.add_row("Warning", "[yellow]db.toml not found[/yellow]")
    else:
        if config is not None and profile in config.profiles:
            p = config.profiles[profile]
            table.add_row("Provider", p.provider)
            if p.description:
                table.add_row("Description", p.description)
            table.add_row("Backup dir", config.backup.backup_dir)
            table.add_row("Catalog", config.backup.catalog)

    console.print(table)
    return 0


def cmd_profiles(args: argparse.Namespace) -> int:
    """List available profiles from db.toml."""
    try:
        config = load_db_config(Path(args.config) if args.config else None)
    except FileNotFoundError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    current = read_profile_lock()

    table = Table(title="Database Profiles", show_header=True, header_style="bold")
    table.add_column("", width=2)
    table.add_column("Profile")
    table.add_column("Provider")
    table.add_column("Description")

    for name, profile in config.profiles.items():
        marker = "[bold green]*[/bold green]" if name == current else " "
        table.add_row(
            marker,
            f"[bold cyan]{name}[/bold cyan]" if name == current else name,
            profile.provider,
            profile.description or "",
        )

    console.print(table)
    if current:
        console.print("\n[bold green]*[/bold green] = current profile")
    return 0


def cmd_backup(args: argparse.Namespace) -> int:
    return _run(_async_backup, args)


def cmd_list(args: argparse.Namespace) -> int:
    return _run(_async_list, args)


def cmd_verify(args: argparse.Namespace) -> int:
    return _run(_async_verify, args)


def cmd_preview(args: argparse.Namespace) -> int:
    return _run(_async_preview, args)


def cmd_check(args: argparse.Namespace) -> int:
    return _run(_async_check, args)


def cmd_restore(args: argparse.Namespace) -> int:
    return _run(_async_restore, args)


def cmd_delete(args: argparse.Namespace) -> int:
    return _run(_async_delete, args)


def cmd_cleanup(args: argparse.Namespace) -> int:
    return _run(_async_cleanup, args)


def cmd_schedule(args: argparse.Namespace) -> int:
    try:
        return _run(_async_schedule, args)
    except KeyboardInterrupt:
        console.print("\nScheduler stopped.")
        return 0


# ============================================================================
# Main entry point
# ============================================================================


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crm-backup",
        description="Backup and recovery for the school-recruitment CRM datastore",
    )

    parser.add_argument(
        "--env-prefix",
        default="",
        help=(
            "Prefix for environment variable lookup "
            "(e.g., --env-prefix APP_ reads APP_DB_PROFILE)"
        ),
    )
    parser.add_argument("--config", help="Path to db.toml (default: ./db.toml)")
    parser.add_argument("--profile", help="Profile to use instead of the active one")
    parser.add_argument("--database-url", help="Connection URL; bypasses profiles")
    parser.add_argument("--backup-dir", help="Backup directory (overrides db.toml)")
    parser.add_argument("-v", "--verbose", action="store_true", help="Show info logging")

    subparsers = parser.add_subparsers(dest="command", required=True)

    p_connect = subparsers.add_parser("connect", help="Connect to a profile and check tables")
    p_connect.add_argument("profile_name", nargs="?", help="Profile name from db.toml")
    p_connect.set_defaults(func=cmd_connect)

    p_status = subparsers.add_parser("status", help="Show current connection status")
    p_status.set_defaults(func=cmd_status)

    p_profiles = subparsers.add_parser("profiles", help="List available profiles")
    p_profiles.set_defaults(func=cmd_profiles)

    p_backup = subparsers.add_parser("backup", help="Create a backup")
    p_backup.add_argument(
        "--schema-only", action="store_true", help="Back up table structure without rows"
    )
    p_backup.add_argument(
        "--table", action="append", help="Table to include (repeatable; default: all)"
    )
    p_backup.add_argument("--exclude", action="append", help="Table to exclude (repeatable)")
    p_backup.set_defaults(func=cmd_backup)

    p_list = subparsers.add_parser("list", help="List backups in the catalog")
    p_list.set_defaults(func=cmd_list)

    p_verify = subparsers.add_parser("verify", help="Verify a backup")
    p_verify.add_argument("backup_id")
    p_verify.set_defaults(func=cmd_verify)

    p_preview = subparsers.add_parser("preview", help="Show what a restore would touch")
    p_preview.add_argument("backup_id")
    p_preview.set_defaults(func=cmd_preview)

    p_check = subparsers.add_parser("check", help="Check whether a backup can be restored")
    p_check.add_argument("backup_id")
    p_check.set_defaults(func=cmd_check)

    p_restore = subparsers.add_parser("restore", help="Restore a backup")
    p_restore.add_argument("backup_id")
    p_restore.add_argument(
        "--drop-existing", action="store_true", help="Drop the backup's tables before replay"
    )
    p_restore.add_argument(
        "--no-validate", action="store_true", help="Skip checksum verification (not recommended)"
    )
    p_restore.add_argument("--tables", help="Comma-separated tables for a selective restore")
    p_restore.add_argument(
        "--include-parents", action="store_true", help="Also restore parent tables of --tables"
    )
    p_restore.add_argument("--exclude", action="append", help="Table to exclude (repeatable)")
    p_restore.add_argument(
        "--pre-backup", action="store_true", help="Back up live tables before restoring"
    )
    p_restore.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_restore.set_defaults(func=cmd_restore)

    p_delete = subparsers.add_parser("delete", help="Delete a backup")
    p_delete.add_argument("backup_id")
    p_delete.add_argument("--yes", "-y", action="store_true", help="Skip confirmation")
    p_delete.set_defaults(func=cmd_delete)

    p_cleanup = subparsers.add_parser("cleanup", help="Delete old backups")
    p_cleanup.add_argument(
        "--retention-days", type=int, help="Keep backups newer than this (default: db.toml)"
    )
    p_cleanup.set_defaults(func=cmd_cleanup)

    p_schedule = subparsers.add_parser("schedule", help="Run periodic backups")
    p_schedule.add_argument("--interval", type=float, help="Seconds between backups")
    p_schedule.add_argument("--once", action="store_true", help="Run one scheduled cycle and exit")
    p_schedule.set_defaults(func=cmd_schedule)

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main CLI entry point.

    Returns:
        Exit code (0 for success, 1 for errors).
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(message)s",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
    )
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
