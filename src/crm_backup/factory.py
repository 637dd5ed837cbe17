"""Database adapter and backup engine factory.

Profiles come from db.toml; the active one is chosen by the
``{prefix}DB_PROFILE`` environment variable or the ``.db-profile`` lock
file written by a successful ``connect_and_validate()``.

Usage:
    from crm_backup.factory import build_engine, connect_and_validate

    result = await connect_and_validate("local")
    engine = await build_engine()
    metadata = await engine.create_backup()
"""

import os
from pathlib import Path
from urllib.parse import quote

from crm_backup.adapters.base import DatabaseClient
from crm_backup.adapters.postgres import AsyncPostgresAdapter
from crm_backup.adapters.sqlite import AsyncSQLiteAdapter
from crm_backup.backup.catalog import DatabaseCatalog, FileCatalog
from crm_backup.backup.engine import BackupEngine
from crm_backup.config.loader import load_db_config
from crm_backup.config.models import ConnectionResult, DatabaseConfig, DatabaseProfile
from crm_backup.schema.crm import CRM_TABLE_GRAPH
from crm_backup.schema.models import TableGraph

# Profile lock file path
_PROFILE_LOCK_FILE = Path.cwd() / ".db-profile"


# ============================================================================
# Profile Lock File Operations
# ============================================================================


class ProfileNotFoundError(Exception):
    """Raised when no database profile is configured."""


def read_profile_lock() -> str | None:
    """Read profile name from lock file.

    Returns:
        Profile name if lock file exists, None otherwise
    """
    if _PROFILE_LOCK_FILE.exists():
        return _PROFILE_LOCK_FILE.read_text().strip()
    return None


def write_profile_lock(profile_name: str) -> None:
    """Write profile name to lock file.

    Only call this after a successful connection check.
    """
    _PROFILE_LOCK_FILE.write_text(profile_name)


def clear_profile_lock() -> None:
    """Remove profile lock file."""
    if _PROFILE_LOCK_FILE.exists():
        _PROFILE_LOCK_FILE.unlink()


def get_active_profile_name(env_prefix: str = "") -> str:
    """Get active profile name from env var or lock file.

    Priority:
    1. ``{env_prefix}DB_PROFILE`` env var
    2. .db-profile file (profile from previous connect)
    3. Raise ProfileNotFoundError

    Raises:
        ProfileNotFoundError: If no profile is configured
    """
    env_profile = os.environ.get(f"{env_prefix}DB_PROFILE")
    if env_profile:
        return env_profile

    lock_profile = read_profile_lock()
    if lock_profile:
        return lock_profile

    raise ProfileNotFoundError(
        "No database profile configured.\n"
        f"Run: crm-backup connect <profile>, or set {env_prefix}DB_PROFILE=<name>\n"
        "Profiles are defined in db.toml."
    )


def get_active_profile(
    env_prefix: str = "",
    config: DatabaseConfig | None = None,
) -> tuple[str, DatabaseProfile]:
    """Get active profile name and configuration.

    Raises:
        ProfileNotFoundError: If no profile configured
        KeyError: If profile not found in db.toml
    """
    profile_name = get_active_profile_name(env_prefix)
    config = config or load_db_config()

    if profile_name not in config.profiles:
        raise KeyError(
            f"Profile '{profile_name}' not found in db.toml.\n"
            f"Available profiles: {', '.join(config.profiles.keys())}"
        )

    return profile_name, config.profiles[profile_name]


def resolve_url(profile: DatabaseProfile) -> str:
    """Resolve profile URL with password substitution."""
    url = profile.url
    if profile.db_password and "[YOUR-PASSWORD]" in url:
        url = url.replace("[YOUR-PASSWORD]", quote(profile.db_password, safe=""))
    return url


# ============================================================================
# Adapter and Engine Factory
# ============================================================================


def _adapter_for_url(url: str, provider: str | None = None) -> DatabaseClient:
    if provider == "sqlite" or url.startswith("sqlite"):
        return AsyncSQLiteAdapter(url)
    return AsyncPostgresAdapter(url)


async def get_adapter(
    profile_name: str | None = None,
    database_url: str | None = None,
    env_prefix: str = "",
    config: DatabaseConfig | None = None,
) -> DatabaseClient:
    """Create an adapter for a profile or an explicit URL.

    Args:
        profile_name: Profile from db.toml.  Defaults to the active profile.
        database_url: Connection URL; bypasses profile resolution entirely.
        env_prefix: Prefix for the ``DB_PROFILE`` env var.
        config: Preloaded configuration (default: load db.toml).

    Raises:
        ProfileNotFoundError: If no profile is configured.
        KeyError: If the profile is not in db.toml.
    """
    if database_url:
        return _adapter_for_url(database_url)

    if profile_name is None:
        profile_name, profile = get_active_profile(env_prefix, config)
    else:
        config = config or load_db_config()
        if profile_name not in config.profiles:
            raise KeyError(
                f"Profile '{profile_name}' not found in db.toml.\n"
                f"Available profiles: {', '.join(config.profiles.keys())}"
            )
        profile = config.profiles[profile_name]

    return _adapter_for_url(resolve_url(profile), profile.provider)


def load_table_graph(config: DatabaseConfig | None) -> TableGraph:
    """The CRM graph, or one parsed from ``[backup] schema_file`` when set."""
    if config is not None and config.backup.schema_file:
        return TableGraph.from_schema_file(config.backup.schema_file)
    return CRM_TABLE_GRAPH


async def build_engine(
    profile_name: str | None = None,
    database_url: str | None = None,
    env_prefix: str = "",
    config: DatabaseConfig | None = None,
    backup_dir: str | Path | None = None,
) -> BackupEngine:
    """Create a ``BackupEngine`` from configuration.

    Without a db.toml, ``database_url`` must be given and defaults apply
    (``./backups``, file catalog, CRM table graph).
    """
    if config is None:
        try:
            config = load_db_config()
        except FileNotFoundError:
            if database_url is None:
                raise

    adapter = await get_adapter(profile_name, database_url, env_prefix, config)
    graph = load_table_graph(config)

    settings = config.backup if config is not None else None
    directory = Path(backup_dir or (settings.backup_dir if settings else "./backups"))

    if settings is not None and settings.catalog == "database":
        catalog = DatabaseCatalog(adapter, directory)
    else:
        catalog = FileCatalog(directory)

    return BackupEngine(adapter, graph, directory, catalog=catalog)


async def connect_and_validate(
    profile_name: str | None = None,
    env_prefix: str = "",
    validate_only: bool = False,
) -> ConnectionResult:
    """Connect to a profile and check that the CRM tables exist.

    On success the profile is written to the lock file (unless
    ``validate_only``), making it the active profile for later commands.
    """
    if profile_name is None:
        try:
            profile_name = get_active_profile_name(env_prefix)
        except ProfileNotFoundError as e:
            return ConnectionResult(success=False, error=str(e))

    try:
        config = load_db_config()
        adapter = await get_adapter(profile_name, config=config)
    except (FileNotFoundError, KeyError, ValueError) as e:
        return ConnectionResult(success=False, profile_name=profile_name, error=str(e))

    try:
        graph = load_table_graph(config)
        async with adapter.snapshot() as snap:
            missing = [t for t in graph.names if not await snap.table_exists(t)]
    except Exception as e:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            error=f"Failed to connect to database: {e}",
        )
    finally:
        await adapter.close()

    if missing:
        return ConnectionResult(
            success=False,
            profile_name=profile_name,
            missing_tables=missing,
            error=f"Missing tables: {', '.join(missing)}",
        )

    if not validate_only:
        write_profile_lock(profile_name)
    return ConnectionResult(success=True, profile_name=profile_name)
