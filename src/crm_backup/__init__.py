"""crm-backup: backup and recovery for the school-recruitment CRM datastore.

Point-in-time, checksummed backups of the CRM tables, a catalog of
backups, and transactional full or selective restore that respects the
tables' foreign-key dependencies.

Usage:
    from crm_backup import BackupEngine, BackupOptions, CRM_TABLE_GRAPH
    from crm_backup import build_engine, get_adapter
    from crm_backup import BackupError, CorruptionError
"""

__version__ = "0.1.0"

# Adapters
from crm_backup.adapters.base import DatabaseClient
from crm_backup.adapters.postgres import AsyncPostgresAdapter
from crm_backup.adapters.sqlite import AsyncSQLiteAdapter

# Backup engine
from crm_backup.backup import (
    BackupEngine,
    BackupMetadata,
    BackupOptions,
    BackupScheduler,
    DatabaseCatalog,
    FileCatalog,
    RestoreResult,
    RestoreState,
)

# Config
from crm_backup.config.loader import load_db_config
from crm_backup.config.models import DatabaseConfig, DatabaseProfile, ScheduleConfig

# Errors
from crm_backup.errors import (
    ApplyError,
    BackupError,
    BackupIOError,
    BackupNotFoundError,
    CorruptionError,
    DependencyError,
    ValidationError,
)

# Factory
from crm_backup.factory import (
    ProfileNotFoundError,
    build_engine,
    connect_and_validate,
    get_adapter,
    resolve_url,
)

# Schema graph
from crm_backup.schema import CRM_TABLE_GRAPH, ForeignKey, TableDef, TableGraph

__all__ = [
    # Adapters
    "DatabaseClient",
    "AsyncPostgresAdapter",
    "AsyncSQLiteAdapter",
    # Backup engine
    "BackupEngine",
    "BackupScheduler",
    "BackupMetadata",
    "BackupOptions",
    "RestoreResult",
    "RestoreState",
    "FileCatalog",
    "DatabaseCatalog",
    # Config
    "load_db_config",
    "DatabaseConfig",
    "DatabaseProfile",
    "ScheduleConfig",
    # Errors
    "BackupError",
    "ValidationError",
    "CorruptionError",
    "DependencyError",
    "BackupIOError",
    "BackupNotFoundError",
    "ApplyError",
    # Factory
    "get_adapter",
    "build_engine",
    "connect_and_validate",
    "ProfileNotFoundError",
    "resolve_url",
    # Schema graph
    "CRM_TABLE_GRAPH",
    "TableGraph",
    "TableDef",
    "ForeignKey",
]
