"""Backup, verification, catalog, and transactional restore.

Usage:
    from crm_backup.backup import BackupEngine, BackupOptions
    from crm_backup.backup import FileCatalog, DatabaseCatalog
    from crm_backup.backup import verify_backup, validate_artifact
"""

from crm_backup.backup.catalog import BackupCatalog, DatabaseCatalog, FileCatalog
from crm_backup.backup.engine import BackupEngine
from crm_backup.backup.models import (
    BackupMetadata,
    BackupOptions,
    RestoreCheck,
    RestorePreview,
    RestoreResult,
    RestoreState,
)
from crm_backup.backup.restore import Restorer
from crm_backup.backup.scheduler import BackupScheduler
from crm_backup.backup.snapshot import Snapshotter
from crm_backup.backup.verifier import compute_checksum, validate_artifact, verify_backup

__all__ = [
    "BackupEngine",
    "BackupScheduler",
    "Snapshotter",
    "Restorer",
    "BackupCatalog",
    "FileCatalog",
    "DatabaseCatalog",
    "BackupMetadata",
    "BackupOptions",
    "RestoreResult",
    "RestoreState",
    "RestorePreview",
    "RestoreCheck",
    "compute_checksum",
    "verify_backup",
    "validate_artifact",
]
