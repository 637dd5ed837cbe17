"""Backup metadata, options, and restore result models.

Usage:
    from crm_backup.backup.models import BackupMetadata, BackupOptions, RestoreResult

    options = BackupOptions(include_data=True, include_tables={"schools", "contacts"})
    metadata = await engine.create_backup(options)
    metadata.tables      # ["schools", "contacts"]
    metadata.checksum    # sha256 hex digest of the artifact bytes
"""

from datetime import datetime, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field


class BackupMetadata(BaseModel):
    """Catalog entry describing one backup artifact.

    ``checksum`` and ``size`` are fixed at creation time.  ``is_verified``
    records whether the freshly written artifact read back with a matching
    checksum; restores always re-verify instead of trusting it.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    filename: str
    size: int
    checksum: str
    tables: list[str]
    is_verified: bool = False
    include_data: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class BackupOptions(BaseModel):
    """What a backup should contain."""

    include_data: bool = True
    include_tables: set[str] | None = None   # None -> every table in the graph
    exclude_tables: set[str] | None = None


class RestoreState(str, Enum):
    """States of a single restore invocation."""

    IDLE = "idle"
    VALIDATING = "validating"
    PREPARING = "preparing"
    APPLYING = "applying"
    COMMITTED = "committed"
    REJECTED = "rejected"
    ROLLED_BACK = "rolled_back"


class RestoreResult(BaseModel):
    """Outcome of a committed restore.

    Attributes:
        success: True once the restore transaction committed.
        backup_id: Backup the data came from.
        restored_tables: Tables whose statements were applied, in apply order.
        dropped_tables: Tables dropped before replay, in drop order.
        state: Final state of the invocation.
        duration_ms: Wall-clock duration of the invocation.
        pre_restore_backup_id: Safety backup taken before mutation, if any.
    """

    success: bool = False
    backup_id: str
    restored_tables: list[str] = Field(default_factory=list)
    dropped_tables: list[str] = Field(default_factory=list)
    state: RestoreState = RestoreState.IDLE
    duration_ms: float = 0.0
    pre_restore_backup_id: str | None = None


class RestorePreview(BaseModel):
    """What a restore of a backup would touch, without applying it."""

    backup: BackupMetadata
    current_tables: list[str] = Field(default_factory=list)
    backup_tables: list[str] = Field(default_factory=list)
    conflicts: list[str] = Field(default_factory=list)


class RestoreCheck(BaseModel):
    """Result of a dry restore check."""

    can_restore: bool
    issues: list[str] = Field(default_factory=list)
