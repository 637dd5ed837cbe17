"""Error taxonomy for backup and restore operations.

Every error carries the backup id and the restore phase it was raised in
(when known), plus the table being processed for errors raised mid-replay.

Usage:
    from crm_backup.errors import BackupError, CorruptionError

    try:
        await engine.restore_from_backup(backup_id, validate_before_restore=True)
    except CorruptionError as e:
        print(e.backup_id, e.phase)
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from crm_backup.backup.models import RestoreState


class BackupError(Exception):
    """Base class for all backup/restore errors."""

    def __init__(
        self,
        message: str,
        *,
        backup_id: str | None = None,
        phase: "RestoreState | None" = None,
        table: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.backup_id = backup_id
        self.phase = phase
        self.table = table

    def __str__(self) -> str:
        context: list[str] = []
        if self.backup_id:
            context.append(f"backup={self.backup_id}")
        if self.phase is not None:
            context.append(f"phase={self.phase.value}")
        if self.table:
            context.append(f"table={self.table}")
        if not context:
            return self.message
        return f"{self.message} ({', '.join(context)})"


class ValidationError(BackupError):
    """Unknown table requested, or a replay that would violate a known constraint."""


class CorruptionError(BackupError):
    """Artifact checksum mismatch or malformed artifact content."""


class DependencyError(BackupError):
    """Restore would leave child rows without their parent rows."""


class BackupIOError(BackupError):
    """Artifact or catalog read/write/delete failure at the storage layer."""


class BackupNotFoundError(BackupError):
    """Backup id is not present in the catalog."""


class ApplyError(BackupError):
    """A statement failed during replay; the invocation was rolled back."""

    def __init__(
        self,
        message: str,
        *,
        statement_index: int | None = None,
        **kwargs,
    ) -> None:
        super().__init__(message, **kwargs)
        self.statement_index = statement_index
