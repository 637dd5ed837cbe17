"""Pydantic models for db.toml configuration."""

from typing import Literal

from pydantic import BaseModel, Field


# ============================================================================
# Configuration Models
# ============================================================================


class DatabaseProfile(BaseModel):
    """Database connection profile from db.toml."""

    url: str
    description: str = ""
    db_password: str | None = None  # For [YOUR-PASSWORD] placeholder substitution
    provider: Literal["postgres", "sqlite"] = "postgres"


class ScheduleConfig(BaseModel):
    """Periodic backup settings (``[backup.schedule]``)."""

    enabled: bool = False
    interval_seconds: float = Field(default=24 * 60 * 60, gt=0)
    include_data: bool = True
    retention_days: int = Field(default=30, ge=0)


class BackupSettings(BaseModel):
    """Backup storage settings (``[backup]``)."""

    backup_dir: str = "./backups"
    catalog: Literal["file", "database"] = "file"
    retention_days: int = Field(default=30, ge=0)
    schema_file: str | None = None  # derive the table graph from this file instead of the CRM default
    schedule: ScheduleConfig = Field(default_factory=ScheduleConfig)


class DatabaseConfig(BaseModel):
    """Complete configuration from db.toml."""

    profiles: dict[str, DatabaseProfile]
    backup: BackupSettings = Field(default_factory=BackupSettings)


# ============================================================================
# Connection Result
# ============================================================================


class ConnectionResult(BaseModel):
    """Result of connect_and_validate()."""

    success: bool
    profile_name: str | None = None
    missing_tables: list[str] = Field(default_factory=list)
    error: str | None = None
