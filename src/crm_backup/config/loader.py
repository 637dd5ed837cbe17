"""Configuration loading: db.toml profiles plus environment settings."""

import tomllib
from functools import lru_cache
from pathlib import Path

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from crm_backup.config.models import BackupSettings, DatabaseConfig, DatabaseProfile, ScheduleConfig


class Settings(BaseSettings):
    """Environment overrides for crm-backup.

    Separation of concerns:
    - Settings: process-level overrides (config path, backup directory)
    - db.toml: connection profiles and backup policy
    """

    model_config = SettingsConfigDict(env_prefix="CRM_BACKUP_", env_file=".env", extra="ignore")

    config_path: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CRM_BACKUP_CONFIG", "CRM_BACKUP_CONFIG_PATH"),
    )
    backup_dir: str | None = Field(
        default=None,
        validation_alias=AliasChoices("CRM_BACKUP_DIR", "CRM_BACKUP_BACKUP_DIR"),
    )


@lru_cache
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()


def default_config_path() -> Path:
    settings = get_settings()
    if settings.config_path:
        return Path(settings.config_path)
    return Path.cwd() / "db.toml"


def load_db_config(config_path: Path | None = None) -> DatabaseConfig:
    """Load configuration from a TOML file.

    Args:
        config_path: Path to db.toml (default: ``CRM_BACKUP_CONFIG`` or
            ``./db.toml``).

    Returns:
        DatabaseConfig with all profiles and backup settings.  A
        ``CRM_BACKUP_DIR`` environment value overrides ``backup_dir``.

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config format is invalid
    """
    if config_path is None:
        config_path = default_config_path()

    if not config_path.exists():
        raise FileNotFoundError(
            f"Database config not found: {config_path}\n"
            f"Copy db.toml.example to db.toml and configure your profiles."
        )

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    profiles = {}
    for name, profile_data in data.get("profiles", {}).items():
        profiles[name] = DatabaseProfile(**profile_data)

    backup_data = dict(data.get("backup", {}))
    schedule_data = dict(backup_data.pop("schedule", {}))
    schedule_data.setdefault("retention_days", backup_data.get("retention_days", 30))

    backup = BackupSettings(**backup_data, schedule=ScheduleConfig(**schedule_data))
    env_dir = get_settings().backup_dir
    if env_dir:
        backup = backup.model_copy(update={"backup_dir": env_dir})

    return DatabaseConfig(profiles=profiles, backup=backup)
