"""Configuration management: profiles, TOML loading, and config models.

Usage:
    >>> from crm_backup.config import load_db_config, DatabaseProfile, DatabaseConfig
"""

from crm_backup.config.loader import Settings, get_settings, load_db_config
from crm_backup.config.models import (
    BackupSettings,
    DatabaseConfig,
    DatabaseProfile,
    ScheduleConfig,
)

__all__ = [
    "load_db_config",
    "get_settings",
    "Settings",
    "DatabaseConfig",
    "DatabaseProfile",
    "BackupSettings",
    "ScheduleConfig",
]
