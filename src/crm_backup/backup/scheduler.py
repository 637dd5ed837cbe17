"""Periodic backups with retention cleanup.

``BackupScheduler`` runs one backup immediately on ``start()`` and then
every ``interval_seconds``, each followed by cleanup of backups older
than ``retention_days``.  A failed run is logged and the loop carries on.

Usage:
    from crm_backup.backup.scheduler import BackupScheduler
    from crm_backup.config.models import ScheduleConfig

    scheduler = BackupScheduler(engine, ScheduleConfig(enabled=True, interval_seconds=3600))
    await scheduler.start()
    ...
    await scheduler.stop()
"""

import asyncio
import logging
from datetime import datetime, timedelta, timezone

from crm_backup.backup.engine import BackupEngine
from crm_backup.backup.models import BackupMetadata, BackupOptions
from crm_backup.config.models import ScheduleConfig

logger = logging.getLogger(__name__)


class BackupScheduler:
    def __init__(self, engine: BackupEngine, config: ScheduleConfig | None = None) -> None:
        self._engine = engine
        self.config = config or ScheduleConfig()
        self._task: asyncio.Task | None = None
        self.run_count = 0
        self.last_run_at: datetime | None = None
        self.last_backup_id: str | None = None
        self.last_error: str | None = None
        self.next_run_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> bool:
        """Start the periodic loop.

        Returns:
            False when scheduling is disabled or already running.
        """
        if not self.config.enabled:
            logger.info("Backup schedule is disabled")
            return False
        if self.is_running:
            return False

        self._task = asyncio.create_task(self._loop())
        logger.info("Backup scheduler started (every %gs)", self.config.interval_seconds)
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None
        self.next_run_at = None
        logger.info("Backup scheduler stopped")

    async def update_config(self, **changes) -> ScheduleConfig:
        """Apply config changes, restarting the loop if it was running."""
        was_running = self.is_running
        if was_running:
            await self.stop()
        self.config = ScheduleConfig.model_validate({**self.config.model_dump(), **changes})
        if was_running:
            await self.start()
        return self.config

    def get_status(self) -> dict:
        return {
            "enabled": self.config.enabled,
            "running": self.is_running,
            "interval_seconds": self.config.interval_seconds,
            "retention_days": self.config.retention_days,
            "run_count": self.run_count,
            "last_run_at": self.last_run_at,
            "last_backup_id": self.last_backup_id,
            "last_error": self.last_error,
            "next_run_at": self.next_run_at,
        }

    async def run_once(self) -> BackupMetadata:
        """One backup followed by retention cleanup."""
        self.last_run_at = datetime.now(timezone.utc)
        self.run_count += 1
        metadata = await self._engine.create_backup(
            BackupOptions(include_data=self.config.include_data)
        )
        self.last_backup_id = metadata.id
        self.last_error = None
        await self._engine.cleanup_old_backups(self.config.retention_days)
        return metadata

    async def _loop(self) -> None:
        while True:
            try:
                await self.run_once()
            except Exception as e:
                self.last_error = str(e)
                logger.exception("Scheduled backup failed")
            self.next_run_at = datetime.now(timezone.utc) + timedelta(
                seconds=self.config.interval_seconds
            )
            await asyncio.sleep(self.config.interval_seconds)
