"""Scheduler for periodic background sync.

This module provides:
- SyncScheduler: runs the sync engine every N minutes
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from profilesync.sync.engine import SyncEngine
    from profilesync.sync.types import SyncRunResult

logger = logging.getLogger(__name__)

SYNC_JOB_ID = "periodic_sync"


class SyncScheduler:
    """Runs SyncEngine.sync on a fixed interval.

    The engine's own run lock keeps manual and scheduled runs from
    overlapping; the job is also limited to one instance at a time.
    """

    def __init__(
        self,
        engine: SyncEngine,
        interval_minutes: int = 60,
        cleanup_stale_files: bool = True,
    ) -> None:
        """Initialize the scheduler.

        Args:
            engine: Engine to run.
            interval_minutes: Minutes between runs.
            cleanup_stale_files: Delete expired peer blobs after each successful run.
        """
        if interval_minutes < 1:
            raise ValueError("interval_minutes must be at least 1")
        self._engine = engine
        self._interval_minutes = interval_minutes
        self._cleanup_stale_files = cleanup_stale_files
        self._scheduler: BackgroundScheduler | None = None

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    def _sync_job(self) -> None:
        """Job function for scheduled sync."""
        logger.info("Starting scheduled sync")
        try:
            result = self._engine.sync()
            if result.success and self._cleanup_stale_files:
                self._engine.cleanup_stale_files()
        except Exception:
            logger.exception("Error during scheduled sync")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        self._scheduler = BackgroundScheduler()
        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(minutes=self._interval_minutes),
            id=SYNC_JOB_ID,
            name="Periodic sync",
            max_instances=1,
            coalesce=True,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info("Sync scheduler started (every %d minutes)", self._interval_minutes)

    def stop(self) -> None:
        """Stop the scheduler."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Sync scheduler stopped")

    def run_now(self) -> SyncRunResult:
        """Run a sync immediately (manual trigger)."""
        return self._engine.sync()
