"""Scheduler for background sync and maintenance tasks.

This module provides:
- Periodic sync of the configured or selected tables (every 30 seconds
  by default), skipped while the remote is unreachable or a run is still
  in progress
- Periodic audit log deduplication (daily by default)
- Manual triggers for CLI usage
"""

from __future__ import annotations

import logging
import threading
from typing import TYPE_CHECKING

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger

if TYPE_CHECKING:
    from collections.abc import Iterable

    from shelfsync.client.audit import AuditLogger
    from shelfsync.client.sync.engine import Synchronizer
    from shelfsync.client.sync.types import SyncResult

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs sync and audit maintenance in the background."""

    def __init__(
        self,
        synchronizer: Synchronizer,
        audit: AuditLogger,
        tables: Iterable[str] | None = None,
    ) -> None:
        """Initialize the scheduler.

        Args:
            synchronizer: Engine whose ``sync_all`` runs periodically.
            audit: Audit logger whose journal is deduplicated periodically.
            tables: Tables each run syncs (defaults to the configured tables).
        """
        self._synchronizer = synchronizer
        self._audit = audit
        self._tables = tuple(tables) if tables else None
        self._scheduler: BackgroundScheduler | None = None
        self._run_lock = threading.Lock()

    @property
    def running(self) -> bool:
        """Check if the scheduler is started."""
        return self._scheduler is not None

    def _sync_job(self) -> None:
        """Job function for the periodic sync."""
        if not self._run_lock.acquire(blocking=False):
            logger.debug("Previous sync run still in progress, skipping")
            return
        try:
            if not self._synchronizer.check_connectivity():
                logger.debug("Remote unreachable, skipping scheduled sync")
                return
            result = self._synchronizer.sync_all(self._tables)
            if result.has_failures:
                logger.warning("Scheduled sync failed for: %s", ", ".join(result.failed))
        except Exception:
            logger.exception("Error during scheduled sync")
        finally:
            self._run_lock.release()

    def _dedup_job(self) -> None:
        """Job function for the periodic audit log deduplication."""
        logger.info("Starting scheduled audit log deduplication")
        try:
            self._audit.clean_duplicates()
        except Exception:
            logger.exception("Error during scheduled audit log deduplication")

    def start(self) -> None:
        """Start the scheduler."""
        if self._scheduler is not None:
            return  # Already running

        settings = self._synchronizer.settings
        self._scheduler = BackgroundScheduler()

        self._scheduler.add_job(
            self._sync_job,
            trigger=IntervalTrigger(seconds=settings.sync_interval.total_seconds()),
            id="background_sync",
            name="Background sync",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )

        self._scheduler.add_job(
            self._dedup_job,
            trigger=IntervalTrigger(seconds=settings.dedup_interval.total_seconds()),
            id="audit_dedup",
            name="Audit log deduplication",
            replace_existing=True,
            coalesce=True,
        )

        self._scheduler.start()
        logger.info(
            "Sync scheduler started (sync every %.0fs)",
            settings.sync_interval.total_seconds(),
        )

    def stop(self) -> None:
        """Stop the scheduler and cancel any running cycle."""
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
            self._synchronizer.cancel()
            logger.info("Sync scheduler stopped")

    def run_now(self) -> SyncResult:
        """Run a sync immediately (manual trigger).

        Returns:
            Result of the sync run.
        """
        with self._run_lock:
            return self._synchronizer.sync_all(self._tables)

    def clean_logs_now(self) -> tuple[int, int]:
        """Run the audit log deduplication immediately (manual trigger).

        Returns:
            Tuple of (local events removed, remote events removed).
        """
        return self._audit.clean_duplicates()
