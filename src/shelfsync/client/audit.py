"""Audit trail of sync activity.

This module provides:
- AuditLogger: Records structured events locally and forwards them to the
  remote system log

Events are journaled in the local ``system_events`` table first, so nothing
is lost while offline. Forwarding to the remote ``log_system_event`` RPC is
best effort: after a failure the logger stops forwarding until ``flush``
succeeds again.
"""

from __future__ import annotations

import json
import logging
import threading
from typing import TYPE_CHECKING, Any

from sqlalchemy import func, select

from shelfsync.client.api import APIError
from shelfsync.client.models import SystemEvent
from shelfsync.client.store import SYSTEM_EVENTS
from shelfsync.client.sync.types import SyncError
from shelfsync.core.types import Severity

if TYPE_CHECKING:
    from shelfsync.client.store import LocalStore
    from shelfsync.client.sync.types import AuditSink

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.INFO: logging.INFO,
    Severity.SUCCESS: logging.INFO,
    Severity.WARNING: logging.WARNING,
    Severity.ERROR: logging.ERROR,
}


class AuditLogger:
    """Structured audit log with local journal and remote forwarding."""

    def __init__(self, store: LocalStore, sink: AuditSink | None = None) -> None:
        """Initialize the audit logger.

        Args:
            store: Local store holding the event journal.
            sink: Remote system log. None keeps events local only.
        """
        self._store = store
        self._sink = sink
        self._sink_down = False
        self._flush_lock = threading.Lock()

    def log_event(
        self,
        action: str,
        description: str,
        severity: Severity | str,
        component: str,
        metadata: dict[str, Any] | None = None,
    ) -> int:
        """Record an audit event.

        Args:
            action: Machine-readable action (e.g., "sync_conflict").
            description: Human-readable description.
            severity: One of info, warning, error, success.
            component: Emitting component (e.g., "synchronizer").
            metadata: Optional JSON-serializable details.

        Returns:
            Local id of the journaled event.

        Raises:
            ValueError: If the severity is not recognized.
        """
        severity = Severity(severity)
        encoded = (
            json.dumps(metadata, sort_keys=True, default=str)
            if metadata is not None
            else None
        )

        with self._store.transaction(SYSTEM_EVENTS) as session:
            event = SystemEvent(
                action=action,
                description=description,
                severity=severity.value,
                component=component,
                event_metadata=encoded,
            )
            session.add(event)
            session.flush()
            event_id = event.id

        logger.log(_LOG_LEVELS[severity], "[%s] %s: %s", component, action, description)

        if self._sink is not None and not self._sink_down:
            self._forward(event_id, action, description, severity, component, encoded)
        return event_id

    def flush(self) -> int:
        """Forward every journaled event the remote has not received.

        Stops at the first failure; the remaining events are retried on the
        next flush.

        Returns:
            Number of events forwarded.
        """
        if self._sink is None:
            return 0

        with self._flush_lock:
            with self._store.read() as session:
                pending = session.scalars(
                    select(SystemEvent)
                    .where(SystemEvent.remote_id.is_(None))
                    .order_by(SystemEvent.id)
                ).all()

            self._sink_down = False
            forwarded = 0
            for event in pending:
                if not self._forward(
                    event.id,
                    event.action,
                    event.description,
                    Severity(event.severity),
                    event.component,
                    event.event_metadata,
                ):
                    break
                forwarded += 1

        if forwarded:
            logger.info("Forwarded %d audit events to the remote log", forwarded)
        return forwarded

    def clean_duplicates(self) -> tuple[int, int]:
        """Collapse consecutive identical events.

        Events with the same action, component, severity, description and
        metadata that directly follow each other are merged into the earliest
        one, whose ``repeat_count`` accumulates the repeats. The remote log
        is then asked to run its own deduplication.

        Returns:
            Tuple of (local events removed, remote events removed).
        """
        removed = 0
        with self._store.transaction(SYSTEM_EVENTS) as session:
            events = session.scalars(select(SystemEvent).order_by(SystemEvent.id)).all()
            kept: SystemEvent | None = None
            for event in events:
                if kept is not None and _same_event(kept, event):
                    kept.repeat_count += event.repeat_count
                    if kept.remote_id is None and event.remote_id is not None:
                        kept.remote_id = event.remote_id
                    session.delete(event)
                    removed += 1
                else:
                    kept = event

        remote_removed = 0
        if self._sink is not None:
            remote_removed = self._sink.clean_duplicate_logs()

        logger.info(
            "Audit log deduplicated: %d local, %d remote events collapsed",
            removed,
            remote_removed,
        )
        return removed, remote_removed

    def recent(self, limit: int = 20) -> list[SystemEvent]:
        """Get the most recent journaled events, newest first."""
        with self._store.read() as session:
            return list(
                session.scalars(
                    select(SystemEvent).order_by(SystemEvent.id.desc()).limit(limit)
                ).all()
            )

    def pending_count(self) -> int:
        """Count events not yet forwarded to the remote."""
        with self._store.read() as session:
            count = session.scalar(
                select(func.count())
                .select_from(SystemEvent)
                .where(SystemEvent.remote_id.is_(None))
            )
        return count or 0

    def _forward(
        self,
        event_id: int,
        action: str,
        description: str,
        severity: Severity,
        component: str,
        encoded_metadata: str | None,
    ) -> bool:
        assert self._sink is not None
        metadata = json.loads(encoded_metadata) if encoded_metadata else None
        try:
            remote_id = self._sink.log_system_event(
                action, description, severity.value, component, metadata
            )
        except (SyncError, APIError) as e:
            self._sink_down = True
            logger.warning("Could not forward audit event %d: %s", event_id, e)
            return False

        with self._store.transaction(SYSTEM_EVENTS) as session:
            event = session.get(SystemEvent, event_id)
            if event is not None:
                event.remote_id = str(remote_id)
        return True


def _same_event(a: SystemEvent, b: SystemEvent) -> bool:
    return (
        a.action == b.action
        and a.component == b.component
        and a.severity == b.severity
        and a.description == b.description
        and a.event_metadata == b.event_metadata
    )
