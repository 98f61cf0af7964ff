"""Thread-safe sync status shared by the reconciler and its readers."""

from __future__ import annotations

import threading
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum


class SyncPhase(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"
    ERROR = "error"


@dataclass(frozen=True)
class SyncSnapshot:
    """Point-in-time copy of the sync status."""

    phase: SyncPhase
    error: str | None
    last_synced_at: datetime | None
    current_label_id: str | None
    synced_labels: frozenset[str]


class SyncStatus:
    """Owned, lock-guarded record of reconciliation progress.

    The reconciler writes it from worker-facing code while the view reads it
    from the event loop, so every access goes through the lock and readers
    only ever see a :class:`SyncSnapshot`.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._phase = SyncPhase.IDLE
        self._error: str | None = None
        self._last_synced_at: datetime | None = None
        self._current_label_id: str | None = None
        self._synced_labels: set[str] = set()

    def begin_pass(self) -> None:
        with self._lock:
            self._phase = SyncPhase.SYNCING
            self._error = None

    def begin_label(self, label_id: str) -> None:
        with self._lock:
            self._current_label_id = label_id

    def finish_label(self, label_id: str) -> None:
        with self._lock:
            self._synced_labels.add(label_id)
            if self._current_label_id == label_id:
                self._current_label_id = None

    def succeed(self, at: datetime | None = None) -> None:
        with self._lock:
            self._phase = SyncPhase.IDLE
            self._error = None
            self._current_label_id = None
            self._last_synced_at = at or datetime.now(timezone.utc)

    def fail(self, error: str) -> None:
        with self._lock:
            self._phase = SyncPhase.ERROR
            self._error = error
            self._current_label_id = None

    def snapshot(self) -> SyncSnapshot:
        with self._lock:
            return SyncSnapshot(
                phase=self._phase,
                error=self._error,
                last_synced_at=self._last_synced_at,
                current_label_id=self._current_label_id,
                synced_labels=frozenset(self._synced_labels),
            )

    def describe(self) -> str:
        """One-line status for a status bar."""

        snap = self.snapshot()
        if snap.phase is SyncPhase.SYNCING:
            if snap.current_label_id:
                return f"Syncing {snap.current_label_id}..."
            return "Syncing..."
        if snap.phase is SyncPhase.ERROR:
            return f"Sync error: {snap.error}"
        if snap.last_synced_at is None:
            return "Not synced"
        return f"Synced at {snap.last_synced_at.astimezone().strftime('%H:%M:%S')}"
