"""
Timer Service — the one authority that opens and closes billable sessions.

Manual UI actions, geofence events and recurring jobs all come through here
(or through the SessionStore primitives it exposes). Handles: start, stop,
explicit switch between clients, elapsed-time queries and startup recovery.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import date, datetime
from typing import Callable, Optional, Tuple

from hourflow.collaborators import ClientStore, LoggingNotificationSink, NotificationSink
from hourflow.data.models import TimeSession
from hourflow.data.session_store import SessionStore
from hourflow.errors import ConflictError, NotFoundError

logger = logging.getLogger(__name__)


class TimerState:
    """The two states a timer can be in."""
    IDLE = "idle"
    RUNNING = "running"


@dataclass(frozen=True)
class TimerSnapshot:
    """Read-only view of the running timer handed to UI, widgets, notifications."""
    client_id: int
    session_id: int
    start_time: datetime
    elapsed_seconds: int


class TimerController:
    """
    Owns the running/idle state for the whole app.

    Only ONE timer runs at a time. Starting while something runs raises
    ConflictError; switching clients is the explicit switch_timer() call.
    Elapsed time is always recomputed from the stored start time.
    """

    def __init__(
        self,
        store: SessionStore,
        clients: Optional[ClientStore] = None,
        notifier: Optional[NotificationSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.clients = clients
        self.notifier = notifier or LoggingNotificationSink()
        self.clock = clock or store.clock
        self.state: str = TimerState.IDLE
        self.client_id: Optional[int] = None
        self.session_id: Optional[int] = None
        self.start_time: Optional[datetime] = None
        self._lock = threading.RLock()

    # ── Startup recovery ────────────────────────────────────────────────────

    def recover(self) -> Optional[TimerSnapshot]:
        """
        Rebuild state from storage after a restart.

        A running marker with its matching active session resumes as-is (no
        new session). Any disagreement between the two is repaired here and
        only here: the marker is cleared, an orphaned active session is
        closed, and the timer stays idle.
        """
        with self._lock:
            marker = self.store.get_active_timer_marker()
            active = self.store.get_active_session()

            if marker is None and active is None:
                self._set_idle()
                return None

            if (marker is not None and active is not None
                    and marker.session_id == active.id
                    and marker.client_id == active.client_id
                    and marker.start_time == active.start_time):
                self._set_running(active)
                snapshot = self.get_active_timer()
                logger.info("Recovered running session %d for client %d (%ds elapsed)",
                            active.id, active.client_id, snapshot.elapsed_seconds)
                self.notifier.show_running_timer(
                    self.client_name(active.client_id), snapshot.elapsed_seconds
                )
                return snapshot

            logger.warning(
                "Inconsistent timer state on startup (marker=%s, active session=%s); repairing.",
                marker.session_id if marker else None,
                active.id if active else None,
            )
            self.store.clear_active_timer_marker()
            if active is not None:
                self.store.stop_session(active.id)
            self._set_idle()
            self.notifier.dismiss()
            return None

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start_timer(self, client_id: int) -> TimeSession:
        """Idle → running. Never switches away from another client by itself."""
        with self._lock:
            if self.state == TimerState.RUNNING:
                raise ConflictError(
                    f"A timer is already running for client {self.client_id}.",
                    client_id=self.client_id, session_id=self.session_id,
                )
            if self.clients is not None and self.clients.get_client(client_id) is None:
                raise NotFoundError(f"Client {client_id} not found.")

            session = self.store.start_session(client_id)
            self._set_running(session)
            self.notifier.show_running_timer(self.client_name(client_id), 0)
            return session

    def stop_timer(self, notes: Optional[str] = None) -> Optional[TimeSession]:
        """
        Running → idle. Always permitted.

        In-memory state is cleared even when the store fails; the error is
        re-raised afterwards. If memory is idle but storage still shows a
        running session, that session is the one stopped.
        """
        with self._lock:
            session_id = self.session_id
            if session_id is None:
                marker = self.store.get_active_timer_marker()
                session_id = marker.session_id if marker else None
            if session_id is None:
                return None
            try:
                return self.store.stop_session(session_id, notes)
            except NotFoundError:
                # Session row is gone (e.g. its client was deleted); a marker
                # left pointing at it would block every later start.
                marker = self.store.get_active_timer_marker()
                if marker is not None and marker.session_id == session_id:
                    logger.warning("Session %d vanished while running; clearing the marker.",
                                   session_id)
                    self.store.clear_active_timer_marker()
                raise
            finally:
                self._set_idle()
                self.notifier.dismiss()

    def switch_timer(self, client_id: int,
                     notes: Optional[str] = None) -> Tuple[Optional[TimeSession], TimeSession]:
        """The explicit "stop current, then start new" the UI offers on conflict."""
        with self._lock:
            stopped = self.stop_timer(notes)
            started = self.start_timer(client_id)
        logger.info("Switched timer to client %d", client_id)
        return stopped, started

    def create_manual_entry(self, client_id: int, duration_seconds: int,
                            entry_date: Optional[date] = None,
                            notes: Optional[str] = None) -> TimeSession:
        return self.store.create_manual_entry(client_id, duration_seconds, entry_date, notes)

    # ── Queries ─────────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self.state == TimerState.RUNNING

    def get_active_timer(self) -> Optional[TimerSnapshot]:
        with self._lock:
            if self.state != TimerState.RUNNING:
                return None
            return TimerSnapshot(
                client_id=self.client_id,
                session_id=self.session_id,
                start_time=self.start_time,
                elapsed_seconds=self.elapsed_seconds(),
            )

    def elapsed_seconds(self) -> int:
        """Seconds since the stored start time (0 when idle)."""
        start = self.start_time  # read once; stop_timer may clear it from another thread
        if start is None:
            return 0
        return max(0, int((self.clock() - start).total_seconds()))

    def refresh_notification(self) -> None:
        snapshot = self.get_active_timer()
        if snapshot is not None:
            self.notifier.show_running_timer(
                self.client_name(snapshot.client_id), snapshot.elapsed_seconds
            )

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _set_running(self, session: TimeSession) -> None:
        self.state = TimerState.RUNNING
        self.client_id = session.client_id
        self.session_id = session.id
        self.start_time = session.start_time

    def _set_idle(self) -> None:
        self.state = TimerState.IDLE
        self.client_id = None
        self.session_id = None
        self.start_time = None

    def client_name(self, client_id: int) -> str:
        client = self.clients.get_client(client_id) if self.clients is not None else None
        return client.name if client else f"Client {client_id}"


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The state machine for "is a billable timer running". Two states, idle and
#   running, and one composite (switch) that the UI must ask for explicitly.
#
# Key classes:
#   - TimerState: constants for the two states.
#   - TimerSnapshot: what the UI renders; elapsed is computed on demand.
#   - TimerController: start/stop/switch/recover, guarded by an RLock because
#     geofence callbacks can arrive on another thread.
#
# Data flow:
#   Button / geofence / recurring job → TimerController → SessionStore →
#   Repository → SQLite; TimerController → NotificationSink for the banner.
#
# Interviewer-friendly talking points:
#   1. No ticking counter: elapsed = now - start_time, so backgrounding the
#      app can't make the display drift.
#   2. stop_timer() clears memory in a finally block; a storage failure can
#      never leave the UI thinking a timer still runs.
#   3. recover() is the single place allowed to fix a marker/session
#      mismatch quietly. Everywhere else that mismatch is an error.
