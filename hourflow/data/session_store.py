"""
SessionStore — durable sessions plus the single active-timer marker.

Every start/stop from the UI, the geofence trigger and the recurring-job
processor ends up here. The store enforces "at most one active session" and
keeps the marker in step with the session table; it never repairs a
disagreement on its own (that is TimerController.recover's job).
"""

from __future__ import annotations

import logging
import sqlite3
from contextlib import contextmanager
from datetime import date, datetime, timedelta
from typing import Callable, Iterator, List, Optional

from hourflow.errors import (
    ConflictError, InconsistentStateError, NotFoundError, TransientIOError,
)

from .models import ActiveTimer, TimeSession
from .repository import Repository

logger = logging.getLogger(__name__)


class SessionStore:
    """Session persistence with invariant enforcement."""

    def __init__(self, repo: Repository,
                 clock: Callable[[], datetime] = datetime.now) -> None:
        self.repo = repo
        self.clock = clock

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def start_session(self, client_id: int) -> TimeSession:
        """Open a session and set the marker, atomically."""
        with self._storage_errors(), self.repo.transaction():
            marker = self.repo.get_active_timer()
            if marker.is_running:
                raise ConflictError(
                    f"Session {marker.session_id} for client {marker.client_id} "
                    "is already running.",
                    client_id=marker.client_id, session_id=marker.session_id,
                )
            stray = self.repo.get_active_session()
            if stray is not None:
                raise InconsistentStateError(
                    f"Session {stray.id} is active but the timer marker is clear."
                )
            now = self._now()
            session_id = self.repo.insert_session(
                client_id, now, now.date(), is_active=True,
            )
            self.repo.set_active_timer(client_id, session_id, now)
        logger.info("Session %d started for client %d", session_id, client_id)
        return self.repo.get_session(session_id)

    def stop_session(self, session_id: int,
                     notes: Optional[str] = None) -> TimeSession:
        """Close a session, record its duration and clear the marker."""
        with self._storage_errors(), self.repo.transaction():
            session = self.repo.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found.")
            if not session.is_active:
                logger.warning("Session %d is already closed.", session_id)
                return session

            now = self._now()
            elapsed = int((now - session.start_time).total_seconds())
            duration = max(0, elapsed)
            if elapsed < 0:
                logger.warning("Clock skew on session %d (%ds), duration clamped to 0.",
                               session_id, elapsed)
            self.repo.close_session(
                session_id, now, duration,
                notes if notes is not None else session.notes,
            )

            marker = self.repo.get_active_timer()
            if marker.session_id in (None, session_id):
                self.repo.clear_active_timer()
            else:
                logger.warning("Marker points at session %s, not %d; left as is.",
                               marker.session_id, session_id)
        logger.info("Session %d stopped after %ds", session_id, duration)
        return self.repo.get_session(session_id)

    def create_manual_entry(
        self,
        client_id: int,
        duration_seconds: int,
        entry_date: Optional[date] = None,
        notes: Optional[str] = None,
    ) -> TimeSession:
        """Insert an already-closed session ending now. The marker is untouched."""
        duration_seconds = int(duration_seconds)
        if duration_seconds < 0:
            raise ValueError(f"Duration must not be negative: {duration_seconds}")
        now = self._now()
        with self._storage_errors():
            session_id = self.repo.insert_session(
                client_id,
                now - timedelta(seconds=duration_seconds),
                entry_date or now.date(),
                end_time=now,
                duration=duration_seconds,
                is_active=False,
                notes=notes or None,
            )
        logger.info("Manual entry %d for client %d (%ds)",
                    session_id, client_id, duration_seconds)
        return self.repo.get_session(session_id)

    # ── Queries ─────────────────────────────────────────────────────────────

    def get_session(self, session_id: int) -> Optional[TimeSession]:
        with self._storage_errors():
            return self.repo.get_session(session_id)

    def get_active_session(self) -> Optional[TimeSession]:
        with self._storage_errors():
            return self.repo.get_active_session()

    def get_active_timer_marker(self) -> Optional[ActiveTimer]:
        """The marker when something is running, otherwise None."""
        with self._storage_errors():
            marker = self.repo.get_active_timer()
        return marker if marker.is_running else None

    def count_active_sessions(self) -> int:
        with self._storage_errors():
            return self.repo.count_active_sessions()

    def list_sessions_for_client(self, client_id: int,
                                 start_date: Optional[date] = None,
                                 end_date: Optional[date] = None) -> List[TimeSession]:
        with self._storage_errors():
            return self.repo.list_sessions_for_client(client_id, start_date, end_date)

    # ── Repair & user edits ─────────────────────────────────────────────────

    def clear_active_timer_marker(self) -> None:
        """Idempotent: reset the marker to "nothing running"."""
        with self._storage_errors():
            self.repo.clear_active_timer()

    def update_session(self, session_id: int, **fields) -> TimeSession:
        """User edit of a closed session (start/end/duration/date/notes)."""
        with self._storage_errors(), self.repo.transaction():
            session = self.repo.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found.")
            if session.is_active:
                raise ValueError("A running session cannot be edited; stop it first.")
            if "duration" not in fields and ("start_time" in fields or "end_time" in fields):
                start = fields.get("start_time", session.start_time)
                end = fields.get("end_time", session.end_time)
                if start and end:
                    fields["duration"] = max(0, int((end - start).total_seconds()))
            self.repo.update_session(session_id, **fields)
        return self.repo.get_session(session_id)

    def delete_session(self, session_id: int) -> None:
        with self._storage_errors(), self.repo.transaction():
            session = self.repo.get_session(session_id)
            if session is None:
                raise NotFoundError(f"Session {session_id} not found.")
            if session.is_active:
                raise ValueError("A running session cannot be deleted; stop it first.")
            self.repo.delete_session(session_id)

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _now(self) -> datetime:
        return self.clock().replace(microsecond=0)

    @contextmanager
    def _storage_errors(self) -> Iterator[None]:
        """Translate sqlite3 failures into the engine's error taxonomy."""
        try:
            yield
        except sqlite3.IntegrityError as exc:
            message = str(exc)
            if "FOREIGN KEY" in message:
                raise NotFoundError(f"Referenced client does not exist ({message}).") from exc
            if "idx_sessions_single_active" in message or "is_active" in message:
                raise ConflictError("Another session is already active.") from exc
            raise TransientIOError(message) from exc
        except sqlite3.DatabaseError as exc:
            raise TransientIOError(str(exc)) from exc


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Owns the two writes that must never drift apart: the time_sessions row
#   and the active_timer singleton. start/stop each run as one transaction
#   under the repository lock.
#
# Key methods:
#   - start_session(): ConflictError if the marker says something runs.
#   - stop_session(): floor(now - start), clamped at zero for clock skew.
#   - create_manual_entry(): closed session, used by the UI and recurring jobs.
#   - clear_active_timer_marker(): repair hook for startup recovery.
#
# Data flow:
#   TimerController / RecurringJobProcessor → SessionStore → Repository → SQLite
#
# Interviewer-friendly talking points:
#   1. The clock is injected, so tests can move time without sleeping.
#   2. Two layers of defence for "one active session": the marker check here
#      and a partial unique index in the schema.
#   3. A disagreement found mid-operation is an error, never a silent fix.
