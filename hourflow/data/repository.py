"""
Repository — the single place where SQL lives.

Every other module talks to Repository, never to raw SQL. Statements commit
immediately unless they run inside ``transaction()``, in which case the
outermost block commits (or rolls back) all of them together.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from contextlib import contextmanager
from datetime import date, datetime
from typing import Iterator, List, Optional

from hourflow.errors import TransientIOError

from .models import (
    ActiveTimer, Client, ClientGeofence, Invoice, Occurrence, RecurringJob,
    TimeSession,
)

logger = logging.getLogger(__name__)

# helpers: parse ISO strings from SQLite
_parse_dt = lambda s: datetime.fromisoformat(s) if s else None
_parse_date = lambda s: date.fromisoformat(s) if s else None


def fmt_dt(dt: datetime) -> str:
    """Whole-second ISO timestamp."""
    return dt.replace(microsecond=0).isoformat()


def _fmt_date(d: Optional[date]) -> Optional[str]:
    return d.isoformat() if d else None


# Columns a user may edit on a recurring job
_JOB_EDITABLE = (
    "client_id", "title", "frequency", "day_of_week", "day_of_month",
    "duration_seconds", "notes", "auto_invoice", "is_active",
    "start_date", "end_date",
)

# Columns a user may edit on a closed session
_SESSION_EDITABLE = ("start_time", "end_time", "duration", "date", "notes")


class Repository:
    """Data-access layer wrapping a sqlite3 connection."""

    def __init__(self, conn: sqlite3.Connection) -> None:
        self.conn = conn
        self.lock = threading.RLock()
        self._tx_depth = 0

    # ── Transactions ────────────────────────────────────────────────────────

    @contextmanager
    def transaction(self) -> Iterator["Repository"]:
        """
        Group several writes into one atomic unit.

        Holds the repository lock for the whole block, so no other caller
        can observe a half-applied state. Nested blocks join the outer one.
        """
        with self.lock:
            self._tx_depth += 1
            try:
                yield self
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self.conn.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._commit_now()

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._commit_now()

    def _commit_now(self) -> None:
        try:
            self.conn.commit()
        except sqlite3.OperationalError as exc:
            raise TransientIOError(f"Commit failed: {exc}") from exc

    # ── Clients ─────────────────────────────────────────────────────────────

    def create_client(self, name: str, hourly_rate: float = 0.0,
                      currency: str = "USD") -> Client:
        with self.lock:
            cur = self.conn.execute(
                "INSERT INTO clients (name, hourly_rate, currency) VALUES (?, ?, ?)",
                (name, hourly_rate, currency),
            )
            self._commit()
        return Client(id=cur.lastrowid, name=name, hourly_rate=hourly_rate,
                      currency=currency)

    def get_client(self, client_id: int) -> Optional[Client]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM clients WHERE id = ?", (client_id,)
            ).fetchone()
        if not row:
            return None
        return Client(id=row["id"], name=row["name"],
                      hourly_rate=row["hourly_rate"], currency=row["currency"])

    def delete_client(self, client_id: int) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM clients WHERE id = ?", (client_id,))
            self._commit()
        logger.info("Deleted client %d", client_id)

    # ── Sessions ────────────────────────────────────────────────────────────

    def insert_session(
        self,
        client_id: int,
        start_time: datetime,
        session_date: date,
        end_time: Optional[datetime] = None,
        duration: int = 0,
        is_active: bool = False,
        notes: Optional[str] = None,
    ) -> int:
        with self.lock:
            cur = self.conn.execute(
                """INSERT INTO time_sessions
                   (client_id, start_time, end_time, duration, date, is_active, notes)
                   VALUES (?, ?, ?, ?, ?, ?, ?)""",
                (
                    client_id, fmt_dt(start_time),
                    fmt_dt(end_time) if end_time else None,
                    duration, session_date.isoformat(),
                    1 if is_active else 0, notes,
                ),
            )
            self._commit()
        return cur.lastrowid

    def close_session(self, session_id: int, end_time: datetime,
                      duration: int, notes: Optional[str]) -> None:
        with self.lock:
            self.conn.execute(
                """UPDATE time_sessions
                   SET end_time = ?, duration = ?, is_active = 0, notes = ?
                   WHERE id = ?""",
                (fmt_dt(end_time), duration, notes, session_id),
            )
            self._commit()

    def update_session(self, session_id: int, **fields) -> None:
        unknown = set(fields) - set(_SESSION_EDITABLE)
        if unknown:
            raise ValueError(f"Cannot edit session fields: {sorted(unknown)}")
        if not fields:
            return
        values = []
        for key in fields:
            value = fields[key]
            if isinstance(value, datetime):
                value = fmt_dt(value)
            elif isinstance(value, date):
                value = value.isoformat()
            values.append(value)
        assignments = ", ".join(f"{key} = ?" for key in fields)
        with self.lock:
            self.conn.execute(
                f"UPDATE time_sessions SET {assignments} WHERE id = ?",
                (*values, session_id),
            )
            self._commit()

    def get_session(self, session_id: int) -> Optional[TimeSession]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM time_sessions WHERE id = ?", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def get_active_session(self) -> Optional[TimeSession]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM time_sessions WHERE is_active = 1 LIMIT 1"
            ).fetchone()
        return self._row_to_session(row) if row else None

    def count_active_sessions(self) -> int:
        with self.lock:
            row = self.conn.execute(
                "SELECT COUNT(*) FROM time_sessions WHERE is_active = 1"
            ).fetchone()
        return row[0]

    def list_sessions_for_client(
        self,
        client_id: int,
        start_date: Optional[date] = None,
        end_date: Optional[date] = None,
    ) -> List[TimeSession]:
        query = "SELECT * FROM time_sessions WHERE client_id = ?"
        params: list = [client_id]
        if start_date:
            query += " AND date >= ?"
            params.append(start_date.isoformat())
        if end_date:
            query += " AND date <= ?"
            params.append(end_date.isoformat())
        query += " ORDER BY date DESC, start_time DESC"
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_session(r) for r in rows]

    def delete_session(self, session_id: int) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM time_sessions WHERE id = ?", (session_id,))
            self._commit()
        logger.info("Deleted session %d", session_id)

    # ── Active timer marker ─────────────────────────────────────────────────

    def get_active_timer(self) -> ActiveTimer:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM active_timer WHERE id = 1"
            ).fetchone()
        if not row:
            return ActiveTimer()
        return ActiveTimer(
            client_id=row["client_id"],
            session_id=row["session_id"],
            start_time=_parse_dt(row["start_time"]),
            is_running=bool(row["is_running"]),
        )

    def set_active_timer(self, client_id: int, session_id: int,
                         start_time: datetime) -> None:
        with self.lock:
            self.conn.execute(
                """INSERT INTO active_timer (id, client_id, session_id, start_time, is_running)
                   VALUES (1, ?, ?, ?, 1)
                   ON CONFLICT(id) DO UPDATE SET
                     client_id = excluded.client_id,
                     session_id = excluded.session_id,
                     start_time = excluded.start_time,
                     is_running = 1""",
                (client_id, session_id, fmt_dt(start_time)),
            )
            self._commit()

    def clear_active_timer(self) -> None:
        with self.lock:
            self.conn.execute(
                """UPDATE active_timer
                   SET client_id = NULL, session_id = NULL, start_time = NULL,
                       is_running = 0
                   WHERE id = 1"""
            )
            self._commit()

    # ── Invoices ────────────────────────────────────────────────────────────

    def create_invoice(
        self,
        client_id: int,
        total_hours: float,
        total_amount: float,
        session_ids: List[int],
        currency: str = "USD",
    ) -> Invoice:
        ids_text = ",".join(str(i) for i in session_ids)
        with self.lock:
            cur = self.conn.execute(
                """INSERT INTO invoices
                   (client_id, total_hours, total_amount, currency, session_ids)
                   VALUES (?, ?, ?, ?, ?)""",
                (client_id, total_hours, total_amount, currency, ids_text),
            )
            self._commit()
        return Invoice(id=cur.lastrowid, client_id=client_id,
                       total_hours=total_hours, total_amount=total_amount,
                       currency=currency, session_ids=list(session_ids))

    def get_invoice(self, invoice_id: int) -> Optional[Invoice]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM invoices WHERE id = ?", (invoice_id,)
            ).fetchone()
        if not row:
            return None
        return Invoice(
            id=row["id"], client_id=row["client_id"],
            total_hours=row["total_hours"], total_amount=row["total_amount"],
            currency=row["currency"],
            session_ids=[int(s) for s in row["session_ids"].split(",") if s],
            created_at=_parse_dt(row["created_at"]),
        )

    # ── Recurring jobs ──────────────────────────────────────────────────────

    def create_recurring_job(self, job: RecurringJob) -> RecurringJob:
        with self.lock:
            cur = self.conn.execute(
                """INSERT INTO recurring_jobs
                   (client_id, title, frequency, day_of_week, day_of_month,
                    duration_seconds, notes, auto_invoice, is_active,
                    start_date, end_date)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    job.client_id, job.title.strip(), job.frequency,
                    job.day_of_week, job.day_of_month, job.duration_seconds,
                    (job.notes or "").strip() or None,
                    1 if job.auto_invoice else 0, 1 if job.is_active else 0,
                    _fmt_date(job.start_date), _fmt_date(job.end_date),
                ),
            )
            self._commit()
        return self.get_recurring_job(cur.lastrowid)

    def get_recurring_job(self, job_id: int) -> Optional[RecurringJob]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM recurring_jobs WHERE id = ?", (job_id,)
            ).fetchone()
        return self._row_to_job(row) if row else None

    def list_recurring_jobs(self, active_only: bool = False,
                            client_id: Optional[int] = None) -> List[RecurringJob]:
        query = "SELECT * FROM recurring_jobs"
        conditions: List[str] = []
        params: list = []
        if active_only:
            conditions.append("is_active = 1")
        if client_id is not None:
            conditions.append("client_id = ?")
            params.append(client_id)
        if conditions:
            query += " WHERE " + " AND ".join(conditions)
        query += " ORDER BY id"
        with self.lock:
            rows = self.conn.execute(query, params).fetchall()
        return [self._row_to_job(r) for r in rows]

    def update_recurring_job(self, job_id: int, **fields) -> None:
        unknown = set(fields) - set(_JOB_EDITABLE)
        if unknown:
            raise ValueError(f"Cannot edit recurring job fields: {sorted(unknown)}")
        assignments = ["updated_at = ?"]
        values: list = [fmt_dt(datetime.now())]
        for key, value in fields.items():
            if isinstance(value, bool):
                value = 1 if value else 0
            elif isinstance(value, date):
                value = value.isoformat()
            assignments.append(f"{key} = ?")
            values.append(value)
        with self.lock:
            self.conn.execute(
                f"UPDATE recurring_jobs SET {', '.join(assignments)} WHERE id = ?",
                (*values, job_id),
            )
            self._commit()

    def advance_watermark(self, job_id: int, generated_through: date) -> bool:
        """Move last_generated_date forward. Returns False if it would regress."""
        stamp = generated_through.isoformat()
        with self.lock:
            cur = self.conn.execute(
                """UPDATE recurring_jobs
                   SET last_generated_date = ?, updated_at = ?
                   WHERE id = ?
                     AND (last_generated_date IS NULL OR last_generated_date < ?)""",
                (stamp, fmt_dt(datetime.now()), job_id, stamp),
            )
            self._commit()
        return cur.rowcount > 0

    # ── Occurrences ─────────────────────────────────────────────────────────

    def create_occurrence(self, job_id: int, scheduled_date: date) -> bool:
        """Insert a pending occurrence. Returns False if the date already exists."""
        with self.lock:
            cur = self.conn.execute(
                """INSERT OR IGNORE INTO recurring_job_occurrences
                   (recurring_job_id, scheduled_date) VALUES (?, ?)""",
                (job_id, scheduled_date.isoformat()),
            )
            self._commit()
        return cur.rowcount > 0

    def get_occurrence(self, occurrence_id: int) -> Optional[Occurrence]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM recurring_job_occurrences WHERE id = ?",
                (occurrence_id,),
            ).fetchone()
        return self._row_to_occurrence(row) if row else None

    def list_occurrences(self, job_id: int) -> List[Occurrence]:
        with self.lock:
            rows = self.conn.execute(
                """SELECT * FROM recurring_job_occurrences
                   WHERE recurring_job_id = ? ORDER BY scheduled_date""",
                (job_id,),
            ).fetchall()
        return [self._row_to_occurrence(r) for r in rows]

    def list_pending_occurrences(self, up_to: date) -> List[Occurrence]:
        with self.lock:
            rows = self.conn.execute(
                """SELECT * FROM recurring_job_occurrences
                   WHERE status = 'pending' AND scheduled_date <= ?
                   ORDER BY scheduled_date, id""",
                (up_to.isoformat(),),
            ).fetchall()
        return [self._row_to_occurrence(r) for r in rows]

    def update_occurrence(
        self,
        occurrence_id: int,
        status: Optional[str] = None,
        session_id: Optional[int] = None,
        invoice_id: Optional[int] = None,
    ) -> None:
        assignments: List[str] = []
        values: list = []
        if status is not None:
            assignments.append("status = ?")
            values.append(status)
        if session_id is not None:
            assignments.append("session_id = ?")
            values.append(session_id)
        if invoice_id is not None:
            assignments.append("invoice_id = ?")
            values.append(invoice_id)
        if not assignments:
            return
        with self.lock:
            self.conn.execute(
                f"UPDATE recurring_job_occurrences SET {', '.join(assignments)} WHERE id = ?",
                (*values, occurrence_id),
            )
            self._commit()

    # ── Geofences ───────────────────────────────────────────────────────────

    def upsert_geofence(
        self,
        client_id: int,
        latitude: float,
        longitude: float,
        radius: float,
        auto_start: bool = True,
        auto_stop: bool = True,
    ) -> ClientGeofence:
        with self.lock:
            self.conn.execute(
                """INSERT INTO client_geofences
                   (client_id, latitude, longitude, radius, auto_start, auto_stop)
                   VALUES (?, ?, ?, ?, ?, ?)
                   ON CONFLICT(client_id) DO UPDATE SET
                     latitude = excluded.latitude,
                     longitude = excluded.longitude,
                     radius = excluded.radius,
                     auto_start = excluded.auto_start,
                     auto_stop = excluded.auto_stop,
                     is_active = 1""",
                (client_id, latitude, longitude, radius,
                 1 if auto_start else 0, 1 if auto_stop else 0),
            )
            self._commit()
        return self.get_geofence_by_client(client_id)

    def get_geofence_by_client(self, client_id: int) -> Optional[ClientGeofence]:
        with self.lock:
            row = self.conn.execute(
                "SELECT * FROM client_geofences WHERE client_id = ?", (client_id,)
            ).fetchone()
        return self._row_to_geofence(row) if row else None

    def list_geofences(self, active_only: bool = True) -> List[ClientGeofence]:
        query = "SELECT * FROM client_geofences"
        if active_only:
            query += " WHERE is_active = 1"
        with self.lock:
            rows = self.conn.execute(query + " ORDER BY id").fetchall()
        return [self._row_to_geofence(r) for r in rows]

    def set_geofence_active(self, geofence_id: int, is_active: bool) -> None:
        with self.lock:
            self.conn.execute(
                "UPDATE client_geofences SET is_active = ? WHERE id = ?",
                (1 if is_active else 0, geofence_id),
            )
            self._commit()

    def delete_geofence(self, geofence_id: int) -> None:
        with self.lock:
            self.conn.execute("DELETE FROM client_geofences WHERE id = ?", (geofence_id,))
            self._commit()

    # ── Row mappers ─────────────────────────────────────────────────────────

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> TimeSession:
        return TimeSession(
            id=row["id"], client_id=row["client_id"],
            start_time=_parse_dt(row["start_time"]),
            end_time=_parse_dt(row["end_time"]),
            duration=row["duration"] or 0,
            date=_parse_date(row["date"]),
            is_active=bool(row["is_active"]),
            notes=row["notes"],
            created_at=_parse_dt(row["created_at"]),
        )

    @staticmethod
    def _row_to_job(row: sqlite3.Row) -> RecurringJob:
        return RecurringJob(
            id=row["id"], client_id=row["client_id"], title=row["title"],
            frequency=row["frequency"], day_of_week=row["day_of_week"],
            day_of_month=row["day_of_month"],
            duration_seconds=row["duration_seconds"], notes=row["notes"],
            auto_invoice=bool(row["auto_invoice"]),
            is_active=bool(row["is_active"]),
            start_date=_parse_date(row["start_date"]),
            end_date=_parse_date(row["end_date"]),
            last_generated_date=_parse_date(row["last_generated_date"]),
            created_at=_parse_dt(row["created_at"]),
            updated_at=_parse_dt(row["updated_at"]),
        )

    @staticmethod
    def _row_to_occurrence(row: sqlite3.Row) -> Occurrence:
        return Occurrence(
            id=row["id"], recurring_job_id=row["recurring_job_id"],
            scheduled_date=_parse_date(row["scheduled_date"]),
            status=row["status"], session_id=row["session_id"],
            invoice_id=row["invoice_id"],
            created_at=_parse_dt(row["created_at"]),
        )

    @staticmethod
    def _row_to_geofence(row: sqlite3.Row) -> ClientGeofence:
        return ClientGeofence(
            id=row["id"], client_id=row["client_id"],
            latitude=row["latitude"], longitude=row["longitude"],
            radius=row["radius"], is_active=bool(row["is_active"]),
            auto_start=bool(row["auto_start"]), auto_stop=bool(row["auto_stop"]),
        )


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The Repository is the ONLY place raw SQL lives. Services call
#   repo.insert_session() or repo.create_occurrence() instead of writing SQL.
#
# Key methods:
#   - transaction(): lock + one SQLite transaction for multi-row changes
#     (session + marker, occurrences + watermark).
#   - create_occurrence(): INSERT OR IGNORE against a unique index, so the
#     same date can never be generated twice.
#   - advance_watermark(): the WHERE clause refuses to move it backwards.
#   - get_client()/create_invoice(): also make the Repository a ClientStore
#     and InvoiceStore for the engine.
#
# Data flow:
#   Service → Repository.method() → SQL → sqlite3.Row → dataclass model
#
# Interviewer-friendly talking points:
#   1. Invariants encoded in the SQL (unique index, monotone watermark) hold
#      even if a caller forgets to check.
#   2. The RLock makes the single connection safe to share with the location
#      callback thread; transaction() holds it across several statements.
