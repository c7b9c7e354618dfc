"""
Engine schema and SQLite connection handling.

The DDL below is applied on every open; all queries live in Repository.
"""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path
from typing import Optional, Union

logger = logging.getLogger(__name__)

# Default DB lives next to the repo root
DEFAULT_DB_PATH = Path(__file__).resolve().parent.parent.parent / "hourflow.db"

SCHEMA_SQL = """
-- Clients (collaborator, minimal) ---------------------------------------------
CREATE TABLE IF NOT EXISTS clients (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    name        TEXT    NOT NULL,
    hourly_rate REAL    NOT NULL DEFAULT 0,
    currency    TEXT    NOT NULL DEFAULT 'USD',
    created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Time sessions ---------------------------------------------------------------
CREATE TABLE IF NOT EXISTS time_sessions (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id   INTEGER NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    start_time  TEXT    NOT NULL,
    end_time    TEXT,
    duration    INTEGER NOT NULL DEFAULT 0,
    date        TEXT    NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 0,
    notes       TEXT,
    created_at  TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Active timer (singleton) ----------------------------------------------------
CREATE TABLE IF NOT EXISTS active_timer (
    id          INTEGER PRIMARY KEY CHECK (id = 1),
    client_id   INTEGER,
    session_id  INTEGER,
    start_time  TEXT,
    is_running  INTEGER NOT NULL DEFAULT 0
);
INSERT OR IGNORE INTO active_timer (id, is_running) VALUES (1, 0);

-- Invoices (collaborator, minimal) --------------------------------------------
CREATE TABLE IF NOT EXISTS invoices (
    id           INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id    INTEGER NOT NULL REFERENCES clients(id) ON DELETE CASCADE,
    total_hours  REAL    NOT NULL,
    total_amount REAL    NOT NULL,
    currency     TEXT    NOT NULL DEFAULT 'USD',
    session_ids  TEXT    NOT NULL,
    created_at   TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Recurring jobs --------------------------------------------------------------
CREATE TABLE IF NOT EXISTS recurring_jobs (
    id                  INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id           INTEGER NOT NULL,
    title               TEXT    NOT NULL,
    frequency           TEXT    NOT NULL
                        CHECK (frequency IN ('weekly', 'biweekly', 'monthly')),
    day_of_week         INTEGER NOT NULL DEFAULT 0
                        CHECK (day_of_week BETWEEN 0 AND 6),
    day_of_month        INTEGER CHECK (day_of_month BETWEEN 1 AND 31),
    duration_seconds    INTEGER NOT NULL,
    notes               TEXT,
    auto_invoice        INTEGER NOT NULL DEFAULT 0,
    is_active           INTEGER NOT NULL DEFAULT 1,
    start_date          TEXT    NOT NULL,
    end_date            TEXT,
    last_generated_date TEXT,
    created_at          TEXT    NOT NULL DEFAULT (datetime('now')),
    updated_at          TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Occurrences (idempotency ledger, never deleted) -------------------------------
CREATE TABLE IF NOT EXISTS recurring_job_occurrences (
    id               INTEGER PRIMARY KEY AUTOINCREMENT,
    recurring_job_id INTEGER NOT NULL REFERENCES recurring_jobs(id),
    scheduled_date   TEXT    NOT NULL,
    status           TEXT    NOT NULL DEFAULT 'pending'
                     CHECK (status IN ('pending', 'completed', 'skipped')),
    session_id       INTEGER,
    invoice_id       INTEGER,
    created_at       TEXT    NOT NULL DEFAULT (datetime('now'))
);

-- Client geofences ------------------------------------------------------------
CREATE TABLE IF NOT EXISTS client_geofences (
    id          INTEGER PRIMARY KEY AUTOINCREMENT,
    client_id   INTEGER NOT NULL UNIQUE,
    latitude    REAL    NOT NULL,
    longitude   REAL    NOT NULL,
    radius      REAL    NOT NULL,
    is_active   INTEGER NOT NULL DEFAULT 1,
    auto_start  INTEGER NOT NULL DEFAULT 1,
    auto_stop   INTEGER NOT NULL DEFAULT 1
);

-- Indexes -----------------------------------------------------------------------
CREATE UNIQUE INDEX IF NOT EXISTS idx_sessions_single_active
    ON time_sessions(is_active) WHERE is_active = 1;
CREATE INDEX IF NOT EXISTS idx_sessions_client      ON time_sessions(client_id);
CREATE INDEX IF NOT EXISTS idx_sessions_date        ON time_sessions(date);
CREATE UNIQUE INDEX IF NOT EXISTS idx_occurrence_job_date
    ON recurring_job_occurrences(recurring_job_id, scheduled_date);
CREATE INDEX IF NOT EXISTS idx_occurrences_status   ON recurring_job_occurrences(status);
CREATE INDEX IF NOT EXISTS idx_recurring_jobs_client ON recurring_jobs(client_id);
"""


MEMORY = ":memory:"


def open_connection(path: Union[str, Path]) -> sqlite3.Connection:
    """
    Open a connection the engine can share across threads.

    Rows come back as sqlite3.Row, foreign keys are enforced, and file
    databases use WAL so a reader never blocks the location callback.
    The schema is applied before the connection is returned.
    """
    target = str(path)
    conn = sqlite3.connect(target, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    if target != MEMORY:
        conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")
    ensure_schema(conn)
    return conn


def ensure_schema(conn: sqlite3.Connection) -> None:
    conn.executescript(SCHEMA_SQL)
    conn.commit()


def connect_memory() -> sqlite3.Connection:
    """Fresh in-memory database (tests and dry runs)."""
    return open_connection(MEMORY)


class Database:
    """Owns the engine's one SQLite connection."""

    def __init__(self, db_path: Optional[Union[str, Path]] = None) -> None:
        self.db_path = db_path or DEFAULT_DB_PATH
        self.conn: Optional[sqlite3.Connection] = None

    def connect(self) -> sqlite3.Connection:
        """Open on first use; later calls hand back the same connection."""
        if self.conn is None:
            logger.info("Opening engine database %s", self.db_path)
            self.conn = open_connection(self.db_path)
            logger.info("Engine schema ready (%s)", self.db_path)
        return self.conn

    def close(self) -> None:
        if self.conn is None:
            return
        self.conn.close()
        self.conn = None
        logger.info("Engine database closed.")


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Holds the engine's DDL and the one function that opens a configured
#   connection; Database just keeps that connection for the app's lifetime.
#
# Key pieces:
#   - SCHEMA_SQL: CREATE IF NOT EXISTS + INSERT OR IGNORE, so applying it on
#     every launch is harmless and the active_timer row is seeded once.
#   - idx_sessions_single_active: a partial unique index, so SQLite itself
#     rejects a second active session.
#   - idx_occurrence_job_date: the idempotency key for recurring jobs.
#
# Data flow:
#   build_engine() → Database.connect() → open_connection() → Repository(conn)
#
# Interviewer-friendly talking points:
#   1. CHECK (id = 1) turns a normal table into a singleton record.
#   2. check_same_thread=False: location callbacks arrive on another thread;
#      the Repository lock serializes access to the one connection.
#   3. Tests get the exact production schema through connect_memory().
