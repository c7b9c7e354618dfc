"""
Data models for HourFlow.

Plain dataclasses that represent database rows, so services never pass raw
sqlite3.Row objects around.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import List, Optional

FREQUENCIES = ("weekly", "biweekly", "monthly")
OCCURRENCE_STATUSES = ("pending", "completed", "skipped")


@dataclass
class TimeSession:
    """One billable work period for a client."""
    id: Optional[int] = None
    client_id: Optional[int] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    duration: int = 0                      # whole seconds
    date: Optional[date] = None
    is_active: bool = False
    notes: Optional[str] = None
    created_at: Optional[datetime] = None


@dataclass
class ActiveTimer:
    """The singleton row answering "is anything running right now"."""
    client_id: Optional[int] = None
    session_id: Optional[int] = None
    start_time: Optional[datetime] = None
    is_running: bool = False


@dataclass
class RecurringJob:
    """
    A job repeated on a weekly, biweekly or monthly cadence.

    day_of_week uses 0 = Sunday ... 6 = Saturday.
    last_generated_date is the watermark: the newest date that already has
    an occurrence row.
    """
    id: Optional[int] = None
    client_id: Optional[int] = None
    title: str = ""
    frequency: str = "weekly"
    day_of_week: int = 0
    day_of_month: Optional[int] = None
    duration_seconds: int = 0
    notes: Optional[str] = None
    auto_invoice: bool = False
    is_active: bool = True
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    last_generated_date: Optional[date] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class Occurrence:
    """One dated instance of a recurring job (the idempotency ledger)."""
    id: Optional[int] = None
    recurring_job_id: Optional[int] = None
    scheduled_date: Optional[date] = None
    status: str = "pending"
    session_id: Optional[int] = None
    invoice_id: Optional[int] = None
    created_at: Optional[datetime] = None


@dataclass
class ClientGeofence:
    """Circular region around a client's site."""
    id: Optional[int] = None
    client_id: Optional[int] = None
    latitude: float = 0.0
    longitude: float = 0.0
    radius: float = 150.0                  # meters
    is_active: bool = True
    auto_start: bool = True
    auto_stop: bool = True


@dataclass
class Client:
    id: Optional[int] = None
    name: str = ""
    hourly_rate: float = 0.0
    currency: str = "USD"


@dataclass
class Invoice:
    id: Optional[int] = None
    client_id: Optional[int] = None
    total_hours: float = 0.0
    total_amount: float = 0.0
    currency: str = "USD"
    session_ids: List[int] = field(default_factory=list)
    created_at: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Defines the "shape" of every row the engine reads or writes.
#
# Key classes and why they exist:
#   - TimeSession: the one table every trigger writes into. Manual, recurring
#     and geofence sessions all look identical here.
#   - ActiveTimer: O(1) answer to "what is running" without scanning sessions.
#   - RecurringJob / Occurrence: the rule and the ledger of dates it produced.
#   - ClientGeofence: per-client region, read-only to the engine.
#   - Client / Invoice: just enough of the collaborators to bill a session.
#
# Interviewer-friendly talking points:
#   1. Dates are datetime.date and timestamps datetime, never strings, above
#      the repository. Parsing happens in exactly one place.
#   2. duration is an int of whole seconds: the engine never needs more.
