"""
Error taxonomy for the session engine.

Everything derives from RuntimeError so callers that only care about
"the engine refused" can keep catching that.
"""

from __future__ import annotations

from typing import Optional


class EngineError(RuntimeError):
    """Base class for all engine errors."""


class ConflictError(EngineError):
    """Another session is already running."""

    def __init__(self, message: str, client_id: Optional[int] = None,
                 session_id: Optional[int] = None) -> None:
        super().__init__(message)
        self.client_id = client_id
        self.session_id = session_id


class NotFoundError(EngineError):
    """A referenced session, job, occurrence or client does not exist."""


class InconsistentStateError(EngineError):
    """The active-timer marker and the session table disagree."""


class TransientIOError(EngineError):
    """Local storage failed. The operation is not retried automatically."""


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Gives every failure the engine can report a name, so the UI can react
#   differently to "something else is running" (offer a switch dialog)
#   and "the database hiccuped" (show an error).
#
# Key classes:
#   - ConflictError: carries the running client/session so the dialog can
#     say *what* is running.
#   - InconsistentStateError: only recovery is allowed to fix this quietly.
#   - TransientIOError: wraps sqlite3 operational failures.
#
# Interviewer-friendly talking points:
#   1. Subclassing RuntimeError keeps old `except RuntimeError` call sites
#      working while new ones can be precise.
#   2. Errors carry data, not just strings: no message parsing in the UI.
