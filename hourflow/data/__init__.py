from .database import Database
from .models import ActiveTimer, ClientGeofence, Occurrence, RecurringJob, TimeSession
from .repository import Repository
from .session_store import SessionStore

__all__ = [
    "Database", "ActiveTimer", "ClientGeofence", "Occurrence", "RecurringJob",
    "TimeSession", "Repository", "SessionStore",
]
