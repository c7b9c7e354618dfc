"""
Wiring: builds every engine component once and hands them out together.

The UI, widgets and notification handlers receive this Engine object
instead of reaching for module-level globals.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional

from hourflow.collaborators import LocationEventSource, LoggingNotificationSink, NotificationSink
from hourflow.config import DEFAULT_CONFIG
from hourflow.data.database import Database
from hourflow.data.models import ClientGeofence
from hourflow.data.repository import Repository
from hourflow.data.session_store import SessionStore
from hourflow.services.geofence_service import GeofenceMonitor, GeofenceTrigger
from hourflow.services.recurring_service import RecurringJobProcessor, RecurringJobScheduler
from hourflow.services.timer_service import TimerController

logger = logging.getLogger(__name__)


@dataclass
class Engine:
    db: Optional[Database]
    repo: Repository
    store: SessionStore
    timer: TimerController
    scheduler: RecurringJobScheduler
    processor: RecurringJobProcessor
    geofences: GeofenceTrigger
    monitor: Optional[GeofenceMonitor] = None

    def startup(self) -> None:
        """Crash recovery, recurring catch-up, geofence registration."""
        self.timer.recover()
        self.processor.process_recurring_jobs()
        if self.monitor is not None:
            self.monitor.start()

    def save_geofence(self, client_id: int, latitude: float, longitude: float,
                      radius: Optional[float] = None, auto_start: bool = True,
                      auto_stop: bool = True) -> ClientGeofence:
        """Save a client's fence and re-register regions with the OS."""
        fence = self.geofences.save_fence(client_id, latitude, longitude,
                                          radius, auto_start, auto_stop)
        if self.monitor is not None:
            self.monitor.start()
        return fence

    def shutdown(self) -> None:
        if self.monitor is not None:
            self.monitor.stop()
        if self.db is not None:
            self.db.close()


def build_engine(
    config: Optional[dict] = None,
    repo: Optional[Repository] = None,
    notifier: Optional[NotificationSink] = None,
    location: Optional[LocationEventSource] = None,
    clock: Callable[[], datetime] = datetime.now,
) -> Engine:
    """Assemble the engine. Pass ``repo`` to reuse an open connection."""
    config = config or DEFAULT_CONFIG
    db: Optional[Database] = None
    if repo is None:
        db = Database(Path(config["db_path"]))
        repo = Repository(db.connect())

    notifier = notifier or LoggingNotificationSink()
    store = SessionStore(repo, clock=clock)
    timer = TimerController(store, clients=repo, notifier=notifier)
    scheduler = RecurringJobScheduler(
        repo, clock=clock, max_per_run=config["max_occurrences_per_run"],
    )
    processor = RecurringJobProcessor(repo, store, scheduler)
    trigger = GeofenceTrigger(
        repo, timer, notifier,
        radius_bounds=(config["geofence_radius_min_m"], config["geofence_radius_max_m"]),
        default_radius=config["default_geofence_radius_m"],
    )
    monitor = GeofenceMonitor(repo, location, trigger) if location is not None else None
    logger.info("Engine assembled%s.", " with geofencing" if monitor else "")
    return Engine(db, repo, store, timer, scheduler, processor, trigger, monitor)
