"""
Narrow contracts the engine consumes from the rest of the app.

Repository already satisfies ClientStore and InvoiceStore. Notifications and
location are injected so the engine can run (and be tested) without a
phone's notification centre or GPS.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, List, Optional, Protocol

from hourflow.data.models import Client, Invoice

logger = logging.getLogger(__name__)


class ClientStore(Protocol):
    def get_client(self, client_id: int) -> Optional[Client]: ...


class InvoiceStore(Protocol):
    def create_invoice(self, client_id: int, total_hours: float,
                       total_amount: float, session_ids: List[int],
                       currency: str = "USD") -> Invoice: ...


class NotificationSink(Protocol):
    def show_running_timer(self, client_name: str, elapsed_seconds: int) -> None: ...

    def dismiss(self) -> None: ...

    def show_notice(self, title: str, body: str) -> None: ...


@dataclass(frozen=True)
class GeofenceRegion:
    """What gets registered with the OS for one client fence."""
    identifier: str
    latitude: float
    longitude: float
    radius: float
    notify_on_enter: bool
    notify_on_exit: bool


# (latitude, longitude) delivered by the OS on enter/exit
LocationCallback = Callable[[float, float], None]


class LocationEventSource(Protocol):
    def has_background_permission(self) -> bool: ...

    def start_geofencing(self, regions: List[GeofenceRegion],
                         on_enter: LocationCallback,
                         on_exit: LocationCallback) -> None: ...

    def stop_geofencing(self) -> None: ...

    def is_geofencing(self) -> bool: ...


class LoggingNotificationSink:
    """Notification sink for headless runs: everything goes to the log."""

    def __init__(self) -> None:
        self.visible = False

    def show_running_timer(self, client_name: str, elapsed_seconds: int) -> None:
        self.visible = True
        hours, rest = divmod(int(elapsed_seconds), 3600)
        minutes, seconds = divmod(rest, 60)
        logger.info("[timer] %s %02d:%02d:%02d", client_name, hours, minutes, seconds)

    def dismiss(self) -> None:
        if self.visible:
            logger.info("[timer] dismissed")
        self.visible = False

    def show_notice(self, title: str, body: str) -> None:
        logger.info("[notice] %s: %s", title, body)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Lists everything the engine needs from the outside world as small
#   typing.Protocol interfaces.
#
# Key pieces:
#   - ClientStore / InvoiceStore: implemented by Repository.
#   - NotificationSink: the running-timer banner plus one-shot notices
#     ("clocked in at ...", "another timer is running").
#   - LocationEventSource: the OS geofencing API, reduced to four calls.
#
# Interviewer-friendly talking points:
#   1. Protocols are structural: test fakes don't need to inherit anything.
#   2. The engine never imports a platform SDK, so it runs on a laptop.
