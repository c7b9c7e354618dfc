"""
Geofence Service — starts and stops timers from device location.

GeofenceTrigger evaluates a coordinate against the active client fences and
asks TimerController to start or stop, under exactly the same conflict rule
as a manual tap. It never forces a switch: if another client's timer runs,
the automatic start is dropped and a passive notice is shown instead.

GeofenceMonitor wires the trigger to the OS location source. Registration
problems only turn the feature off; they never crash the app.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

import numpy as np

from hourflow.collaborators import GeofenceRegion, LocationEventSource, NotificationSink
from hourflow.data.models import ClientGeofence
from hourflow.data.repository import Repository
from hourflow.errors import ConflictError, EngineError
from hourflow.services.timer_service import TimerController

logger = logging.getLogger(__name__)

EARTH_RADIUS_M = 6_371_000.0

# Fence size limits (meters), overridden by config
RADIUS_MIN_M = 50.0
RADIUS_MAX_M = 5000.0
DEFAULT_RADIUS_M = 150.0


def haversine_m(lat: float, lon: float,
                lats: Sequence[float], lons: Sequence[float]) -> np.ndarray:
    """Great-circle distance in meters from one point to many."""
    lat1 = np.radians(lat)
    lat2 = np.radians(np.asarray(lats, dtype=float))
    dlat = lat2 - lat1
    dlon = np.radians(np.asarray(lons, dtype=float) - lon)
    a = np.sin(dlat / 2) ** 2 + np.cos(lat1) * np.cos(lat2) * np.sin(dlon / 2) ** 2
    return 2 * EARTH_RADIUS_M * np.arctan2(np.sqrt(a), np.sqrt(1 - a))


def fences_containing(lat: float, lon: float,
                      fences: Sequence[ClientGeofence]) -> List[ClientGeofence]:
    """Fences whose circle contains the point, nearest center first."""
    if not fences:
        return []
    distances = haversine_m(lat, lon,
                            [f.latitude for f in fences],
                            [f.longitude for f in fences])
    radii = np.asarray([f.radius for f in fences], dtype=float)
    inside = np.flatnonzero(distances <= radii)
    ordered = inside[np.argsort(distances[inside], kind="stable")]
    return [fences[i] for i in ordered]


def region_for(fence: ClientGeofence) -> GeofenceRegion:
    return GeofenceRegion(
        identifier=f"client_{fence.client_id}",
        latitude=fence.latitude,
        longitude=fence.longitude,
        radius=fence.radius,
        notify_on_enter=fence.auto_start,
        notify_on_exit=fence.auto_stop,
    )


class GeofenceOutcome:
    """What an enter/exit event ended up doing."""
    STARTED = "started"
    STOPPED = "stopped"
    IGNORED = "ignored"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass(frozen=True)
class GeofenceResult:
    outcome: str
    client_id: Optional[int] = None
    detail: str = ""


class GeofenceTrigger:
    """Evaluates enter/exit events; also the validated way to edit a fence."""

    def __init__(self, repo: Repository, timer: TimerController,
                 notifier: Optional[NotificationSink] = None,
                 radius_bounds: Tuple[float, float] = (RADIUS_MIN_M, RADIUS_MAX_M),
                 default_radius: float = DEFAULT_RADIUS_M) -> None:
        self.repo = repo
        self.timer = timer
        self.notifier = notifier or timer.notifier
        self.radius_bounds = radius_bounds
        self.default_radius = default_radius

    def save_fence(self, client_id: int, latitude: float, longitude: float,
                   radius: Optional[float] = None, auto_start: bool = True,
                   auto_stop: bool = True) -> ClientGeofence:
        """Create or replace the client's fence after checking its shape."""
        radius = self.default_radius if radius is None else float(radius)
        low, high = self.radius_bounds
        if not low <= radius <= high:
            raise ValueError(f"Radius must be {low:g}-{high:g} m, got {radius:g}")
        if not (-90 <= latitude <= 90 and -180 <= longitude <= 180):
            raise ValueError(f"Invalid coordinates: ({latitude}, {longitude})")
        fence = self.repo.upsert_geofence(client_id, latitude, longitude, radius,
                                          auto_start, auto_stop)
        logger.info("Geofence saved for client %d (%.0f m)", client_id, radius)
        return fence

    def current_fence(self, latitude: float, longitude: float) -> Optional[ClientGeofence]:
        """The nearest active fence the point is inside, if any."""
        inside = fences_containing(latitude, longitude,
                                   self.repo.list_geofences(active_only=True))
        return inside[0] if inside else None

    # ── Events ──────────────────────────────────────────────────────────────

    def on_enter(self, latitude: float, longitude: float) -> GeofenceResult:
        try:
            fences = self.repo.list_geofences(active_only=True)
        except Exception:
            logger.exception("Geofence enter at (%.5f, %.5f): fence lookup failed",
                             latitude, longitude)
            return GeofenceResult(GeofenceOutcome.FAILED, detail="fence lookup failed")
        candidates = [f for f in fences_containing(latitude, longitude, fences) if f.auto_start]
        if not candidates:
            return GeofenceResult(GeofenceOutcome.IGNORED, detail="no auto-start fence here")
        fence = candidates[0]
        name = self.timer.client_name(fence.client_id)

        running = self.timer.get_active_timer()
        if running is not None and running.client_id == fence.client_id:
            return GeofenceResult(GeofenceOutcome.IGNORED, fence.client_id,
                                  "timer already running for this client")
        if running is not None:
            return self._drop_start(fence.client_id, name, running.client_id)

        try:
            self.timer.start_timer(fence.client_id)
        except ConflictError as exc:
            return self._drop_start(fence.client_id, name, exc.client_id)
        except EngineError:
            logger.exception("Geofence auto-start failed for client %d", fence.client_id)
            return GeofenceResult(GeofenceOutcome.FAILED, fence.client_id)

        logger.info("Geofence auto-start for client %d", fence.client_id)
        self.notifier.show_notice("Clocked in", f"Timer started for {name}.")
        return GeofenceResult(GeofenceOutcome.STARTED, fence.client_id)

    def on_exit(self, latitude: float, longitude: float) -> GeofenceResult:
        running = self.timer.get_active_timer()
        if running is None:
            return GeofenceResult(GeofenceOutcome.IGNORED, detail="no timer running")

        try:
            fence = self.repo.get_geofence_by_client(running.client_id)
        except Exception:
            logger.exception("Geofence exit: fence lookup for client %d failed", running.client_id)
            return GeofenceResult(GeofenceOutcome.FAILED, running.client_id, "fence lookup failed")
        if fence is None or not fence.is_active or not fence.auto_stop:
            return GeofenceResult(GeofenceOutcome.IGNORED, running.client_id,
                                  "running client has no auto-stop fence")
        if fences_containing(latitude, longitude, [fence]):
            return GeofenceResult(GeofenceOutcome.IGNORED, running.client_id,
                                  "still inside the running client's fence")

        try:
            self.timer.stop_timer()
        except EngineError:
            logger.exception("Geofence auto-stop failed for client %d", running.client_id)
            return GeofenceResult(GeofenceOutcome.FAILED, running.client_id)

        name = self.timer.client_name(running.client_id)
        logger.info("Geofence auto-stop for client %d", running.client_id)
        self.notifier.show_notice("Clocked out", f"Timer stopped for {name}.")
        return GeofenceResult(GeofenceOutcome.STOPPED, running.client_id)

    def _drop_start(self, client_id: int, name: str,
                    running_client_id: Optional[int]) -> GeofenceResult:
        logger.warning("Geofence start for client %d dropped: client %s is running.",
                       client_id, running_client_id)
        self.notifier.show_notice(
            "Timer not started",
            f"You arrived at {name}, but another client's timer is running.",
        )
        return GeofenceResult(GeofenceOutcome.CONFLICT, client_id,
                              f"client {running_client_id} is running")


class GeofenceMonitor:
    """Registers active fences with the OS and routes its callbacks to the trigger."""

    def __init__(self, repo: Repository, source: LocationEventSource,
                 trigger: GeofenceTrigger) -> None:
        self.repo = repo
        self.source = source
        self.trigger = trigger

    def start(self) -> bool:
        """(Re)register all active fences. False means the feature is inactive."""
        try:
            if not self.source.has_background_permission():
                logger.info("No background location permission for geofencing.")
                return False
            fences = self.repo.list_geofences(active_only=True)
            if not fences:
                self.stop()
                return False
            regions = [region_for(f) for f in fences]
            self.source.start_geofencing(regions, self._on_enter, self._on_exit)
        except Exception:
            logger.exception("Failed to start geofence monitoring.")
            return False
        logger.info("Geofence monitoring started for %d regions", len(regions))
        return True

    def stop(self) -> None:
        try:
            if self.source.is_geofencing():
                self.source.stop_geofencing()
                logger.info("Geofence monitoring stopped.")
        except Exception:
            logger.exception("Failed to stop geofence monitoring.")

    def is_active(self) -> bool:
        try:
            return self.source.is_geofencing()
        except Exception:
            logger.exception("Could not query geofence monitoring state.")
            return False

    def _on_enter(self, latitude: float, longitude: float) -> None:
        self.trigger.on_enter(latitude, longitude)

    def _on_exit(self, latitude: float, longitude: float) -> None:
        self.trigger.on_exit(latitude, longitude)


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   Auto clock-in when you arrive at a client's site, auto clock-out when
#   you leave, using circular geofences around each client.
#
# Key pieces:
#   - haversine_m(): vectorized with numpy so one location fix is checked
#     against every fence in a single pass.
#   - GeofenceTrigger: on_enter/on_exit return a GeofenceResult instead of
#     raising; background callbacks have nobody to show an error to.
#   - GeofenceMonitor: the only code that talks to the OS location API.
#
# Data flow:
#   OS enter/exit (lat, lon) → GeofenceMonitor → GeofenceTrigger →
#   TimerController.start_timer()/stop_timer() → SessionStore
#
# Interviewer-friendly talking points:
#   1. No silent switching: walking past client B while A's timer runs must
#      not bill B. The start is dropped and a notice explains why.
#   2. Exit only stops the *running* client's timer, and only when the fix
#      really is outside that client's fence.
#   3. The event source is injected, so tests drive it with plain floats.
