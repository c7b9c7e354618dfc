"""
Ticker Service — drives the periodic work the display layer needs.

Every second it asks the TimerController for the elapsed time (recomputed
from the stored start, never counted up here), refreshes the running-timer
notification once a minute, and runs recurring jobs on a coarse interval.
"""

from __future__ import annotations

import logging
from typing import Callable, Optional

from PySide6.QtCore import QTimer

from hourflow.errors import EngineError
from hourflow.services.recurring_service import ProcessingReport, RecurringJobProcessor
from hourflow.services.timer_service import TimerController

logger = logging.getLogger(__name__)

# Default intervals, overridden by config
DEFAULT_TICK_INTERVAL_MS = 1000
DEFAULT_NOTIFICATION_INTERVAL_S = 60
DEFAULT_RECURRING_INTERVAL_MIN = 15


class TimerTicker:
    """
    Periodic callbacks for the display layer.

    Uses QTimers so callbacks run on the Qt event loop (safe for UI updates).
    """

    def __init__(
        self,
        timer: TimerController,
        processor: Optional[RecurringJobProcessor] = None,
        on_tick: Optional[Callable[[int], None]] = None,
        tick_interval_ms: int = DEFAULT_TICK_INTERVAL_MS,
        notification_interval_s: int = DEFAULT_NOTIFICATION_INTERVAL_S,
        recurring_interval_min: float = DEFAULT_RECURRING_INTERVAL_MIN,
    ) -> None:
        self.timer = timer
        self.processor = processor

        # Callback the UI will set
        self.on_tick = on_tick

        self.tick_interval_ms = tick_interval_ms
        self.notification_interval_s = notification_interval_s
        self.recurring_interval_min = recurring_interval_min

        # QTimers
        self._tick_timer = QTimer()
        self._tick_timer.timeout.connect(self._tick)

        self._notification_timer = QTimer()
        self._notification_timer.timeout.connect(self._refresh_notification)

        self._recurring_timer = QTimer()
        self._recurring_timer.timeout.connect(self._run_recurring_jobs)

    # ── Public API ──────────────────────────────────────────────────────────

    def start(self) -> None:
        self._tick_timer.start(int(self.tick_interval_ms))
        self._notification_timer.start(int(self.notification_interval_s * 1000))
        if self.processor is not None:
            self._recurring_timer.start(int(self.recurring_interval_min * 60 * 1000))
        logger.info("Ticker started: tick every %d ms, recurring jobs every %.0f min",
                    self.tick_interval_ms, self.recurring_interval_min)

    def stop(self) -> None:
        self._tick_timer.stop()
        self._notification_timer.stop()
        self._recurring_timer.stop()

    def is_active(self) -> bool:
        return self._tick_timer.isActive()

    def on_foreground(self) -> Optional[ProcessingReport]:
        """App came to the foreground: re-evaluate elapsed time, catch up on jobs."""
        self._tick()
        self._refresh_notification()
        return self._run_recurring_jobs()

    def update_intervals(
        self,
        tick_ms: Optional[int] = None,
        notification_s: Optional[int] = None,
        recurring_min: Optional[float] = None,
    ) -> None:
        """Update intervals (e.g. from settings). Restarts timers that are running."""
        if tick_ms is not None:
            self.tick_interval_ms = tick_ms
        if notification_s is not None:
            self.notification_interval_s = notification_s
        if recurring_min is not None:
            self.recurring_interval_min = recurring_min
        if self.is_active():
            self.stop()
            self.start()

    # ── Timer callbacks ─────────────────────────────────────────────────────

    def _tick(self) -> None:
        if not self.timer.is_running:
            return
        elapsed = self.timer.elapsed_seconds()
        if self.on_tick:
            self.on_tick(elapsed)

    def _refresh_notification(self) -> None:
        self.timer.refresh_notification()

    def _run_recurring_jobs(self) -> Optional[ProcessingReport]:
        if self.processor is None:
            return None
        try:
            report = self.processor.process_recurring_jobs()
        except EngineError:
            logger.exception("Recurring job pass failed; will retry next interval.")
            return None
        logger.info("Recurring pass: %d generated, %d completed, %d failed",
                    report.generated, len(report.completed), len(report.failed))
        return report


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The "heartbeat" for the display: one QTimer per cadence (1 s display
#   tick, 60 s notification refresh, 15 min recurring-job pass).
#
# Key design decisions:
#   - The tick only *reads*: elapsed = now - start_time, asked of the
#     TimerController. Missing ticks (app backgrounded) can't cause drift.
#   - on_foreground() does the same work immediately, so the numbers are
#     right the moment the app comes back.
#   - Callbacks are injected via constructor so the ticker is UI-agnostic.
#
# Data flow:
#   QTimer fires → _tick() → TimerController.elapsed_seconds() → on_tick(UI)
#   QTimer fires → _run_recurring_jobs() → RecurringJobProcessor
#
# Interviewer-friendly talking points:
#   1. QTimer vs threading.Timer: QTimer runs on the Qt event loop, the same
#      thread as the UI, so no locking around widget updates.
#   2. The engine classes hold no timers at all; this file is the only one
#      that knows about time passing.
