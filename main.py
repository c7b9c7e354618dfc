"""
HourFlow — session engine host process.
Entry point for the application.
"""

import faulthandler
import logging
import sys
from pathlib import Path

faulthandler.enable()

# Ensure hourflow is importable
sys.path.insert(0, str(Path(__file__).resolve().parent))

from PySide6.QtCore import QCoreApplication

from hourflow.app import build_engine
from hourflow.config import load_config
from hourflow.services.ticker_service import TimerTicker


def setup_logging(log_path: str = "hourflow.log") -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path, encoding="utf-8"),
        ],
    )


def main() -> None:
    config = load_config()
    setup_logging(config["log_path"])
    logger = logging.getLogger(__name__)
    logger.info("Starting HourFlow engine...")

    app = QCoreApplication(sys.argv)
    app.setApplicationName("HourFlow")
    app.setOrganizationName("HourFlow")

    engine = build_engine(config)
    engine.startup()

    ticker = TimerTicker(
        engine.timer,
        engine.processor,
        tick_interval_ms=config["tick_interval_ms"],
        notification_interval_s=config["notification_update_interval_s"],
        recurring_interval_min=config["recurring_interval_min"],
    )
    ticker.start()
    app.aboutToQuit.connect(ticker.stop)
    app.aboutToQuit.connect(engine.shutdown)

    logger.info("Engine started.")
    sys.exit(app.exec())


if __name__ == "__main__":
    main()


# ---------------------------------------------------------------------------
# Explanation (for interviews)
# ---------------------------------------------------------------------------
# What this file does:
#   The entry point. Sets up logging, creates the Qt event loop, builds the
#   engine once, runs crash recovery and the recurring-job catch-up, then
#   lets the ticker drive periodic work.
#
# Key points:
#   - QCoreApplication, not QApplication: the engine has no widgets; the
#     event loop is only needed for the ticker's QTimers.
#   - engine.startup() order matters: recover the timer before anything can
#     try to start a new one.
#
# Interviewer-friendly talking points:
#   1. The event loop is the heartbeat: every timer callback runs inside
#      app.exec().
#   2. Logging to both console and file: console for development, file for
#      debugging user-reported issues.
