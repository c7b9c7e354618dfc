"""
Engine configuration, stored as JSON and merged over defaults.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

ROOT_DIR = Path(__file__).resolve().parent.parent
CONFIG_PATH = ROOT_DIR / "config" / "engine.json"

# Default engine config (used if JSON doesn't exist yet)
DEFAULT_CONFIG = {
    "db_path": str(ROOT_DIR / "hourflow.db"),
    "log_path": "hourflow.log",
    "tick_interval_ms": 1000,
    "notification_update_interval_s": 60,
    "recurring_interval_min": 15,
    "max_occurrences_per_run": 100,
    "geofence_radius_min_m": 50,
    "geofence_radius_max_m": 5000,
    "default_geofence_radius_m": 150,
}


def load_config(path: Optional[Path] = None) -> dict:
    path = path or CONFIG_PATH
    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                cfg = json.load(f)
            # Merge with defaults for any missing keys
            merged = DEFAULT_CONFIG.copy()
            merged.update(cfg)
            return merged
        except (json.JSONDecodeError, AttributeError, TypeError, ValueError):
            logger.warning("Bad engine config at %s, using defaults.", path)
    return DEFAULT_CONFIG.copy()


def save_config(config: dict, path: Optional[Path] = None) -> None:
    path = path or CONFIG_PATH
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config, f, indent=2)
