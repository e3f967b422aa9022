"""Configuration loader.

Reads environment variables and `.env` to configure the service.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

# Load variables from a .env file if present (project root).
load_dotenv(dotenv_path=Path(__file__).resolve().parents[1] / ".env")


def _get_env(name: str, default: Optional[str] = None) -> Optional[str]:
    return os.environ.get(name, default)


def _parse_bool(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def _parse_int(value: Optional[str], default: int) -> int:
    try:
        return int(value) if value is not None else default
    except ValueError:
        return default


def _parse_float(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value is not None else default
    except ValueError:
        return default


def _get_list(name: str, default: str = "") -> list[str]:
    raw = _get_env(name, default) or ""
    return [s.strip() for s in raw.split(",") if s.strip()]


# ---- Storage & logging -------------------------------------------------------

# Path to SQLite database.
SQLITE_DB_PATH: str = _get_env("SQLITE_DB_PATH", "pricetracker.db")

# Logging level: DEBUG, INFO, WARNING, ERROR.
LOG_LEVEL: str = _get_env("LOG_LEVEL", "INFO")
LOG_TO_FILE: bool = _parse_bool(_get_env("LOG_TO_FILE", "false"), False)
LOG_FILE: str = _get_env("LOG_FILE", "pricetracker.log")

# ---- Background fetcher ------------------------------------------------------

FETCHER_ENABLED: bool = _parse_bool(_get_env("FETCHER_ENABLED", "true"), True)

# Seconds between two ticks of the same site.
FETCH_INTERVAL_SECONDS: int = _parse_int(_get_env("FETCH_INTERVAL_SECONDS", "600"), 600)
MIN_FETCH_INTERVAL_SECONDS = 10

# Sites refreshed by the scheduler, in start order.
ENABLED_SITES: List[str] = _get_list("ENABLED_SITES", "Shopee,Tokopedia,Blibli")

# Phase offset per site (same order as ENABLED_SITES) so fetch bursts don't overlap.
SITE_START_OFFSETS: List[float] = [
    _parse_float(s, 0.0) for s in _get_list("SITE_START_OFFSETS", "0,3,8")
]

# Fixed delay plus uniform jitter between two items of the same site.
ITEM_DELAY_SECONDS: float = _parse_float(_get_env("ITEM_DELAY_SECONDS", "1.0"), 1.0)
ITEM_JITTER_SECONDS: float = _parse_float(_get_env("ITEM_JITTER_SECONDS", "10.0"), 10.0)

# ---- HTTP --------------------------------------------------------------------

HTTP_TIMEOUT_SECONDS: float = _parse_float(_get_env("HTTP_TIMEOUT_SECONDS", "10"), 10.0)

# Attempts made by provider adapters on connection errors / 5xx.
HTTP_MAX_ATTEMPTS: int = max(1, _parse_int(_get_env("HTTP_MAX_ATTEMPTS", "3"), 3))

# ---- Push notifications ------------------------------------------------------

FCM_SERVER_KEY: Optional[str] = _get_env("FCM_SERVER_KEY")
FCM_ENDPOINT: str = _get_env("FCM_ENDPOINT", "https://fcm.googleapis.com/fcm/send")

NOTIFICATION_TITLE_NAME_LIMIT: int = _parse_int(_get_env("NOTIFICATION_TITLE_NAME_LIMIT", "45"), 45)

# If > 0, a subscription stops being notified once its notification_count reaches it.
NOTIFICATION_COUNT_LIMIT: int = _parse_int(_get_env("NOTIFICATION_COUNT_LIMIT", "0"), 0)

# ---- Subscription bounds -----------------------------------------------------

MAX_TRACKED_ITEMS: int = _parse_int(_get_env("MAX_TRACKED_ITEMS", "25"), 25)
MAX_DEVICES: int = _parse_int(_get_env("MAX_DEVICES", "5"), 5)


# ---- Validation --------------------------------------------------------------

def validate() -> None:
    """Validate required configuration parameters."""
    if FETCHER_ENABLED and not FCM_SERVER_KEY:
        raise RuntimeError(
            "FCM_SERVER_KEY must be set when the fetcher is enabled. See .env.example for details."
        )
    if FETCH_INTERVAL_SECONDS < MIN_FETCH_INTERVAL_SECONDS:
        raise RuntimeError(
            f"FETCH_INTERVAL_SECONDS too short ({FETCH_INTERVAL_SECONDS}), "
            f"minimum interval: {MIN_FETCH_INTERVAL_SECONDS}s"
        )


__all__ = [
    "SQLITE_DB_PATH",
    "LOG_LEVEL",
    "LOG_TO_FILE",
    "LOG_FILE",
    "FETCHER_ENABLED",
    "FETCH_INTERVAL_SECONDS",
    "MIN_FETCH_INTERVAL_SECONDS",
    "ENABLED_SITES",
    "SITE_START_OFFSETS",
    "ITEM_DELAY_SECONDS",
    "ITEM_JITTER_SECONDS",
    "HTTP_TIMEOUT_SECONDS",
    "HTTP_MAX_ATTEMPTS",
    "FCM_SERVER_KEY",
    "FCM_ENDPOINT",
    "NOTIFICATION_TITLE_NAME_LIMIT",
    "NOTIFICATION_COUNT_LIMIT",
    "MAX_TRACKED_ITEMS",
    "MAX_DEVICES",
    "validate",
]
