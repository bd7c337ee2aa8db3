from __future__ import annotations

import os
from typing import Optional

STORAGE: str
PG_DSN: Optional[str]
PG_SCHEMA: Optional[str]
PG_POOL_MIN: int
PG_POOL_MAX: int
RESPONSE_DELAY: float
SERVER_NAME: str
SERVER_PORT: int
LOG_LEVEL: str
DEFAULT_TITLE = "New Conversation"


def _env_str(name: str) -> Optional[str]:
    value = os.getenv(name)
    if value is None:
        return None
    value = value.strip()
    return value or None


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)).strip())
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)).strip())
    except ValueError:
        return default
    if value < 0:
        return default
    return value


def reload_from_environment() -> None:
    """Refresh configuration values from the current environment."""

    global STORAGE, PG_DSN, PG_SCHEMA, PG_POOL_MIN, PG_POOL_MAX
    global RESPONSE_DELAY, SERVER_NAME, SERVER_PORT, LOG_LEVEL

    PG_DSN = _env_str("BRANCHCHAT_PG_DSN")
    PG_SCHEMA = _env_str("BRANCHCHAT_PG_SCHEMA")
    STORAGE = (_env_str("BRANCHCHAT_STORAGE") or ("pg" if PG_DSN else "memory")).lower()
    PG_POOL_MIN = max(_env_int("BRANCHCHAT_PG_POOL_MIN", 1), 1)
    PG_POOL_MAX = max(_env_int("BRANCHCHAT_PG_POOL_MAX", 5), PG_POOL_MIN)
    RESPONSE_DELAY = _env_float("BRANCHCHAT_RESPONSE_DELAY", 1.0)
    SERVER_NAME = _env_str("BRANCHCHAT_SERVER_NAME") or "0.0.0.0"
    SERVER_PORT = _env_int("BRANCHCHAT_SERVER_PORT", 7860)
    LOG_LEVEL = (_env_str("BRANCHCHAT_LOG_LEVEL") or "INFO").upper()


reload_from_environment()


__all__ = [
    "DEFAULT_TITLE",
    "LOG_LEVEL",
    "PG_DSN",
    "PG_POOL_MAX",
    "PG_POOL_MIN",
    "PG_SCHEMA",
    "RESPONSE_DELAY",
    "SERVER_NAME",
    "SERVER_PORT",
    "STORAGE",
    "reload_from_environment",
]
