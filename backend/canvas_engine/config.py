"""
Runtime settings read from the environment (.env supported).

Every reader falls back to its default when the variable is missing or
malformed, so a bad value never prevents the worker pool from starting.
"""

from __future__ import annotations

import logging
import os
from functools import lru_cache
from typing import Literal

from dotenv import load_dotenv
from pydantic import BaseModel

load_dotenv()

logger = logging.getLogger(__name__)


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name, str(default))
    try:
        parsed = int(raw)
        if parsed < minimum:
            return default
        return parsed
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %d", name, raw, default)
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, str(default))
    try:
        parsed = float(raw)
        if parsed <= 0:
            return default
        return parsed
    except ValueError:
        logger.warning("Ignoring invalid %s=%r, using %s", name, raw, default)
        return default


def _storage_backend() -> Literal["memory", "supabase"]:
    raw = os.getenv("CANVAS_STORAGE_BACKEND", "memory").strip().lower()
    if raw == "supabase":
        return "supabase"
    return "memory"


class Settings(BaseModel):
    worker_count: int = 4
    max_attempts: int = 3
    retry_base_delay_s: float = 1.0
    retry_max_delay_s: float = 30.0
    node_run_timeout_s: float = 600.0
    canvas_lock_ttl_s: float = 900.0
    storage_backend: Literal["memory", "supabase"] = "memory"


def load_settings() -> Settings:
    return Settings(
        worker_count=_env_int("TASK_WORKER_COUNT", 4),
        max_attempts=_env_int("TASK_MAX_ATTEMPTS", 3),
        retry_base_delay_s=_env_float("TASK_RETRY_BASE_DELAY_S", 1.0),
        retry_max_delay_s=_env_float("TASK_RETRY_MAX_DELAY_S", 30.0),
        node_run_timeout_s=_env_float("NODE_RUN_TIMEOUT_S", 600.0),
        canvas_lock_ttl_s=_env_float("CANVAS_LOCK_TTL_S", 900.0),
        storage_backend=_storage_backend(),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Cached settings for the running process."""
    return load_settings()
