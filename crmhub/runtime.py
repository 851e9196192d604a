"""
🧠 crmhub Runtime Core
----------------------
Centralized utilities for logging, timing and environment introspection.

 - One-shot logging configuration (level from CRMHUB_LOG_LEVEL)
 - Masked env snapshot (KeyCRM, Redis/Upstash, secrets)
 - Epoch-millisecond clock helpers
 - Perf timer context manager
"""

from __future__ import annotations
import logging
import os
import sys
import time
from datetime import datetime, timezone
from typing import Optional

# Internal state flags
_LOGGING_CONFIGURED = False
_GLOBAL_HOOK_INSTALLED = False
_CORE_ENV_LOGGED = False


# ────────────────────────────────────────────────
# ENV MASKING + LOGGING CONFIG
# ────────────────────────────────────────────────
def _mask_env_value(value: Optional[str]) -> str:
    """Mask sensitive env values (API keys, tokens, etc.)."""
    if not value:
        return "<missing>"
    trimmed = value.strip()
    if len(trimmed) <= 4:
        return "*" * len(trimmed)
    if len(trimmed) <= 8:
        return f"{trimmed[:2]}...{trimmed[-2:]}"
    return f"{trimmed[:4]}...{trimmed[-4:]}"


def _normalize_level(value: int | str | None) -> int:
    """Normalize string or int log level."""
    if value is None:
        env_level = os.getenv("CRMHUB_LOG_LEVEL")
        if env_level:
            value = env_level
        else:
            return logging.INFO
    if isinstance(value, int):
        return value
    level = logging.getLevelName(value.upper())
    return level if isinstance(level, int) else logging.INFO


def configure_logging(level: int | str | None = None) -> None:
    """Initialize root logging configuration once."""
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return
    logging.basicConfig(
        level=_normalize_level(level),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
    _LOGGING_CONFIGURED = True
    _log_core_env()


def get_logger(name: str = "crmhub") -> logging.Logger:
    """Return module-specific logger."""
    if not _LOGGING_CONFIGURED:
        configure_logging()
    return logging.getLogger(name)


# ────────────────────────────────────────────────
# GLOBAL EXCEPTION HOOK
# ────────────────────────────────────────────────
def install_global_exception_hook() -> None:
    """Install a catch-all global exception hook (logs full traceback)."""
    global _GLOBAL_HOOK_INSTALLED
    if _GLOBAL_HOOK_INSTALLED:
        return

    def _hook(exc_type, exc, tb):
        logger = get_logger("uncaught")
        logger.error("Uncaught exception (%s): %s", exc_type.__name__, exc, exc_info=(exc_type, exc, tb))

    sys.excepthook = _hook
    _GLOBAL_HOOK_INSTALLED = True


# ────────────────────────────────────────────────
# CORE ENV LOGGING
# ────────────────────────────────────────────────
def _log_core_env() -> None:
    """Logs masked environment variables for observability."""
    global _CORE_ENV_LOGGED
    if _CORE_ENV_LOGGED:
        return
    logger = logging.getLogger("env")

    keycrm_url = os.getenv("KEYCRM_API_URL") or os.getenv("KEYCRM_API_BASE") or os.getenv("KEYCRM_BASE_URL") or "<default>"
    keycrm_token = os.getenv("KEYCRM_API_TOKEN") or os.getenv("KEYCRM_BEARER") or os.getenv("KEYCRM_TOKEN")
    redis_tcp = os.getenv("REDIS_URL") or os.getenv("UPSTASH_REDIS_URL")
    upstash_rest = os.getenv("UPSTASH_REDIS_REST_URL") or os.getenv("KV_REST_API_URL")

    logger.info(
        "Core env summary:\n"
        "• KeyCRM URL=%s | Token=%s\n"
        "• RedisTCP=%s | UpstashREST=%s\n"
        "• CRON_SECRET=%s | ADMIN_PASS=%s",
        keycrm_url,
        _mask_env_value(keycrm_token),
        "<set>" if redis_tcp else "<missing>",
        upstash_rest or "<missing>",
        _mask_env_value(os.getenv("CRON_SECRET")),
        _mask_env_value(os.getenv("ADMIN_PASS")),
    )
    _CORE_ENV_LOGGED = True


# ────────────────────────────────────────────────
# TIME UTILITIES
# ────────────────────────────────────────────────
def utc_now() -> datetime:
    """Return UTC datetime (always timezone-aware)."""
    return datetime.now(timezone.utc)


def iso_now() -> str:
    """Return ISO8601 UTC timestamp (Z suffix)."""
    return utc_now().isoformat(timespec="seconds").replace("+00:00", "Z")


def now_ms() -> int:
    """Current wall clock as epoch milliseconds."""
    return int(time.time() * 1000)


# ────────────────────────────────────────────────
# PERF TIMERS
# ────────────────────────────────────────────────
class PerfTimer:
    """Context manager that records duration to logs."""
    def __init__(self, label: str):
        self.label = label
        self.start = None
        self.duration: Optional[float] = None

    def __enter__(self):
        self.start = time.time()
        return self

    def __exit__(self, *_):
        self.duration = round(time.time() - (self.start or time.time()), 3)
        get_logger("perf").info("⏱ %s: %ss", self.label, self.duration)


# ────────────────────────────────────────────────
# INIT (auto install global hook)
# ────────────────────────────────────────────────
install_global_exception_hook()
