from __future__ import annotations

import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

# -----------------------------
# .env Loader
# -----------------------------
from dotenv import load_dotenv

BASE_DIR = os.path.dirname(os.path.abspath(__file__))
ENV_PATH = os.path.join(BASE_DIR, "..", ".env")
load_dotenv(dotenv_path=ENV_PATH, override=False)


# -----------------------------
# Env helpers
# -----------------------------
def env_bool(key: str, default: bool = False) -> bool:
    v = os.getenv(key)
    if v is None:
        return default
    return str(v).strip().lower() in ("1", "true", "yes", "on")


def env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, default))
    except Exception:
        return default


def env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, default))
    except Exception:
        return default


def env_str(key: str, default: Optional[str] = None) -> Optional[str]:
    v = os.getenv(key)
    return v.strip() if (v and str(v).strip() != "") else default


def env_first(*keys: str, default: Optional[str] = None) -> Optional[str]:
    for key in keys:
        v = env_str(key)
        if v:
            return v
    return default


# -----------------------------
# KeyCRM defaults
# -----------------------------
KEYCRM_DEFAULT_API_URL = "https://openapi.keycrm.app/v1"


# -----------------------------
# Settings Object
# -----------------------------
@dataclass(frozen=True)
class Settings:
    KEYCRM_API_URL: Optional[str]
    KEYCRM_API_TOKEN: Optional[str]
    KEYCRM_TIMEOUT_SEC: float
    REDIS_URL: Optional[str]
    REDIS_TLS: bool
    UPSTASH_REDIS_REST_URL: Optional[str]
    UPSTASH_REDIS_REST_TOKEN: Optional[str]
    FORCE_IN_MEMORY_KV: bool
    CRON_SECRET: Optional[str]
    ADMIN_PASS: Optional[str]
    EXP_LOG_LIMIT: int


@lru_cache(maxsize=1)
def settings() -> Settings:
    return Settings(
        KEYCRM_API_URL=env_first("KEYCRM_API_URL", "KEYCRM_API_BASE", "KEYCRM_BASE_URL", default=KEYCRM_DEFAULT_API_URL),
        KEYCRM_API_TOKEN=env_first("KEYCRM_API_TOKEN", "KEYCRM_BEARER", "KEYCRM_TOKEN"),
        KEYCRM_TIMEOUT_SEC=env_float("KEYCRM_TIMEOUT_SEC", 20.0),
        REDIS_URL=env_first("REDIS_URL", "UPSTASH_REDIS_URL"),
        REDIS_TLS=env_bool("REDIS_TLS", True),
        UPSTASH_REDIS_REST_URL=env_first("UPSTASH_REDIS_REST_URL", "KV_REST_API_URL"),
        UPSTASH_REDIS_REST_TOKEN=env_first("UPSTASH_REDIS_REST_TOKEN", "KV_REST_API_TOKEN"),
        FORCE_IN_MEMORY_KV=env_bool("CRMHUB_FORCE_IN_MEMORY", False),
        CRON_SECRET=env_str("CRON_SECRET"),
        ADMIN_PASS=env_str("ADMIN_PASS"),
        EXP_LOG_LIMIT=env_int("EXP_LOG_LIMIT", 50),
    )

