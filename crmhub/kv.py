"""
🗄️ kv.py
─────────
Key-value blob store used for campaign records, base-entered snapshots and
expiration logs.

Backends, tried in order:
 - Redis TCP (REDIS_URL)
 - Upstash REST (UPSTASH_REDIS_REST_URL + token)
 - Local in-memory dict, only when neither is configured (tests, local dev)

Values are stored as JSON strings. A failing Redis call is logged and Upstash
is tried next; when every configured backend fails a KVError is raised. The
local dict is only used when no durable backend is configured.
"""

from __future__ import annotations

import json
from typing import Any, Dict, Optional

import redis as _redis
import requests

from crmhub.config import settings
from crmhub.runtime import get_logger

log = get_logger("kv")

REST_TIMEOUT_SEC = 5


class KVError(RuntimeError):
    """Raised when no configured durable backend accepted a command."""


class KVStore:
    """Redis / Upstash blob store; local dict when neither is configured."""

    def __init__(
        self,
        redis_url: Optional[str] = None,
        redis_tls: bool = True,
        rest_url: Optional[str] = None,
        rest_token: Optional[str] = None,
        force_memory: bool = False,
    ):
        self.r = None
        self.rest_url = (rest_url or "").rstrip("/")
        self.rest_token = rest_token
        self.rest = bool(self.rest_url and self.rest_token) and not force_memory
        self.durable = bool(redis_url or self.rest) and not force_memory
        if redis_url and not force_memory:
            try:
                if redis_tls and redis_url.startswith("redis://"):
                    redis_url = "rediss://" + redis_url[len("redis://"):]
                self.r = _redis.from_url(redis_url, decode_responses=True, socket_timeout=3)
                log.info("✅ Redis TCP store active")
            except Exception:
                log.error("Redis TCP init failed", exc_info=True)
                self.r = None
        self._mem: Dict[str, str] = {}

    @property
    def backend(self) -> str:
        if self.r is not None:
            return "redis"
        if self.rest:
            return "upstash"
        if self.durable:
            return "unavailable"
        return "memory"

    # ---------------- upstash helpers ----------------
    def _rest(self, *command: str) -> Any:
        resp = requests.post(
            self.rest_url,
            headers={"Authorization": f"Bearer {self.rest_token}"},
            json=list(command),
            timeout=REST_TIMEOUT_SEC,
        )
        resp.raise_for_status()
        data = resp.json()
        if isinstance(data, dict) and data.get("error"):
            raise RuntimeError(f"Upstash error: {data['error']}")
        return data.get("result") if isinstance(data, dict) else None

    # ---------------- raw API ----------------
    def _call(self, op: str, key: str, redis_fn, rest_cmd):
        """Run one command on the durable backends, Redis first then Upstash."""
        last: Optional[Exception] = None
        if self.r is not None:
            try:
                return redis_fn(self.r)
            except Exception as e:
                log.error("Redis %s failed for %s", op, key, exc_info=True)
                last = e
        if self.rest:
            try:
                return self._rest(*rest_cmd)
            except Exception as e:
                log.error("Upstash %s failed for %s", op, key, exc_info=True)
                last = e
        raise KVError(f"KV {op} failed for {key}: {last or 'no backend reachable'}")

    def get_raw(self, key: str) -> Optional[str]:
        if not self.durable:
            return self._mem.get(key)
        result = self._call("GET", key, lambda r: r.get(key), ("GET", key))
        return result if isinstance(result, str) else None

    def set_raw(self, key: str, value: str) -> None:
        if not self.durable:
            self._mem[key] = value
            return
        self._call("SET", key, lambda r: r.set(key, value), ("SET", key, value))

    def delete(self, key: str) -> None:
        if not self.durable:
            self._mem.pop(key, None)
            return
        self._call("DEL", key, lambda r: r.delete(key), ("DEL", key))

    # ---------------- JSON API ----------------
    def get_json(self, key: str) -> Any:
        raw = self.get_raw(key)
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except (TypeError, ValueError):
            log.warning("Non-JSON value at %s ignored", key)
            return None

    def set_json(self, key: str, value: Any) -> None:
        self.set_raw(key, json.dumps(value, ensure_ascii=False))


_STORE: Optional[KVStore] = None


def get_store() -> KVStore:
    global _STORE
    if _STORE is None:
        s = settings()
        _STORE = KVStore(
            redis_url=s.REDIS_URL,
            redis_tls=s.REDIS_TLS,
            rest_url=s.UPSTASH_REDIS_REST_URL,
            rest_token=s.UPSTASH_REDIS_REST_TOKEN,
            force_memory=s.FORCE_IN_MEMORY_KV,
        )
        log.info("KV backend: %s", _STORE.backend)
    return _STORE


def reset_state() -> None:
    global _STORE
    _STORE = None
    settings.cache_clear()
    log.info("🧹 KV store state cleared.")
