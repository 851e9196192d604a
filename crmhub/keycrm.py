# crmhub/keycrm.py
"""
📇 KeyCRM client: pipelines/cards transport
- Paginated card listing filtered by (pipeline_id, status_id)
- Card detail fetch
- Card move (two endpoint shapes, first success wins)
- Raises KeycrmError with HTTP metadata on non-2xx / non-JSON replies
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Optional
from urllib.parse import quote

import requests

from crmhub.config import settings
from crmhub.runtime import get_logger

logger = get_logger("keycrm")

PER_PAGE = 100


# =========================
# Errors
# =========================
class KeycrmError(RuntimeError):
    """Error that carries HTTP metadata and response body."""

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        body: Any = None,
        path: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = body
        self.path = path


class KeycrmConfigError(KeycrmError):
    """Raised when KeyCRM URL or token is not configured."""


def assert_keycrm_env() -> None:
    s = settings()
    if not s.KEYCRM_API_URL:
        raise KeycrmConfigError("Missing env KEYCRM_API_URL")
    if not s.KEYCRM_API_TOKEN:
        raise KeycrmConfigError("Missing env KEYCRM_API_TOKEN")


# =========================
# Small helpers
# =========================
def _ensure_bearer(value: str) -> str:
    return value if value.lower().startswith("bearer ") else f"Bearer {value}"


def keycrm_headers() -> Dict[str, str]:
    return {
        "Accept": "application/json",
        "Content-Type": "application/json",
        "Authorization": _ensure_bearer(settings().KEYCRM_API_TOKEN or ""),
    }


def keycrm_url(path: str) -> str:
    base = (settings().KEYCRM_API_URL or "").rstrip("/")
    return f"{base}/{path.lstrip('/')}"


def _http_get(url: str, params: Optional[Dict[str, Any]] = None) -> requests.Response:
    return requests.get(url, params=params, headers=keycrm_headers(), timeout=settings().KEYCRM_TIMEOUT_SEC)


def _http_post(url: str, payload: Dict[str, Any]) -> requests.Response:
    return requests.post(url, json=payload, headers=keycrm_headers(), timeout=settings().KEYCRM_TIMEOUT_SEC)


def fetch_json(path: str, params: Optional[Dict[str, Any]] = None) -> Any:
    resp = _http_get(keycrm_url(path), params)
    if not resp.ok:
        text = resp.text or ""
        logger.error("KeyCRM %s error body: %s", resp.status_code, text[:500])
        raise KeycrmError(
            f"KeyCRM {resp.status_code} {resp.reason}: {text[:200]}",
            status_code=resp.status_code,
            body=text,
            path=path,
        )
    try:
        return resp.json()
    except ValueError:
        raise KeycrmError(f"KeyCRM returned non-JSON for {path}", status_code=resp.status_code, path=path)


# =========================
# Listing / pagination
# =========================
def extract_list(payload: Any) -> List[Any]:
    """Pull the item list out of a bare array or a data/items/result envelope."""
    if isinstance(payload, list):
        return payload
    if not isinstance(payload, dict):
        return []
    for key in ("data", "items", "result"):
        if isinstance(payload.get(key), list):
            return payload[key]
    data = payload.get("data")
    if isinstance(data, dict) and isinstance(data.get("data"), list):
        return data["data"]
    return []


def _as_page_number(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(float(value))
    except (TypeError, ValueError, OverflowError):
        return None


def has_next_page(payload: Any, current_page: int, per_page: int, items_length: int) -> bool:
    """
    Decide whether another page exists.

    Order: explicit current/last page from the envelope, then a `next`
    link, then the page-was-full heuristic.
    """
    envelope = payload if isinstance(payload, dict) else {}
    meta = envelope.get("meta")
    if not isinstance(meta, dict):
        data = envelope.get("data")
        meta = data.get("meta") if isinstance(data, dict) and isinstance(data.get("meta"), dict) else {}

    last = _as_page_number(meta.get("last_page", envelope.get("last_page")))
    if last is not None:
        current = _as_page_number(meta.get("current_page", envelope.get("current_page")))
        return (current if current is not None else current_page) < last

    links = envelope.get("links")
    next_url = (links.get("next") if isinstance(links, dict) else None) or envelope.get("next_page_url")
    if next_url:
        return True
    return items_length >= per_page


def iter_card_pages(pipeline_id: str, status_id: str, per_page: int = PER_PAGE) -> Iterator[List[Any]]:
    """Yield raw card lists page by page for one (pipeline, status) pair."""
    page = 1
    while True:
        params = {
            "page": page,
            "per_page": per_page,
            "pipeline_id": pipeline_id,
            "status_id": status_id,
        }
        payload = fetch_json("/pipelines/cards", params)
        items = extract_list(payload)
        logger.debug("cards page=%s items=%s pipeline=%s status=%s", page, len(items), pipeline_id, status_id)
        yield items
        if not has_next_page(payload, page, per_page, len(items)):
            break
        page += 1


def fetch_card_detail(card_id: str) -> Any:
    payload = fetch_json(f"/pipelines/cards/{quote(str(card_id), safe='')}")
    if isinstance(payload, dict) and payload.get("data") is not None:
        return payload["data"]
    return payload


# =========================
# Card move
# =========================
@dataclass
class MoveResult:
    ok: bool
    attempt: str
    status: int
    text: str
    json: Any = None

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "attempt": self.attempt, "status": self.status, "body": self.json if self.json is not None else self.text}


def _call_move(name: str, path: str, payload: Dict[str, Any]) -> MoveResult:
    try:
        resp = _http_post(keycrm_url(path), payload)
    except requests.RequestException as e:
        logger.warning("KeyCRM move attempt %s failed: %s", name, e)
        return MoveResult(ok=False, attempt=name, status=0, text=str(e))

    text = resp.text or ""
    try:
        body = resp.json()
    except ValueError:
        body = None
    success = resp.ok and not (isinstance(body, dict) and body.get("ok") not in (None, True))
    return MoveResult(ok=success, attempt=name, status=resp.status_code, text=text, json=body)


def move_card(card_id: str, pipeline_id: str, status_id: str) -> MoveResult:
    """Move a card to (pipeline_id, status_id); never raises."""
    attempts = [
        (
            "cards/{id}/move",
            f"/cards/{quote(str(card_id), safe='')}/move",
            {"pipeline_id": pipeline_id, "status_id": status_id},
        ),
        (
            "pipelines/cards/move",
            "/pipelines/cards/move",
            {"card_id": card_id, "pipeline_id": pipeline_id, "status_id": status_id},
        ),
    ]
    last = MoveResult(ok=False, attempt="", status=0, text="")
    for name, path, payload in attempts:
        last = _call_move(name, path, payload)
        if last.ok:
            logger.info("🚚 Moved card %s → %s/%s via %s", card_id, pipeline_id, status_id, name)
            return last
    logger.warning("KeyCRM move failed for card %s: status=%s", card_id, last.status)
    return last
