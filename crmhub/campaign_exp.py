# crmhub/campaign_exp.py
"""
Campaign expiration engine
--------------------------
Tracks the cards sitting in a campaign's base (pipeline, status) pair,
snapshots when each of them entered it, and decides which ones have been
there longer than the campaign's `days` setting.

✓ Config resolution across the historical campaign field names
✓ Base cohort collection (list all pages, then detail each card)
✓ Snapshot at cmp:base-entered:{campaignId} (full replace or subtractive edit)
✓ Expiry threshold + live re-verification before acting (fail closed)
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from crmhub import keycrm
from crmhub.kv import KVError, get_store
from crmhub.runtime import PerfTimer, get_logger, now_ms

log = get_logger("campaign_exp")

MS_IN_DAY = 24 * 60 * 60 * 1000
PER_PAGE = 100
MAX_DEPTH = 4

_ENTERED_AT_KEY = re.compile(r"entered_at$", re.IGNORECASE)
_NUMERIC = re.compile(r"^[+-]?(\d+\.?\d*|\.\d+)([eE][+-]?\d+)?$")


def base_entered_key(campaign_id: str) -> str:
    return f"cmp:base-entered:{campaign_id}"


# ---------- Types ----------
@dataclass(frozen=True)
class ExpirationConfig:
    base_pipeline_id: str
    base_status_id: str
    target_pipeline_id: str
    target_status_id: str
    days: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "basePipelineId": self.base_pipeline_id,
            "baseStatusId": self.base_status_id,
            "targetPipelineId": self.target_pipeline_id,
            "targetStatusId": self.target_status_id,
            "days": self.days,
        }


@dataclass
class BaseEnteredCard:
    card_id: str
    entered_at: Optional[int]
    fetched_at: int
    pipeline_id: Optional[str] = None
    status_id: Optional[str] = None
    entered_at_raw: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cardId": self.card_id,
            "pipelineId": self.pipeline_id,
            "statusId": self.status_id,
            "enteredAt": self.entered_at,
            "enteredAtRaw": self.entered_at_raw,
            "fetchedAt": self.fetched_at,
        }

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "BaseEnteredCard":
        entered = raw.get("enteredAt")
        return cls(
            card_id=str(raw.get("cardId") or ""),
            pipeline_id=raw.get("pipelineId"),
            status_id=raw.get("statusId"),
            entered_at=entered if _is_finite_number(entered) else None,
            entered_at_raw=raw.get("enteredAtRaw"),
            fetched_at=int(raw.get("fetchedAt") or 0),
        )


@dataclass
class BaseEnteredCache:
    campaign_id: str
    pipeline_id: str
    status_id: str
    updated_at: int
    cards: List[BaseEnteredCard] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "campaignId": self.campaign_id,
            "pipelineId": self.pipeline_id,
            "statusId": self.status_id,
            "updatedAt": self.updated_at,
            "cards": [c.to_dict() for c in self.cards],
        }


@dataclass
class CollectBaseCardsResult:
    ok: bool
    campaign_id: str
    listed: int = 0
    detail_fetched: int = 0
    cards: List[BaseEnteredCard] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)
    pipeline_id: Optional[str] = None
    status_id: Optional[str] = None
    updated_at: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "ok": self.ok,
            "campaignId": self.campaign_id,
            "listed": self.listed,
            "detailFetched": self.detail_fetched,
            "cards": [c.to_dict() for c in self.cards],
            "errors": list(self.errors),
        }
        for key, value in (
            ("pipelineId", self.pipeline_id),
            ("statusId", self.status_id),
            ("updatedAt", self.updated_at),
            ("message", self.message),
        ):
            if value is not None:
                out[key] = value
        return out


# ---------- Field resolution ----------
def _is_finite_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def pick_id(*values: Any) -> str:
    """First value that is non-empty once stringified and stripped."""
    for value in values:
        if value is None:
            continue
        s = str(value).strip()
        if s:
            return s
    return ""


def _get(obj: Any, key: str) -> Any:
    return obj.get(key) if isinstance(obj, dict) else None


def resolve_target_ids(target: Any) -> Tuple[str, str]:
    if not isinstance(target, dict):
        return "", ""
    pipeline_id = pick_id(target.get("pipeline"), target.get("pipeline_id"), target.get("pipelineId"), target.get("id"))
    status_id = pick_id(target.get("status"), target.get("status_id"), target.get("statusId"))
    return pipeline_id, status_id


def resolve_base_pair(campaign: Any) -> Optional[Dict[str, str]]:
    if not isinstance(campaign, dict):
        return None
    pipeline_id, status_id = resolve_target_ids(campaign.get("base"))
    pipeline_id = pipeline_id or pick_id(campaign.get("base_pipeline_id"), campaign.get("basePipelineId"))
    status_id = status_id or pick_id(campaign.get("base_status_id"), campaign.get("baseStatusId"))
    if not pipeline_id or not status_id:
        return None
    return {"pipelineId": pipeline_id, "statusId": status_id}


def _as_day_count(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    if _is_finite_number(value):
        return value
    if isinstance(value, str) and value.strip():
        try:
            n = float(value.strip())
        except ValueError:
            return None
        return n if math.isfinite(n) else None
    return None


def resolve_expiration_config(campaign: Any) -> Optional[ExpirationConfig]:
    base = resolve_base_pair(campaign)
    if not base:
        return None

    exp = campaign.get("exp")
    exp_obj = exp if isinstance(exp, dict) else None
    exp_target = campaign.get("texp")
    if exp_target is None:
        exp_target = exp

    t_pipeline, t_status = resolve_target_ids(exp_target)
    target_pipeline = t_pipeline or pick_id(_get(exp_obj, "pipeline_id"), _get(exp_obj, "pipeline"), campaign.get("exp_pipeline_id"))
    target_status = t_status or pick_id(_get(exp_obj, "status_id"), _get(exp_obj, "status"), campaign.get("exp_status_id"))

    days = None
    for raw in (
        campaign.get("expDays"),
        None if exp_obj is not None else exp,
        campaign.get("expireDays"),
        campaign.get("expire"),
        campaign.get("vexp"),
        _get(exp_obj, "days"),
    ):
        n = _as_day_count(raw)
        if n is not None and n > 0:
            days = n
            break

    if not days or not target_pipeline or not target_status:
        return None

    if isinstance(days, float) and days.is_integer():
        days = int(days)
    return ExpirationConfig(
        base_pipeline_id=base["pipelineId"],
        base_status_id=base["statusId"],
        target_pipeline_id=target_pipeline,
        target_status_id=target_status,
        days=days,
    )


# ---------- Entered-at extraction ----------
def _scale_epoch(n: float) -> Optional[int]:
    if n > 1e12:
        return int(n)
    if n > 1e9:
        return int(n * 1000)
    return None


def _parse_date_ms(text: str) -> Optional[int]:
    try:
        dt = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


def to_timestamp(value: Any) -> Tuple[Optional[int], Optional[str]]:
    """Convert a raw entered-at value to (epoch ms | None, raw string | None)."""
    if value is None:
        return None, None
    if _is_finite_number(value):
        return _scale_epoch(value), str(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None, ""
        if not _NUMERIC.match(trimmed):
            return _parse_date_ms(trimmed), trimmed
        n = float(trimmed)
        return (_scale_epoch(n) if math.isfinite(n) else None), trimmed
    return None, None


def collect_entered_candidates(obj: Any, depth: int = 0, out: Optional[List[Any]] = None) -> List[Any]:
    if out is None:
        out = []
    if not obj or depth > MAX_DEPTH:
        return out
    if isinstance(obj, dict):
        entries = [(str(k), v) for k, v in obj.items()]
    elif isinstance(obj, list):
        entries = [(str(i), v) for i, v in enumerate(obj)]
    else:
        return out
    for key, value in entries:
        if _ENTERED_AT_KEY.search(key):
            out.append(value)
        if value and isinstance(value, (dict, list)):
            collect_entered_candidates(value, depth + 1, out)
    return out


def extract_entered_at(detail: Any) -> Tuple[Optional[int], Optional[str]]:
    candidates = collect_entered_candidates(detail)
    return to_timestamp(candidates[0] if candidates else None)


def card_location(detail: Any) -> Tuple[str, str]:
    status = _get(detail, "status")
    pipeline_id = pick_id(_get(status, "pipeline_id"), _get(detail, "pipeline_id"))
    status_id = pick_id(_get(status, "id"), _get(detail, "status_id"))
    return pipeline_id, status_id


# ---------- Snapshot store ----------
def get_base_entered_cache(campaign_id: str) -> Optional[BaseEnteredCache]:
    raw = get_store().get_json(base_entered_key(campaign_id))
    if not isinstance(raw, dict) or not isinstance(raw.get("cards"), list):
        return None
    updated_at = raw.get("updatedAt")
    return BaseEnteredCache(
        campaign_id=str(raw.get("campaignId") or campaign_id),
        pipeline_id=str(raw.get("pipelineId") or ""),
        status_id=str(raw.get("statusId") or ""),
        updated_at=int(updated_at) if _is_finite_number(updated_at) else now_ms(),
        cards=[BaseEnteredCard.from_dict(c) for c in raw["cards"] if isinstance(c, dict)],
    )


def save_base_entered_cache(cache: BaseEnteredCache) -> None:
    get_store().set_json(base_entered_key(cache.campaign_id), cache.to_dict())


# ---------- Collector ----------
def collect_base_cards(campaign: Dict[str, Any]) -> CollectBaseCardsResult:
    result = CollectBaseCardsResult(ok=False, campaign_id=pick_id(_get(campaign, "id")))

    if not result.campaign_id:
        result.message = "campaign_id_missing"
        return result

    base = resolve_base_pair(campaign)
    if not base:
        result.message = "base_pair_missing"
        return result

    try:
        keycrm.assert_keycrm_env()
    except keycrm.KeycrmConfigError as e:
        result.message = str(e) or "missing_keycrm_env"
        return result

    result.pipeline_id = base["pipelineId"]
    result.status_id = base["statusId"]

    with PerfTimer(f"collect_base_cards[{result.campaign_id}]"):
        ids: List[str] = []
        try:
            for items in keycrm.iter_card_pages(base["pipelineId"], base["statusId"], per_page=PER_PAGE):
                ids.extend(i for i in (pick_id(_get(it, "id"), _get(it, "card_id")) for it in items) if i)
                result.listed += len(items)
        except Exception as e:
            log.error("❌ Listing cards failed for campaign %s: %s", result.campaign_id, e)
            result.message = str(e) or "cards_fetch_failed"
            result.errors.append(result.message)
            return result

        cards: List[BaseEnteredCard] = []
        for card_id in ids:
            try:
                detail = keycrm.fetch_card_detail(card_id)
            except Exception as e:
                log.warning("Card %s detail failed: %s", card_id, e)
                result.errors.append(f"card {card_id}: {e}")
                continue
            result.detail_fetched += 1
            ts, raw = extract_entered_at(detail)
            pipeline_id, status_id = card_location(detail)
            cards.append(
                BaseEnteredCard(
                    card_id=card_id,
                    pipeline_id=pipeline_id,
                    status_id=status_id,
                    entered_at=ts,
                    entered_at_raw=raw,
                    fetched_at=now_ms(),
                )
            )

    snapshot = BaseEnteredCache(
        campaign_id=result.campaign_id,
        pipeline_id=base["pipelineId"],
        status_id=base["statusId"],
        updated_at=now_ms(),
        cards=cards,
    )
    try:
        save_base_entered_cache(snapshot)
    except KVError as e:
        log.error("❌ Snapshot save failed for campaign %s: %s", result.campaign_id, e)
        result.message = str(e)
        result.errors.append(result.message)
        return result
    log.info(
        "📸 Snapshot saved for campaign %s: listed=%s detailed=%s errors=%s",
        result.campaign_id, result.listed, result.detail_fetched, len(result.errors),
    )

    result.ok = True
    result.cards = cards
    result.updated_at = snapshot.updated_at
    return result


# ---------- Cache mutation hook ----------
def update_base_cache_after_move(campaign_id: str, removed_card_ids: List[str]) -> Optional[BaseEnteredCache]:
    cache = get_base_entered_cache(campaign_id)
    if cache is None:
        return None
    if not removed_card_ids:
        return cache
    removed = {str(cid) for cid in removed_card_ids}
    cache.cards = [c for c in cache.cards if c.card_id not in removed]
    cache.updated_at = now_ms()
    save_base_entered_cache(cache)
    return cache


# ---------- Evaluator ----------
def threshold_for(config: ExpirationConfig, now: int) -> float:
    return now - config.days * MS_IN_DAY


def is_expired(card: BaseEnteredCard, threshold: float) -> bool:
    return _is_finite_number(card.entered_at) and card.entered_at <= threshold


def due_cards(cache: BaseEnteredCache, config: ExpirationConfig, now: int) -> List[BaseEnteredCard]:
    threshold = threshold_for(config, now)
    return [c for c in cache.cards if is_expired(c, threshold)]


def ensure_card_still_in_base(card_id: str, base_pipeline_id: str, base_status_id: str) -> bool:
    try:
        detail = keycrm.fetch_card_detail(card_id)
        pipeline_id, status_id = card_location(detail)
        return pipeline_id == str(base_pipeline_id) and status_id == str(base_status_id)
    except Exception as e:
        log.warning("Card %s live check failed, not confirmed: %s", card_id, e)
        return False
