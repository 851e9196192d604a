# crmhub/campaigns.py
"""
Campaign registry backed by the KV store.

Layout:
    cmp:ids          → JSON array of campaign ids
    cmp:item:{id}    → JSON campaign record
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

from crmhub.kv import get_store
from crmhub.runtime import get_logger

log = get_logger("campaigns")

IDS_KEY = "cmp:ids"


def item_key(campaign_id: str) -> str:
    return f"cmp:item:{campaign_id}"


def _ids() -> List[str]:
    raw = get_store().get_json(IDS_KEY)
    if not isinstance(raw, list):
        return []
    return [str(x) for x in raw if x not in (None, "")]


def get_campaign(campaign_id: str) -> Optional[Dict[str, Any]]:
    raw = get_store().get_json(item_key(str(campaign_id)))
    if not isinstance(raw, dict):
        return None
    raw.setdefault("id", str(campaign_id))
    return raw


def list_campaigns() -> List[Dict[str, Any]]:
    out: List[Dict[str, Any]] = []
    for cid in _ids():
        campaign = get_campaign(cid)
        if campaign is None:
            log.warning("Campaign %s listed in index but missing", cid)
            continue
        out.append(campaign)
    return out


def save_campaign(campaign: Dict[str, Any]) -> Dict[str, Any]:
    cid = str(campaign.get("id") or "").strip()
    if not cid:
        raise ValueError("campaign id is required")
    store = get_store()
    store.set_json(item_key(cid), campaign)
    ids = _ids()
    if cid not in ids:
        ids.append(cid)
        store.set_json(IDS_KEY, ids)
    return campaign


def active_campaigns(campaigns: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    return [c for c in campaigns if c and c.get("active") is not False and c.get("deleted") is not True]


def increment_exp_counter(campaign_id: str) -> bool:
    """Bump exp_count (and counters.exp when present) on the stored campaign."""
    campaign = get_campaign(campaign_id)
    if campaign is None:
        return False
    current = campaign.get("exp_count")
    current = current if isinstance(current, int) and not isinstance(current, bool) else 0
    counters = campaign.get("counters")
    campaign["exp_count"] = current + 1
    if isinstance(counters, dict):
        counter_exp = counters.get("exp")
        counter_exp = counter_exp if isinstance(counter_exp, int) and not isinstance(counter_exp, bool) else current
        counters["exp"] = counter_exp + 1
    get_store().set_json(item_key(str(campaign_id)), campaign)
    return True
