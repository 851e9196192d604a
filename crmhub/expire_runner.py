# crmhub/expire_runner.py
"""
Expiration Runner

✓ Campaigns: active and not deleted, with a full expiration config
✓ Candidates: snapshot rows whose enteredAt <= now - days
✓ Re-verify: card must still sit in the base pair (fail closed)
✓ Move: KeyCRM move to the campaign's expiration target
✓ Bookkeeping: exp counter, snapshot trim, capped move log, last-run stamp
"""

from __future__ import annotations

import argparse
import json
from typing import Any, Dict, List, Optional

from crmhub import campaign_exp, campaigns, keycrm
from crmhub.config import settings
from crmhub.kv import KVError, get_store
from crmhub.runtime import PerfTimer, get_logger, now_ms

log = get_logger("expire_runner")


def exp_log_key(campaign_id: str) -> str:
    return f"cmp:exp-log:{campaign_id}"


def exp_last_run_key(campaign_id: str) -> str:
    return f"cmp:exp-last-run:{campaign_id}"


def append_logs(campaign_id: str, entries: List[Dict[str, Any]]) -> None:
    if not entries:
        return
    store = get_store()
    stored = store.get_json(exp_log_key(campaign_id))
    existing = stored.get("entries") if isinstance(stored, dict) else None
    existing = existing if isinstance(existing, list) else []
    merged = (entries + existing)[: settings().EXP_LOG_LIMIT]
    store.set_json(exp_log_key(campaign_id), {"entries": merged, "updatedAt": now_ms()})
    store.set_json(exp_last_run_key(campaign_id), now_ms())


def get_logs(campaign_id: str) -> List[Dict[str, Any]]:
    stored = get_store().get_json(exp_log_key(campaign_id))
    entries = stored.get("entries") if isinstance(stored, dict) else None
    return entries if isinstance(entries, list) else []


def expire_campaign(campaign: Dict[str, Any], now: int, errors: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Move every verified due card of one campaign. Returns a summary row or None."""
    config = campaign_exp.resolve_expiration_config(campaign)
    if config is None:
        return None

    campaign_id = str(campaign.get("id"))
    cache = campaign_exp.get_base_entered_cache(campaign_id)
    if cache is None or not cache.cards:
        return None

    threshold = campaign_exp.threshold_for(config, now)
    due = campaign_exp.due_cards(cache, config, now)
    if not due:
        return None
    log.info("⏳ Campaign %s: %s card(s) past threshold %s", campaign_id, len(due), threshold)

    moved_ids: List[str] = []
    logs: List[Dict[str, Any]] = []
    for card in due:
        if not campaign_exp.ensure_card_still_in_base(card.card_id, config.base_pipeline_id, config.base_status_id):
            log.info("Card %s no longer confirmed in base; skipped", card.card_id)
            continue

        move = keycrm.move_card(card.card_id, config.target_pipeline_id, config.target_status_id)
        if not move.ok:
            errors.append({
                "campaignId": campaign_id,
                "cardId": card.card_id,
                "status": move.status,
                "response": move.json if move.json is not None else move.text,
            })
            continue

        campaigns.increment_exp_counter(campaign_id)
        moved_ids.append(card.card_id)
        logs.append({
            "cardId": card.card_id,
            "campaignId": campaign_id,
            "enteredAt": card.entered_at,
            "enteredAtRaw": card.entered_at_raw,
            "movedAt": now_ms(),
            "threshold": threshold,
        })

    if not moved_ids:
        return None

    campaign_exp.update_base_cache_after_move(campaign_id, moved_ids)
    append_logs(campaign_id, logs)
    return {"campaignId": campaign_id, "moved": len(moved_ids), "threshold": threshold, "logs": logs}


def run_expirations(now: Optional[int] = None) -> Dict[str, Any]:
    now = now if now is not None else now_ms()
    try:
        all_campaigns = campaigns.list_campaigns()
    except Exception as e:
        log.error("❌ Listing campaigns failed: %s", e, exc_info=True)
        all_campaigns = []

    summary: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []
    with PerfTimer("run_expirations"):
        for campaign in campaigns.active_campaigns(all_campaigns):
            try:
                row = expire_campaign(campaign, now, errors)
            except KVError as e:
                log.error("❌ Campaign %s skipped: %s", campaign.get("id"), e)
                errors.append({"campaignId": str(campaign.get("id")), "error": str(e)})
                continue
            if row:
                summary.append(row)

    log.info("✅ Expiration run done: campaigns_moved=%s errors=%s", len(summary), len(errors))
    return {"ok": True, "processed": len(summary), "summary": summary, "errors": errors}


def main() -> None:
    ap = argparse.ArgumentParser(description="Move expired base-pair cards for all campaigns")
    ap.add_argument("--now", type=int, default=None, help="Override current time (epoch ms)")
    args = ap.parse_args()
    print(json.dumps(run_expirations(args.now), ensure_ascii=False, indent=2))


if __name__ == "__main__":
    main()
