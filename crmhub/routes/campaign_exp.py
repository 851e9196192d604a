# crmhub/routes/campaign_exp.py
"""
🧠 Campaign Expiration Router
-----------------------------
Admin tools for the base-entered snapshot plus the CRON entry point that
moves expired cards.

    GET|POST /api/tools/campaign-exp/collect   (admin)
    GET      /api/tools/campaign-exp/cache     (admin)
    GET      /api/tools/campaign-exp/config    (admin)
    GET      /api/tools/campaign-exp/log       (admin)
    POST     /api/tools/campaign-exp/remove    (admin, webhook callers)
    GET|POST /api/cron/expire                  (cron)
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional, Tuple

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from crmhub import campaign_exp, campaigns, expire_runner
from crmhub.config import settings
from crmhub.kv import KVError
from crmhub.runtime import get_logger

log = get_logger("routes.campaign_exp")

router = APIRouter(tags=["campaign-exp"])


# -------------------------------------------------------------------
# Auth Guard
# -------------------------------------------------------------------
def _normalize_token(value: Optional[str]) -> str:
    if not value:
        return ""
    trimmed = value.strip()
    if trimmed.lower().startswith("bearer "):
        return trimmed[7:]
    return trimmed


ADMIN_QUERY_KEYS = ("token", "admin")
CRON_QUERY_KEYS = ("token", "secret")


def _provided_tokens(request: Request, header_token: Optional[str], query_keys: Tuple[str, ...]) -> List[str]:
    qs = request.query_params
    return [
        _normalize_token(request.headers.get("authorization")),
        header_token or "",
        *(qs.get(k) or "" for k in query_keys),
        request.cookies.get("admin_pass") or "",
    ]


def _check(expected: Optional[str], provided: List[str]) -> None:
    if not expected:
        return
    if not any(v == expected for v in provided):
        raise HTTPException(status_code=401, detail="unauthorized")


def require_admin(request: Request, x_admin_token: Optional[str] = Header(default=None)) -> None:
    """Require ADMIN_PASS in bearer, x-admin-token, ?token=/?admin= or admin_pass cookie."""
    _check(settings().ADMIN_PASS, _provided_tokens(request, x_admin_token, ADMIN_QUERY_KEYS))


def require_cron(request: Request, x_cron_token: Optional[str] = Header(default=None)) -> None:
    """Require CRON_SECRET (or ADMIN_PASS) in bearer, x-cron-token, ?token=/?secret= or cookie."""
    s = settings()
    _check(s.CRON_SECRET or s.ADMIN_PASS, _provided_tokens(request, x_cron_token, CRON_QUERY_KEYS))


# -------------------------------------------------------------------
# Helpers
# -------------------------------------------------------------------
def bad(status: int, error: str, **extra: Any) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error, **extra}, status_code=status)


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = await request.json()
    except Exception:
        return {}
    return body if isinstance(body, dict) else {}


def _campaign_id(*values: Any) -> str:
    return campaign_exp.pick_id(*values)


async def _handle_collect(campaign_id: str):
    try:
        campaign = await asyncio.to_thread(campaigns.get_campaign, campaign_id)
    except KVError as e:
        return bad(503, str(e), campaignId=campaign_id)
    if campaign is None:
        return bad(404, "campaign_not_found", campaignId=campaign_id)
    if not campaign_exp.resolve_base_pair(campaign):
        return bad(400, "campaign_base_missing", campaignId=campaign_id)

    result = await asyncio.to_thread(campaign_exp.collect_base_cards, campaign)
    if not result.ok:
        log.warning("Collect failed for %s: %s", campaign_id, result.message)
        return bad(502, result.message or "collect_failed", result=result.to_dict())
    return {"ok": True, "result": result.to_dict()}


# -------------------------------------------------------------------
# Routes
# -------------------------------------------------------------------
@router.get("/api/tools/campaign-exp/collect", dependencies=[Depends(require_admin)])
async def collect_get(campaign_id: Optional[str] = Query(None), campaignId: Optional[str] = Query(None)):
    cid = _campaign_id(campaign_id, campaignId)
    if not cid:
        return bad(400, "campaign_id_required")
    return await _handle_collect(cid)


@router.post("/api/tools/campaign-exp/collect", dependencies=[Depends(require_admin)])
async def collect_post(request: Request):
    body = await _json_body(request)
    cid = _campaign_id(body.get("campaign_id"), body.get("campaignId"))
    if not cid:
        return bad(400, "campaign_id_required")
    return await _handle_collect(cid)


@router.get("/api/tools/campaign-exp/cache", dependencies=[Depends(require_admin)])
def cache_get(campaign_id: Optional[str] = Query(None), campaignId: Optional[str] = Query(None)):
    cid = _campaign_id(campaign_id, campaignId)
    if not cid:
        return bad(400, "campaign_id_required")
    try:
        cache = campaign_exp.get_base_entered_cache(cid)
    except KVError as e:
        return bad(503, str(e), campaignId=cid)
    if cache is None:
        return bad(404, "cache_not_found", campaignId=cid)
    return {"ok": True, "cache": cache.to_dict()}


@router.get("/api/tools/campaign-exp/config", dependencies=[Depends(require_admin)])
def config_get(campaign_id: Optional[str] = Query(None), campaignId: Optional[str] = Query(None)):
    cid = _campaign_id(campaign_id, campaignId)
    if not cid:
        return bad(400, "campaign_id_required")
    try:
        campaign = campaigns.get_campaign(cid)
    except KVError as e:
        return bad(503, str(e), campaignId=cid)
    if campaign is None:
        return bad(404, "campaign_not_found", campaignId=cid)
    config = campaign_exp.resolve_expiration_config(campaign)
    return {
        "ok": True,
        "campaignId": cid,
        "base": campaign_exp.resolve_base_pair(campaign),
        "config": config.to_dict() if config else None,
    }


@router.get("/api/tools/campaign-exp/log", dependencies=[Depends(require_admin)])
def log_get(campaign_id: Optional[str] = Query(None), campaignId: Optional[str] = Query(None)):
    cid = _campaign_id(campaign_id, campaignId)
    if not cid:
        return bad(400, "campaign_id_required")
    try:
        entries = expire_runner.get_logs(cid)
    except KVError as e:
        return bad(503, str(e), campaignId=cid)
    return {"ok": True, "campaignId": cid, "entries": entries}


@router.post("/api/tools/campaign-exp/remove", dependencies=[Depends(require_admin)])
async def remove_post(request: Request):
    body = await _json_body(request)
    cid = _campaign_id(body.get("campaign_id"), body.get("campaignId"))
    if not cid:
        return bad(400, "campaign_id_required")
    raw_ids = body.get("card_ids", body.get("cardIds", []))
    if not isinstance(raw_ids, list):
        raw_ids = [raw_ids]
    card_ids = [i for i in (campaign_exp.pick_id(v) for v in raw_ids) if i]
    try:
        cache = await asyncio.to_thread(campaign_exp.update_base_cache_after_move, cid, card_ids)
    except KVError as e:
        return bad(503, str(e), campaignId=cid)
    if cache is None:
        return bad(404, "cache_not_found", campaignId=cid)
    return {"ok": True, "removed": card_ids, "cache": cache.to_dict()}


@router.get("/api/cron/expire", dependencies=[Depends(require_cron)])
@router.post("/api/cron/expire", dependencies=[Depends(require_cron)])
async def cron_expire():
    return await asyncio.to_thread(expire_runner.run_expirations)
