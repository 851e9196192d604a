"""
crmhub: KeyCRM campaign expiration service
- Admin tools for base-entered snapshots
- CRON endpoint that moves expired cards
- Shared-secret auth (ADMIN_PASS / CRON_SECRET)
"""

from __future__ import annotations

from fastapi import FastAPI

from crmhub.config import settings
from crmhub.kv import get_store
from crmhub.routes.campaign_exp import router as campaign_exp_router
from crmhub.runtime import get_logger, iso_now

log = get_logger("main")

VERSION = "1.0.0"

# ─────────────────────────── FastAPI app ────────────────────────────
app = FastAPI(title="crmhub", version=VERSION)
app.include_router(campaign_exp_router)


# ─────────────────────────── Startup checks ─────────────────────────
@app.on_event("startup")
async def startup_checks():
    s = settings()
    missing = [name for name, value in (("KEYCRM_API_TOKEN", s.KEYCRM_API_TOKEN),) if not value]
    if missing:
        log.warning("🚨 Missing env vars → %s", ", ".join(missing))
    log.info("✅ Startup: kv_backend=%s keycrm=%s", get_store().backend, s.KEYCRM_API_URL)


# ─────────────────────────── Health ────────────────────────────────
@app.get("/ping")
async def ping():
    return {"ok": True, "pong": True, "time": iso_now()}


@app.get("/health")
async def health():
    s = settings()
    return {
        "ok": True,
        "timestamp": iso_now(),
        "kv_backend": get_store().backend,
        "keycrm_configured": bool(s.KEYCRM_API_URL and s.KEYCRM_API_TOKEN),
        "version": VERSION,
    }
