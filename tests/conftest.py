import os
import sys

# Ensure project root is in sys.path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from crmhub.kv import reset_state


@pytest.fixture(autouse=True)
def _reset_kv(monkeypatch):
    for key in [
        "KEYCRM_API_URL",
        "KEYCRM_API_BASE",
        "KEYCRM_BASE_URL",
        "KEYCRM_API_TOKEN",
        "KEYCRM_BEARER",
        "KEYCRM_TOKEN",
        "REDIS_URL",
        "UPSTASH_REDIS_URL",
        "UPSTASH_REDIS_REST_URL",
        "UPSTASH_REDIS_REST_TOKEN",
        "KV_REST_API_URL",
        "KV_REST_API_TOKEN",
        "CRON_SECRET",
        "ADMIN_PASS",
    ]:
        monkeypatch.delenv(key, raising=False)
    monkeypatch.setenv("CRMHUB_FORCE_IN_MEMORY", "1")
    monkeypatch.setenv("KEYCRM_API_URL", "https://keycrm.test/v1")
    monkeypatch.setenv("KEYCRM_API_TOKEN", "test-token")
    reset_state()
    yield
    reset_state()
