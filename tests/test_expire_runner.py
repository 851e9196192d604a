import pytest

from crmhub import campaign_exp as ce
from crmhub import campaigns, expire_runner, keycrm, kv

NOW = 1_700_000_000_000
DAY = 86_400_000


def _campaign(cid="cmp1", **extra):
    data = {
        "id": cid,
        "name": "Winter promo",
        "base": {"pipeline": "1", "status": "38"},
        "texp": {"pipeline": "2", "status": "40"},
        "expDays": 3,
        "exp_count": 0,
        "counters": {"exp": 0},
    }
    data.update(extra)
    return data


def _snapshot(cid, entries):
    ce.save_base_entered_cache(
        ce.BaseEnteredCache(
            campaign_id=cid,
            pipeline_id="1",
            status_id="38",
            updated_at=NOW - DAY,
            cards=[
                ce.BaseEnteredCard(card_id=card_id, entered_at=entered, entered_at_raw=str(entered), fetched_at=NOW - DAY)
                for card_id, entered in entries
            ],
        )
    )


@pytest.fixture
def crm(monkeypatch):
    state = {"locations": {}, "moves": [], "move_fail": set()}

    def fake_detail(card_id):
        if card_id not in state["locations"]:
            raise keycrm.KeycrmError("KeyCRM 404 Not Found: ", status_code=404)
        pipeline_id, status_id = state["locations"][card_id]
        return {"id": card_id, "status": {"id": status_id, "pipeline_id": pipeline_id}}

    def fake_move(card_id, pipeline_id, status_id):
        state["moves"].append((card_id, pipeline_id, status_id))
        if card_id in state["move_fail"]:
            return keycrm.MoveResult(ok=False, attempt="pipelines/cards/move", status=422, text="", json={"error": "x"})
        state["locations"][card_id] = (pipeline_id, status_id)
        return keycrm.MoveResult(ok=True, attempt="cards/{id}/move", status=200, text="{}", json={})

    monkeypatch.setattr(keycrm, "fetch_card_detail", fake_detail)
    monkeypatch.setattr(keycrm, "move_card", fake_move)
    return state


def test_moves_only_verified_expired_cards(crm):
    campaigns.save_campaign(_campaign())
    _snapshot("cmp1", [("old", NOW - 5 * DAY), ("fresh", NOW - DAY), ("gone", NOW - 6 * DAY), ("nots", None)])
    crm["locations"] = {"old": ("1", "38"), "fresh": ("1", "38"), "gone": ("1", "99")}

    result = expire_runner.run_expirations(NOW)

    assert result["ok"] is True
    assert result["processed"] == 1
    assert crm["moves"] == [("old", "2", "40")]
    row = result["summary"][0]
    assert row["campaignId"] == "cmp1"
    assert row["moved"] == 1
    assert row["threshold"] == NOW - 3 * DAY
    assert row["logs"][0]["cardId"] == "old"

    remaining = [c.card_id for c in ce.get_base_entered_cache("cmp1").cards]
    assert remaining == ["fresh", "gone", "nots"]

    stored = campaigns.get_campaign("cmp1")
    assert stored["exp_count"] == 1
    assert stored["counters"]["exp"] == 1

    assert [e["cardId"] for e in expire_runner.get_logs("cmp1")] == ["old"]


def test_failed_move_is_reported_and_card_kept(crm):
    campaigns.save_campaign(_campaign())
    _snapshot("cmp1", [("old", NOW - 5 * DAY)])
    crm["locations"] = {"old": ("1", "38")}
    crm["move_fail"] = {"old"}

    result = expire_runner.run_expirations(NOW)

    assert result["processed"] == 0
    assert result["errors"] == [{"campaignId": "cmp1", "cardId": "old", "status": 422, "response": {"error": "x"}}]
    assert [c.card_id for c in ce.get_base_entered_cache("cmp1").cards] == ["old"]
    assert campaigns.get_campaign("cmp1")["exp_count"] == 0


def test_inactive_deleted_and_unconfigured_campaigns_are_skipped(crm):
    campaigns.save_campaign(_campaign("off", active=False))
    campaigns.save_campaign(_campaign("del", deleted=True))
    campaigns.save_campaign(_campaign("noexp", expDays=0))
    for cid in ("off", "del", "noexp"):
        _snapshot(cid, [("c-" + cid, NOW - 9 * DAY)])
        crm["locations"]["c-" + cid] = ("1", "38")

    result = expire_runner.run_expirations(NOW)

    assert result == {"ok": True, "processed": 0, "summary": [], "errors": []}
    assert crm["moves"] == []


def test_move_log_is_capped_and_newest_first(crm, monkeypatch):
    monkeypatch.setenv("EXP_LOG_LIMIT", "3")
    from crmhub.config import settings

    settings.cache_clear()
    expire_runner.append_logs("cmp1", [{"cardId": "a"}, {"cardId": "b"}])
    expire_runner.append_logs("cmp1", [{"cardId": "c"}, {"cardId": "d"}])

    assert [e["cardId"] for e in expire_runner.get_logs("cmp1")] == ["c", "d", "a"]


def test_campaign_listing_failure_yields_empty_run(monkeypatch):
    def boom():
        raise RuntimeError("kv down")

    monkeypatch.setattr(campaigns, "list_campaigns", boom)
    assert expire_runner.run_expirations(NOW) == {"ok": True, "processed": 0, "summary": [], "errors": []}


def test_kv_failure_on_one_campaign_is_reported_and_run_continues(crm, monkeypatch):
    campaigns.save_campaign(_campaign("bad"))
    campaigns.save_campaign(_campaign("good"))
    _snapshot("good", [("old", NOW - 5 * DAY)])
    crm["locations"] = {"old": ("1", "38")}

    real_get = ce.get_base_entered_cache

    def flaky_get(campaign_id):
        if campaign_id == "bad":
            raise kv.KVError("KV GET failed for cmp:base-entered:bad: redis down")
        return real_get(campaign_id)

    monkeypatch.setattr(ce, "get_base_entered_cache", flaky_get)

    result = expire_runner.run_expirations(NOW)

    assert result["processed"] == 1
    assert result["summary"][0]["campaignId"] == "good"
    assert result["errors"] == [{"campaignId": "bad", "error": "KV GET failed for cmp:base-entered:bad: redis down"}]
