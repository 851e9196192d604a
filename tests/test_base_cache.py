from crmhub import campaign_exp as ce
from crmhub.kv import get_store


def _seed(campaign_id="cmp1", card_ids=("A", "B", "C"), updated_at=1000):
    cache = ce.BaseEnteredCache(
        campaign_id=campaign_id,
        pipeline_id="1",
        status_id="38",
        updated_at=updated_at,
        cards=[ce.BaseEnteredCard(card_id=cid, entered_at=1700000000000, fetched_at=900) for cid in card_ids],
    )
    ce.save_base_entered_cache(cache)
    return cache


def test_snapshot_is_stored_under_campaign_key():
    _seed()
    raw = get_store().get_json("cmp:base-entered:cmp1")
    assert raw["campaignId"] == "cmp1"
    assert raw["updatedAt"] == 1000
    assert [c["cardId"] for c in raw["cards"]] == ["A", "B", "C"]


def test_remove_one_card_keeps_the_rest_and_bumps_updated_at(monkeypatch):
    _seed()
    monkeypatch.setattr(ce, "now_ms", lambda: 5000)

    updated = ce.update_base_cache_after_move("cmp1", ["B"])

    assert [c.card_id for c in updated.cards] == ["A", "C"]
    assert updated.updated_at == 5000
    stored = ce.get_base_entered_cache("cmp1")
    assert [c.card_id for c in stored.cards] == ["A", "C"]
    assert stored.updated_at == 5000


def test_empty_removal_list_changes_nothing(monkeypatch):
    _seed()
    monkeypatch.setattr(ce, "now_ms", lambda: 5000)

    unchanged = ce.update_base_cache_after_move("cmp1", [])

    assert unchanged.updated_at == 1000
    assert len(unchanged.cards) == 3
    assert ce.get_base_entered_cache("cmp1").updated_at == 1000


def test_missing_snapshot_is_a_no_op():
    assert ce.update_base_cache_after_move("nope", ["A"]) is None
    assert get_store().get_json("cmp:base-entered:nope") is None


def test_removal_ids_are_compared_as_strings():
    _seed(card_ids=("1", "2"))
    updated = ce.update_base_cache_after_move("cmp1", [2])
    assert [c.card_id for c in updated.cards] == ["1"]


def test_malformed_stored_values_read_as_missing():
    store = get_store()
    store.set_json("cmp:base-entered:x", {"campaignId": "x", "cards": "oops"})
    store.set_json("cmp:base-entered:y", ["not", "a", "dict"])
    store.set_raw("cmp:base-entered:z", "{broken")

    assert ce.get_base_entered_cache("x") is None
    assert ce.get_base_entered_cache("y") is None
    assert ce.get_base_entered_cache("z") is None


def test_partial_snapshot_fields_get_defaults(monkeypatch):
    monkeypatch.setattr(ce, "now_ms", lambda: 777)
    get_store().set_json("cmp:base-entered:p", {"cards": [{"cardId": "9", "enteredAt": None, "fetchedAt": 1}]})

    cache = ce.get_base_entered_cache("p")

    assert cache.campaign_id == "p"
    assert cache.pipeline_id == ""
    assert cache.updated_at == 777
    assert cache.cards[0].entered_at is None
