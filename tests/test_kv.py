import pytest

from crmhub import kv


def test_forced_memory_backend_round_trips_json():
    store = kv.get_store()
    assert store.backend == "memory"

    store.set_json("cmp:item:1", {"id": "1", "name": "Кампанія"})
    assert store.get_json("cmp:item:1") == {"id": "1", "name": "Кампанія"}

    store.delete("cmp:item:1")
    assert store.get_json("cmp:item:1") is None


def test_get_store_is_cached_until_reset():
    first = kv.get_store()
    assert kv.get_store() is first
    kv.reset_state()
    assert kv.get_store() is not first


def test_upstash_rest_commands(monkeypatch):
    sent = []
    data = {}

    class Resp:
        def __init__(self, result):
            self._result = result

        def raise_for_status(self):
            return None

        def json(self):
            return {"result": self._result}

    def fake_post(url, headers=None, json=None, timeout=None):
        sent.append((url, headers["Authorization"], json))
        cmd = json[0]
        if cmd == "SET":
            data[json[1]] = json[2]
            return Resp("OK")
        if cmd == "GET":
            return Resp(data.get(json[1]))
        return Resp(1)

    monkeypatch.setattr(kv.requests, "post", fake_post)
    store = kv.KVStore(rest_url="https://kv.test/", rest_token="tok")
    assert store.backend == "upstash"

    store.set_json("k", {"a": 1})
    assert store.get_json("k") == {"a": 1}
    assert sent[0] == ("https://kv.test", "Bearer tok", ["SET", "k", '{"a": 1}'])
    assert sent[1][2] == ["GET", "k"]


class FlakyRedis:
    def __init__(self):
        self.data = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise kv._redis.ConnectionError("redis down")

    def get(self, key):
        self._check()
        return self.data.get(key)

    def set(self, key, value):
        self._check()
        self.data[key] = value

    def delete(self, key):
        self._check()
        self.data.pop(key, None)


def _redis_store(fake):
    store = kv.KVStore()
    store.r = fake
    store.durable = True
    return store


def test_failing_durable_backend_raises_instead_of_using_memory(monkeypatch):
    def boom(*_a, **_k):
        raise kv.requests.ConnectionError("unreachable")

    monkeypatch.setattr(kv.requests, "post", boom)
    store = kv.KVStore(rest_url="https://kv.test", rest_token="tok")

    with pytest.raises(kv.KVError):
        store.set_json("k", [1, 2])
    with pytest.raises(kv.KVError):
        store.get_json("k")
    assert store._mem == {}


def test_redis_failure_tries_upstash_next(monkeypatch):
    posted = []

    class Resp:
        def raise_for_status(self):
            return None

        def json(self):
            return {"result": "OK"}

    monkeypatch.setattr(kv.requests, "post", lambda url, headers=None, json=None, timeout=None: posted.append(json) or Resp())
    fake = FlakyRedis()
    fake.fail = True
    store = kv.KVStore(rest_url="https://kv.test", rest_token="tok")
    store.r = fake

    store.set_raw("k", "v")

    assert posted == [["SET", "k", "v"]]


def test_unreachable_redis_reports_unavailable_backend():
    store = kv.KVStore()
    store.durable = True
    assert store.backend == "unavailable"
    with pytest.raises(kv.KVError):
        store.set_raw("k", "v")
