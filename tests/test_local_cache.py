import threading

from lockbox.storage.local_cache import LocalTTLCache
from lockbox.storage.redis_cache import _decode, _normalize_rate_key, challenge_key, introspection_key


class Ticker:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


def test_entries_expire():
    ticker = Ticker()
    cache = LocalTTLCache(clock=ticker)
    cache.set("k", {"v": 1}, ttl_seconds=10)
    assert cache.get("k") == {"v": 1}
    ticker.now = 10.0
    assert cache.get("k") is None
    assert len(cache) == 0


def test_non_positive_ttl_deletes():
    cache = LocalTTLCache()
    cache.set("k", 1)
    cache.set("k", 2, ttl_seconds=0)
    assert cache.get("k") is None


def test_pop_is_single_use():
    cache = LocalTTLCache()
    cache.set("challenge", {"user_id": "u1"}, ttl_seconds=60)
    assert cache.pop("challenge") == {"user_id": "u1"}
    assert cache.pop("challenge") is None


def test_pop_ignores_expired_entries():
    ticker = Ticker()
    cache = LocalTTLCache(clock=ticker)
    cache.set("k", 1, ttl_seconds=5)
    ticker.now = 6.0
    assert cache.pop("k") is None


def test_eviction_prefers_soonest_expiring():
    cache = LocalTTLCache(max_entries=10)
    for i in range(10):
        cache.set(f"k{i}", i, ttl_seconds=100 + i)
    cache.set("new", "x", ttl_seconds=1000)
    assert cache.get("k0") is None
    assert cache.get("k9") == 9
    assert cache.get("new") == "x"
    assert len(cache) <= 10


def test_purge_expired_counts_removed():
    ticker = Ticker()
    cache = LocalTTLCache(clock=ticker)
    cache.set("a", 1, ttl_seconds=1)
    cache.set("b", 2, ttl_seconds=100)
    ticker.now = 2.0
    assert cache.purge_expired() == 1
    assert cache.get("b") == 2


def test_concurrent_pop_yields_value_once():
    cache = LocalTTLCache()
    cache.set("k", "v", ttl_seconds=60)
    results = []
    barrier = threading.Barrier(8)

    def worker():
        barrier.wait()
        results.append(cache.pop("k"))

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert results.count("v") == 1


def test_cache_key_layout():
    assert introspection_key("abc") == "token:abc:introspection"
    assert challenge_key("abc") == "auth:2fa:challenge:abc"


def test_rate_keys_are_hashed_and_tenant_scoped():
    key = _normalize_rate_key("login:a:b@example.com", "acme")
    assert key.startswith("rate:acme:")
    assert ":b@example.com" not in key
    assert _normalize_rate_key("x", None).startswith("rate:")
    assert _normalize_rate_key("x", None) != _normalize_rate_key("y", None)


def test_cached_payloads_must_be_json_objects():
    assert _decode('{"active": true}') == {"active": True}
    assert _decode("[1, 2]") is None
    assert _decode("not json") is None
    assert _decode(None) is None
