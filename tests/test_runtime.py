import pytest

from lockbox.service.runtime import Runtime, _mask_url_password


class BrokenCache:
    async def check_rate_limit(self, *args, **kwargs):
        raise ConnectionError("redis down")

    async def close(self):
        raise ConnectionError("redis down")


def test_redis_required_outside_test_mode(settings, memory_store):
    settings = settings.model_copy(update={"test_mode": False, "allow_redis_fallback_dev": False})
    with pytest.raises(RuntimeError, match="Redis is required"):
        Runtime(settings, store=memory_store)


def test_dev_fallback_runs_without_redis(settings, memory_store):
    settings = settings.model_copy(update={"test_mode": False, "allow_redis_fallback_dev": True})
    runtime = Runtime(settings, store=memory_store)
    assert runtime.cache is None
    assert runtime.introspection.degraded


def test_default_client_is_seeded_once(runtime, settings, memory_store):
    client = memory_store.get_client(settings.default_client_id)
    assert client.client_type == "confidential"
    assert client.allowed_scopes == ["profile", "email"]
    Runtime(settings, store=memory_store)
    assert memory_store.get_client(settings.default_client_id) == client


@pytest.mark.parametrize(
    "url,expected",
    [
        ("redis://:hunter2@cache:6379/0", "redis://:***@cache:6379/0"),
        ("redis://cache:6379/0", "redis://cache:6379/0"),
        (None, None),
    ],
)
def test_mask_url_password(url, expected):
    assert _mask_url_password(url) == expected


class TestLocalRateLimit:
    async def test_bucket_empties_then_refuses(self, runtime):
        results = [await runtime.check_rate_limit("login:a", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_reports_remaining_and_reset(self, runtime):
        allowed, remaining, reset = await runtime.check_rate_limit(
            "login:b", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await runtime.check_rate_limit("login:b", 2, 60)
        allowed, remaining, reset = await runtime.check_rate_limit(
            "login:b", 2, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert reset > 0

    async def test_keys_are_independent(self, runtime):
        assert await runtime.check_rate_limit("k1", 1, 60)
        assert not await runtime.check_rate_limit("k1", 1, 60)
        assert await runtime.check_rate_limit("k2", 1, 60)

    async def test_zero_limit_disables_limiting(self, runtime):
        for _ in range(5):
            assert await runtime.check_rate_limit("open", 0, 60)

    async def test_cache_failure_falls_back_to_local_bucket(self, settings, memory_store):
        runtime = Runtime(settings, store=memory_store, cache=BrokenCache())
        assert await runtime.check_rate_limit("login:c", 1, 60)
        assert not await runtime.check_rate_limit("login:c", 1, 60)


class TestHousekeeping:
    async def test_reports_each_task(self, runtime):
        assert await runtime.run_housekeeping() == {
            "expired_setups": 0,
            "audit_flushed": 0,
            "cache_purged": 0,
        }

    async def test_sweeps_stale_setups(self, runtime, user, clock):
        outcome = await runtime.two_factor.begin_setup(user.id, user.email)
        assert outcome.ok
        clock.advance(minutes=11)
        result = await runtime.run_housekeeping()
        assert result["expired_setups"] == 1
        status = await runtime.two_factor.status(user.id)
        assert status.value.state.value == "disabled"

    async def test_close_tolerates_cache_errors(self, settings, memory_store):
        runtime = Runtime(settings, store=memory_store, cache=BrokenCache())
        await runtime.close()
