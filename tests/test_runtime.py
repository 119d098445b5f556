from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from portalauth.service import runtime as runtime_module
from portalauth.service.runtime import Runtime
from portalauth.storage.memory import MemoryStore


class RecordingCache:
    """Async cache double recording the session mirror calls."""

    def __init__(self, fail: bool = False):
        self.fail = fail
        self.sessions = {}
        self.rate_checks = []
        self.closed = False

    def verify_connection(self):
        if self.fail:
            raise RedisConnectionError("down")

    async def cache_session(self, session_id, user_id, expires_at):
        if self.fail:
            raise RedisConnectionError("down")
        self.sessions[session_id] = user_id

    async def get_session_user(self, session_id):
        if self.fail:
            raise RedisConnectionError("down")
        return self.sessions.get(session_id)

    async def revoke_session(self, session_id):
        self.sessions.pop(session_id, None)

    async def check_rate_limit(self, key, limit, window_seconds):
        self.rate_checks.append((key, limit, window_seconds))
        return False

    async def close(self):
        self.closed = True


class TestLocalRateLimit:
    async def test_bucket_allows_limit_then_blocks(self, runtime):
        results = [await runtime.check_rate_limit("login:alice", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    async def test_keys_are_independent(self, runtime):
        for _ in range(2):
            await runtime.check_rate_limit("login:alice", 2, 60)
        assert await runtime.check_rate_limit("login:bob", 2, 60)

    async def test_results_are_plain_booleans(self, runtime):
        results = [await runtime.check_rate_limit("k", 1, 60) for _ in range(2)]
        assert results == [True, False]
        assert all(type(result) is bool for result in results)

    async def test_redis_bucket_is_used_when_configured(self, settings, store):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)

        assert await runtime.check_rate_limit("login:alice", 5, 60) is False
        assert cache.rate_checks == [("login:alice", 5, 60)]

    async def test_tokens_refill_over_time(self, runtime, monkeypatch):
        start = runtime_module.utcnow()
        monkeypatch.setattr(runtime_module, "utcnow", lambda: start)
        assert await runtime.check_rate_limit("k", 1, 60)
        assert not await runtime.check_rate_limit("k", 1, 60)

        monkeypatch.setattr(runtime_module, "utcnow", lambda: start + timedelta(seconds=61))

        assert await runtime.check_rate_limit("k", 1, 60)

    async def test_non_positive_limit_disables_check(self, runtime):
        assert all([await runtime.check_rate_limit("k", 0, 60) for _ in range(5)])


class TestCacheSelection:
    def test_missing_redis_is_fatal_outside_test_mode(self, settings, store):
        strict = settings.model_copy(update={"test_mode": False, "allow_redis_fallback_dev": False})
        with pytest.raises(RuntimeError):
            Runtime(strict, store=store)

    def test_dev_fallback_runs_without_redis(self, settings, store):
        relaxed = settings.model_copy(update={"test_mode": False, "allow_redis_fallback_dev": True})
        assert Runtime(relaxed, store=store).cache is None

    def test_memory_store_is_built_from_settings(self, settings):
        runtime = Runtime(settings)
        assert isinstance(runtime.store, MemoryStore)
        assert runtime.health() == {"store": "ok", "cache": "disabled"}


class TestSessionMirror:
    async def test_bind_and_logout_mirror_to_cache(self, settings, store, make_user):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)
        user = make_user("alice")

        session = await runtime.auth.bind_session(user)
        assert cache.sessions == {session.id: user.id}

        await runtime.auth.logout(runtime.auth.sign_session_id(session.id))
        assert cache.sessions == {}

    async def test_cache_failure_does_not_block_login(self, settings, store, make_user):
        runtime = Runtime(settings, store=store, cache=RecordingCache(fail=True))
        user = make_user("alice")

        session = await runtime.auth.bind_session(user)

        assert store.get_session(session.id) is not None

    async def test_health_reports_cache_outage(self, settings, store):
        runtime = Runtime(settings, store=store, cache=RecordingCache(fail=True))
        assert runtime.health()["cache"] == "unavailable"

    async def test_close_closes_cache(self, settings, store):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)

        await runtime.close()

        assert cache.closed

    async def test_resolve_restores_missing_mirror_entry(self, settings, store, make_user):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)
        user = make_user("alice")
        session = await runtime.auth.bind_session(user)
        cache.sessions.clear()

        ctx = await runtime.auth.resolve_session(runtime.auth.sign_session_id(session.id))

        assert ctx.user_id == user.id
        assert cache.sessions == {session.id: user.id}

    async def test_resolve_drops_mirror_entry_without_store_row(self, settings, store, make_user):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)
        user = make_user("alice")
        session = await runtime.auth.bind_session(user)
        store.revoke_session(session.id)

        ctx = await runtime.auth.resolve_session(runtime.auth.sign_session_id(session.id))

        assert ctx is None
        assert cache.sessions == {}

    async def test_resolve_drops_mirror_entry_of_expired_session(self, settings, store, make_user):
        cache = RecordingCache()
        runtime = Runtime(settings, store=store, cache=cache)
        user = make_user("alice")
        session = await runtime.auth.bind_session(user)
        store.sessions[session.id].expires_at = runtime_module.utcnow() - timedelta(minutes=1)

        assert await runtime.auth.resolve_session(runtime.auth.sign_session_id(session.id)) is None
        assert cache.sessions == {}
        assert store.get_session(session.id) is None

    async def test_resolve_ignores_cache_outage(self, settings, store, make_user):
        runtime = Runtime(settings, store=store, cache=RecordingCache(fail=True))
        user = make_user("alice")
        session = await runtime.auth.bind_session(user)

        ctx = await runtime.auth.resolve_session(runtime.auth.sign_session_id(session.id))

        assert ctx.user_id == user.id
