"""Tests for the ephemeral code store and attempt throttling."""

import json
from datetime import timedelta

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from hackauth.service.codes import (
    PURPOSE_PREFIXES,
    PURPOSE_TTLS,
    CodePurpose,
    EphemeralCodeStore,
    code_key,
    generate_code,
)
from hackauth.service.errors import NotFoundError, UnavailableError, ValidationError
from hackauth.service.throttle import AttemptLimiter
from hackauth.storage.redis_cache import (
    CONSUME_MISMATCH,
    CONSUME_MISSING,
    CONSUME_OK,
    RedisCache,
)


class FakeCache:
    """Dict-backed stand-in for RedisCache's code and attempt operations."""

    def __init__(self):
        self.entries = {}
        self.ttls = {}
        self.locked = set()
        self.counts = {}

    async def set_code_entry(self, key, value, ttl_seconds):
        self.entries[key] = value
        self.ttls[key] = ttl_seconds

    async def consume_code_entry(self, key, code_hash):
        raw = self.entries.get(key)
        if raw is None:
            return CONSUME_MISSING, None
        if json.loads(raw)["code_hash"] != code_hash:
            return CONSUME_MISMATCH, None
        del self.entries[key]
        return CONSUME_OK, raw

    async def delete(self, key):
        self.entries.pop(key, None)

    async def register_attempt(self, key, max_attempts, window_seconds):
        if key in self.locked:
            return True, -1
        self.counts[key] = self.counts.get(key, 0) + 1
        if self.counts[key] >= max_attempts:
            self.locked.add(key)
            return True, self.counts.pop(key)
        return False, self.counts[key]

    async def is_locked(self, key):
        return key in self.locked

    async def clear_attempts(self, key):
        self.locked.discard(key)
        self.counts.pop(key, None)


class TestCodeHelpers:
    def test_generate_code_is_six_digits(self):
        for _ in range(20):
            code = generate_code()
            assert len(code) == 6
            assert code.isdigit()

    def test_code_key_uses_purpose_prefix(self):
        assert code_key(CodePurpose.EMAIL_VERIFICATION, "acct-1") == "verif_em_acct-1"
        assert code_key(CodePurpose.PASSWORD_RESET, "acct-1") == "pwd_reset_acct-1"
        assert set(PURPOSE_PREFIXES) == set(CodePurpose)

    def test_every_purpose_has_a_ttl(self):
        assert PURPOSE_TTLS[CodePurpose.EMAIL_VERIFICATION] == 300
        assert PURPOSE_TTLS[CodePurpose.PASSWORD_RESET] == 900
        assert set(PURPOSE_TTLS) == set(CodePurpose)


class TestLocalCodeStore:
    async def test_consume_returns_payload_once(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.TWO_FACTOR_LOGIN, "challenge", "123456", payload={"account_id": "a1"})

        payload = await store.consume(CodePurpose.TWO_FACTOR_LOGIN, "challenge", "123456")
        assert payload == {"account_id": "a1"}

        with pytest.raises(NotFoundError):
            await store.consume(CodePurpose.TWO_FACTOR_LOGIN, "challenge", "123456")

    async def test_mismatch_keeps_entry(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")

        with pytest.raises(ValidationError):
            await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "654321")

        assert await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "123456") is None

    async def test_expired_entry_is_not_found(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456", ttl=60)
        real_now = store._now()
        store._now = lambda: real_now + timedelta(seconds=61)

        with pytest.raises(NotFoundError):
            await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")

    async def test_new_code_replaces_previous(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "111111")
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "222222")

        with pytest.raises(ValidationError):
            await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "111111")
        await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "222222")

    async def test_purposes_are_isolated(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.TWO_FACTOR_ENABLE, "a1", "123456")

        with pytest.raises(NotFoundError):
            await store.consume(CodePurpose.TWO_FACTOR_DISABLE, "a1", "123456")

    async def test_discard_removes_entry(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.ACCOUNT_DISABLE, "a1", "123456")
        await store.discard(CodePurpose.ACCOUNT_DISABLE, "a1")

        with pytest.raises(NotFoundError):
            await store.consume(CodePurpose.ACCOUNT_DISABLE, "a1", "123456")

    async def test_abandoned_entries_swept_on_later_put(self):
        store = EphemeralCodeStore(None)
        for state in ("s1", "s2", "s3"):
            await store.put(CodePurpose.OAUTH_STATE, state, state)
        real_now = store._now()
        store._now = lambda: real_now + timedelta(seconds=PURPOSE_TTLS[CodePurpose.OAUTH_STATE] + 1)

        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")

        assert list(store._entries) == [code_key(CodePurpose.EMAIL_VERIFICATION, "a1")]

    async def test_sweep_keeps_live_entries(self):
        store = EphemeralCodeStore(None)
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")

        assert store.cleanup_expired() == 0
        assert await store.consume(CodePurpose.EMAIL_VERIFICATION, "a1", "123456") is None


class TestCachedCodeStore:
    async def test_only_code_hash_is_stored(self):
        cache = FakeCache()
        store = EphemeralCodeStore(cache)
        await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")

        raw = cache.entries["verif_em_a1"]
        assert "123456" not in raw
        assert cache.ttls["verif_em_a1"] == 300

    async def test_consume_through_cache(self):
        cache = FakeCache()
        store = EphemeralCodeStore(cache)
        await store.put(CodePurpose.OAUTH_STATE, "s1", "s1", payload={"provider": "github"})

        with pytest.raises(ValidationError):
            await store.consume(CodePurpose.OAUTH_STATE, "s1", "other")
        payload = await store.consume(CodePurpose.OAUTH_STATE, "s1", "s1")

        assert payload == {"provider": "github"}
        assert "oauth_state_s1" not in cache.entries


class TestAttemptLimiter:
    async def test_locks_after_max_attempts(self):
        limiter = AttemptLimiter(None)
        assert await limiter.register_failure("login:ada", 3, 60) is False
        assert await limiter.register_failure("login:ada", 3, 60) is False
        assert await limiter.register_failure("login:ada", 3, 60) is True
        assert await limiter.is_locked("login:ada") is True
        assert await limiter.is_locked("login:bob") is False

    async def test_clear_resets_counter_and_lock(self):
        limiter = AttemptLimiter(None)
        await limiter.register_failure("k", 1, 60)
        assert await limiter.is_locked("k") is True

        await limiter.clear("k")
        assert await limiter.is_locked("k") is False

    async def test_lock_expires_after_window(self):
        limiter = AttemptLimiter(None)
        await limiter.register_failure("k", 1, 60)
        real_now = limiter._now()
        limiter._now = lambda: real_now + timedelta(seconds=61)

        assert await limiter.is_locked("k") is False

    async def test_window_restarts_counting(self):
        limiter = AttemptLimiter(None)
        await limiter.register_failure("k", 2, 60)
        real_now = limiter._now()
        limiter._now = lambda: real_now + timedelta(seconds=61)

        assert await limiter.register_failure("k", 2, 60) is False

    async def test_stale_counters_and_lockouts_are_forgotten(self):
        limiter = AttemptLimiter(None)
        for identifier in ("a", "b", "c"):
            await limiter.register_failure(f"login:{identifier}", 5, 60)
        await limiter.register_failure("login:locked", 1, 60)
        real_now = limiter._now()
        limiter._now = lambda: real_now + timedelta(seconds=120)

        await limiter.register_failure("login:new", 5, 60)

        assert list(limiter._attempts) == ["login:new"]
        assert limiter._lockouts == {}

    async def test_cache_backed_limiter(self):
        cache = FakeCache()
        limiter = AttemptLimiter(cache)
        assert await limiter.register_failure("k", 2, 60) is False
        assert await limiter.register_failure("k", 2, 60) is True
        assert await limiter.is_locked("k") is True
        await limiter.clear("k")
        assert await limiter.is_locked("k") is False


class _DownClient:
    async def set(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")

    async def exists(self, *args, **kwargs):
        raise RedisConnectionError("connection refused")


class TestRedisOutage:
    async def test_connection_errors_surface_as_unavailable(self):
        cache = RedisCache("redis://localhost:6399/0", socket_timeout=0.1)
        cache.client = _DownClient()

        with pytest.raises(UnavailableError) as excinfo:
            await cache.set_code_entry("verif_em_a1", "{}", 60)
        assert excinfo.value.status_code == 503
        assert excinfo.value.detail["retryable"] is True

        with pytest.raises(UnavailableError):
            await cache.is_locked("login:ada")

    async def test_code_store_propagates_outage(self):
        cache = RedisCache("redis://localhost:6399/0", socket_timeout=0.1)
        cache.client = _DownClient()
        store = EphemeralCodeStore(cache)

        with pytest.raises(UnavailableError):
            await store.put(CodePurpose.EMAIL_VERIFICATION, "a1", "123456")
