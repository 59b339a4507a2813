from __future__ import annotations

import functools
from typing import Optional, Tuple

import redis.asyncio as aioredis
from redis import Redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from hackauth.logging import get_logger
from hackauth.service.errors import UnavailableError

logger = get_logger(__name__)

CONSUME_MISSING = 0
CONSUME_MISMATCH = 1
CONSUME_OK = 2


def _unavailable_on_outage(func):
    """Surface Redis timeouts and connection failures as UnavailableError."""

    @functools.wraps(func)
    async def wrapper(self, *args, **kwargs):
        try:
            return await func(self, *args, **kwargs)
        except (RedisConnectionError, RedisTimeoutError) as exc:
            logger.error(
                "redis_unavailable",
                operation=func.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise UnavailableError("cache unavailable") from exc

    return wrapper


class RedisCache:
    """Thin Redis wrapper for ephemeral codes and attempt counters."""

    # Atomic compare-and-delete of a verification entry. A mismatch leaves the
    # key and its TTL untouched.
    _CONSUME_SCRIPT = """
local raw = redis.call('GET', KEYS[1])
if not raw then
  return {0, ''}
end
local ok, entry = pcall(cjson.decode, raw)
if not ok or type(entry) ~= 'table' or entry['code_hash'] ~= ARGV[1] then
  return {1, ''}
end
redis.call('DEL', KEYS[1])
return {2, raw}
"""

    # Atomic failed-attempt counter with lockout trigger
    _ATTEMPT_SCRIPT = """
if redis.call('EXISTS', KEYS[1]) == 1 then
  return {1, -1}
end

local attempts = redis.call('INCR', KEYS[2])
if attempts == 1 then
  redis.call('EXPIRE', KEYS[2], ARGV[2])
end

if attempts >= tonumber(ARGV[1]) then
  redis.call('SET', KEYS[1], '1', 'EX', ARGV[2])
  redis.call('DEL', KEYS[2])
  return {1, attempts}
end

return {0, attempts}
"""

    def __init__(self, redis_url: str, *, socket_timeout: float = 5.0):
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client = aioredis.from_url(
            redis_url,
            decode_responses=True,
            socket_timeout=socket_timeout,
            socket_connect_timeout=socket_timeout,
        )
        self._consume = self.client.register_script(self._CONSUME_SCRIPT)
        self._attempt = self.client.register_script(self._ATTEMPT_SCRIPT)

    def verify_connection(self) -> None:
        """Assert Redis connectivity before enabling dependent features."""
        # Short-lived sync client so the async client is not bound to a
        # temporary event loop during startup checks.
        sync_client = Redis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            sync_client.ping()
        finally:
            sync_client.close()

    # -- ephemeral codes ----------------------------------------------------

    @_unavailable_on_outage
    async def set_code_entry(self, key: str, value: str, ttl_seconds: int) -> None:
        await self.client.set(key, value, ex=max(1, int(ttl_seconds)))

    @_unavailable_on_outage
    async def consume_code_entry(self, key: str, code_hash: str) -> Tuple[int, Optional[str]]:
        """Return ``(status, raw_entry)``; raw_entry is only set on a match."""
        status, raw = await self._consume(keys=[key], args=[code_hash])
        status = int(status)
        return status, (raw if status == CONSUME_OK else None)

    @_unavailable_on_outage
    async def delete(self, key: str) -> None:
        await self.client.delete(key)

    # -- attempt throttling -------------------------------------------------

    @_unavailable_on_outage
    async def register_attempt(
        self, key: str, max_attempts: int, window_seconds: int
    ) -> Tuple[bool, int]:
        """Record a failed attempt; return ``(locked, attempts)``.

        ``attempts`` is -1 when the key was already locked.
        """
        locked, attempts = await self._attempt(
            keys=[f"attempts:lock:{key}", f"attempts:count:{key}"],
            args=[max_attempts, max(1, int(window_seconds))],
        )
        return bool(int(locked)), int(attempts)

    @_unavailable_on_outage
    async def is_locked(self, key: str) -> bool:
        return bool(await self.client.exists(f"attempts:lock:{key}"))

    @_unavailable_on_outage
    async def clear_attempts(self, key: str) -> None:
        await self.client.delete(f"attempts:count:{key}", f"attempts:lock:{key}")

    async def close(self) -> None:
        """Close the connection pool. Call when shutting down or resetting runtime."""
        await self.client.aclose()
