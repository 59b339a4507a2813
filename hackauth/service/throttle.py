from __future__ import annotations

import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from hackauth.logging import get_logger
from hackauth.service.codes import CLEANUP_INTERVAL
from hackauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)


class AttemptLimiter:
    """Failed-attempt counting with a lockout once ``max_attempts`` is reached.

    Redis performs count, expiry and lockout in a single script. Without a
    cache the same bookkeeping happens in-process under a lock.
    """

    def __init__(self, cache: Optional[RedisCache]) -> None:
        self.cache = cache
        self._state_lock = threading.Lock()
        # key -> (count, window_start, window_end)
        self._attempts: dict[str, tuple[int, datetime, datetime]] = {}
        self._lockouts: dict[str, datetime] = {}  # key -> locked_until
        self._last_cleanup = self._now()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def cleanup_expired(self) -> int:
        """Forget closed attempt windows and lapsed lockouts."""
        now = self._now()
        with self._state_lock:
            stale_attempts = [k for k, (_, _, ends) in self._attempts.items() if ends <= now]
            for key in stale_attempts:
                self._attempts.pop(key, None)
            stale_lockouts = [k for k, until in self._lockouts.items() if until <= now]
            for key in stale_lockouts:
                self._lockouts.pop(key, None)
            self._last_cleanup = now
        cleaned = len(stale_attempts) + len(stale_lockouts)
        if cleaned:
            logger.debug("attempt_cleanup", cleaned=cleaned)
        return cleaned

    async def is_locked(self, key: str) -> bool:
        if self.cache:
            return await self.cache.is_locked(key)
        now = self._now()
        with self._state_lock:
            locked_until = self._lockouts.get(key)
            if locked_until and locked_until > now:
                return True
            if locked_until:
                self._lockouts.pop(key, None)
            return False

    async def register_failure(
        self, key: str, max_attempts: int, window_seconds: int
    ) -> bool:
        """Count one failure for ``key``; return True once the key is locked."""
        if self.cache:
            locked, attempts = await self.cache.register_attempt(
                key, max_attempts, window_seconds
            )
            if locked and attempts >= 0:
                logger.warning("attempt_lockout_triggered", attempts=attempts)
            return locked
        if self._now() - self._last_cleanup >= CLEANUP_INTERVAL:
            self.cleanup_expired()
        now = self._now()
        window = timedelta(seconds=window_seconds)
        with self._state_lock:
            locked_until = self._lockouts.get(key)
            if locked_until and locked_until > now:
                return True
            current = self._attempts.get(key)
            attempts, window_start = 1, now
            if current:
                count, previous_start, _ = current
                if now - previous_start < window:
                    attempts, window_start = count + 1, previous_start
            if attempts >= max_attempts:
                self._lockouts[key] = now + window
                self._attempts.pop(key, None)
                logger.warning("attempt_lockout_triggered", attempts=attempts)
                return True
            self._attempts[key] = (attempts, window_start, window_start + window)
            return False

    async def clear(self, key: str) -> None:
        if self.cache:
            await self.cache.clear_attempts(key)
            return
        with self._state_lock:
            self._attempts.pop(key, None)
            self._lockouts.pop(key, None)
