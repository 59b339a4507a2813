from __future__ import annotations

import hashlib
import json
import secrets
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from hackauth.logging import get_logger
from hackauth.service.errors import NotFoundError, ValidationError
from hackauth.storage.redis_cache import (
    CONSUME_MISMATCH,
    CONSUME_MISSING,
    CONSUME_OK,
    RedisCache,
)

logger = get_logger(__name__)


class CodePurpose(str, Enum):
    EMAIL_VERIFICATION = "email_verification"
    PASSWORD_RESET = "password_reset"
    TWO_FACTOR_ENABLE = "two_factor_enable"
    TWO_FACTOR_DISABLE = "two_factor_disable"
    TWO_FACTOR_LOGIN = "two_factor_login"
    ACCOUNT_DISABLE = "account_disable"
    OAUTH_STATE = "oauth_state"


PURPOSE_PREFIXES: dict[CodePurpose, str] = {
    CodePurpose.EMAIL_VERIFICATION: "verif_em_",
    CodePurpose.PASSWORD_RESET: "pwd_reset_",
    CodePurpose.TWO_FACTOR_ENABLE: "2fa_enable_",
    CodePurpose.TWO_FACTOR_DISABLE: "2fa_disable_",
    CodePurpose.TWO_FACTOR_LOGIN: "2fa_login_",
    CodePurpose.ACCOUNT_DISABLE: "acct_disable_",
    CodePurpose.OAUTH_STATE: "oauth_state_",
}

PURPOSE_TTLS: dict[CodePurpose, int] = {
    CodePurpose.EMAIL_VERIFICATION: 5 * 60,
    CodePurpose.PASSWORD_RESET: 15 * 60,
    CodePurpose.TWO_FACTOR_ENABLE: 5 * 60,
    CodePurpose.TWO_FACTOR_DISABLE: 5 * 60,
    CodePurpose.TWO_FACTOR_LOGIN: 5 * 60,
    CodePurpose.ACCOUNT_DISABLE: 5 * 60,
    CodePurpose.OAUTH_STATE: 10 * 60,
}


# How often the in-process fallback sweeps expired entries
CLEANUP_INTERVAL = timedelta(seconds=60)


def code_key(purpose: CodePurpose, subject_key: str) -> str:
    return f"{PURPOSE_PREFIXES[purpose]}{subject_key}"


def _hash_code(code: str) -> str:
    return hashlib.sha256(code.encode("utf-8")).hexdigest()


def generate_code(length: int = 6) -> str:
    """Numeric one-time code; 6 digits gives 10^6 guesses against 5 tries."""
    return "".join(secrets.choice("0123456789") for _ in range(length))


def generate_token(nbytes: int = 32) -> str:
    return secrets.token_urlsafe(nbytes)


class EphemeralCodeStore:
    """TTL-keyed storage for short-lived secrets.

    Keys are ``{purpose-prefix}{subject}``. Only a SHA-256 of the code is
    stored. With a Redis cache, expiry is Redis' own key TTL and consumption
    is a single Lua script; without one, entries live in a locked dict with
    an absolute expiry checked on read.
    """

    def __init__(self, cache: Optional[RedisCache]) -> None:
        self.cache = cache
        self._state_lock = threading.Lock()
        self._entries: dict[str, tuple[str, datetime]] = {}
        self._last_cleanup = self._now()

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def cleanup_expired(self) -> int:
        """Drop in-process entries past their expiry; returns how many went."""
        now = self._now()
        with self._state_lock:
            expired = [key for key, (_, expires_at) in self._entries.items() if expires_at <= now]
            for key in expired:
                self._entries.pop(key, None)
            self._last_cleanup = now
        if expired:
            logger.debug("code_cleanup", cleaned=len(expired))
        return len(expired)

    def maybe_cleanup(self) -> int:
        if self._now() - self._last_cleanup >= CLEANUP_INTERVAL:
            return self.cleanup_expired()
        return 0

    async def put(
        self,
        purpose: CodePurpose,
        subject_key: str,
        code: str,
        ttl: Optional[int] = None,
        payload: Optional[dict[str, Any]] = None,
    ) -> None:
        ttl_seconds = int(ttl if ttl is not None else PURPOSE_TTLS[purpose])
        key = code_key(purpose, subject_key)
        raw = json.dumps({"code_hash": _hash_code(code), "payload": payload})
        if self.cache:
            await self.cache.set_code_entry(key, raw, ttl_seconds)
        else:
            self.maybe_cleanup()
            with self._state_lock:
                self._entries[key] = (raw, self._now() + timedelta(seconds=ttl_seconds))
        logger.debug("code_stored", purpose=purpose.value, ttl_seconds=ttl_seconds)

    async def consume(
        self, purpose: CodePurpose, subject_key: str, supplied_code: str
    ) -> Optional[dict[str, Any]]:
        """Delete the entry on a match and return its payload.

        Raises NotFoundError when absent or expired, ValidationError on a
        mismatch (the entry and its TTL are left as they were).
        """
        key = code_key(purpose, subject_key)
        supplied_hash = _hash_code(supplied_code or "")
        if self.cache:
            status, raw = await self.cache.consume_code_entry(key, supplied_hash)
        else:
            status, raw = self._consume_local(key, supplied_hash)
        if status == CONSUME_MISSING:
            raise NotFoundError("code not found or expired", detail={"purpose": purpose.value})
        if status != CONSUME_OK:
            logger.info("code_mismatch", purpose=purpose.value)
            raise ValidationError("code mismatch", detail={"purpose": purpose.value})
        logger.info("code_consumed", purpose=purpose.value)
        return json.loads(raw).get("payload")

    def _consume_local(self, key: str, supplied_hash: str) -> tuple[int, Optional[str]]:
        with self._state_lock:
            stored = self._entries.get(key)
            if stored is None:
                return CONSUME_MISSING, None
            raw, expires_at = stored
            if expires_at <= self._now():
                self._entries.pop(key, None)
                return CONSUME_MISSING, None
            expected = json.loads(raw).get("code_hash", "")
            if not secrets.compare_digest(expected, supplied_hash):
                return CONSUME_MISMATCH, None
            self._entries.pop(key, None)
            return CONSUME_OK, raw

    async def discard(self, purpose: CodePurpose, subject_key: str) -> None:
        key = code_key(purpose, subject_key)
        if self.cache:
            await self.cache.delete(key)
        else:
            with self._state_lock:
                self._entries.pop(key, None)

