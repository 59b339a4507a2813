from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    ADMIN = "ADMIN"
    USER = "USER"


class SessionStatus(str, Enum):
    """Session lifecycle: ACTIVE -> ROTATED -> REVOKED (terminal)."""

    ACTIVE = "ACTIVE"
    ROTATED = "ROTATED"
    REVOKED = "REVOKED"


CREDENTIAL_PROVIDER = "credential"


@dataclass(frozen=True)
class ExternalIdentity:
    provider: str
    external_id: str


@dataclass
class Account:
    id: str
    email: str
    username: str
    name: str
    password_hash: Optional[str] = None
    role: Role = Role.USER
    identities: List[ExternalIdentity] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    banned: bool = False
    avatar_url: Optional[str] = None
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    two_factor_enabled: bool = False
    disabled_at: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return not self.banned and self.disabled_at is None

    @property
    def has_password(self) -> bool:
        return bool(self.password_hash)


@dataclass
class Session:
    id: str
    account_id: str
    created_at: datetime
    last_renewed_at: datetime
    expires_at: datetime
    status: SessionStatus = SessionStatus.ACTIVE
    provider: str = CREDENTIAL_PROVIDER
    revoked_at: Optional[datetime] = None
    revoke_reason: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    device_type: Optional[str] = None
    browser: Optional[str] = None
    os: Optional[str] = None

    @classmethod
    def new(
        cls,
        account_id: str,
        ttl_seconds: int,
        *,
        provider: str = CREDENTIAL_PROVIDER,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> "Session":
        now = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            created_at=now,
            last_renewed_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds),
            provider=provider,
            ip_address=ip_address,
            user_agent=user_agent,
            device_type=device_type,
            browser=browser,
            os=os,
        )

    def is_live(self, now: datetime) -> bool:
        return self.status != SessionStatus.REVOKED and self.expires_at > now

    def fingerprint_snapshot(self) -> dict:
        return {
            "ip_address": self.ip_address,
            "device_type": self.device_type,
            "browser": self.browser,
            "os": self.os,
        }


@dataclass
class RefreshToken:
    id: str
    session_id: str
    token_hash: str
    expires_at: datetime
    created_at: datetime = field(default_factory=utcnow)
    used: bool = False
    used_at: Optional[datetime] = None

    @classmethod
    def new(
        cls, session_id: str, token_hash: str, expires_at: datetime, now: datetime
    ) -> "RefreshToken":
        return cls(
            id=str(uuid.uuid4()),
            session_id=session_id,
            token_hash=token_hash,
            expires_at=expires_at,
            created_at=now,
        )
