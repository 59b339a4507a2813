from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, List, Optional

from hackauth.config import Settings
from hackauth.logging import get_logger
from hackauth.service.credentials import AccountStore
from hackauth.service.errors import AuthenticationError
from hackauth.service.fingerprint import RequestFingerprint
from hackauth.storage.models import CREDENTIAL_PROVIDER, Account, Role, Session

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
_REFRESH_TOKEN_BYTES = 64


@dataclass(frozen=True)
class TokenConfig:
    secret: str
    issuer: str = "hackauth"
    audience: str = "hackathon-clients"
    access_ttl_seconds: int = 15 * 60
    refresh_ttl_seconds: int = 7 * 24 * 60 * 60

    @classmethod
    def from_settings(cls, settings: Settings) -> "TokenConfig":
        return cls(
            secret=settings.jwt_secret,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl_seconds=settings.access_token_ttl_seconds,
            refresh_ttl_seconds=settings.refresh_token_ttl_seconds,
        )


@dataclass(frozen=True)
class Principal:
    """Identity carried by a validated access token."""

    account_id: str
    username: str
    email: str
    role: Role
    session_id: Optional[str] = None


@dataclass
class IssuedSession:
    access_token: str
    refresh_token: str
    session_id: str
    session_expires_at: datetime
    access_expires_at: datetime
    account: Account


def hash_refresh_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class TokenService:
    """Access-token signing and refresh-token rotation.

    Access tokens are stateless HS256 JWTs. Refresh tokens are opaque random
    secrets; only their SHA-256 is persisted, bound to one session, and each
    is exchangeable exactly once.
    """

    def __init__(self, store: AccountStore, config: TokenConfig) -> None:
        if not config.secret:
            raise ValueError("token signing secret is required")
        self.store = store
        self.config = config

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    # -- sessions -----------------------------------------------------------

    def issue_session(
        self,
        account: Account,
        fingerprint: Optional[RequestFingerprint] = None,
        provider: str = CREDENTIAL_PROVIDER,
    ) -> IssuedSession:
        now = self._now()
        refresh_token = secrets.token_hex(_REFRESH_TOKEN_BYTES)
        fp = fingerprint or RequestFingerprint()
        session = self.store.create_session(
            account.id,
            hash_refresh_token(refresh_token),
            ttl_seconds=self.config.refresh_ttl_seconds,
            now=now,
            provider=provider,
            ip_address=fp.ip_address,
            user_agent=fp.user_agent,
            device_type=fp.device_type,
            browser=fp.browser,
            os=fp.os,
        )
        access_token, access_expires_at = self._issue_access_token(account, session, now)
        logger.info(
            "session_issued",
            account_id=account.id,
            session_id=session.id,
            provider=provider,
            device_type=fp.device_type,
        )
        return IssuedSession(
            access_token=access_token,
            refresh_token=refresh_token,
            session_id=session.id,
            session_expires_at=session.expires_at,
            access_expires_at=access_expires_at,
            account=account,
        )

    def refresh(
        self,
        refresh_token: str,
        session_id: str,
        fingerprint: Optional[RequestFingerprint] = None,
    ) -> IssuedSession:
        """Exchange a refresh token for a new access/refresh pair.

        A token that fails the swap (wrong, spent or expired) revokes the
        whole session.
        """
        now = self._now()
        session = self.store.get_session(session_id) if session_id else None
        if session is None or not session.is_live(now):
            raise AuthenticationError("invalid session")
        account = self.store.get_account(session.account_id)
        if account is None or not account.is_active:
            self.store.revoke_session(session.id, "account_inactive", now)
            logger.warning("refresh_for_inactive_account", session_id=session.id)
            raise AuthenticationError("invalid session")

        new_refresh_token = secrets.token_hex(_REFRESH_TOKEN_BYTES)
        renewed = self.store.rotate_refresh_token(
            session.id,
            hash_refresh_token(refresh_token or ""),
            hash_refresh_token(new_refresh_token),
            ttl_seconds=self.config.refresh_ttl_seconds,
            now=now,
        )
        if renewed is None:
            self.store.revoke_session(session.id, "refresh_token_reuse", now)
            presented = fingerprint.as_dict() if fingerprint else None
            logger.warning(
                "refresh_token_reuse_detected",
                session_id=session.id,
                account_id=session.account_id,
                session_fingerprint=session.fingerprint_snapshot(),
                presented_fingerprint=presented,
            )
            raise AuthenticationError("invalid refresh token")

        access_token, access_expires_at = self._issue_access_token(account, renewed, now)
        logger.info("session_refreshed", session_id=renewed.id, account_id=account.id)
        return IssuedSession(
            access_token=access_token,
            refresh_token=new_refresh_token,
            session_id=renewed.id,
            session_expires_at=renewed.expires_at,
            access_expires_at=access_expires_at,
            account=account,
        )

    def revoke_session(self, session_id: str, reason: str = "logout") -> bool:
        revoked = self.store.revoke_session(session_id, reason, self._now())
        if revoked:
            logger.info("session_revoked", session_id=session_id, reason=reason)
        return revoked

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str,
        except_session_id: Optional[str] = None,
    ) -> int:
        count = self.store.revoke_account_sessions(
            account_id, reason, self._now(), except_session_id=except_session_id
        )
        logger.info(
            "account_sessions_revoked", account_id=account_id, reason=reason, count=count
        )
        return count

    def list_sessions(self, account_id: str) -> List[Session]:
        now = self._now()
        return [s for s in self.store.list_sessions(account_id) if s.is_live(now)]

    def find_session_by_refresh_token(self, refresh_token: str) -> Optional[Session]:
        if not refresh_token:
            return None
        record = self.store.get_refresh_token_by_hash(hash_refresh_token(refresh_token))
        if record is None:
            return None
        return self.store.get_session(record.session_id)

    # -- access tokens ------------------------------------------------------

    def validate_access_token(self, token: str) -> Principal:
        payload = self._decode_jwt(token) if token else None
        if not payload or payload.get("token_type") != ACCESS_TOKEN_TYPE:
            raise AuthenticationError("invalid access token")
        try:
            return Principal(
                account_id=str(payload["sub"]),
                username=str(payload["username"]),
                email=str(payload["email"]),
                role=Role(payload["role"]),
                session_id=str(payload["sid"]),
            )
        except (KeyError, ValueError) as exc:
            raise AuthenticationError("invalid access token") from exc

    def _issue_access_token(
        self, account: Account, session: Session, now: datetime
    ) -> tuple[str, datetime]:
        expires_at = now + timedelta(seconds=self.config.access_ttl_seconds)
        payload = {
            "iss": self.config.issuer,
            "aud": self.config.audience,
            "sub": account.id,
            "username": account.username,
            "email": account.email,
            "role": account.role.value,
            "sid": session.id,
            "token_type": ACCESS_TOKEN_TYPE,
            "jti": str(uuid.uuid4()),
            "iat": int(now.timestamp()),
            "exp": int(expires_at.timestamp()),
        }
        return self._encode_jwt(payload), expires_at

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.config.secret.encode(), signing_input.encode(), hashlib.sha256
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # Reject anything but HS256 before touching the signature
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.config.issuer:
            return None
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.config.audience
        elif isinstance(aud, list):
            valid_aud = self.config.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            return None
        try:
            exp_ts = float(payload.get("exp"))
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload
