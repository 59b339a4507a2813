from __future__ import annotations

import threading
import uuid
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from hackauth.logging import get_logger
from hackauth.storage.errors import ConstraintViolation
from hackauth.storage.models import (
    CREDENTIAL_PROVIDER,
    Account,
    ExternalIdentity,
    RefreshToken,
    Role,
    Session,
    SessionStatus,
    utcnow,
)

_TOKEN_PRUNE_INTERVAL = timedelta(seconds=60)


class MemoryStore:
    """In-process account/session store for development and tests."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self.sessions: Dict[str, Session] = {}
        # token_hash -> RefreshToken
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        # RLock for all data operations; nested acquisitions happen in helpers
        self._data_lock = threading.RLock()
        self._last_token_prune: Optional[datetime] = None

    # -- accounts -----------------------------------------------------------

    def count_accounts(self) -> int:
        with self._data_lock:
            return len(self.accounts)

    def create_account(
        self,
        email: str,
        username: str,
        name: str,
        *,
        password_hash: Optional[str] = None,
        role: Optional[Role] = Role.USER,
        avatar_url: Optional[str] = None,
        email_verified: bool = False,
        identity: Optional[ExternalIdentity] = None,
    ) -> Account:
        with self._data_lock:
            if any(existing.email == email for existing in self.accounts.values()):
                raise ConstraintViolation("email already exists", {"field": "email"})
            if any(existing.username == username for existing in self.accounts.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if identity and self._find_by_identity(identity) is not None:
                raise ConstraintViolation(
                    "identity already linked", {"field": "identity", "provider": identity.provider}
                )
            if role is None:
                role = Role.USER if self.accounts else Role.ADMIN
            now = utcnow()
            account = Account(
                id=str(uuid.uuid4()),
                email=email,
                username=username,
                name=name,
                password_hash=password_hash,
                role=role,
                identities=[identity] if identity else [],
                created_at=now,
                avatar_url=avatar_url,
                email_verified=email_verified,
                email_verified_at=now if email_verified else None,
            )
            self.accounts[account.id] = account
            return account

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            return self.accounts.get(account_id)

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            return next((a for a in self.accounts.values() if a.email == email), None)

    def get_account_by_username(self, username: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (a for a in self.accounts.values() if a.username == username), None
            )

    def _find_by_identity(self, identity: ExternalIdentity) -> Optional[Account]:
        for account in self.accounts.values():
            if identity in account.identities:
                return account
        return None

    def get_account_by_identity(
        self, provider: str, external_id: str
    ) -> Optional[Account]:
        with self._data_lock:
            return self._find_by_identity(ExternalIdentity(provider, external_id))

    def link_identity(self, account_id: str, identity: ExternalIdentity) -> Account:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                raise ConstraintViolation("account not found", {"account_id": account_id})
            owner = self._find_by_identity(identity)
            if owner is not None and owner.id != account_id:
                raise ConstraintViolation(
                    "identity already linked", {"field": "identity", "provider": identity.provider}
                )
            if owner is None:
                account.identities.append(identity)
            return account

    def _update_account(self, account_id: str, **updates) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            for name, value in updates.items():
                setattr(account, name, value)
            return account

    def set_password_hash(self, account_id: str, password_hash: str) -> Optional[Account]:
        return self._update_account(account_id, password_hash=password_hash)

    def mark_email_verified(self, account_id: str, verified_at: datetime) -> Optional[Account]:
        return self._update_account(
            account_id, email_verified=True, email_verified_at=verified_at
        )

    def set_two_factor_enabled(self, account_id: str, enabled: bool) -> Optional[Account]:
        return self._update_account(account_id, two_factor_enabled=enabled)

    def set_account_disabled(
        self, account_id: str, disabled_at: Optional[datetime]
    ) -> Optional[Account]:
        return self._update_account(account_id, disabled_at=disabled_at)

    def set_account_banned(self, account_id: str, banned: bool) -> Optional[Account]:
        return self._update_account(account_id, banned=banned)

    # -- sessions -----------------------------------------------------------

    def create_session(
        self,
        account_id: str,
        refresh_token_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
        provider: str = CREDENTIAL_PROVIDER,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            self._prune_refresh_tokens(now)
            session = Session.new(
                account_id,
                ttl_seconds,
                provider=provider,
                ip_address=ip_address,
                user_agent=user_agent,
                device_type=device_type,
                browser=browser,
                os=os,
                now=now,
            )
            self.sessions[session.id] = session
            self.refresh_tokens[refresh_token_hash] = RefreshToken.new(
                session.id, refresh_token_hash, session.expires_at, now
            )
            return session

    def _prune_refresh_tokens(self, now: datetime) -> int:
        """Drop token rows past their expiry, used or not, at most once a minute.

        Replay detection is unaffected: an expired token fails the swap
        whether or not its row is still present.
        """
        if self._last_token_prune and now - self._last_token_prune < _TOKEN_PRUNE_INTERVAL:
            return 0
        self._last_token_prune = now
        expired = [h for h, token in self.refresh_tokens.items() if token.expires_at <= now]
        for token_hash in expired:
            del self.refresh_tokens[token_hash]
        if expired:
            self.logger.debug("refresh_tokens_pruned", count=len(expired))
        return len(expired)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def list_sessions(
        self, account_id: str, *, include_revoked: bool = False
    ) -> List[Session]:
        with self._data_lock:
            results = [
                s
                for s in self.sessions.values()
                if s.account_id == account_id
                and (include_revoked or s.status != SessionStatus.REVOKED)
            ]
            return sorted(results, key=lambda s: s.created_at, reverse=True)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            return self.refresh_tokens.get(token_hash)

    def rotate_refresh_token(
        self,
        session_id: str,
        presented_hash: str,
        new_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
    ) -> Optional[Session]:
        """Mark the presented token used and bind a replacement, atomically.

        Returns the renewed session, or None when the presented token is not
        the session's current unused, unexpired token.
        """
        with self._data_lock:
            self._prune_refresh_tokens(now)
            session = self.sessions.get(session_id)
            current = self.refresh_tokens.get(presented_hash)
            if (
                session is None
                or not session.is_live(now)
                or current is None
                or current.session_id != session_id
                or current.used
                or current.expires_at <= now
            ):
                return None
            current.used = True
            current.used_at = now
            expires_at = now + timedelta(seconds=ttl_seconds)
            self.refresh_tokens[new_hash] = RefreshToken.new(
                session_id, new_hash, expires_at, now
            )
            session.last_renewed_at = now
            session.expires_at = expires_at
            session.status = SessionStatus.ROTATED
            return session

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> bool:
        with self._data_lock:
            session = self.sessions.get(session_id)
            if not session or session.status == SessionStatus.REVOKED:
                return False
            session.status = SessionStatus.REVOKED
            session.revoked_at = now
            session.revoke_reason = reason
            return True

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int:
        with self._data_lock:
            targets = [
                s.id
                for s in self.sessions.values()
                if s.account_id == account_id and s.id != except_session_id
            ]
            return sum(1 for sid in targets if self.revoke_session(sid, reason, now))
