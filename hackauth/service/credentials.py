from __future__ import annotations

import re
import secrets
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from hackauth.logging import get_logger
from hackauth.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    ValidationError,
)
from hackauth.service.passwords import PasswordHasher
from hackauth.storage.errors import ConstraintViolation
from hackauth.storage.models import (
    Account,
    ExternalIdentity,
    RefreshToken,
    Role,
    Session,
)

logger = get_logger(__name__)

_USERNAME_UNSAFE = re.compile(r"[^a-z0-9_-]+")
_USERNAME_SUFFIX_TRIES = 5


class AccountStore(Protocol):
    """Persistence collaborator for accounts, sessions and refresh tokens."""

    def count_accounts(self) -> int: ...

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
        """Insert an account; ``role=None`` makes the first account ADMIN.

        With ``role=None`` the emptiness check and the insert happen as one
        atomic step, so concurrent first registrations yield a single ADMIN.
        """
        ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_username(self, username: str) -> Optional[Account]: ...

    def get_account_by_identity(
        self, provider: str, external_id: str
    ) -> Optional[Account]: ...

    def link_identity(self, account_id: str, identity: ExternalIdentity) -> Account: ...

    def set_password_hash(
        self, account_id: str, password_hash: str
    ) -> Optional[Account]: ...

    def mark_email_verified(
        self, account_id: str, verified_at: datetime
    ) -> Optional[Account]: ...

    def set_two_factor_enabled(
        self, account_id: str, enabled: bool
    ) -> Optional[Account]: ...

    def set_account_disabled(
        self, account_id: str, disabled_at: Optional[datetime]
    ) -> Optional[Account]: ...

    def set_account_banned(self, account_id: str, banned: bool) -> Optional[Account]: ...

    def create_session(
        self,
        account_id: str,
        refresh_token_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
        provider: str = ...,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        device_type: Optional[str] = None,
        browser: Optional[str] = None,
        os: Optional[str] = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def list_sessions(
        self, account_id: str, *, include_revoked: bool = False
    ) -> List[Session]: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def rotate_refresh_token(
        self,
        session_id: str,
        presented_hash: str,
        new_hash: str,
        *,
        ttl_seconds: int,
        now: datetime,
    ) -> Optional[Session]: ...

    def revoke_session(self, session_id: str, reason: str, now: datetime) -> bool: ...

    def revoke_account_sessions(
        self,
        account_id: str,
        reason: str,
        now: datetime,
        *,
        except_session_id: Optional[str] = None,
    ) -> int: ...


@dataclass(frozen=True)
class PublicAccount:
    """Account projection safe to return to clients."""

    id: str
    username: str
    name: str
    email: str
    role: Role
    created_at: datetime
    email_verified: bool = False
    two_factor_enabled: bool = False
    avatar_url: Optional[str] = None

    def as_dict(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "name": self.name,
            "email": self.email,
            "role": self.role.value,
            "created_at": self.created_at.isoformat(),
            "email_verified": self.email_verified,
            "two_factor_enabled": self.two_factor_enabled,
            "avatar_url": self.avatar_url,
        }


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


class CredentialService:
    """Account creation and password verification."""

    def __init__(self, store: AccountStore, hasher: PasswordHasher) -> None:
        self.store = store
        self.hasher = hasher

    @staticmethod
    def to_public(account: Account) -> PublicAccount:
        return PublicAccount(
            id=account.id,
            username=account.username,
            name=account.name,
            email=account.email,
            role=account.role,
            created_at=account.created_at,
            email_verified=account.email_verified,
            two_factor_enabled=account.two_factor_enabled,
            avatar_url=account.avatar_url,
        )

    def register(
        self,
        name: str,
        email: str,
        password: str,
        username: Optional[str] = None,
    ) -> PublicAccount:
        """Create a password account.

        The username defaults to the lower-cased local part of the email. The
        very first account on an empty store becomes ADMIN.
        """
        email = normalize_email(email)
        if not email or "@" not in email:
            raise ValidationError("invalid email", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        handle = (username or email.split("@", 1)[0]).strip().lower()
        if not handle:
            raise ValidationError("invalid username", detail={"field": "username"})
        if self.store.get_account_by_email(email):
            raise ConflictError("email exists", detail={"field": "email"})
        if self.store.get_account_by_username(handle):
            raise ConflictError("username exists", detail={"field": "username"})

        password_hash = self.hasher.hash(password)
        try:
            # role=None: the store picks ADMIN only when it is still empty
            account = self.store.create_account(
                email,
                handle,
                (name or "").strip() or handle,
                password_hash=password_hash,
                role=None,
            )
        except ConstraintViolation as exc:
            # Lost a race against a concurrent registration
            field = exc.field or "email"
            raise ConflictError(f"{field} exists", detail={"field": field}) from exc
        logger.info("account_registered", account_id=account.id, role=account.role.value)
        return self.to_public(account)

    def verify_credentials(self, identifier: str, password: str) -> Account:
        """Return the account for a correct identifier/password pair.

        Unknown identifiers, inactive or passwordless accounts and wrong
        passwords all fail with the same error.
        """
        identifier = (identifier or "").strip().lower()
        if "@" in identifier:
            account = self.store.get_account_by_email(identifier)
        else:
            account = self.store.get_account_by_username(identifier)
        if account is None or not account.has_password:
            self.hasher.dummy_verify(password or "")
            raise AuthenticationError("invalid credentials")
        if not self.hasher.verify(account.password_hash, password or ""):
            raise AuthenticationError("invalid credentials")
        if not account.is_active:
            raise AuthenticationError("invalid credentials")
        if self.hasher.needs_rehash(account.password_hash):
            self.store.set_password_hash(account.id, self.hasher.hash(password))
            logger.info("password_rehashed", account_id=account.id)
        return account

    def change_password(self, account_id: str, current: str, new: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        if not self.hasher.verify(account.password_hash, current or ""):
            raise ForbiddenError("current password is incorrect")
        if current == new:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "new_password"},
            )
        return self.set_password(account_id, new)

    def set_password(self, account_id: str, new: str) -> Account:
        if not new:
            raise ValidationError("password is required", detail={"field": "password"})
        account = self.store.set_password_hash(account_id, self.hasher.hash(new))
        if account is None:
            raise NotFoundError("account not found")
        logger.info("password_changed", account_id=account_id)
        return account

    def generate_unique_username(self, seed: str) -> str:
        base = _USERNAME_UNSAFE.sub("", (seed or "").strip().lower()) or "user"
        if not self.store.get_account_by_username(base):
            return base
        for _ in range(_USERNAME_SUFFIX_TRIES):
            candidate = f"{base}{secrets.randbelow(10000)}"
            if not self.store.get_account_by_username(candidate):
                return candidate
        return f"{base}-{secrets.token_hex(4)}"
