from __future__ import annotations

import asyncio
import base64
import hashlib
from dataclasses import dataclass
from typing import Any, List, Optional

import httpx
from cryptography.fernet import Fernet, InvalidToken

from hackauth.config import Settings
from hackauth.logging import get_logger
from hackauth.service.codes import (
    PURPOSE_TTLS,
    CodePurpose,
    EphemeralCodeStore,
    code_key,
    generate_code,
    generate_token,
)
from hackauth.service.credentials import (
    AccountStore,
    CredentialService,
    PublicAccount,
    normalize_email,
)
from hackauth.service.errors import (
    AuthenticationError,
    NotFoundError,
    RateLimitedError,
    ServiceError,
    UnavailableError,
    ValidationError,
)
from hackauth.service.fingerprint import RequestFingerprint
from hackauth.service.guards import MandatoryAuthGuard, OptionalAuthGuard, SessionAuthGuard
from hackauth.service.notifier import Notifier
from hackauth.service.oauth import (
    OAUTH_PROVIDERS,
    OAuthCredential,
    OAuthFederationService,
    OAuthProviderValidator,
)
from hackauth.service.passwords import PasswordHasher
from hackauth.service.throttle import AttemptLimiter
from hackauth.service.tokens import IssuedSession, TokenConfig, TokenService
from hackauth.service.validators import (
    BEARER_VALIDATOR,
    BearerTokenValidator,
    ValidatorRegistry,
)
from hackauth.storage.models import Account, Session, utcnow
from hackauth.storage.redis_cache import RedisCache

logger = get_logger(__name__)

PASSWORD_RESET_REQUESTED_MESSAGE = (
    "If an account exists for that email, a password reset link has been sent."
)
INVALID_CODE_MESSAGE = "invalid or expired code"


@dataclass
class LoginResult:
    account: PublicAccount
    session: Optional[IssuedSession] = None
    requires_two_factor: bool = False
    challenge_id: Optional[str] = None


def _fernet_for(secret: str) -> Fernet:
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
    return Fernet(key)


class AuthService:
    """Registration, login, session lifecycle and account-security flows."""

    def __init__(
        self,
        store: AccountStore,
        cache: Optional[RedisCache],
        settings: Settings,
        *,
        hasher: Optional[PasswordHasher] = None,
        notifier: Optional[Notifier] = None,
        oauth_transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.store = store
        self.cache = cache
        self.settings = settings
        self.hasher = hasher or PasswordHasher.from_settings(settings)
        self.notifier = notifier or Notifier.from_settings(settings)
        self.codes = EphemeralCodeStore(cache)
        self.limiter = AttemptLimiter(cache)
        self.credentials = CredentialService(store, self.hasher)
        self.tokens = TokenService(store, TokenConfig.from_settings(settings))
        self.federation = OAuthFederationService(
            store, self.credentials, self.codes, settings
        )
        self.validators = ValidatorRegistry()
        self.validators.register(BearerTokenValidator(self.tokens))
        for provider in OAUTH_PROVIDERS:
            self.validators.register(
                OAuthProviderValidator(
                    provider, self.federation, settings, transport=oauth_transport
                )
            )
        self.guard = SessionAuthGuard(self.validators, store)
        self.mandatory_guard = MandatoryAuthGuard(self.guard)
        self.optional_guard = OptionalAuthGuard(self.guard)
        self._reset_fernet = _fernet_for(
            settings.password_reset_secret or settings.jwt_secret
        )

    # -- helpers ------------------------------------------------------------

    def _require_account(self, account_id: str) -> Account:
        account = self.store.get_account(account_id)
        if account is None:
            raise NotFoundError("account not found")
        return account

    async def _issue_code(
        self,
        purpose: CodePurpose,
        subject_key: str,
        payload: Optional[dict[str, Any]] = None,
    ) -> str:
        code = generate_code()
        await self.codes.put(purpose, subject_key, code, payload=payload)
        await self.limiter.clear(f"code:{code_key(purpose, subject_key)}")
        return code

    async def _consume_code(
        self,
        purpose: CodePurpose,
        subject_key: str,
        code: str,
        *,
        error_cls: type[ServiceError] = ValidationError,
        message: str = INVALID_CODE_MESSAGE,
    ) -> Optional[dict[str, Any]]:
        """Consume a code, counting mismatches toward a lockout.

        Once the attempt budget is spent the code itself is discarded, so a
        fresh one has to be requested.
        """
        limiter_key = f"code:{code_key(purpose, subject_key)}"
        if await self.limiter.is_locked(limiter_key):
            raise RateLimitedError("too many attempts; request a new code")
        try:
            payload = await self.codes.consume(purpose, subject_key, code)
        except ValidationError as exc:
            locked = await self.limiter.register_failure(
                limiter_key, self.settings.code_max_attempts, PURPOSE_TTLS[purpose]
            )
            if locked:
                await self.codes.discard(purpose, subject_key)
                logger.warning("code_attempts_exhausted", purpose=purpose.value)
                raise RateLimitedError("too many attempts; request a new code") from exc
            raise error_cls(message) from exc
        except NotFoundError as exc:
            raise error_cls(message) from exc
        await self.limiter.clear(limiter_key)
        return payload

    # -- registration & login ----------------------------------------------

    async def register(
        self,
        name: str,
        email: str,
        password: str,
        username: Optional[str] = None,
    ) -> PublicAccount:
        account = await asyncio.to_thread(
            self.credentials.register, name, email, password, username
        )
        try:
            code = await self._issue_code(CodePurpose.EMAIL_VERIFICATION, account.id)
        except UnavailableError:
            # The account exists; the user can request another code later
            logger.warning("email_verification_not_sent", account_id=account.id)
        else:
            self.notifier.send_email_verification(account.email, code)
        return account

    async def login(
        self,
        identifier: str,
        password: str,
        fingerprint: Optional[RequestFingerprint] = None,
    ) -> LoginResult:
        fp = fingerprint or RequestFingerprint()
        throttle_key = f"login:{(identifier or '').strip().lower()}"
        if await self.limiter.is_locked(throttle_key):
            logger.warning("login_throttled", ip_address=fp.ip_address)
            raise RateLimitedError("too many failed login attempts; try again later")
        try:
            account = await asyncio.to_thread(
                self.credentials.verify_credentials, identifier, password
            )
        except AuthenticationError:
            await self.limiter.register_failure(
                throttle_key,
                self.settings.login_max_failures,
                self.settings.login_failure_window_seconds,
            )
            logger.info(
                "login_failed",
                ip_address=fp.ip_address,
                device_type=fp.device_type,
            )
            raise
        await self.limiter.clear(throttle_key)
        public = self.credentials.to_public(account)

        if account.two_factor_enabled:
            challenge_id = generate_token()
            code = await self._issue_code(
                CodePurpose.TWO_FACTOR_LOGIN,
                challenge_id,
                payload={"account_id": account.id},
            )
            self.notifier.send_two_factor_code(account.email, code, "sign in")
            logger.info("login_two_factor_challenge", account_id=account.id)
            return LoginResult(
                account=public, requires_two_factor=True, challenge_id=challenge_id
            )

        issued = self.tokens.issue_session(account, fp)
        logger.info("login_succeeded", account_id=account.id, session_id=issued.session_id)
        return LoginResult(account=public, session=issued)

    async def verify_login_two_factor(
        self,
        challenge_id: str,
        code: str,
        fingerprint: Optional[RequestFingerprint] = None,
    ) -> LoginResult:
        if not challenge_id:
            raise AuthenticationError("invalid code")
        payload = await self._consume_code(
            CodePurpose.TWO_FACTOR_LOGIN,
            challenge_id,
            code,
            error_cls=AuthenticationError,
            message="invalid code",
        )
        account = self.store.get_account((payload or {}).get("account_id", ""))
        if account is None or not account.is_active:
            raise AuthenticationError("invalid code")
        issued = self.tokens.issue_session(account, fingerprint)
        logger.info(
            "login_succeeded",
            account_id=account.id,
            session_id=issued.session_id,
            two_factor=True,
        )
        return LoginResult(account=self.credentials.to_public(account), session=issued)

    # -- session lifecycle --------------------------------------------------

    async def refresh(
        self,
        refresh_token: Optional[str],
        session_id: Optional[str],
        fingerprint: Optional[RequestFingerprint] = None,
    ) -> IssuedSession:
        if not refresh_token or not session_id:
            raise ValidationError("refresh token is missing")
        return self.tokens.refresh(refresh_token, session_id, fingerprint)

    async def logout(
        self, refresh_token: Optional[str], session_id: Optional[str] = None
    ) -> None:
        if not refresh_token:
            raise ValidationError("refresh token is missing")
        session = self.tokens.find_session_by_refresh_token(refresh_token)
        if session is None or (session_id and session.id != session_id):
            raise ValidationError("session not found or already logged out")
        if not self.tokens.revoke_session(session.id, "logout"):
            raise ValidationError("session not found or already logged out")
        logger.info("logout", account_id=session.account_id, session_id=session.id)

    async def logout_all(self, account_id: str) -> int:
        return self.tokens.revoke_account_sessions(account_id, "logout_all")

    async def me(self, account_id: str) -> PublicAccount:
        return self.credentials.to_public(self._require_account(account_id))

    async def list_sessions(self, account_id: str) -> List[Session]:
        return self.tokens.list_sessions(account_id)

    # -- email verification -------------------------------------------------

    async def send_email_verification(self, account_id: str) -> None:
        account = self._require_account(account_id)
        if account.email_verified:
            raise ValidationError("email is already verified")
        code = await self._issue_code(CodePurpose.EMAIL_VERIFICATION, account.id)
        self.notifier.send_email_verification(account.email, code)
        logger.info("email_verification_sent", account_id=account.id)

    async def verify_email(self, account_id: str, code: str) -> PublicAccount:
        account = self._require_account(account_id)
        if account.email_verified:
            raise ValidationError("email is already verified")
        await self._consume_code(CodePurpose.EMAIL_VERIFICATION, account.id, code)
        account = self.store.mark_email_verified(account.id, utcnow()) or account
        logger.info("email_verified", account_id=account.id)
        return self.credentials.to_public(account)

    # -- passwords ----------------------------------------------------------

    async def request_password_reset(self, email: str) -> str:
        """Start a reset; the response never reveals whether the email exists."""
        account = self.store.get_account_by_email(normalize_email(email))
        if account is None or not account.has_password or not account.is_active:
            logger.info("password_reset_skipped")
            return PASSWORD_RESET_REQUESTED_MESSAGE
        secret_part = generate_token()
        await self.codes.put(CodePurpose.PASSWORD_RESET, account.id, secret_part)
        sealed = self._reset_fernet.encrypt(account.id.encode("utf-8")).decode("ascii")
        self.notifier.send_password_reset(account.email, f"{secret_part}.{sealed}")
        logger.info("password_reset_requested", account_id=account.id)
        return PASSWORD_RESET_REQUESTED_MESSAGE

    async def reset_password(self, token: str, new_password: str) -> None:
        secret_part, _, sealed = (token or "").partition(".")
        if not secret_part or not sealed:
            raise ValidationError("invalid or expired reset token")
        try:
            account_id = self._reset_fernet.decrypt(
                sealed.encode("ascii"), ttl=PURPOSE_TTLS[CodePurpose.PASSWORD_RESET]
            ).decode("utf-8")
        except (InvalidToken, UnicodeError) as exc:
            raise ValidationError("invalid or expired reset token") from exc
        try:
            await self.codes.consume(CodePurpose.PASSWORD_RESET, account_id, secret_part)
        except (NotFoundError, ValidationError) as exc:
            raise ValidationError("invalid or expired reset token") from exc
        account = await asyncio.to_thread(
            self.credentials.set_password, account_id, new_password
        )
        self.tokens.revoke_account_sessions(account.id, "password_reset")
        self.notifier.send_password_changed(account.email)
        logger.info("password_reset_completed", account_id=account.id)

    async def change_password(
        self,
        account_id: str,
        current_password: str,
        new_password: str,
        keep_session_id: Optional[str] = None,
    ) -> None:
        account = await asyncio.to_thread(
            self.credentials.change_password, account_id, current_password, new_password
        )
        self.tokens.revoke_account_sessions(
            account.id, "password_changed", except_session_id=keep_session_id
        )
        self.notifier.send_password_changed(account.email)

    # -- two-factor ---------------------------------------------------------

    async def request_two_factor_enable(self, account_id: str) -> None:
        account = self._require_account(account_id)
        if account.two_factor_enabled:
            raise ValidationError("two-factor authentication is already enabled")
        code = await self._issue_code(CodePurpose.TWO_FACTOR_ENABLE, account.id)
        self.notifier.send_two_factor_code(
            account.email, code, "enable two-factor authentication"
        )

    async def confirm_two_factor_enable(self, account_id: str, code: str) -> PublicAccount:
        account = self._require_account(account_id)
        await self._consume_code(CodePurpose.TWO_FACTOR_ENABLE, account.id, code)
        account = self.store.set_two_factor_enabled(account.id, True) or account
        self.notifier.send_two_factor_status(account.email, enabled=True)
        logger.info("two_factor_enabled", account_id=account.id)
        return self.credentials.to_public(account)

    async def request_two_factor_disable(self, account_id: str) -> None:
        account = self._require_account(account_id)
        if not account.two_factor_enabled:
            raise ValidationError("two-factor authentication is not enabled")
        code = await self._issue_code(CodePurpose.TWO_FACTOR_DISABLE, account.id)
        self.notifier.send_two_factor_code(
            account.email, code, "disable two-factor authentication"
        )

    async def confirm_two_factor_disable(self, account_id: str, code: str) -> PublicAccount:
        account = self._require_account(account_id)
        await self._consume_code(CodePurpose.TWO_FACTOR_DISABLE, account.id, code)
        account = self.store.set_two_factor_enabled(account.id, False) or account
        self.notifier.send_two_factor_status(account.email, enabled=False)
        logger.info("two_factor_disabled", account_id=account.id)
        return self.credentials.to_public(account)

    # -- account disable ----------------------------------------------------

    async def request_account_disable(self, account_id: str) -> None:
        account = self._require_account(account_id)
        code = await self._issue_code(CodePurpose.ACCOUNT_DISABLE, account.id)
        self.notifier.send_two_factor_code(account.email, code, "disable your account")

    async def confirm_account_disable(self, account_id: str, code: str) -> None:
        account = self._require_account(account_id)
        await self._consume_code(CodePurpose.ACCOUNT_DISABLE, account.id, code)
        self.store.set_account_disabled(account.id, utcnow())
        self.tokens.revoke_account_sessions(account.id, "account_disabled")
        self.notifier.send_account_disabled(account.email)
        logger.info("account_disabled", account_id=account.id)

    # -- oauth --------------------------------------------------------------

    async def start_oauth(self, provider: str) -> dict:
        return await self.federation.start(provider)

    async def complete_oauth(
        self,
        provider: str,
        code: Optional[str],
        state: Optional[str],
        fingerprint: Optional[RequestFingerprint] = None,
    ) -> IssuedSession:
        validator = self.validators.get(provider) if provider != BEARER_VALIDATOR else None
        if validator is None:
            raise NotFoundError(f"unsupported oauth provider: {provider}")
        await self.federation.consume_state(provider, state)
        principal = await validator.validate(OAuthCredential(code or ""))
        account = self._require_account(principal.account_id)
        issued = self.tokens.issue_session(account, fingerprint, provider=provider)
        logger.info("oauth_login_succeeded", account_id=account.id, provider=provider)
        return issued
