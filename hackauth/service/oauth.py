from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional
from urllib.parse import urlencode

import httpx

from hackauth.config import Settings
from hackauth.logging import get_logger
from hackauth.service.codes import CodePurpose, EphemeralCodeStore, generate_token
from hackauth.service.credentials import (
    AccountStore,
    CredentialService,
    normalize_email,
)
from hackauth.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    UnavailableError,
    ValidationError,
)
from hackauth.service.tokens import Principal
from hackauth.storage.errors import ConstraintViolation
from hackauth.storage.models import Account, ExternalIdentity, Role

# OAuth provider configurations
OAUTH_PROVIDERS = {
    "google": {
        "auth_url": "https://accounts.google.com/o/oauth2/v2/auth",
        "token_url": "https://oauth2.googleapis.com/token",
        "userinfo_url": "https://www.googleapis.com/oauth2/v2/userinfo",
        "scope": "openid email profile",
    },
    "github": {
        "auth_url": "https://github.com/login/oauth/authorize",
        "token_url": "https://github.com/login/oauth/access_token",
        "userinfo_url": "https://api.github.com/user",
        "emails_url": "https://api.github.com/user/emails",
        "scope": "read:user user:email",
    },
    "linkedin": {
        "auth_url": "https://www.linkedin.com/oauth/v2/authorization",
        "token_url": "https://www.linkedin.com/oauth/v2/accessToken",
        "userinfo_url": "https://api.linkedin.com/v2/userinfo",
        "scope": "openid profile email",
    },
}

logger = get_logger(__name__)


@dataclass(frozen=True)
class ExternalProfile:
    """Provider identity normalised across providers."""

    provider: str
    external_id: str
    email: Optional[str]
    display_name: Optional[str] = None
    avatar_url: Optional[str] = None


@dataclass(frozen=True)
class OAuthCredential:
    """Authorization code returned to the provider callback."""

    code: str


def provider_credentials(
    settings: Settings, provider: str
) -> tuple[Optional[str], Optional[str], Optional[str]]:
    """Return ``(client_id, client_secret, callback_url)`` for a provider."""
    if provider not in OAUTH_PROVIDERS:
        return None, None, None
    return (
        getattr(settings, f"oauth_{provider}_client_id"),
        getattr(settings, f"oauth_{provider}_client_secret"),
        getattr(settings, f"oauth_{provider}_callback_url"),
    )


def configured_providers(settings: Settings) -> list[str]:
    return [
        name for name in OAUTH_PROVIDERS if all(provider_credentials(settings, name))
    ]


def parse_userinfo(provider: str, userinfo: dict) -> ExternalProfile:
    """Parse user info from an OAuth provider into an ExternalProfile."""
    if provider == "google":
        external_id = userinfo.get("id") or userinfo.get("sub")
        name = userinfo.get("name")
        avatar = userinfo.get("picture")
    elif provider == "github":
        external_id = userinfo.get("id")
        name = userinfo.get("name") or userinfo.get("login")
        avatar = userinfo.get("avatar_url")
    elif provider == "linkedin":
        external_id = userinfo.get("sub")
        name = userinfo.get("name") or " ".join(
            part for part in (userinfo.get("given_name"), userinfo.get("family_name")) if part
        )
        avatar = userinfo.get("picture")
    else:
        external_id = userinfo.get("id") or userinfo.get("sub")
        name = userinfo.get("name")
        avatar = None
    return ExternalProfile(
        provider=provider,
        external_id=str(external_id) if external_id is not None else "",
        email=userinfo.get("email"),
        display_name=name or None,
        avatar_url=avatar,
    )


class OAuthFederationService:
    """Maps external provider identities onto local accounts."""

    def __init__(
        self,
        store: AccountStore,
        credentials: CredentialService,
        codes: EphemeralCodeStore,
        settings: Settings,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.codes = codes
        self.settings = settings

    def is_trusted(self, provider: str) -> bool:
        return provider in self.settings.oauth_trusted_email_providers

    def validate_external_profile(
        self,
        provider: str,
        external_id: str,
        email: Optional[str],
        display_name: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Account:
        """Find, link or create the account behind a provider identity.

        An email shared with an existing account only links for providers
        whose addresses are trusted; otherwise the login is refused rather
        than merged.
        """
        if not external_id:
            raise AuthenticationError("oauth verification failed")
        identity = ExternalIdentity(provider, str(external_id))
        linked = self.store.get_account_by_identity(provider, identity.external_id)
        if linked is not None:
            return self._require_active(linked)

        email = normalize_email(email or "")
        if not email or "@" not in email:
            raise ValidationError("provider did not supply an email address")

        trusted = self.is_trusted(provider)
        existing = self.store.get_account_by_email(email)
        if existing is not None:
            if not trusted:
                logger.warning("oauth_email_collision_untrusted", provider=provider)
                raise ConflictError("email exists", detail={"field": "email"})
            account = self.store.link_identity(existing.id, identity)
            logger.info("oauth_identity_linked", account_id=account.id, provider=provider)
            return self._require_active(account)

        username = self.credentials.generate_unique_username(email.split("@", 1)[0])
        try:
            account = self.store.create_account(
                email,
                username,
                (display_name or "").strip() or username,
                role=Role.USER,
                avatar_url=avatar_url,
                email_verified=trusted,
                identity=identity,
            )
        except ConstraintViolation as exc:
            # A concurrent callback for the same identity may have won
            raced = self.store.get_account_by_identity(provider, identity.external_id)
            if raced is not None:
                return self._require_active(raced)
            raise ConflictError(
                f"{exc.field or 'account'} exists", detail=exc.detail
            ) from exc
        logger.info("oauth_account_created", account_id=account.id, provider=provider)
        return account

    @staticmethod
    def _require_active(account: Account) -> Account:
        if not account.is_active:
            raise AuthenticationError("invalid credentials")
        return account

    async def start(self, provider: str) -> dict:
        if provider not in OAUTH_PROVIDERS:
            raise NotFoundError(f"unsupported oauth provider: {provider}")
        client_id, _, callback_url = provider_credentials(self.settings, provider)
        if not client_id or not callback_url:
            logger.warning("oauth_not_configured", provider=provider)
            raise NotFoundError(f"oauth provider {provider} is not configured")

        state = generate_token()
        await self.codes.put(
            CodePurpose.OAUTH_STATE, state, state, payload={"provider": provider}
        )
        config = OAUTH_PROVIDERS[provider]
        params = {
            "client_id": client_id,
            "redirect_uri": callback_url,
            "response_type": "code",
            "scope": config["scope"],
            "state": state,
        }
        return {
            "authorization_url": f"{config['auth_url']}?{urlencode(params)}",
            "state": state,
            "provider": provider,
        }

    async def consume_state(self, provider: str, state: Optional[str]) -> None:
        if not state:
            raise AuthenticationError("invalid oauth state")
        try:
            payload = await self.codes.consume(CodePurpose.OAUTH_STATE, state, state)
        except (NotFoundError, ValidationError) as exc:
            raise AuthenticationError("invalid oauth state") from exc
        if not payload or payload.get("provider") != provider:
            raise AuthenticationError("invalid oauth state")


class OAuthProviderValidator:
    """Authorization-code exchange for one provider.

    The code is traded for a provider access token, the userinfo endpoint is
    read, and the resulting profile goes through the federation service.
    """

    def __init__(
        self,
        provider: str,
        federation: OAuthFederationService,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if provider not in OAUTH_PROVIDERS:
            raise ValueError(f"Unsupported OAuth provider: {provider}")
        self.name = provider
        self.federation = federation
        self.settings = settings
        self.transport = transport

    async def validate(self, credential: Any) -> Principal:
        code = credential.code if isinstance(credential, OAuthCredential) else credential
        if not isinstance(code, str) or not code:
            raise AuthenticationError("oauth verification failed")
        profile = await self.fetch_profile(code)
        account = self.federation.validate_external_profile(
            profile.provider,
            profile.external_id,
            profile.email,
            profile.display_name,
            profile.avatar_url,
        )
        return Principal(
            account_id=account.id,
            username=account.username,
            email=account.email,
            role=account.role,
        )

    async def fetch_profile(self, code: str) -> ExternalProfile:
        provider = self.name
        client_id, client_secret, callback_url = provider_credentials(
            self.settings, provider
        )
        if not client_id or not client_secret or not callback_url:
            logger.error("oauth_credentials_missing", provider=provider)
            raise AuthenticationError("oauth verification failed")
        config = OAUTH_PROVIDERS[provider]

        try:
            async with httpx.AsyncClient(
                timeout=self.settings.oauth_http_timeout_seconds,
                follow_redirects=False,
                transport=self.transport,
            ) as client:
                token_response = await client.post(
                    config["token_url"],
                    data={
                        "client_id": client_id,
                        "client_secret": client_secret,
                        "code": code,
                        "redirect_uri": callback_url,
                        "grant_type": "authorization_code",
                    },
                    headers={"Accept": "application/json"},
                )
                token_response.raise_for_status()
                token_result = token_response.json()
                access_token = (
                    token_result.get("access_token") if isinstance(token_result, dict) else None
                )
                if not access_token:
                    logger.error("oauth_no_access_token", provider=provider)
                    raise AuthenticationError("oauth verification failed")

                userinfo_headers = {"Authorization": f"Bearer {access_token}"}
                if provider == "github":
                    userinfo_headers["Accept"] = "application/vnd.github+json"
                userinfo_response = await client.get(
                    config["userinfo_url"], headers=userinfo_headers
                )
                userinfo_response.raise_for_status()
                userinfo = userinfo_response.json()
                if not isinstance(userinfo, dict):
                    logger.error("oauth_userinfo_invalid_format", provider=provider)
                    raise AuthenticationError("oauth verification failed")
                profile = parse_userinfo(provider, userinfo)

                # GitHub hides private addresses from /user
                if provider == "github" and not profile.email:
                    emails_response = await client.get(
                        config["emails_url"], headers=userinfo_headers
                    )
                    if emails_response.status_code == 200:
                        emails = emails_response.json()
                        primary = next(
                            (
                                e.get("email")
                                for e in emails
                                if isinstance(e, dict) and e.get("primary") and e.get("verified")
                            ),
                            None,
                        )
                        if primary:
                            profile = ExternalProfile(
                                provider=profile.provider,
                                external_id=profile.external_id,
                                email=primary,
                                display_name=profile.display_name,
                                avatar_url=profile.avatar_url,
                            )
        except httpx.HTTPStatusError as exc:
            logger.error(
                "oauth_exchange_http_error",
                provider=provider,
                status_code=exc.response.status_code,
            )
            raise AuthenticationError("oauth verification failed") from exc
        except httpx.TransportError as exc:
            logger.error(
                "oauth_provider_unreachable",
                provider=provider,
                error_type=type(exc).__name__,
            )
            raise UnavailableError("oauth provider unavailable") from exc
        except ValueError as exc:
            logger.error("oauth_response_parse_error", provider=provider, error=str(exc))
            raise AuthenticationError("oauth verification failed") from exc

        if not profile.external_id:
            logger.error("oauth_identity_missing_uid", provider=provider)
            raise AuthenticationError("oauth verification failed")
        if not profile.email:
            logger.error("oauth_identity_missing_email", provider=provider)
            raise AuthenticationError("oauth verification failed")
        logger.info("oauth_exchange_success", provider=provider)
        return profile


__all__ = [
    "OAUTH_PROVIDERS",
    "ExternalProfile",
    "OAuthCredential",
    "OAuthFederationService",
    "OAuthProviderValidator",
    "configured_providers",
    "parse_userinfo",
    "provider_credentials",
]
