from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Union

from hackauth.logging import get_logger
from hackauth.service.credentials import AccountStore
from hackauth.service.errors import AuthenticationError
from hackauth.service.tokens import Principal
from hackauth.service.validators import BEARER_VALIDATOR, ValidatorRegistry, extract_bearer

logger = get_logger(__name__)


@dataclass(frozen=True)
class Authenticated:
    principal: Principal


@dataclass(frozen=True)
class Anonymous:
    reason: str


AuthResult = Union[Authenticated, Anonymous]


class SessionAuthGuard:
    """Resolve an Authorization header into an AuthResult.

    Credential problems yield Anonymous; backing-store outages propagate.
    """

    def __init__(self, registry: ValidatorRegistry, store: AccountStore) -> None:
        self.registry = registry
        self.store = store

    async def resolve(self, authorization: Optional[str]) -> AuthResult:
        token = extract_bearer(authorization)
        if not token:
            return Anonymous("missing bearer token")
        validator = self.registry.get(BEARER_VALIDATOR)
        if validator is None:
            return Anonymous("bearer validation not configured")
        try:
            principal = await validator.validate(token)
        except AuthenticationError as exc:
            return Anonymous(exc.message)
        account = self.store.get_account(principal.account_id)
        if account is None or not account.is_active:
            logger.info("auth_guard_inactive_account", account_id=principal.account_id)
            return Anonymous("account inactive")
        return Authenticated(principal)


class MandatoryAuthGuard:
    def __init__(self, guard: SessionAuthGuard) -> None:
        self.guard = guard

    async def check(self, authorization: Optional[str]) -> Principal:
        result = await self.guard.resolve(authorization)
        if isinstance(result, Anonymous):
            raise AuthenticationError("authentication required", detail={"reason": result.reason})
        return result.principal


class OptionalAuthGuard:
    def __init__(self, guard: SessionAuthGuard) -> None:
        self.guard = guard

    async def check(self, authorization: Optional[str]) -> AuthResult:
        return await self.guard.resolve(authorization)
