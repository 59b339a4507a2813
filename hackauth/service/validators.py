from __future__ import annotations

from typing import Any, Dict, Optional, Protocol, runtime_checkable

from hackauth.service.errors import AuthenticationError
from hackauth.service.tokens import Principal, TokenService

BEARER_VALIDATOR = "jwt"


@runtime_checkable
class CredentialValidator(Protocol):
    """A named strategy turning a presented credential into a Principal.

    Implementations raise AuthenticationError when the credential is not
    acceptable.
    """

    name: str

    async def validate(self, credential: Any) -> Principal: ...


class ValidatorRegistry:
    def __init__(self) -> None:
        self._validators: Dict[str, CredentialValidator] = {}

    def register(self, validator: CredentialValidator) -> None:
        self._validators[validator.name] = validator

    def get(self, name: str) -> Optional[CredentialValidator]:
        return self._validators.get(name)

    def names(self) -> list[str]:
        return sorted(self._validators)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    lower = header.lower()
    if not lower.startswith("bearer "):
        return None
    token = header.split(" ", 1)[1].strip()
    return token or None


class BearerTokenValidator:
    """Validates ``Authorization: Bearer`` access tokens."""

    name = BEARER_VALIDATOR

    def __init__(self, tokens: TokenService) -> None:
        self.tokens = tokens

    async def validate(self, credential: Any) -> Principal:
        if not isinstance(credential, str) or not credential:
            raise AuthenticationError("invalid access token")
        return self.tokens.validate_access_token(credential)
