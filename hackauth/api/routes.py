from __future__ import annotations

from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Cookie, Depends, Header, Query, Request, Response
from fastapi.responses import RedirectResponse

from hackauth.api.schemas import (
    AccountResponse,
    AuthResponse,
    CodeRequest,
    Envelope,
    LoginRequest,
    MessageResponse,
    OAuthStartResponse,
    PasswordChangeRequest,
    PasswordResetConfirm,
    PasswordResetRequest,
    RegisterRequest,
    SessionListResponse,
    SessionResponse,
    TwoFactorLoginRequest,
    WhoAmIResponse,
)
from hackauth.service.auth import LoginResult
from hackauth.service.credentials import CredentialService, PublicAccount
from hackauth.service.fingerprint import RequestFingerprint, extract
from hackauth.service.guards import Anonymous, AuthResult
from hackauth.service.runtime import get_runtime
from hackauth.service.tokens import IssuedSession, Principal
from hackauth.storage.models import Session

REFRESH_COOKIE = "refreshToken"
SESSION_COOKIE = "sessionId"

router = APIRouter(prefix="/v1/auth", tags=["auth"])


async def get_principal(authorization: Optional[str] = Header(None)) -> Principal:
    runtime = get_runtime()
    return await runtime.auth.mandatory_guard.check(authorization)


async def get_optional_principal(
    authorization: Optional[str] = Header(None),
) -> AuthResult:
    runtime = get_runtime()
    return await runtime.auth.optional_guard.check(authorization)


def _fingerprint(request: Request) -> RequestFingerprint:
    return extract(request.headers, request.client.host if request.client else None)


def _account_response(account: PublicAccount) -> AccountResponse:
    return AccountResponse(
        id=account.id,
        username=account.username,
        name=account.name,
        email=account.email,
        role=account.role.value,
        created_at=account.created_at,
        email_verified=account.email_verified,
        two_factor_enabled=account.two_factor_enabled,
        avatar_url=account.avatar_url,
    )


def _auth_response(issued: IssuedSession) -> AuthResponse:
    return AuthResponse(
        token=issued.access_token,
        expires_at=issued.access_expires_at,
        session_id=issued.session_id,
        session_expires_at=issued.session_expires_at,
        user=_account_response(CredentialService.to_public(issued.account)),
    )


def _session_response(session: Session, current_session_id: Optional[str]) -> SessionResponse:
    return SessionResponse(
        id=session.id,
        status=session.status.value,
        provider=session.provider,
        created_at=session.created_at,
        last_renewed_at=session.last_renewed_at,
        expires_at=session.expires_at,
        ip_address=session.ip_address,
        device_type=session.device_type,
        browser=session.browser,
        os=session.os,
        current=session.id == current_session_id,
    )


def _apply_session_cookies(response: Response, issued: IssuedSession) -> None:
    settings = get_runtime().settings
    for name, value in (
        (REFRESH_COOKIE, issued.refresh_token),
        (SESSION_COOKIE, issued.session_id),
    ):
        response.set_cookie(
            name,
            value,
            httponly=True,
            secure=settings.secure_cookies,
            samesite="strict",
            max_age=settings.refresh_token_ttl_seconds,
            path=settings.auth_path,
        )


def _clear_session_cookies(response: Response) -> None:
    settings = get_runtime().settings
    for name in (REFRESH_COOKIE, SESSION_COOKIE):
        response.delete_cookie(
            name,
            path=settings.auth_path,
            secure=settings.secure_cookies,
            httponly=True,
            samesite="strict",
        )


def _login_envelope(result: LoginResult, response: Response) -> Envelope:
    if result.session is None:
        return Envelope(
            status="ok",
            data=AuthResponse(
                requires_two_factor=result.requires_two_factor,
                challenge_id=result.challenge_id,
                user=_account_response(result.account),
            ),
        )
    _apply_session_cookies(response, result.session)
    return Envelope(status="ok", data=_auth_response(result.session))


# -- registration & login ---------------------------------------------------


@router.post("/register", response_model=Envelope, status_code=201)
async def register(body: RegisterRequest):
    """Create a password account and email a verification code."""
    runtime = get_runtime()
    account = await runtime.auth.register(
        body.name, body.email, body.password, body.username
    )
    return Envelope(status="ok", data=_account_response(account))


@router.post("/login", response_model=Envelope)
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with an email or username and a password.

    When two-factor authentication is enabled no session is issued; the
    response carries a ``challenge_id`` for ``/2fa/login`` instead.
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.identifier, body.password, _fingerprint(request)
    )
    return _login_envelope(result, response)


@router.post("/2fa/login", response_model=Envelope)
async def login_two_factor(body: TwoFactorLoginRequest, request: Request, response: Response):
    runtime = get_runtime()
    result = await runtime.auth.verify_login_two_factor(
        body.challenge_id, body.code, _fingerprint(request)
    )
    return _login_envelope(result, response)


@router.post("/refresh", response_model=Envelope)
async def refresh(
    request: Request,
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    session_id: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    """Rotate the refresh cookie and return a new access token."""
    runtime = get_runtime()
    issued = await runtime.auth.refresh(refresh_token, session_id, _fingerprint(request))
    _apply_session_cookies(response, issued)
    return Envelope(status="ok", data=_auth_response(issued))


@router.post("/logout", response_model=Envelope)
async def logout(
    response: Response,
    refresh_token: Optional[str] = Cookie(None, alias=REFRESH_COOKIE),
    session_id: Optional[str] = Cookie(None, alias=SESSION_COOKIE),
):
    runtime = get_runtime()
    await runtime.auth.logout(refresh_token, session_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/logout-all", response_model=Envelope)
async def logout_all(response: Response, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    count = await runtime.auth.logout_all(principal.account_id)
    _clear_session_cookies(response)
    return Envelope(status="ok", data={"revoked": count})


# -- current account --------------------------------------------------------


@router.get("/me", response_model=Envelope)
async def me(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.auth.me(principal.account_id)
    return Envelope(status="ok", data=_account_response(account))


@router.get("/sessions", response_model=Envelope)
async def list_sessions(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    sessions = await runtime.auth.list_sessions(principal.account_id)
    return Envelope(
        status="ok",
        data=SessionListResponse(
            items=[_session_response(s, principal.session_id) for s in sessions]
        ),
    )


@router.get("/whoami", response_model=Envelope)
async def whoami(result: AuthResult = Depends(get_optional_principal)):
    """Identify the caller if a valid bearer token is present."""
    if isinstance(result, Anonymous):
        return Envelope(
            status="ok", data=WhoAmIResponse(authenticated=False, reason=result.reason)
        )
    principal = result.principal
    return Envelope(
        status="ok",
        data=WhoAmIResponse(
            authenticated=True,
            user_id=principal.account_id,
            username=principal.username,
            role=principal.role.value,
        ),
    )


# -- email verification -----------------------------------------------------


@router.post("/email/verification", response_model=Envelope)
async def send_email_verification(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.send_email_verification(principal.account_id)
    return Envelope(status="ok", data=MessageResponse(message="verification code sent"))


@router.post("/email/verify", response_model=Envelope)
async def verify_email(body: CodeRequest, principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    account = await runtime.auth.verify_email(principal.account_id, body.code)
    return Envelope(status="ok", data=_account_response(account))


# -- passwords --------------------------------------------------------------


@router.post("/password/reset/request", response_model=Envelope)
async def request_password_reset(body: PasswordResetRequest):
    runtime = get_runtime()
    message = await runtime.auth.request_password_reset(body.email)
    return Envelope(status="ok", data=MessageResponse(message=message))


@router.post("/password/reset", response_model=Envelope)
async def reset_password(body: PasswordResetConfirm):
    runtime = get_runtime()
    await runtime.auth.reset_password(body.token, body.new_password)
    return Envelope(status="ok", data=MessageResponse(message="password has been reset"))


@router.post("/password/change", response_model=Envelope)
async def change_password(
    body: PasswordChangeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.change_password(
        principal.account_id,
        body.current_password,
        body.new_password,
        keep_session_id=principal.session_id,
    )
    return Envelope(status="ok", data=MessageResponse(message="password changed"))


# -- two-factor -------------------------------------------------------------


@router.post("/2fa/enable", response_model=Envelope)
async def request_two_factor_enable(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.request_two_factor_enable(principal.account_id)
    return Envelope(status="ok", data=MessageResponse(message="confirmation code sent"))


@router.post("/2fa/enable/confirm", response_model=Envelope)
async def confirm_two_factor_enable(
    body: CodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    account = await runtime.auth.confirm_two_factor_enable(principal.account_id, body.code)
    return Envelope(status="ok", data=_account_response(account))


@router.post("/2fa/disable", response_model=Envelope)
async def request_two_factor_disable(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.request_two_factor_disable(principal.account_id)
    return Envelope(status="ok", data=MessageResponse(message="confirmation code sent"))


@router.post("/2fa/disable/confirm", response_model=Envelope)
async def confirm_two_factor_disable(
    body: CodeRequest, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    account = await runtime.auth.confirm_two_factor_disable(principal.account_id, body.code)
    return Envelope(status="ok", data=_account_response(account))


# -- account disable --------------------------------------------------------


@router.post("/account/disable", response_model=Envelope)
async def request_account_disable(principal: Principal = Depends(get_principal)):
    runtime = get_runtime()
    await runtime.auth.request_account_disable(principal.account_id)
    return Envelope(status="ok", data=MessageResponse(message="confirmation code sent"))


@router.post("/account/disable/confirm", response_model=Envelope)
async def confirm_account_disable(
    body: CodeRequest, response: Response, principal: Principal = Depends(get_principal)
):
    runtime = get_runtime()
    await runtime.auth.confirm_account_disable(principal.account_id, body.code)
    _clear_session_cookies(response)
    return Envelope(status="ok", data=MessageResponse(message="account disabled"))


# -- oauth ------------------------------------------------------------------


@router.get("/oauth/{provider}")
async def oauth_start(provider: str, redirect: bool = Query(True)):
    """Redirect to the provider's consent page.

    ``?redirect=false`` returns the authorization URL in an envelope instead.
    """
    runtime = get_runtime()
    start = await runtime.auth.start_oauth(provider)
    if not redirect:
        return Envelope(status="ok", data=OAuthStartResponse(**start))
    return RedirectResponse(start["authorization_url"], status_code=302)


@router.get("/oauth/{provider}/callback")
async def oauth_callback(
    provider: str,
    request: Request,
    code: Optional[str] = Query(None, max_length=2048),
    state: Optional[str] = Query(None, max_length=256),
):
    runtime = get_runtime()
    issued = await runtime.auth.complete_oauth(
        provider, code, state, _fingerprint(request)
    )
    target = f"{runtime.settings.frontend_url}?{urlencode({'token': issued.access_token})}"
    response = RedirectResponse(target, status_code=302)
    _apply_session_cookies(response, issued)
    return response
