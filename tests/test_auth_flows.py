"""Orchestrated auth flows against the in-memory store and in-process cache."""

import threading

import pytest

from hackauth.config import Settings
from hackauth.service.auth import PASSWORD_RESET_REQUESTED_MESSAGE, AuthService
from hackauth.service.errors import (
    AuthenticationError,
    ForbiddenError,
    RateLimitedError,
    UnavailableError,
    ValidationError,
)
from hackauth.service.fingerprint import RequestFingerprint
from hackauth.service.passwords import PasswordHasher
from hackauth.storage.memory import MemoryStore
from hackauth.storage.models import SessionStatus

EMAIL = "ada@example.com"
PASSWORD = "CorrectHorse1!"


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        test_mode=True,
        login_max_failures=3,
        code_max_attempts=3,
    )


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def auth(store, settings, notifier):
    return AuthService(
        store,
        None,
        settings,
        hasher=PasswordHasher(time_cost=1, memory_cost=8, parallelism=1),
        notifier=notifier,
    )


async def _register_and_login(auth):
    account = await auth.register("Ada", EMAIL, PASSWORD)
    result = await auth.login(EMAIL, PASSWORD)
    return account, result.session


class TestRegistration:
    async def test_register_sends_verification_code(self, auth, notifier):
        account = await auth.register("Ada", EMAIL, PASSWORD)

        assert account.email_verified is False
        assert notifier.subjects() == ["Verify your email address"]
        assert notifier.last_code(EMAIL) is not None

    async def test_verify_email(self, auth, notifier):
        account = await auth.register("Ada", EMAIL, PASSWORD)
        verified = await auth.verify_email(account.id, notifier.last_code(EMAIL))

        assert verified.email_verified is True
        with pytest.raises(ValidationError):
            await auth.send_email_verification(account.id)

    async def test_wrong_verification_code(self, auth, notifier):
        account = await auth.register("Ada", EMAIL, PASSWORD)
        code = notifier.last_code(EMAIL)
        wrong = "000000" if code != "000000" else "111111"

        with pytest.raises(ValidationError) as excinfo:
            await auth.verify_email(account.id, wrong)
        assert excinfo.value.message == "invalid or expired code"
        assert (await auth.verify_email(account.id, code)).email_verified is True

    async def test_register_survives_cache_outage(self, auth, notifier, monkeypatch):
        async def _down(*args, **kwargs):
            raise UnavailableError("cache unavailable")

        monkeypatch.setattr(auth.codes, "put", _down)
        account = await auth.register("Ada", EMAIL, PASSWORD)

        assert account.email == EMAIL
        assert notifier.messages == []


class TestLogin:
    async def test_login_issues_session(self, auth, store):
        fp = RequestFingerprint(ip_address="203.0.113.7", device_type="desktop", browser="Chrome", os="Windows")
        await auth.register("Ada", EMAIL, PASSWORD)
        result = await auth.login("ADA@example.com", PASSWORD, fp)

        assert result.requires_two_factor is False
        assert result.session is not None
        session = store.get_session(result.session.session_id)
        assert session.ip_address == "203.0.113.7"
        assert (await auth.me(result.account.id)).username == "ada"

    async def test_wrong_password(self, auth):
        await auth.register("Ada", EMAIL, PASSWORD)
        with pytest.raises(AuthenticationError) as excinfo:
            await auth.login(EMAIL, "wrong-password")
        assert excinfo.value.message == "invalid credentials"

    async def test_repeated_failures_lock_identifier(self, auth):
        await auth.register("Ada", EMAIL, PASSWORD)
        for _ in range(3):
            with pytest.raises(AuthenticationError):
                await auth.login(EMAIL, "wrong-password")

        with pytest.raises(RateLimitedError):
            await auth.login(EMAIL, PASSWORD)

    async def test_success_resets_failure_count(self, auth):
        await auth.register("Ada", EMAIL, PASSWORD)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth.login(EMAIL, "wrong-password")
        await auth.login(EMAIL, PASSWORD)
        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth.login(EMAIL, "wrong-password")

        assert (await auth.login(EMAIL, PASSWORD)).session is not None


class TestSessionLifecycle:
    async def test_refresh_and_logout(self, auth, store):
        _, issued = await _register_and_login(auth)
        renewed = await auth.refresh(issued.refresh_token, issued.session_id)

        await auth.logout(renewed.refresh_token, renewed.session_id)
        assert store.get_session(issued.session_id).status == SessionStatus.REVOKED

        with pytest.raises(ValidationError) as excinfo:
            await auth.logout(renewed.refresh_token, renewed.session_id)
        assert excinfo.value.message == "session not found or already logged out"

    async def test_refresh_requires_cookie_values(self, auth):
        with pytest.raises(ValidationError):
            await auth.refresh(None, "sid")
        with pytest.raises(ValidationError):
            await auth.refresh("token", None)

    async def test_logout_rejects_mismatched_session(self, auth):
        _, issued = await _register_and_login(auth)
        with pytest.raises(ValidationError):
            await auth.logout(issued.refresh_token, "some-other-session")

    async def test_logout_all(self, auth):
        account, _ = await _register_and_login(auth)
        await auth.login(EMAIL, PASSWORD)

        assert await auth.logout_all(account.id) == 2
        assert await auth.list_sessions(account.id) == []


class TestTwoFactor:
    async def _enable(self, auth, notifier, account_id):
        await auth.request_two_factor_enable(account_id)
        return await auth.confirm_two_factor_enable(account_id, notifier.last_code(EMAIL))

    async def test_enable_then_login_requires_code(self, auth, notifier):
        account, _ = await _register_and_login(auth)
        enabled = await self._enable(auth, notifier, account.id)
        assert enabled.two_factor_enabled is True

        challenge = await auth.login(EMAIL, PASSWORD)
        assert challenge.requires_two_factor is True
        assert challenge.session is None
        assert challenge.challenge_id

        result = await auth.verify_login_two_factor(challenge.challenge_id, notifier.last_code(EMAIL))
        assert result.session is not None

    async def test_login_code_is_single_use(self, auth, notifier):
        account, _ = await _register_and_login(auth)
        await self._enable(auth, notifier, account.id)
        challenge = await auth.login(EMAIL, PASSWORD)
        code = notifier.last_code(EMAIL)
        await auth.verify_login_two_factor(challenge.challenge_id, code)

        with pytest.raises(AuthenticationError) as excinfo:
            await auth.verify_login_two_factor(challenge.challenge_id, code)
        assert excinfo.value.message == "invalid code"

    async def test_code_attempts_exhausted(self, auth, notifier):
        account, _ = await _register_and_login(auth)
        await self._enable(auth, notifier, account.id)
        challenge = await auth.login(EMAIL, PASSWORD)
        code = notifier.last_code(EMAIL)
        wrong = "000000" if code != "000000" else "111111"

        for _ in range(2):
            with pytest.raises(AuthenticationError):
                await auth.verify_login_two_factor(challenge.challenge_id, wrong)
        with pytest.raises(RateLimitedError):
            await auth.verify_login_two_factor(challenge.challenge_id, wrong)
        # The correct code is gone too once the budget is spent
        with pytest.raises(RateLimitedError):
            await auth.verify_login_two_factor(challenge.challenge_id, code)

    async def test_enable_twice_rejected(self, auth, notifier):
        account, _ = await _register_and_login(auth)
        await self._enable(auth, notifier, account.id)
        with pytest.raises(ValidationError):
            await auth.request_two_factor_enable(account.id)

    async def test_disable(self, auth, notifier):
        account, _ = await _register_and_login(auth)
        with pytest.raises(ValidationError):
            await auth.request_two_factor_disable(account.id)

        await self._enable(auth, notifier, account.id)
        await auth.request_two_factor_disable(account.id)
        disabled = await auth.confirm_two_factor_disable(account.id, notifier.last_code(EMAIL))

        assert disabled.two_factor_enabled is False
        assert (await auth.login(EMAIL, PASSWORD)).session is not None


class TestPasswordReset:
    async def test_unknown_email_gets_same_message(self, auth, notifier):
        message = await auth.request_password_reset("nobody@example.com")
        assert message == PASSWORD_RESET_REQUESTED_MESSAGE
        assert notifier.messages == []

    async def test_reset_flow_revokes_sessions(self, auth, notifier, store):
        account, issued = await _register_and_login(auth)
        message = await auth.request_password_reset(EMAIL)
        assert message == PASSWORD_RESET_REQUESTED_MESSAGE

        token = notifier.last_reset_token(EMAIL)
        await auth.reset_password(token, "BatteryStaple2!")

        assert store.get_session(issued.session_id).revoke_reason == "password_reset"
        assert (await auth.login(EMAIL, "BatteryStaple2!")).session is not None
        assert "Your password was changed" in notifier.subjects()

    async def test_reset_token_single_use(self, auth, notifier):
        await auth.register("Ada", EMAIL, PASSWORD)
        await auth.request_password_reset(EMAIL)
        token = notifier.last_reset_token(EMAIL)
        await auth.reset_password(token, "BatteryStaple2!")

        with pytest.raises(ValidationError) as excinfo:
            await auth.reset_password(token, "AnotherPass3!")
        assert excinfo.value.message == "invalid or expired reset token"

    async def test_tampered_reset_token(self, auth, notifier):
        await auth.register("Ada", EMAIL, PASSWORD)
        await auth.request_password_reset(EMAIL)
        token = notifier.last_reset_token(EMAIL)
        secret_part, _, sealed = token.partition(".")

        for bad in ("", "no-dot", f"{secret_part}.garbage", f"wrong.{sealed}"):
            with pytest.raises(ValidationError):
                await auth.reset_password(bad, "BatteryStaple2!")


class TestChangePassword:
    async def test_keeps_current_session_only(self, auth, store):
        account, current = await _register_and_login(auth)
        other = (await auth.login(EMAIL, PASSWORD)).session

        await auth.change_password(account.id, PASSWORD, "BatteryStaple2!", keep_session_id=current.session_id)

        assert store.get_session(current.session_id).status != SessionStatus.REVOKED
        assert store.get_session(other.session_id).revoke_reason == "password_changed"

    async def test_wrong_current_password(self, auth):
        account, _ = await _register_and_login(auth)
        with pytest.raises(ForbiddenError):
            await auth.change_password(account.id, "nope", "BatteryStaple2!")


class TestAccountDisable:
    async def test_disable_revokes_and_blocks_login(self, auth, notifier, store):
        account, issued = await _register_and_login(auth)
        await auth.request_account_disable(account.id)
        await auth.confirm_account_disable(account.id, notifier.last_code(EMAIL))

        assert store.get_account(account.id).disabled_at is not None
        assert store.get_session(issued.session_id).revoke_reason == "account_disabled"
        with pytest.raises(AuthenticationError):
            await auth.login(EMAIL, PASSWORD)
        assert notifier.subjects()[-1] == "Your account has been disabled"

    async def test_guard_rejects_disabled_account_token(self, auth, notifier):
        account, issued = await _register_and_login(auth)
        await auth.request_account_disable(account.id)
        await auth.confirm_account_disable(account.id, notifier.last_code(EMAIL))

        with pytest.raises(AuthenticationError):
            await auth.mandatory_guard.check(f"Bearer {issued.access_token}")


class ThreadRecordingHasher(PasswordHasher):
    """Records which thread each hash and verify call ran on."""

    def __init__(self):
        super().__init__(time_cost=1, memory_cost=8, parallelism=1)
        self.threads = []

    def hash(self, password):
        self.threads.append(threading.get_ident())
        return super().hash(password)

    def verify(self, password_hash, password):
        self.threads.append(threading.get_ident())
        return super().verify(password_hash, password)


class TestHashingOffEventLoop:
    async def test_password_work_runs_in_worker_threads(self, store, settings, notifier):
        hasher = ThreadRecordingHasher()
        auth = AuthService(store, None, settings, hasher=hasher, notifier=notifier)

        account, _ = await _register_and_login(auth)
        await auth.change_password(account.id, PASSWORD, "BatteryStaple2!")

        assert len(hasher.threads) >= 4
        assert threading.get_ident() not in hasher.threads
