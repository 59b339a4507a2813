import smtplib

from hackauth.config import Settings
from hackauth.service.notifier import Notifier


class _RefusingSMTP:
    def __init__(self, *args, **kwargs):
        raise ConnectionRefusedError("connection refused")


class TestNotifier:
    def test_unconfigured_notifier_logs_instead_of_sending(self):
        notifier = Notifier()
        assert notifier.is_configured is False
        assert notifier._send_email("ada@example.com", "subject", "body") is True

    def test_from_settings(self):
        settings = Settings(
            jwt_secret="x" * 40,
            smtp_host="smtp.example.com",
            email_from_address="noreply@example.com",
            frontend_url="https://hack.example.com/",
        )
        notifier = Notifier.from_settings(settings)

        assert notifier.is_configured is True
        assert notifier.frontend_url == "https://hack.example.com"

    def test_redacts_addresses(self):
        assert Notifier()._redact_email("ada@example.com") == "ad***@example.com"
        assert Notifier()._redact_email("nonsense") == "redacted"

    def test_smtp_failure_is_reported_not_raised(self, monkeypatch):
        notifier = Notifier(smtp_host="smtp.example.com", from_email="noreply@example.com")
        monkeypatch.setattr(smtplib, "SMTP", _RefusingSMTP)

        assert notifier._send_email("ada@example.com", "subject", "body") is False

    async def test_sends_run_in_background(self, monkeypatch):
        notifier = Notifier()
        sent = []
        monkeypatch.setattr(
            notifier, "_send_email", lambda to, subject, body: sent.append((to, subject)) or True
        )

        notifier.send_password_changed("ada@example.com")
        await notifier.drain()

        assert sent == [("ada@example.com", "Your password was changed")]

    def test_reset_link_points_at_frontend(self, notifier):
        notifier.frontend_url = "https://hack.example.com"
        notifier.send_password_reset("ada@example.com", "abc.def")

        assert "https://hack.example.com/reset-password?token=abc.def" in notifier.messages[0]["body"]
        assert notifier.last_reset_token() == "abc.def"
