from __future__ import annotations

import asyncio
import smtplib
import ssl
from email.mime.text import MIMEText
from typing import Optional, Set

from hackauth.config import Settings
from hackauth.logging import get_logger

logger = get_logger(__name__)


class Notifier:
    """Transactional email for the auth flows.

    Sends are fire-and-forget: callers never wait on SMTP and a delivery
    failure is logged, not raised. Without SMTP configuration the message is
    logged instead of sent (dev mode).
    """

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Hackathon Platform",
        frontend_url: str = "http://localhost:3000",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.frontend_url = frontend_url.rstrip("/")
        self._pending: Set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings: Settings) -> "Notifier":
        return cls(
            smtp_host=settings.smtp_host,
            smtp_port=settings.smtp_port,
            smtp_user=settings.smtp_user,
            smtp_password=settings.smtp_password,
            smtp_use_tls=settings.smtp_use_tls,
            from_email=settings.email_from_address,
            from_name=settings.email_from_name,
            frontend_url=settings.frontend_url,
        )

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _redact_email(self, email: str) -> str:
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    # -- messages -----------------------------------------------------------

    def send_email_verification(self, to_email: str, code: str) -> None:
        self._dispatch(
            to_email,
            "Verify your email address",
            f"Your email verification code is {code}.\n\n"
            "It expires in 5 minutes. If you did not create an account, ignore this email.",
        )

    def send_password_reset(self, to_email: str, token: str) -> None:
        reset_url = f"{self.frontend_url}/reset-password?token={token}"
        self._dispatch(
            to_email,
            "Reset your password",
            "We received a request to reset your password. Visit the link below "
            f"to choose a new one:\n\n{reset_url}\n\n"
            "This link expires in 15 minutes. If you didn't request this, you can "
            "safely ignore this email.",
        )

    def send_password_changed(self, to_email: str) -> None:
        self._dispatch(
            to_email,
            "Your password was changed",
            "The password on your account was just changed and all other sessions "
            "were signed out. If this wasn't you, reset your password immediately.",
        )

    def send_two_factor_code(self, to_email: str, code: str, action: str) -> None:
        self._dispatch(
            to_email,
            "Your security code",
            f"Your code to {action} is {code}.\n\nIt expires in 5 minutes. "
            "Never share this code with anyone.",
        )

    def send_two_factor_status(self, to_email: str, enabled: bool) -> None:
        state = "enabled" if enabled else "disabled"
        self._dispatch(
            to_email,
            f"Two-factor authentication {state}",
            f"Two-factor authentication has been {state} on your account. "
            "If you didn't make this change, contact support immediately.",
        )

    def send_account_disabled(self, to_email: str) -> None:
        self._dispatch(
            to_email,
            "Your account has been disabled",
            "Your account was disabled at your request and every session was "
            "signed out.",
        )

    # -- delivery -----------------------------------------------------------

    def _dispatch(self, to_email: str, subject: str, text_body: str) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._send_email(to_email, subject, text_body)
            return
        task = loop.create_task(
            asyncio.to_thread(self._send_email, to_email, subject, text_body)
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def _send_email(self, to_email: str, subject: str, text_body: str) -> bool:
        """Send one plain-text email via SMTP; return whether it went out."""
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        msg = MIMEText(text_body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=self._redact_email(to_email), error=str(e)
            )
            return False
        except (smtplib.SMTPException, ssl.SSLError, OSError) as e:
            logger.error(
                "email_send_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
        return True

    async def drain(self) -> None:
        """Wait for in-flight sends; used on shutdown."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
