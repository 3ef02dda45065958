from __future__ import annotations

import asyncio
import functools
import smtplib
import ssl
from concurrent.futures import Executor
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from html import escape
from typing import Any, Callable, Optional

from tenantauth.logging import get_logger

logger = get_logger(__name__)

_HTML_TEMPLATE = """
<!DOCTYPE html>
<html>
<head>
    <meta charset="utf-8">
    <style>
        body {{ font-family: -apple-system, BlinkMacSystemFont, 'Segoe UI', Roboto, sans-serif; line-height: 1.6; color: #1f2933; }}
        .container {{ max-width: 600px; margin: 0 auto; padding: 40px 20px; }}
        .button {{ display: inline-block; background: #2563eb; color: white; padding: 12px 24px; border-radius: 8px; text-decoration: none; font-weight: 600; }}
        .footer {{ margin-top: 40px; font-size: 12px; color: #5b6470; }}
    </style>
</head>
<body>
    <div class="container">
        <h1>{title}</h1>
        <p>{intro}</p>
        <p style="margin: 30px 0;">
            <a href="{url}" class="button">{cta}</a>
        </p>
        {note}
        <div class="footer">
            <p>{brand}</p>
            <p>If the button doesn't work, copy and paste this URL: {url}</p>
        </div>
    </div>
</body>
</html>
"""


class EmailService:
    """SMTP transport for transactional auth and membership emails.

    Sends verification, password reset, invitation and member-added
    messages. When SMTP is not configured the message is logged instead of
    sent (dev mode). Every send returns True/False and never raises for
    transport failures.
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
        from_name: str = "TenantAuth",
        base_url: Optional[str] = None,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.base_url = (base_url or "http://localhost:3000").rstrip("/")

    @property
    def is_configured(self) -> bool:
        """Check if email sending is properly configured."""
        return bool(self.smtp_host and self.from_email)

    @staticmethod
    def _redact_email(email: str) -> str:
        """Redact an email address for logging to avoid PII leakage."""
        if "@" not in email:
            return "redacted"
        local, domain = email.split("@", 1)
        return f"{local[:2]}***@{domain}"

    def _render(
        self, *, title: str, intro: str, cta: str, url: str, note: str = ""
    ) -> tuple[str, str]:
        html_body = _HTML_TEMPLATE.format(
            title=escape(title),
            intro=escape(intro),
            cta=escape(cta),
            url=escape(url, quote=True),
            note=f"<p>{escape(note)}</p>" if note else "",
            brand=escape(self.from_name),
        )
        text_parts = [title, "", intro, "", url, ""]
        if note:
            text_parts += [note, ""]
        text_parts += ["---", self.from_name, ""]
        return html_body, "\n".join(text_parts)

    def _send_email(
        self,
        to_email: str,
        subject: str,
        html_body: str,
        text_body: Optional[str] = None,
    ) -> bool:
        """Send an email via SMTP.

        Returns True if sent successfully, False otherwise.
        """
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=self._redact_email(to_email),
                subject=subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            if text_body:
                msg.attach(MIMEText(text_body, "plain"))
            msg.attach(MIMEText(html_body, "html"))

            context = ssl.create_default_context()
            logger.debug(
                "email_connecting",
                host=self.smtp_host,
                port=self.smtp_port,
                use_tls=self.smtp_use_tls,
                to=self._redact_email(to_email),
            )

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

            logger.info("email_sent", to=self._redact_email(to_email), subject=subject)
            return True

        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error=str(e),
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused",
                to=self._redact_email(to_email),
                error=str(e),
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_transport_error",
                to=self._redact_email(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    def send_verification_email(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/verify-email?token={token}"
        html_body, text_body = self._render(
            title="Verify your email",
            intro="Thanks for signing up! Please confirm your email address.",
            cta="Verify Email",
            url=url,
        )
        return self._send_email(
            to_email, f"Verify your {self.from_name} account", html_body, text_body
        )

    def send_password_reset_email(self, to_email: str, token: str) -> bool:
        url = f"{self.base_url}/reset-password?token={token}"
        html_body, text_body = self._render(
            title="Reset your password",
            intro="We received a request to reset your password.",
            cta="Reset Password",
            url=url,
            note="This link will expire in 1 hour. If you didn't request this, you can ignore this email.",
        )
        return self._send_email(
            to_email, f"Reset your {self.from_name} password", html_body, text_body
        )

    def send_invitation_email(
        self,
        to_email: str,
        *,
        inviter_name: str,
        organization_name: str,
        role: str,
        token: str,
    ) -> bool:
        url = f"{self.base_url}/accept-invite?token={token}"
        html_body, text_body = self._render(
            title="You've been invited!",
            intro=(
                f"{inviter_name} has invited you to join {organization_name} "
                f"as a {role}."
            ),
            cta="Accept Invitation",
            url=url,
            note="This invitation will expire in 7 days.",
        )
        return self._send_email(
            to_email,
            f"You've been invited to join {organization_name}",
            html_body,
            text_body,
        )

    def send_member_added_email(
        self,
        to_email: str,
        *,
        inviter_name: str,
        organization_name: str,
        role: str,
    ) -> bool:
        html_body, text_body = self._render(
            title=f"You've been added to {organization_name}",
            intro=f"{inviter_name} added you to {organization_name} as a {role}.",
            cta="Open Dashboard",
            url=f"{self.base_url}/app",
        )
        return self._send_email(
            to_email, f"You've been added to {organization_name}", html_body, text_body
        )


class EmailDispatcher:
    """Fire-and-forget wrapper around :class:`EmailService`.

    ``dispatch`` hands the blocking SMTP send to an executor and returns
    immediately. Exceptions and ``False`` results are logged with the
    operation and recipient and are never raised to the caller. ``drain``
    waits for in-flight sends (shutdown, tests).
    """

    def __init__(self, email: EmailService, *, executor: Optional[Executor] = None) -> None:
        self.email = email
        self._executor = executor
        self._pending: set[asyncio.Future] = set()

    @property
    def pending(self) -> int:
        return len(self._pending)

    def dispatch(
        self,
        operation: str,
        recipient: str,
        send: Callable[..., Any],
        *args: Any,
        **kwargs: Any,
    ) -> Optional[asyncio.Future]:
        call = functools.partial(send, *args, **kwargs)
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # Synchronous callers (scripts) send inline, still without raising
            try:
                result = call()
            except Exception as exc:
                self._log_failure(operation, recipient, exc)
            else:
                self._log_result(operation, recipient, result)
            return None

        future = loop.run_in_executor(self._executor, call)
        self._pending.add(future)
        future.add_done_callback(functools.partial(self._on_done, operation, recipient))
        return future

    def _on_done(self, operation: str, recipient: str, future: asyncio.Future) -> None:
        self._pending.discard(future)
        if future.cancelled():
            logger.warning("email_dispatch_cancelled", operation=operation, recipient=recipient)
            return
        exc = future.exception()
        if exc is not None:
            self._log_failure(operation, recipient, exc)
            return
        self._log_result(operation, recipient, future.result())

    @staticmethod
    def _log_failure(operation: str, recipient: str, exc: BaseException) -> None:
        logger.error(
            "email_dispatch_failed",
            operation=operation,
            recipient=recipient,
            error_type=type(exc).__name__,
            error=str(exc),
        )

    @staticmethod
    def _log_result(operation: str, recipient: str, result: Any) -> None:
        if result is False:
            logger.warning(
                "email_dispatch_failed",
                operation=operation,
                recipient=recipient,
                error="send_returned_false",
            )
        else:
            logger.info("email_dispatched", operation=operation, recipient=recipient)

    async def drain(self) -> None:
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
            # Let done callbacks run before re-checking
            await asyncio.sleep(0)

    def send_verification_email(self, to_email: str, token: str) -> Optional[asyncio.Future]:
        return self.dispatch(
            "verification_email", to_email, self.email.send_verification_email, to_email, token
        )

    def send_password_reset_email(self, to_email: str, token: str) -> Optional[asyncio.Future]:
        return self.dispatch(
            "password_reset_email", to_email, self.email.send_password_reset_email, to_email, token
        )

    def send_invitation_email(self, to_email: str, **kwargs: Any) -> Optional[asyncio.Future]:
        return self.dispatch(
            "invitation_email", to_email, self.email.send_invitation_email, to_email, **kwargs
        )

    def send_member_added_email(self, to_email: str, **kwargs: Any) -> Optional[asyncio.Future]:
        return self.dispatch(
            "member_added_email", to_email, self.email.send_member_added_email, to_email, **kwargs
        )
