"""Tests for email rendering, SMTP transport and fire-and-forget dispatch."""

import smtplib
from unittest.mock import MagicMock, patch

from tenantauth.service.email import EmailDispatcher, EmailService


def _smtp_service(**kwargs):
    return EmailService(
        smtp_host="smtp.test",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@app.test",
        base_url="https://app.test/",
        **kwargs,
    )


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self):
        service = EmailService()

        with patch("tenantauth.service.email.smtplib.SMTP") as smtp:
            assert service.send_verification_email("alice@x.com", "abc") is True

        smtp.assert_not_called()
        assert not service.is_configured

    def test_dev_mode_log_omits_link_tokens(self):
        service = EmailService()

        with patch("tenantauth.service.email.logger") as logger:
            service.send_password_reset_email("alice@x.com", "raw-reset-token")
            service.send_verification_email("alice@x.com", "raw-verify-token")

        assert logger.info.call_count == 2
        for call in logger.info.call_args_list:
            logged = " ".join(str(value) for value in call.kwargs.values())
            assert "raw-" not in logged
            assert "alice@x.com" not in logged

    def test_redact_email(self):
        assert EmailService._redact_email("alice@x.com") == "al***@x.com"
        assert EmailService._redact_email("nope") == "redacted"

    def test_starttls_send(self):
        service = _smtp_service()

        with patch("tenantauth.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            assert service.send_password_reset_email("alice@x.com", "tok123") is True

        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "secret")
        from_addr, to_addr, body = server.sendmail.call_args.args
        assert (from_addr, to_addr) == ("noreply@app.test", "alice@x.com")
        assert "https://app.test/reset-password?token=tok123" in body

    def test_smtp_failure_returns_false(self):
        service = _smtp_service()

        with patch("tenantauth.service.email.smtplib.SMTP") as smtp:
            server = smtp.return_value.__enter__.return_value
            server.sendmail.side_effect = smtplib.SMTPServerDisconnected("gone")
            assert service.send_verification_email("alice@x.com", "abc") is False

    def test_invitation_escapes_html(self):
        service = _smtp_service()

        with patch.object(service, "_send_email", return_value=True) as send:
            service.send_invitation_email(
                "bob@x.com",
                inviter_name="<script>",
                organization_name="Acme",
                role="MEMBER",
                token="t0k",
            )

        to_email, subject, html_body, text_body = send.call_args.args
        assert subject == "You've been invited to join Acme"
        assert "<script>" not in html_body
        assert "/accept-invite?token=t0k" in text_body


class TestEmailDispatcher:
    async def test_failure_is_logged_not_raised(self):
        """Delivery errors never reach the caller."""
        service = EmailService()
        dispatcher = EmailDispatcher(service)

        with patch.object(service, "_send_email", side_effect=RuntimeError("smtp down")), patch(
            "tenantauth.service.email.logger"
        ) as log:
            future = dispatcher.send_verification_email("alice@x.com", "abc")
            assert future is not None
            await dispatcher.drain()

        assert dispatcher.pending == 0
        log.error.assert_called_once()
        assert log.error.call_args.args[0] == "email_dispatch_failed"
        assert log.error.call_args.kwargs["operation"] == "verification_email"

    async def test_false_result_is_logged(self):
        service = EmailService()
        dispatcher = EmailDispatcher(service)

        with patch.object(service, "_send_email", return_value=False), patch(
            "tenantauth.service.email.logger"
        ) as log:
            dispatcher.send_password_reset_email("alice@x.com", "abc")
            await dispatcher.drain()

        log.warning.assert_called_once()
        assert log.warning.call_args.kwargs["error"] == "send_returned_false"

    async def test_success_is_logged(self):
        service = EmailService()
        dispatcher = EmailDispatcher(service)

        with patch.object(service, "_send_email", return_value=True), patch(
            "tenantauth.service.email.logger"
        ) as log:
            dispatcher.send_member_added_email(
                "dave@x.com", inviter_name="Alice", organization_name="Acme", role="ADMIN"
            )
            await dispatcher.drain()

        log.info.assert_called_once_with(
            "email_dispatched", operation="member_added_email", recipient="dave@x.com"
        )

    def test_without_event_loop_sends_inline(self):
        service = EmailService()
        send = MagicMock(side_effect=RuntimeError("smtp down"))
        dispatcher = EmailDispatcher(service)

        assert dispatcher.dispatch("verification_email", "alice@x.com", send, "x") is None
        send.assert_called_once_with("x")
