"""Tests for the SMS and email delivery gateways."""
import smtplib
from unittest.mock import MagicMock, patch

import httpx
import pytest

from authgate.config import Settings, SmsProvider
from authgate.service.delivery import (
    DeliveryError,
    LogCodeDelivery,
    TwilioSmsDelivery,
    build_delivery,
)
from authgate.service.email import EmailDelivery, build_email_delivery

from conftest import TEST_JWT_SECRET

PHONE = "+5511999999999"


def _twilio(handler):
    client = httpx.AsyncClient(
        base_url="https://twilio.test/2010-04-01",
        transport=httpx.MockTransport(handler),
        auth=("AC123", "secret"),
    )
    return TwilioSmsDelivery(
        account_sid="AC123", auth_token="secret", from_number="+15550001111", client=client
    )


class TestTwilioSmsDelivery:
    async def test_posts_form_and_returns_sid(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["path"] = request.url.path
            seen["body"] = request.content.decode()
            return httpx.Response(201, json={"sid": "SM42"})

        gateway = _twilio(handler)

        assert await gateway.send(PHONE, "hello") == "SM42"
        assert seen["path"] == "/2010-04-01/Accounts/AC123/Messages.json"
        assert "To=%2B5511999999999" in seen["body"]
        assert "Body=hello" in seen["body"]
        await gateway.close()

    async def test_provider_rejection(self):
        gateway = _twilio(lambda request: httpx.Response(400, json={"message": "bad"}))

        with pytest.raises(DeliveryError, match="twilio_status_400"):
            await gateway.send(PHONE, "hello")

    async def test_network_failure(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(DeliveryError, match="twilio_http_error"):
            await _twilio(handler).send(PHONE, "hello")

    async def test_missing_sid(self):
        gateway = _twilio(lambda request: httpx.Response(201, json={}))

        with pytest.raises(DeliveryError, match="missing_message_sid"):
            await gateway.send(PHONE, "hello")

    async def test_empty_destination(self):
        gateway = _twilio(lambda request: httpx.Response(201, json={"sid": "x"}))

        with pytest.raises(DeliveryError):
            await gateway.send("", "hello")


class TestLogCodeDelivery:
    async def test_logs_masked_destination(self):
        with patch("authgate.service.delivery.logger") as mock_logger:
            delivery_id = await LogCodeDelivery().send(PHONE, "AuthGate - code: 123456.")

        assert delivery_id.startswith("log-")
        kwargs = mock_logger.info.call_args[1]
        assert PHONE not in kwargs["destination"]
        assert "123456" not in str(mock_logger.info.call_args)


class TestBuildDelivery:
    def test_defaults_to_log(self):
        settings = Settings(test_mode=True, jwt_secret=TEST_JWT_SECRET)
        assert isinstance(build_delivery(settings), LogCodeDelivery)

    def test_twilio_requires_credentials(self):
        settings = Settings(
            test_mode=True, jwt_secret=TEST_JWT_SECRET, sms_provider=SmsProvider.TWILIO
        )
        with pytest.raises(RuntimeError):
            build_delivery(settings)

    def test_twilio_configured(self):
        settings = Settings(
            test_mode=True,
            jwt_secret=TEST_JWT_SECRET,
            sms_provider="twilio",
            twilio_account_sid="AC1",
            twilio_auth_token="tok",
            twilio_from_number="+15550001111",
        )
        assert isinstance(build_delivery(settings), TwilioSmsDelivery)


class TestEmailDelivery:
    async def test_unconfigured_logs_instead_of_sending(self):
        gateway = EmailDelivery()

        with patch("authgate.service.email.smtplib.SMTP") as mock_smtp:
            delivery_id = await gateway.send("ana@example.com", "reset token")

        assert delivery_id.startswith("log-")
        mock_smtp.assert_not_called()

    async def test_sends_over_starttls(self):
        gateway = EmailDelivery(
            smtp_host="smtp.test",
            smtp_user="mailer",
            smtp_password="pw",
            from_email="noreply@example.com",
        )
        server = MagicMock()

        with patch("authgate.service.email.smtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.__enter__.return_value = server
            delivery_id = await gateway.send("ana@example.com", "reset token")

        assert delivery_id
        server.starttls.assert_called_once()
        server.login.assert_called_once_with("mailer", "pw")
        from_addr, to_addr, _ = server.sendmail.call_args[0]
        assert (from_addr, to_addr) == ("noreply@example.com", "ana@example.com")

    async def test_connection_failure_becomes_delivery_error(self):
        gateway = EmailDelivery(smtp_host="smtp.test", from_email="noreply@example.com")

        with patch(
            "authgate.service.email.smtplib.SMTP", side_effect=ConnectionRefusedError()
        ):
            with pytest.raises(DeliveryError, match="smtp_unreachable"):
                await gateway.send("ana@example.com", "reset token")

    async def test_auth_failure_becomes_delivery_error(self):
        gateway = EmailDelivery(
            smtp_host="smtp.test",
            smtp_user="mailer",
            smtp_password="bad",
            from_email="noreply@example.com",
        )
        server = MagicMock()
        server.login.side_effect = smtplib.SMTPAuthenticationError(535, b"denied")

        with patch("authgate.service.email.smtplib.SMTP") as mock_smtp:
            mock_smtp.return_value.__enter__.return_value = server
            with pytest.raises(DeliveryError, match="smtp_auth_failed"):
                await gateway.send("ana@example.com", "reset token")

    def test_built_from_settings(self):
        settings = Settings(
            test_mode=True,
            jwt_secret=TEST_JWT_SECRET,
            smtp_host="smtp.test",
            email_from_address="noreply@example.com",
        )
        gateway = build_email_delivery(settings)

        assert gateway.is_configured
        assert gateway.from_name == "AuthGate"
