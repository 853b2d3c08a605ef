import json
import smtplib

import httpx
import pytest

from gatekeeper.service.delivery import (
    DeliveryService,
    EmailService,
    SmsService,
    redact_recipient,
    render_code_message,
)
from gatekeeper.storage.models import CodeType


def test_redact_recipient():
    assert redact_recipient("alice@example.com") == "al***@example.com"
    assert redact_recipient("+1 (555) 000-1234") == "***1234"
    assert redact_recipient("n/a") == "redacted"


def test_render_code_message():
    subject, text = render_code_message("482913", CodeType.RESET, 15)
    assert subject == "Your password reset code"
    assert "482913" in text
    assert "15 minutes" in text


def test_unconfigured_email_logs_and_succeeds():
    assert EmailService().send("a@example.com", "hi", "body")


def test_email_smtp_failure_reported(monkeypatch):
    class FailingSMTP:
        def __init__(self, *args, **kwargs):
            raise smtplib.SMTPConnectError(421, "busy")

    monkeypatch.setattr(smtplib, "SMTP", FailingSMTP)
    service = EmailService(smtp_host="smtp.example.com", from_email="no-reply@example.com")
    assert not service.send("a@example.com", "hi", "body")


def test_email_sent_over_starttls(monkeypatch):
    sent = []

    class FakeSMTP:
        def __init__(self, host, port, timeout):
            self.host = host

        def __enter__(self):
            return self

        def __exit__(self, *exc):
            return False

        def starttls(self, context):
            sent.append("starttls")

        def login(self, user, password):
            sent.append(("login", user))

        def sendmail(self, sender, recipient, message):
            sent.append(("sendmail", sender, recipient))

    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    service = EmailService(
        smtp_host="smtp.example.com",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="no-reply@example.com",
    )
    assert service.send("a@example.com", "hi", "body")
    assert sent == ["starttls", ("login", "mailer"), ("sendmail", "no-reply@example.com", "a@example.com")]


async def test_sms_gateway_posts_json():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["auth"] = request.headers.get("Authorization")
        seen["body"] = json.loads(request.content)
        return httpx.Response(202, json={"queued": True})

    service = SmsService(
        gateway_url="https://sms.example.com/send",
        token="tok",
        from_number="+15550000000",
        transport=httpx.MockTransport(handler),
    )
    assert await service.send("+15551112222", "code 123456")
    assert seen["auth"] == "Bearer tok"
    assert seen["body"] == {"to": "+15551112222", "from": "+15550000000", "body": "code 123456"}


async def test_sms_gateway_rejection_reported():
    service = SmsService(
        gateway_url="https://sms.example.com/send",
        from_number="+15550000000",
        transport=httpx.MockTransport(lambda request: httpx.Response(500)),
    )
    assert not await service.send("+15551112222", "code")


async def test_delivery_service_routes_by_channel():
    service = DeliveryService(EmailService(), SmsService())
    email = await service.send("email", "a@example.com", "text", subject="s")
    sms = await service.send("sms", "+15551112222", "text")
    assert email.sent and email.channel == "email"
    assert sms.sent and sms.channel == "sms"
    with pytest.raises(ValueError):
        await service.send("fax", "x", "text")
