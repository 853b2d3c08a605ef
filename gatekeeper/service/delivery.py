from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from gatekeeper.config import Settings
from gatekeeper.logging import get_logger
from gatekeeper.storage.models import CodeType

logger = get_logger(__name__)

EMAIL = "email"
SMS = "sms"
CHANNELS = (EMAIL, SMS)

_SUBJECTS = {
    CodeType.LOGIN: "Your sign-in verification code",
    CodeType.RESET: "Your password reset code",
    CodeType.PHONE_VERIFICATION: "Your phone verification code",
    CodeType.EMAIL_VERIFICATION: "Verify your email address",
}


def redact_recipient(recipient: str) -> str:
    """Redact an email address or phone number for logging."""
    if "@" in recipient:
        local, domain = recipient.split("@", 1)
        return f"{local[:2]}***@{domain}"
    digits = "".join(ch for ch in recipient if ch.isdigit())
    return f"***{digits[-4:]}" if digits else "redacted"


def render_code_message(code: str, code_type: CodeType, ttl_minutes: int) -> tuple[str, str]:
    """Return ``(subject, text)`` for a one-time code."""
    subject = _SUBJECTS.get(code_type, "Your verification code")
    text = (
        f"Your verification code is {code}. "
        f"It expires in {ttl_minutes} minutes. "
        "If you did not request it, you can ignore this message."
    )
    return subject, text


@dataclass
class DeliveryResult:
    sent: bool
    channel: str
    error: Optional[str] = None


class EmailService:
    """SMTP sender; logs instead of sending when no host is configured."""

    def __init__(
        self,
        *,
        smtp_host: Optional[str] = None,
        smtp_port: int = 587,
        smtp_user: Optional[str] = None,
        smtp_password: Optional[str] = None,
        smtp_use_tls: bool = True,
        from_email: Optional[str] = None,
        from_name: str = "Gatekeeper",
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def send(self, to_email: str, subject: str, text_body: str) -> bool:
        if not self.is_configured:
            logger.info(
                "email_dev_mode",
                to=redact_recipient(to_email),
                subject=subject,
                body_length=len(text_body),
            )
            return True

        msg = MIMEMultipart("alternative")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg.attach(MIMEText(text_body, "plain"))
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
                to=redact_recipient(to_email),
                host=self.smtp_host,
                error_code=getattr(e, "smtp_code", None),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error(
                "email_recipient_refused", to=redact_recipient(to_email), error=str(e)
            )
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_recipient(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=redact_recipient(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error=str(e),
            )
            return False

        logger.info("email_sent", to=redact_recipient(to_email), subject=subject)
        return True


class SmsService:
    """HTTP SMS gateway client; logs instead of sending when unconfigured."""

    def __init__(
        self,
        *,
        gateway_url: Optional[str] = None,
        token: Optional[str] = None,
        from_number: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.gateway_url = gateway_url
        self.token = token
        self.from_number = from_number
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.gateway_url and self.from_number)

    async def send(self, to_phone: str, body: str) -> bool:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_recipient(to_phone), body_length=len(body))
            return True
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                resp = await client.post(
                    self.gateway_url,
                    json={"to": to_phone, "from": self.from_number, "body": body},
                    headers=headers,
                )
                resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_rejected",
                to=redact_recipient(to_phone),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_gateway_unreachable",
                to=redact_recipient(to_phone),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=redact_recipient(to_phone))
        return True


class DeliveryService:
    """Routes outbound messages to the email or SMS transport."""

    def __init__(self, email: EmailService, sms: SmsService) -> None:
        self.email = email
        self.sms = sms

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeliveryService":
        return cls(
            EmailService(
                smtp_host=settings.smtp_host,
                smtp_port=settings.smtp_port,
                smtp_user=settings.smtp_user,
                smtp_password=settings.smtp_password,
                smtp_use_tls=settings.smtp_use_tls,
                from_email=settings.email_from_address,
                from_name=settings.email_from_name,
            ),
            SmsService(
                gateway_url=settings.sms_gateway_url,
                token=settings.sms_gateway_token,
                from_number=settings.sms_from_number,
            ),
        )

    async def send(
        self, channel: str, recipient: str, message: str, *, subject: Optional[str] = None
    ) -> DeliveryResult:
        if channel == EMAIL:
            sent = await asyncio.to_thread(
                self.email.send, recipient, subject or "Notification", message
            )
        elif channel == SMS:
            sent = await self.sms.send(recipient, message)
        else:
            raise ValueError(f"unknown delivery channel: {channel}")
        return DeliveryResult(sent=sent, channel=channel, error=None if sent else "delivery_failed")
