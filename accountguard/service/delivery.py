from __future__ import annotations

import asyncio
import smtplib
import ssl
from dataclasses import dataclass
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from typing import Optional

import httpx

from accountguard.logging import get_logger
from accountguard.storage.models import DeliveryChannel

logger = get_logger(__name__)


@dataclass
class DeliveryContent:
    subject: str
    text: str
    html: Optional[str] = None


def _redact_destination(destination: str) -> str:
    """Redact an email address or phone number for logging."""
    if "@" in destination:
        local, domain = destination.split("@", 1)
        return f"{local[:2]}***@{domain}"
    digits = destination.strip()
    if len(digits) <= 4:
        return "redacted"
    return f"***{digits[-4:]}"


class DeliveryService:
    """Best-effort outbound email/SMS.

    Email goes over SMTP, SMS through an HTTP gateway webhook. When a channel
    is not configured the message is logged instead (dev mode). ``send``
    never raises; it returns whether the message was handed off.
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
        from_name: str = "Account Security",
        sms_gateway_url: Optional[str] = None,
        sms_gateway_token: Optional[str] = None,
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.sms_gateway_url = sms_gateway_url
        self.sms_gateway_token = sms_gateway_token
        self.timeout = timeout

    @property
    def email_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    @property
    def sms_configured(self) -> bool:
        return bool(self.sms_gateway_url)

    async def send(
        self, destination: str, channel: DeliveryChannel, content: DeliveryContent
    ) -> bool:
        if not destination:
            logger.warning("delivery_missing_destination", channel=channel.value)
            return False
        if channel is DeliveryChannel.SMS:
            return await self._send_sms(destination, content)
        return await asyncio.to_thread(self._send_email, destination, content)

    def _send_email(self, to_email: str, content: DeliveryContent) -> bool:
        if not self.email_configured:
            logger.info(
                "email_dev_mode",
                to=_redact_destination(to_email),
                subject=content.subject,
            )
            return True

        try:
            msg = MIMEMultipart("alternative")
            msg["Subject"] = content.subject
            msg["From"] = f"{self.from_name} <{self.from_email}>"
            msg["To"] = to_email
            msg.attach(MIMEText(content.text, "plain"))
            if content.html:
                msg.attach(MIMEText(content.html, "html"))

            context = ssl.create_default_context()
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=self.timeout) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=self.timeout
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, to_email, msg.as_string())

            logger.info("email_sent", to=_redact_destination(to_email), subject=content.subject)
            return True
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=_redact_destination(to_email),
                host=self.smtp_host,
                error=str(e),
            )
            return False
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=_redact_destination(to_email), error=str(e))
            return False
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=_redact_destination(to_email),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        except (ssl.SSLError, OSError) as e:
            logger.error(
                "email_connect_failed",
                to=_redact_destination(to_email),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return False

    async def _send_sms(self, phone: str, content: DeliveryContent) -> bool:
        if not self.sms_configured:
            logger.info("sms_dev_mode", to=_redact_destination(phone), subject=content.subject)
            return True

        headers = {}
        if self.sms_gateway_token:
            headers["Authorization"] = f"Bearer {self.sms_gateway_token}"
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    self.sms_gateway_url,
                    json={"to": phone, "message": content.text},
                    headers=headers,
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_gateway_rejected",
                to=_redact_destination(phone),
                status_code=e.response.status_code,
            )
            return False
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=_redact_destination(phone),
                error_type=type(e).__name__,
                error=str(e),
            )
            return False
        logger.info("sms_sent", to=_redact_destination(phone))
        return True
