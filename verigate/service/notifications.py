from __future__ import annotations

import smtplib
import ssl
from dataclasses import dataclass
from email.mime.text import MIMEText
from typing import Optional, Protocol

import httpx

from verigate.config import Settings
from verigate.logging import get_logger, redact_email, redact_phone

logger = get_logger(__name__)


@dataclass(frozen=True)
class DeliveryResult:
    delivered: bool
    channel: str
    error: Optional[str] = None


class NotificationGateway(Protocol):
    def send_email(self, address: str, subject: str, body: str) -> DeliveryResult: ...

    def send_sms(self, number: str, body: str) -> DeliveryResult: ...


class EmailService:
    """SMTP sender for transactional email.

    Supports:
    - SMTP with STARTTLS or implicit SSL
    - Fallback to logging when not configured (dev mode)
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
        from_name: str = "Verigate",
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

    def _build_message(self, to_email: str, subject: str, text_body: str) -> MIMEText:
        msg = MIMEText(text_body, "plain")
        msg["Subject"] = subject
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        return msg

    def send_email(self, address: str, subject: str, body: str) -> DeliveryResult:
        if not self.is_configured:
            # Dev mode: log the email instead of sending
            logger.info(
                "email_dev_mode",
                to=redact_email(address),
                subject=subject,
                body_length=len(body),
            )
            return DeliveryResult(delivered=True, channel="email")

        msg = self._build_message(address, subject, body)
        context = ssl.create_default_context()
        try:
            if self.smtp_use_tls:
                with smtplib.SMTP(self.smtp_host, self.smtp_port, timeout=30) as server:
                    server.starttls(context=context)
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, address, msg.as_string())
            else:
                with smtplib.SMTP_SSL(
                    self.smtp_host, self.smtp_port, context=context, timeout=30
                ) as server:
                    if self.smtp_user and self.smtp_password:
                        server.login(self.smtp_user, self.smtp_password)
                    server.sendmail(self.from_email, address, msg.as_string())
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=redact_email(address),
                host=self.smtp_host,
                error=str(e),
            )
            return DeliveryResult(False, "email", "smtp authentication failed")
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=redact_email(address), error=str(e))
            return DeliveryResult(False, "email", "recipient refused")
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=redact_email(address),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, "email", type(e).__name__)
        except (ssl.SSLError, OSError) as e:
            # Covers connection refused and timeouts
            logger.error(
                "email_connect_failed",
                to=redact_email(address),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, "email", type(e).__name__)

        logger.info("email_sent", to=redact_email(address), subject=subject)
        return DeliveryResult(delivered=True, channel="email")


class SmsService:
    """Twilio Messages API client."""

    def __init__(
        self,
        *,
        account_sid: Optional[str] = None,
        auth_token: Optional[str] = None,
        from_number: Optional[str] = None,
        base_url: str = "https://api.twilio.com",
        timeout: float = 10.0,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        self.account_sid = account_sid
        self.auth_token = auth_token
        self.from_number = from_number
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def is_configured(self) -> bool:
        return bool(self.account_sid and self.auth_token and self.from_number)

    def _messages_url(self) -> str:
        return f"{self.base_url}/2010-04-01/Accounts/{self.account_sid}/Messages.json"

    def send_sms(self, number: str, body: str) -> DeliveryResult:
        if not self.is_configured:
            logger.info("sms_dev_mode", to=redact_phone(number), body_length=len(body))
            return DeliveryResult(delivered=True, channel="sms")

        try:
            with httpx.Client(
                timeout=httpx.Timeout(self.timeout, connect=min(self.timeout, 5.0)),
                transport=self._transport,
            ) as client:
                response = client.post(
                    self._messages_url(),
                    data={"To": number, "From": self.from_number, "Body": body},
                    auth=(self.account_sid, self.auth_token),
                )
                response.raise_for_status()
        except httpx.HTTPStatusError as e:
            logger.error(
                "sms_provider_rejected",
                to=redact_phone(number),
                status=e.response.status_code,
            )
            return DeliveryResult(False, "sms", f"provider returned {e.response.status_code}")
        except httpx.TimeoutException:
            logger.error("sms_timeout", to=redact_phone(number), timeout=self.timeout)
            return DeliveryResult(False, "sms", "timeout")
        except httpx.HTTPError as e:
            logger.error(
                "sms_send_failed",
                to=redact_phone(number),
                error_type=type(e).__name__,
                error=str(e),
            )
            return DeliveryResult(False, "sms", type(e).__name__)

        logger.info("sms_sent", to=redact_phone(number))
        return DeliveryResult(delivered=True, channel="sms")


class NotificationService:
    """Default ``NotificationGateway``: SMTP for email, Twilio for SMS."""

    def __init__(self, email: EmailService, sms: SmsService) -> None:
        self.email = email
        self.sms = sms

    @classmethod
    def from_settings(cls, settings: Settings) -> "NotificationService":
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
                account_sid=settings.twilio_account_sid,
                auth_token=settings.twilio_auth_token,
                from_number=settings.twilio_from_number,
                base_url=settings.twilio_base_url,
                timeout=settings.sms_timeout_seconds,
            ),
        )

    def send_email(self, address: str, subject: str, body: str) -> DeliveryResult:
        return self.email.send_email(address, subject, body)

    def send_sms(self, number: str, body: str) -> DeliveryResult:
        return self.sms.send_sms(number, body)


class MessageComposer:
    """Builds the text of verification and reset messages."""

    def __init__(self, settings: Settings) -> None:
        self.base_url = settings.app_base_url.rstrip("/")
        self.product = settings.email_from_name
        self.settings = settings

    def email_verification(self, token: str) -> tuple[str, str]:
        url = f"{self.base_url}/verify-email/{token}"
        hours = self.settings.email_token_ttl_minutes // 60
        return (
            f"Verify your {self.product} email",
            f"Please confirm your email address by visiting the link below:\n\n"
            f"{url}\n\nThis link will expire in {hours} hours.\n",
        )

    def email_change(self, token: str) -> tuple[str, str]:
        url = f"{self.base_url}/verify-email/{token}"
        hours = self.settings.email_token_ttl_minutes // 60
        return (
            f"Confirm your new {self.product} email",
            f"A request was made to use this address for your account. "
            f"Confirm it by visiting the link below:\n\n{url}\n\n"
            f"This link will expire in {hours} hours. "
            f"If you didn't request this, you can safely ignore this email.\n",
        )

    def password_reset(self, token: str) -> tuple[str, str]:
        url = f"{self.base_url}/reset-password/{token}"
        return (
            f"Reset your {self.product} password",
            f"We received a request to reset your password. "
            f"Visit the link below to choose a new password:\n\n{url}\n\n"
            f"This link will expire in {self.settings.reset_token_ttl_minutes} minutes.\n\n"
            f"If you didn't request this, you can safely ignore this email.\n",
        )

    def phone_code(self, code: str) -> str:
        return (
            f"Your {self.product} verification code is {code}. "
            f"It expires in {self.settings.phone_code_ttl_minutes} minutes."
        )
