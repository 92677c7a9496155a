from __future__ import annotations

import asyncio
import smtplib
import ssl
import uuid
from email.mime.text import MIMEText
from email.utils import make_msgid
from typing import Optional

from authgate.config import Settings
from authgate.logging import get_logger, mask_email
from authgate.service.delivery import DeliveryError

logger = get_logger(__name__)


class EmailDelivery:
    """Code delivery gateway for email destinations (password reset).

    Supports SMTP with STARTTLS or implicit SSL. When no SMTP host is
    configured the message is logged instead of sent (dev mode).
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
        from_name: str = "AuthGate",
        timeout: float = 10.0,
    ) -> None:
        self.smtp_host = smtp_host
        self.smtp_port = smtp_port
        self.smtp_user = smtp_user
        self.smtp_password = smtp_password
        self.smtp_use_tls = smtp_use_tls
        self.from_email = from_email or smtp_user
        self.from_name = from_name
        self.timeout = timeout

    @property
    def is_configured(self) -> bool:
        return bool(self.smtp_host and self.from_email)

    def _build_message(self, to_email: str, body: str) -> MIMEText:
        msg = MIMEText(body, "plain")
        msg["Subject"] = f"{self.from_name} password reset"
        msg["From"] = f"{self.from_name} <{self.from_email}>"
        msg["To"] = to_email
        msg["Message-ID"] = make_msgid()
        return msg

    def _send_sync(self, to_email: str, msg: MIMEText) -> None:
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

    async def send(self, destination: str, message: str) -> str:
        if not destination or not message:
            raise DeliveryError("destination and message are required")
        if not self.is_configured:
            delivery_id = f"log-{uuid.uuid4()}"
            logger.info(
                "email_dev_mode",
                to=mask_email(destination),
                delivery_id=delivery_id,
                length=len(message),
            )
            return delivery_id

        msg = self._build_message(destination, message)
        logger.debug(
            "email_connecting",
            host=self.smtp_host,
            port=self.smtp_port,
            use_tls=self.smtp_use_tls,
            to=mask_email(destination),
        )
        try:
            await asyncio.to_thread(self._send_sync, destination, msg)
        except smtplib.SMTPAuthenticationError as e:
            logger.error(
                "email_auth_failed",
                to=mask_email(destination),
                host=self.smtp_host,
                smtp_code=getattr(e, "smtp_code", None),
            )
            raise DeliveryError("smtp_auth_failed") from e
        except smtplib.SMTPRecipientsRefused as e:
            logger.error("email_recipient_refused", to=mask_email(destination))
            raise DeliveryError("smtp_recipient_refused") from e
        except smtplib.SMTPException as e:
            logger.error(
                "email_smtp_error",
                to=mask_email(destination),
                host=self.smtp_host,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError(f"smtp_error: {type(e).__name__}") from e
        except (ssl.SSLError, OSError) as e:
            # Covers refused connections and socket timeouts
            logger.error(
                "email_connect_failed",
                to=mask_email(destination),
                host=self.smtp_host,
                port=self.smtp_port,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise DeliveryError(f"smtp_unreachable: {type(e).__name__}") from e

        delivery_id = msg["Message-ID"]
        logger.info("email_sent", to=mask_email(destination), delivery_id=delivery_id)
        return delivery_id

    async def close(self) -> None:
        return None


def build_email_delivery(settings: Settings) -> EmailDelivery:
    return EmailDelivery(
        smtp_host=settings.smtp_host,
        smtp_port=settings.smtp_port,
        smtp_user=settings.smtp_user,
        smtp_password=settings.smtp_password,
        smtp_use_tls=settings.smtp_use_tls,
        from_email=settings.email_from_address,
        from_name=settings.app_name,
        timeout=settings.delivery_timeout_seconds,
    )
