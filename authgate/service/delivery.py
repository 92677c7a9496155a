from __future__ import annotations

import uuid
from typing import Optional, Protocol

import httpx

from authgate.config import Settings, SmsProvider
from authgate.logging import get_logger, mask_phone

logger = get_logger(__name__)


class DeliveryError(Exception):
    """The gateway could not hand the message to the carrier."""


class CodeDelivery(Protocol):
    async def send(self, destination: str, message: str) -> str: ...

    async def close(self) -> None: ...


class LogCodeDelivery:
    """Dev-mode gateway: logs the message instead of sending it."""

    async def send(self, destination: str, message: str) -> str:
        delivery_id = f"log-{uuid.uuid4()}"
        logger.info(
            "sms_dev_mode",
            destination=mask_phone(destination),
            delivery_id=delivery_id,
            length=len(message),
        )
        return delivery_id

    async def close(self) -> None:
        return None


class TwilioSmsDelivery:
    """Sends SMS through the Twilio Messages REST endpoint."""

    def __init__(
        self,
        *,
        account_sid: str,
        auth_token: str,
        from_number: str,
        base_url: str = "https://api.twilio.com/2010-04-01",
        timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.account_sid = account_sid
        self.from_number = from_number
        self._client = client or httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            auth=(account_sid, auth_token),
            timeout=timeout,
        )

    async def send(self, destination: str, message: str) -> str:
        if not destination or not message:
            raise DeliveryError("destination and message are required")
        url = f"/Accounts/{self.account_sid}/Messages.json"
        try:
            resp = await self._client.post(
                url,
                data={"To": destination, "From": self.from_number, "Body": message},
            )
            resp.raise_for_status()
            data = resp.json()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "sms_provider_rejected",
                destination=mask_phone(destination),
                status_code=exc.response.status_code,
            )
            raise DeliveryError(f"twilio_status_{exc.response.status_code}") from exc
        except httpx.HTTPError as exc:
            logger.warning(
                "sms_provider_unreachable",
                destination=mask_phone(destination),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise DeliveryError(f"twilio_http_error: {type(exc).__name__}") from exc
        except ValueError as exc:
            raise DeliveryError("twilio_invalid_response") from exc

        delivery_id = data.get("sid") if isinstance(data, dict) else None
        if not delivery_id:
            raise DeliveryError("twilio_missing_message_sid")
        logger.info(
            "sms_sent", destination=mask_phone(destination), delivery_id=delivery_id
        )
        return delivery_id

    async def close(self) -> None:
        await self._client.aclose()


def build_delivery(settings: Settings) -> CodeDelivery:
    if settings.sms_provider == SmsProvider.TWILIO:
        if not (
            settings.twilio_account_sid
            and settings.twilio_auth_token
            and settings.twilio_from_number
        ):
            raise RuntimeError(
                "SMS_PROVIDER=twilio requires TWILIO_ACCOUNT_SID, TWILIO_AUTH_TOKEN and TWILIO_FROM_NUMBER"
            )
        return TwilioSmsDelivery(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_from_number,
            base_url=settings.twilio_base_url,
            timeout=settings.delivery_timeout_seconds,
        )
    return LogCodeDelivery()
