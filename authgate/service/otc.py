from __future__ import annotations

import asyncio
import hmac
import re
import secrets
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from authgate.logging import get_logger, mask_phone
from authgate.service.delivery import CodeDelivery, DeliveryError
from authgate.service.errors import (
    CodeCooldownActiveError,
    DeliveryFailedError,
    StoreUnavailableError,
    ValidationError,
)
from authgate.storage.common import CounterStore, sms_attempts_key, sms_code_key
from authgate.storage.errors import StoreUnavailable

logger = get_logger(__name__)

CODE_LENGTH = 6
PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")
_NON_PHONE_CHARS = re.compile(r"[^0-9+]")
_CODE_PATTERN = re.compile(r"^[0-9]{%d}$" % CODE_LENGTH)

MESSAGE_TEMPLATE = "{app_name} - Your verification code: {code}. Valid for {minutes} minutes."


def normalize_phone(phone: Optional[str]) -> str:
    """Strip everything except digits and a leading plus sign."""
    return _NON_PHONE_CHARS.sub("", phone or "")


def is_valid_phone(phone: Optional[str]) -> bool:
    return bool(PHONE_PATTERN.match(normalize_phone(phone)))


def clean_code(candidate: Optional[str]) -> str:
    """Trim a submitted code and reject anything but six ASCII digits."""
    code = (candidate or "").strip()
    if not _CODE_PATTERN.match(code):
        raise ValidationError("verification code must be 6 digits")
    return code


class CodeCheck(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    ATTEMPTS_EXHAUSTED = "attempts_exhausted"


@dataclass
class CodeDispatch:
    destination: str
    expires_in: int
    delivery_id: Optional[str] = None


class OneTimeCodeVerifier:
    """Stores, validates and expires 6-digit verification codes per subject.

    A subject key (a normalized phone number) has at most one live code.
    Generating a new one overwrites the previous code and clears the failed
    attempt counter.
    """

    def __init__(
        self,
        store: CounterStore,
        *,
        ttl_minutes: int = 5,
        max_attempts: int = 3,
        cooldown_seconds: int = 60,
    ) -> None:
        self.store = store
        self.ttl_minutes = ttl_minutes
        self.max_attempts = max_attempts
        self.cooldown_seconds = cooldown_seconds

    @property
    def ttl_seconds(self) -> int:
        return self.ttl_minutes * 60

    @staticmethod
    def _generate_code() -> str:
        return str(secrets.randbelow(10**CODE_LENGTH)).zfill(CODE_LENGTH)

    async def generate_and_store(
        self, subject_key: str, ttl_minutes: Optional[int] = None
    ) -> str:
        ttl_seconds = (ttl_minutes or self.ttl_minutes) * 60
        code = self._generate_code()
        try:
            await self.store.set(sms_code_key(subject_key), code, ttl_seconds)
            await self.store.delete(sms_attempts_key(subject_key))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        logger.info("code_stored", phone=mask_phone(subject_key), ttl_seconds=ttl_seconds)
        return code

    async def is_on_cooldown(
        self, subject_key: str, cooldown_seconds: Optional[int] = None
    ) -> bool:
        cooldown = self.cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        remaining = await self.expires_in(subject_key)
        if remaining <= 0:
            return False
        return remaining > self.ttl_seconds - cooldown

    async def check(self, subject_key: str, candidate: str) -> CodeCheck:
        code = clean_code(candidate)
        code_key = sms_code_key(subject_key)
        attempts_key = sms_attempts_key(subject_key)
        try:
            # Reserve the attempt before comparing so concurrent guesses cannot
            # overshoot max_attempts; the counter follows the code's lifetime.
            remaining = await self.store.ttl(code_key)
            attempts = await self.store.increment(
                attempts_key,
                remaining if remaining > 0 else self.ttl_seconds,
                refresh_ttl=True,
            )
            if attempts > self.max_attempts:
                logger.warning(
                    "code_attempts_exhausted",
                    phone=mask_phone(subject_key),
                    attempts=attempts - 1,
                )
                return CodeCheck.ATTEMPTS_EXHAUSTED
            stored = await self.store.get(code_key)
            if stored is not None and hmac.compare_digest(stored, code):
                # Only the caller that actually removes the code wins
                if await self.store.delete(code_key):
                    await self.store.delete(attempts_key)
                    logger.info("code_verified", phone=mask_phone(subject_key))
                    return CodeCheck.VERIFIED
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        logger.warning(
            "code_mismatch",
            phone=mask_phone(subject_key),
            attempts=attempts,
            code_present=stored is not None,
        )
        return CodeCheck.MISMATCH

    async def verify(self, subject_key: str, candidate: str) -> bool:
        return await self.check(subject_key, candidate) is CodeCheck.VERIFIED

    async def remove(self, subject_key: str) -> None:
        try:
            await self.store.delete(sms_code_key(subject_key), sms_attempts_key(subject_key))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        logger.info("code_removed", phone=mask_phone(subject_key))

    async def expires_in(self, subject_key: str) -> int:
        try:
            remaining = await self.store.ttl(sms_code_key(subject_key))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc
        return max(remaining, 0)

    async def has_code(self, subject_key: str) -> bool:
        try:
            return await self.store.exists(sms_code_key(subject_key))
        except StoreUnavailable as exc:
            raise StoreUnavailableError() from exc


class CodeDispatcher:
    """Generates a code for a phone number and hands it to the delivery gateway."""

    def __init__(
        self,
        verifier: OneTimeCodeVerifier,
        delivery: CodeDelivery,
        *,
        app_name: str = "AuthGate",
        timeout: float = 10.0,
    ) -> None:
        self.verifier = verifier
        self.delivery = delivery
        self.app_name = app_name
        self.timeout = timeout

    def render(self, code: str) -> str:
        return MESSAGE_TEMPLATE.format(
            app_name=self.app_name, code=code, minutes=self.verifier.ttl_minutes
        )

    async def send(self, phone: str) -> CodeDispatch:
        subject_key = normalize_phone(phone)
        if not PHONE_PATTERN.match(subject_key):
            raise ValidationError("invalid phone number format")

        # Checked before generating so a code already in the user's hands stays valid
        if await self.verifier.is_on_cooldown(subject_key):
            remaining = await self.verifier.expires_in(subject_key)
            retry_after = max(
                remaining - (self.verifier.ttl_seconds - self.verifier.cooldown_seconds), 1
            )
            logger.info(
                "code_cooldown_active", phone=mask_phone(subject_key), retry_after=retry_after
            )
            raise CodeCooldownActiveError(detail={"retry_after": retry_after})

        code = await self.verifier.generate_and_store(subject_key)
        try:
            delivery_id = await asyncio.wait_for(
                self.delivery.send(subject_key, self.render(code)), timeout=self.timeout
            )
        except (DeliveryError, asyncio.TimeoutError) as exc:
            logger.error(
                "code_delivery_failed",
                phone=mask_phone(subject_key),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            # Roll back so an undelivered code neither validates nor holds the cooldown
            await self.verifier.remove(subject_key)
            raise DeliveryFailedError() from exc

        logger.info("code_sent", phone=mask_phone(subject_key), delivery_id=delivery_id)
        return CodeDispatch(
            destination=mask_phone(subject_key),
            expires_in=self.verifier.ttl_seconds,
            delivery_id=delivery_id,
        )
