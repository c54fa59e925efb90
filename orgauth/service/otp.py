from __future__ import annotations

import secrets
from typing import Dict, Optional, Protocol

from orgauth.config import Settings
from orgauth.logging import get_logger
from orgauth.service.delivery import OTP_EMAIL, OTP_SMS, DeliveryWorker
from orgauth.service.errors import (
    ChallengeFailed,
    CodeExpiredOrUnknown,
    CodeMismatch,
    MissingContact,
    RateLimitedError,
    StoreError,
    ValidationError,
)
from orgauth.service.sms import AuthyVerifyClient
from orgauth.storage.errors import CacheUnavailable
from orgauth.storage.models import User

logger = get_logger(__name__)

# No 0/O, 1/I/L: codes are read off a phone screen and typed by hand
CODE_ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"

SIGNUP_KEY_SUFFIX = "_signup_key"

EMAIL_CHANNEL = "email"
PHONE_CHANNEL = "phone"


def generate_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def signup_key(user_id: str) -> str:
    return f"{user_id}{SIGNUP_KEY_SUFFIX}"


class CodeChannel(Protocol):
    name: str

    def has_contact(self, user: User) -> bool: ...

    async def send(self, user: User) -> Optional[str]: ...

    async def verify(self, user: User, code: str) -> None: ...


class EmailCodeChannel:
    """Locally generated code, stored in the ephemeral store and compared here."""

    name = EMAIL_CHANNEL

    def __init__(self, cache, delivery: DeliveryWorker, settings: Settings) -> None:
        self.cache = cache
        self.delivery = delivery
        self.settings = settings

    def has_contact(self, user: User) -> bool:
        return bool(user.email)

    async def send(self, user: User) -> Optional[str]:
        code = generate_code(self.settings.otp_code_length)
        # Overwrites any outstanding code for the user
        await self.cache.set(
            signup_key(user.id), code, self.settings.challenge_ttl_seconds
        )
        self.delivery.submit(
            OTP_EMAIL,
            user.email,
            code=code,
            ttl_minutes=max(1, self.settings.challenge_ttl_seconds // 60),
        )
        return code

    async def verify(self, user: User, code: str) -> None:
        # Consumed on success so a code verifies at most once
        matched = await self.cache.consume_if_equal(signup_key(user.id), code)
        if matched is None:
            raise CodeExpiredOrUnknown()
        if not matched:
            raise CodeMismatch()


class PhoneCodeChannel:
    """Provider-generated code; the provider also owns the comparison."""

    name = PHONE_CHANNEL

    def __init__(self, provider: AuthyVerifyClient, delivery: DeliveryWorker) -> None:
        self.provider = provider
        self.delivery = delivery

    def has_contact(self, user: User) -> bool:
        return user.has_phone

    async def send(self, user: User) -> Optional[str]:
        self.delivery.submit(
            OTP_SMS, user.phone_number, country_code=user.phone_country_code
        )
        return None

    async def verify(self, user: User, code: str) -> None:
        accepted = await self.provider.check(
            user.phone_country_code, user.phone_number, code
        )
        if not accepted:
            raise CodeMismatch()


class OTPChallengeManager:
    """Sends and verifies one-time codes over the email and phone channels.

    Sending is rate limited per user. Failed verifications are counted per
    user and lock verification out for a while once the limit is reached.
    """

    def __init__(
        self,
        cache,
        settings: Settings,
        channels: Dict[str, CodeChannel],
    ) -> None:
        self.cache = cache
        self.settings = settings
        self.channels = channels

    def _channel(self, channel: str) -> CodeChannel:
        try:
            return self.channels[channel]
        except KeyError:
            raise ValidationError("invalid otp type", detail={"field": "type"})

    async def send(self, user: User, channel: str) -> Optional[str]:
        """Issue a code over ``channel``; returns the code for locally generated ones.

        Delivery runs in the background and is not guaranteed.
        """
        strategy = self._channel(channel)
        if not strategy.has_contact(user):
            raise MissingContact()
        try:
            allowed = await self.cache.check_rate_limit(
                f"send_otp:{user.id}",
                self.settings.send_otp_rate_limit,
                self.settings.send_otp_rate_window_seconds,
            )
            if not allowed:
                logger.warning("otp_send_rate_limited", user_id=user.id, channel=channel)
                raise RateLimitedError("too many code requests, try again later")
            code = await strategy.send(user)
        except CacheUnavailable as exc:
            raise StoreError("unable to store one-time code") from exc
        logger.info("otp_sent", user_id=user.id, channel=channel)
        return code

    async def verify(self, user: User, channel: str, code: str) -> None:
        strategy = self._channel(channel)
        if not strategy.has_contact(user):
            raise MissingContact()
        normalized = code.strip().upper() if channel == EMAIL_CHANNEL else code.strip()
        try:
            if await self.cache.check_attempt_lockout(user.id):
                logger.warning("otp_verify_locked_out", user_id=user.id)
                raise RateLimitedError("too many failed attempts, try again later")
            try:
                await strategy.verify(user, normalized)
            except ChallengeFailed as failure:
                locked, attempts = await self.cache.record_failed_attempt(
                    user.id,
                    max_attempts=self.settings.otp_max_attempts,
                    lockout_seconds=self.settings.otp_lockout_seconds,
                )
                logger.info(
                    "otp_verify_failed",
                    user_id=user.id,
                    channel=channel,
                    reason=failure.reason,
                    attempts=attempts,
                    locked_out=locked,
                )
                raise
            await self.cache.clear_attempts(user.id)
        except CacheUnavailable as exc:
            raise StoreError("unable to check one-time code") from exc
        logger.info("otp_verified", user_id=user.id, channel=channel)
