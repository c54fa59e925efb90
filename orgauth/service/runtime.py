from __future__ import annotations

import asyncio
import threading
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

from orgauth.config import get_settings, reset_settings_cache
from orgauth.logging import get_logger
from orgauth.service.accounts import AccountService
from orgauth.service.activity import ActivityRecorder
from orgauth.service.delivery import (
    OTP_EMAIL,
    OTP_SMS,
    WELCOME_EMAIL,
    DeliveryJob,
    DeliveryWorker,
)
from orgauth.service.email import EmailService
from orgauth.service.membership import MembershipResolver
from orgauth.service.otp import (
    EMAIL_CHANNEL,
    PHONE_CHANNEL,
    EmailCodeChannel,
    OTPChallengeManager,
    PhoneCodeChannel,
)
from orgauth.service.public_key import PublicKeyChallengeManager, WebAuthnCeremony
from orgauth.service.sms import AuthyVerifyClient
from orgauth.service.tokens import SessionTokenService
from orgauth.storage.memory import MemoryDirectory
from orgauth.storage.memory_cache import MemoryCache
from orgauth.storage.postgres import PostgresDirectory
from orgauth.storage.redis_cache import RedisCache, SyncRedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL for logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if not parsed.password:
            return url
        netloc = parsed.hostname or ""
        if parsed.port:
            netloc = f"{netloc}:{parsed.port}"
        if parsed.username:
            netloc = f"{parsed.username}:***@{netloc}"
        else:
            netloc = f":***@{netloc}"
        return urlunparse(
            (
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            )
        )
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Holds singleton service instances for the FastAPI app."""

    def __init__(self):
        self.settings = get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )

        directory_type = "memory" if self.settings.use_memory_store else "postgres"
        try:
            self.directory: Union[MemoryDirectory, PostgresDirectory] = (
                MemoryDirectory()
                if self.settings.use_memory_store
                else PostgresDirectory(self.settings.database_url)
            )
            logger.info("runtime_directory_initialized", directory_type=directory_type)
        except Exception as exc:
            logger.error(
                "runtime_directory_init_failed",
                directory_type=directory_type,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise

        self.cache: Union[RedisCache, SyncRedisCache, MemoryCache, None] = None
        redis_error: Exception | None = None
        if self.settings.redis_url:
            try:
                # Sync client in test mode avoids binding to a single event loop
                if self.settings.test_mode:
                    cache = SyncRedisCache(self.settings.redis_url)
                else:
                    cache = RedisCache(self.settings.redis_url)
                cache.verify_connection()
                self.cache = cache
            except Exception as exc:
                redis_error = exc
                self.cache = None

        if self.cache is None:
            if (
                not self.settings.test_mode
                and not self.settings.allow_redis_fallback_dev
            ):
                raise RuntimeError(
                    "Redis is required for session tokens, challenges and throttles; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from redis_error

            fallback_mode = (
                "TEST_MODE" if self.settings.test_mode else "ALLOW_REDIS_FALLBACK_DEV"
            )
            logger.warning(
                "redis_disabled_fallback",
                redis_url=_mask_url_password(self.settings.redis_url),
                error=str(redis_error) if redis_error else "redis_url_missing",
                message=(
                    f"Running without Redis under {fallback_mode}; sessions and "
                    "challenges live in process memory only."
                ),
                mode=fallback_mode,
            )
            self.cache = MemoryCache()

        self.email = EmailService(
            smtp_host=self.settings.smtp_host,
            smtp_port=self.settings.smtp_port,
            smtp_user=self.settings.smtp_user,
            smtp_password=self.settings.smtp_password,
            smtp_use_tls=self.settings.smtp_use_tls,
            from_email=self.settings.email_from_address,
            from_name=self.settings.email_from_name,
            base_url=self.settings.app_base_url,
        )
        self.sms = AuthyVerifyClient(
            self.settings.authy_api_key, base_url=self.settings.authy_base_url
        )
        self.delivery = DeliveryWorker(
            poll_interval=self.settings.delivery_poll_interval_seconds,
            max_attempts=self.settings.delivery_max_attempts,
            retry_delay=self.settings.delivery_retry_delay_seconds,
        )
        self.delivery.register(WELCOME_EMAIL, self._deliver_welcome)
        self.delivery.register(OTP_EMAIL, self._deliver_email_code)
        self.delivery.register(OTP_SMS, self._deliver_sms_code)

        self.tokens = SessionTokenService(self.cache, self.settings)
        self.public_keys = PublicKeyChallengeManager(
            self.cache,
            self.directory,
            WebAuthnCeremony(
                rp_id=self.settings.webauthn_rp_id,
                rp_name=self.settings.webauthn_rp_name,
                origin=self.settings.webauthn_origin,
            ),
            self.settings,
        )
        self.otp = OTPChallengeManager(
            self.cache,
            self.settings,
            {
                EMAIL_CHANNEL: EmailCodeChannel(self.cache, self.delivery, self.settings),
                PHONE_CHANNEL: PhoneCodeChannel(self.sms, self.delivery),
            },
        )
        self.memberships = MembershipResolver(self.directory, self.tokens, self.settings)
        self.accounts = AccountService(self.directory, self.delivery, self.public_keys)
        self.activity = ActivityRecorder(self.directory)

        logger.info(
            "runtime_initialized",
            directory_type=directory_type,
            redis_enabled=not isinstance(self.cache, MemoryCache),
            email_configured=self.email.is_configured,
            sms_configured=self.sms.is_configured,
        )

    async def _deliver_welcome(self, job: DeliveryJob) -> bool:
        return await asyncio.to_thread(
            self.email.send_welcome, job.recipient, job.params.get("name")
        )

    async def _deliver_email_code(self, job: DeliveryJob) -> bool:
        return await asyncio.to_thread(
            self.email.send_pin_code,
            job.recipient,
            job.params["code"],
            job.params.get("ttl_minutes", 5),
        )

    async def _deliver_sms_code(self, job: DeliveryJob) -> bool:
        return await self.sms.start(job.params["country_code"], job.recipient)

    async def close(self) -> None:
        if self.cache is not None:
            await self.cache.close()
        if isinstance(self.directory, PostgresDirectory):
            self.directory.close()


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the Runtime singleton in a thread-safe manner.

    Uses double-checked locking:
    - First check without lock (fast path for existing runtime)
    - Second check with lock to prevent a race during creation
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def reset_runtime_for_tests() -> Runtime:
    """Reinitialize the runtime singleton for isolated test runs."""
    global runtime

    with _runtime_lock:
        if runtime is not None and isinstance(runtime.cache, SyncRedisCache):
            # Sync client can be closed without an event loop
            runtime.cache._sync_client.close()

        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime()
        return runtime
