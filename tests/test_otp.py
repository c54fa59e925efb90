"""Tests for one-time code challenges over the email and phone channels."""

import pytest

from orgauth.config import Settings
from orgauth.service.delivery import OTP_EMAIL, OTP_SMS, DeliveryWorker
from orgauth.service.errors import (
    CodeExpiredOrUnknown,
    CodeMismatch,
    MissingContact,
    RateLimitedError,
    StoreError,
    ValidationError,
)
from orgauth.service.otp import (
    CODE_ALPHABET,
    EMAIL_CHANNEL,
    PHONE_CHANNEL,
    EmailCodeChannel,
    OTPChallengeManager,
    PhoneCodeChannel,
    generate_code,
    signup_key,
)
from orgauth.storage.errors import CacheUnavailable
from orgauth.storage.memory import MemoryDirectory
from orgauth.storage.memory_cache import MemoryCache


class FakeProvider:
    """Phone provider that accepts one code."""

    def __init__(self, accepted: str = "123456"):
        self.accepted = accepted
        self.checks = []

    async def check(self, country_code, phone_number, code):
        self.checks.append((country_code, phone_number, code))
        return code == self.accepted


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="x" * 40,
        otp_max_attempts=3,
        otp_lockout_seconds=600,
        send_otp_rate_limit=3,
        send_otp_rate_window_seconds=300,
    )


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock)


@pytest.fixture
def sent():
    return []


@pytest.fixture
def delivery(sent):
    worker = DeliveryWorker()

    async def record(job):
        sent.append(job)
        return True

    worker.register(OTP_EMAIL, record)
    worker.register(OTP_SMS, record)
    return worker


@pytest.fixture
def provider():
    return FakeProvider()


@pytest.fixture
def manager(cache, settings, delivery, provider):
    return OTPChallengeManager(
        cache,
        settings,
        {
            EMAIL_CHANNEL: EmailCodeChannel(cache, delivery, settings),
            PHONE_CHANNEL: PhoneCodeChannel(provider, delivery),
        },
    )


@pytest.fixture
def directory():
    return MemoryDirectory()


@pytest.fixture
def user(directory):
    return directory.create_user(
        "Ada",
        "Lovelace",
        email="ada@example.com",
        phone_country_code="44",
        phone_number="7700900123",
    )


@pytest.fixture
def email_only_user(directory):
    return directory.create_user("Grace", "Hopper", email="grace@example.com")


class TestCodeGeneration:
    def test_codes_use_unambiguous_alphabet(self):
        """Generated codes avoid characters that are easy to misread."""
        for _ in range(50):
            code = generate_code(6)
            assert len(code) == 6
            assert set(code) <= set(CODE_ALPHABET)
        for ambiguous in "01OIL":
            assert ambiguous not in CODE_ALPHABET

    def test_signup_key_suffix(self):
        """Email codes live under the user's sign-up key."""
        assert signup_key("abc") == "abc_signup_key"


class TestEmailChannel:
    """Local generate, store and compare."""

    async def test_send_then_verify_succeeds_once(self, manager, user):
        """The exact code verifies once and is consumed by that success."""
        code = await manager.send(user, EMAIL_CHANNEL)
        await manager.verify(user, EMAIL_CHANNEL, code)
        with pytest.raises(CodeExpiredOrUnknown):
            await manager.verify(user, EMAIL_CHANNEL, code)

    async def test_send_queues_delivery(self, manager, user, delivery, sent):
        """Sending hands the code to the delivery worker and returns at once."""
        code = await manager.send(user, EMAIL_CHANNEL)
        assert delivery.pending == 1
        await delivery.drain()
        assert sent[0].kind == OTP_EMAIL
        assert sent[0].recipient == "ada@example.com"
        assert sent[0].params["code"] == code
        assert sent[0].params["ttl_minutes"] == 5

    async def test_code_expires_after_five_minutes(self, manager, user, clock):
        """A code verified after its TTL is unknown."""
        code = await manager.send(user, EMAIL_CHANNEL)
        clock.advance(301)
        with pytest.raises(CodeExpiredOrUnknown):
            await manager.verify(user, EMAIL_CHANNEL, code)

    async def test_mismatch_keeps_code(self, manager, user):
        """A wrong code fails without burning the right one."""
        code = await manager.send(user, EMAIL_CHANNEL)
        wrong = "A" * len(code) if code != "A" * len(code) else "B" * len(code)
        with pytest.raises(CodeMismatch):
            await manager.verify(user, EMAIL_CHANNEL, wrong)
        await manager.verify(user, EMAIL_CHANNEL, code)

    async def test_code_is_normalized(self, manager, user):
        """Codes typed in lower case with surrounding spaces still match."""
        code = await manager.send(user, EMAIL_CHANNEL)
        await manager.verify(user, EMAIL_CHANNEL, f"  {code.lower()} ")

    async def test_new_send_replaces_outstanding_code(self, manager, user, cache):
        """Only the latest code is stored."""
        await manager.send(user, EMAIL_CHANNEL)
        second = await manager.send(user, EMAIL_CHANNEL)
        assert await cache.get(signup_key(user.id)) == second

    async def test_failures_share_invalid_code_message(self, manager, user):
        """Every sub-check answers with the same message."""
        with pytest.raises(CodeExpiredOrUnknown) as expired:
            await manager.verify(user, EMAIL_CHANNEL, "ABCDEF")
        await manager.send(user, EMAIL_CHANNEL)
        with pytest.raises(CodeMismatch) as mismatch:
            await manager.verify(user, EMAIL_CHANNEL, "ZZZZZZ1")
        assert expired.value.message == mismatch.value.message == "Invalid code"
        assert expired.value.status_code == 401


class TestPhoneChannel:
    """Provider-delegated comparison."""

    async def test_send_queues_sms_without_local_code(self, manager, user, sent, delivery):
        """Phone sends return no code; the provider generates it."""
        assert await manager.send(user, PHONE_CHANNEL) is None
        await delivery.drain()
        assert sent[0].kind == OTP_SMS
        assert sent[0].recipient == "7700900123"
        assert sent[0].params == {"country_code": "44"}

    async def test_provider_accepts_code(self, manager, user, provider):
        """Verification asks the provider and passes when it accepts."""
        await manager.verify(user, PHONE_CHANNEL, "123456")
        assert provider.checks == [("44", "7700900123", "123456")]

    async def test_provider_rejects_code(self, manager, user):
        """A provider rejection is a mismatch."""
        with pytest.raises(CodeMismatch):
            await manager.verify(user, PHONE_CHANNEL, "000000")

    async def test_missing_phone_contact(self, manager, email_only_user):
        """Users without a phone cannot use the phone channel."""
        with pytest.raises(MissingContact):
            await manager.send(email_only_user, PHONE_CHANNEL)
        with pytest.raises(MissingContact):
            await manager.verify(email_only_user, PHONE_CHANNEL, "123456")


class TestThrottling:
    """Send rate limit and failed-attempt lockout."""

    async def test_send_rate_limited(self, manager, user):
        """Sends beyond the bucket size within the window are refused."""
        for _ in range(3):
            await manager.send(user, EMAIL_CHANNEL)
        with pytest.raises(RateLimitedError):
            await manager.send(user, EMAIL_CHANNEL)

    async def test_send_bucket_refills(self, manager, user, clock):
        """The bucket refills over the window."""
        for _ in range(3):
            await manager.send(user, EMAIL_CHANNEL)
        clock.advance(300)
        await manager.send(user, EMAIL_CHANNEL)

    async def test_lockout_after_max_failures(self, manager, user, provider):
        """After the allowed failures even the right code is refused."""
        for _ in range(3):
            with pytest.raises(CodeMismatch):
                await manager.verify(user, PHONE_CHANNEL, "999999")
        with pytest.raises(RateLimitedError):
            await manager.verify(user, PHONE_CHANNEL, "123456")
        # The provider is not consulted while locked out
        assert len(provider.checks) == 3

    async def test_lockout_expires(self, manager, user, clock):
        """Verification resumes once the lockout window has passed."""
        for _ in range(3):
            with pytest.raises(CodeMismatch):
                await manager.verify(user, PHONE_CHANNEL, "999999")
        clock.advance(601)
        await manager.verify(user, PHONE_CHANNEL, "123456")

    async def test_success_clears_failures(self, manager, user):
        """A success resets the failure counter."""
        for _ in range(2):
            with pytest.raises(CodeMismatch):
                await manager.verify(user, PHONE_CHANNEL, "999999")
        await manager.verify(user, PHONE_CHANNEL, "123456")
        for _ in range(2):
            with pytest.raises(CodeMismatch):
                await manager.verify(user, PHONE_CHANNEL, "999999")
        await manager.verify(user, PHONE_CHANNEL, "123456")


class _DownCache:
    async def check_rate_limit(self, *args, **kwargs):
        raise CacheUnavailable("down")

    async def check_attempt_lockout(self, user_id):
        raise CacheUnavailable("down")


class TestErrors:
    async def test_unknown_channel(self, manager, user):
        """Channels other than email and phone are a validation error."""
        with pytest.raises(ValidationError):
            await manager.send(user, "carrier-pigeon")

    async def test_store_outage_is_store_error(self, settings, delivery, provider, user):
        """Ephemeral store failures are internal errors, not code failures."""
        down = _DownCache()
        manager = OTPChallengeManager(
            down,
            settings,
            {
                EMAIL_CHANNEL: EmailCodeChannel(down, delivery, settings),
                PHONE_CHANNEL: PhoneCodeChannel(provider, delivery),
            },
        )
        with pytest.raises(StoreError):
            await manager.send(user, EMAIL_CHANNEL)
        with pytest.raises(StoreError):
            await manager.verify(user, EMAIL_CHANNEL, "ABCDEF")
