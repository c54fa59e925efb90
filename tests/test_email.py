"""Tests for transactional email delivery."""

import smtplib

import pytest

from orgauth.service.email import EmailService


class FakeSMTP:
    """Records what would have been sent."""

    instances = []

    def __init__(self, host, port, timeout=None, **kwargs):
        self.host = host
        self.port = port
        self.sent = []
        self.logged_in = None
        self.tls = False
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.tls = True

    def login(self, user, password):
        self.logged_in = (user, password)

    def sendmail(self, from_addr, to_addr, message):
        self.sent.append((from_addr, to_addr, message))


@pytest.fixture(autouse=True)
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    monkeypatch.setattr(smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


@pytest.fixture
def service():
    return EmailService(
        smtp_host="smtp.test",
        smtp_user="mailer",
        smtp_password="secret",
        from_email="noreply@orgauth.test",
    )


class TestEmailService:
    def test_dev_mode_logs_instead_of_sending(self, fake_smtp):
        """Without an SMTP host every send succeeds without a connection."""
        service = EmailService()
        assert service.is_configured is False
        assert service.send_pin_code("ada@example.com", "ABC234") is True
        assert fake_smtp.instances == []

    def test_pin_code_sent_over_starttls(self, service, fake_smtp):
        """The code appears in the message sent to the recipient."""
        assert service.send_pin_code("ada@example.com", "ABC234", ttl_minutes=5) is True
        smtp = fake_smtp.instances[0]
        assert smtp.tls is True
        assert smtp.logged_in == ("mailer", "secret")
        from_addr, to_addr, message = smtp.sent[0]
        assert from_addr == "noreply@orgauth.test"
        assert to_addr == "ada@example.com"
        assert "ABC234" in message

    def test_welcome_email(self, service, fake_smtp):
        """The welcome email greets the user by name."""
        assert service.send_welcome("ada@example.com", name="Ada") is True
        assert "Hi Ada," in fake_smtp.instances[0].sent[0][2]

    def test_welcome_name_is_escaped_in_html(self, service, fake_smtp):
        """Markup in a user-supplied name is not rendered by the HTML part."""
        assert service.send_welcome("eve@example.com", name="<b>Eve</b>") is True
        message = fake_smtp.instances[0].sent[0][2]
        assert "<p>Hi &lt;b&gt;Eve&lt;/b&gt;,</p>" in message
        assert "<p>Hi <b>Eve</b>,</p>" not in message

    def test_smtp_failure_returns_false(self, service, monkeypatch):
        """SMTP errors are logged and reported as a failed delivery."""

        class RefusingSMTP(FakeSMTP):
            def sendmail(self, from_addr, to_addr, message):
                raise smtplib.SMTPRecipientsRefused({to_addr: (550, b"no such user")})

        monkeypatch.setattr(smtplib, "SMTP", RefusingSMTP)
        assert service.send_pin_code("ghost@example.com", "ABC234") is False

    def test_email_redaction(self, service):
        """Logged addresses keep only a hint of the local part."""
        assert service._redact_email("ada@example.com") == "ad***@example.com"
        assert service._redact_email("not-an-email") == "redacted"
