"""Tests for welcome email rendering and delivery."""

import logging
import smtplib

import pytest

from portal import notifications
from portal.config import MailBackend, MailSettings
from portal.errors import NotifyError
from portal.notifications import (
    LogMailTransport,
    SmtpMailTransport,
    WelcomeNotifier,
    build_transport,
)
from portal.pipelines.enrollment import CommittedIdentity
from portal.pipelines.normalization import Role


@pytest.fixture
def student_identity():
    return CommittedIdentity(
        external_id="S1",
        name="Alice",
        email="a@x.com",
        department="CS",
        role=Role.STUDENT,
        provisional_password="12345678",
        batch_name="2024A",
    )


@pytest.fixture
def faculty_identity():
    return CommittedIdentity(
        external_id="F1",
        name="Ada <Admin>",
        email="ada@x.com",
        department="CS",
        role=Role.FACULTY,
        provisional_password="12345678",
    )


class FakeSMTP:
    """Stands in for smtplib.SMTP and records the session."""

    instances = []
    fail_with = None

    def __init__(self, host, port, timeout=None):
        self.host = host
        self.port = port
        self.calls = []
        FakeSMTP.instances.append(self)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def starttls(self, context=None):
        self.calls.append("starttls")

    def login(self, username, password):
        self.calls.append(("login", username))

    def send_message(self, message):
        if FakeSMTP.fail_with is not None:
            raise FakeSMTP.fail_with
        self.calls.append(("send", message["To"], message["Subject"]))


@pytest.fixture
def fake_smtp(monkeypatch):
    FakeSMTP.instances = []
    FakeSMTP.fail_with = None
    monkeypatch.setattr(notifications.smtplib, "SMTP", FakeSMTP)
    return FakeSMTP


def test_render_student_welcome(transport, mail_config, student_identity):
    subject, body = WelcomeNotifier(transport, mail_config).render(student_identity)

    assert subject == "Welcome to EduSpace Portal - Student Registration Confirmation"
    assert "Dear Alice" in body
    assert "as a student" in body
    assert "2024A" in body
    assert "a@x.com" in body
    assert "12345678" in body
    assert "http://portal.test/login" in body


def test_render_faculty_welcome_escapes_fields(transport, mail_config, faculty_identity):
    subject, body = WelcomeNotifier(transport, mail_config).render(faculty_identity)

    assert "Faculty Registration Confirmation" in subject
    assert "as a faculty member" in body
    assert "Ada &lt;Admin&gt;" in body
    assert "Batch:" not in body


async def test_notify_sends_to_identity_email(transport, mail_config, student_identity):
    result = await WelcomeNotifier(transport, mail_config).notify(student_identity)

    assert result.delivered
    assert result.error is None
    assert [m["to"] for m in transport.sent] == ["a@x.com"]


async def test_notify_failure_is_reported_not_raised(failing_transport, mail_config, student_identity, caplog):
    with caplog.at_level(logging.WARNING, logger="portal.notifications"):
        result = await WelcomeNotifier(failing_transport, mail_config).notify(student_identity)

    assert not result.delivered
    assert "SMTP server unavailable" in result.error
    assert "a@x.com" in caplog.text


async def test_send_welcome_raises_notify_error(failing_transport, mail_config, student_identity):
    with pytest.raises(NotifyError) as excinfo:
        await WelcomeNotifier(failing_transport, mail_config).send_welcome(student_identity)

    assert excinfo.value.email == "a@x.com"
    assert excinfo.value.reason == "SMTP server unavailable"
    assert isinstance(excinfo.value.__cause__, ConnectionRefusedError)


async def test_log_transport_logs_message(caplog):
    with caplog.at_level(logging.INFO, logger="portal.notifications"):
        await LogMailTransport().send("a@x.com", "Hello", "<p>hi</p>")

    assert "to=a@x.com" in caplog.text


def test_build_transport_selects_backend():
    assert isinstance(build_transport(MailSettings(backend=MailBackend.LOG)), LogMailTransport)
    assert isinstance(build_transport(MailSettings(backend=MailBackend.SMTP)), SmtpMailTransport)


async def test_smtp_transport_delivers_with_tls_and_login(fake_smtp):
    config = MailSettings(
        backend=MailBackend.SMTP,
        host="smtp.test",
        port=2525,
        username="mailer",
        password="secret",
        from_email="no-reply@portal.test",
    )

    await SmtpMailTransport(config).send("a@x.com", "Welcome", "<p>hi</p>")

    (client,) = fake_smtp.instances
    assert (client.host, client.port) == ("smtp.test", 2525)
    assert client.calls == ["starttls", ("login", "mailer"), ("send", "a@x.com", "Welcome")]


async def test_smtp_transport_raises_after_final_attempt(fake_smtp):
    fake_smtp.fail_with = smtplib.SMTPServerDisconnected("gone")
    config = MailSettings(backend=MailBackend.SMTP, use_tls=False, max_retries=1)

    with pytest.raises(smtplib.SMTPServerDisconnected):
        await SmtpMailTransport(config).send("a@x.com", "Welcome", "<p>hi</p>")

    assert len(fake_smtp.instances) == 1
    assert fake_smtp.instances[0].calls == []
