"""Welcome notifications for newly enrolled identities.

Delivery is best effort: a failed send is logged and reported in the
NotifyResult but never changes whether the enrollment succeeded.
"""
from __future__ import annotations

import asyncio
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from email.utils import formataddr
from typing import Protocol

from jinja2 import Environment, PackageLoader, select_autoescape
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from .config import MailBackend, MailSettings, settings
from .errors import NotifyError
from .pipelines.enrollment import CommittedIdentity
from .pipelines.normalization import Role

logger = logging.getLogger(__name__)

_ROLE_LABELS = {
    Role.FACULTY: ("faculty member", "Faculty"),
    Role.STUDENT: ("student", "Student"),
}


class MailTransport(Protocol):
    """Outbound mail collaborator."""

    async def send(self, to: str, subject: str, html_body: str) -> None:
        """Deliver one message or raise."""
        ...


class SmtpMailTransport:
    """SMTP delivery with retries; blocking I/O runs in a worker thread."""

    def __init__(self, config: MailSettings):
        self._config = config

    def _build_message(self, to: str, subject: str, html_body: str) -> EmailMessage:
        message = EmailMessage()
        message["Subject"] = subject
        message["From"] = formataddr((self._config.from_name or "", self._config.from_email))
        message["To"] = to
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(html_body, subtype="html")
        return message

    def _deliver(self, message: EmailMessage) -> None:
        with smtplib.SMTP(self._config.host, self._config.port, timeout=self._config.timeout_seconds) as client:
            if self._config.use_tls:
                client.starttls(context=ssl.create_default_context())
            if self._config.username and self._config.password:
                client.login(self._config.username, self._config.password)
            client.send_message(message)

    async def send(self, to: str, subject: str, html_body: str) -> None:
        message = self._build_message(to, subject, html_body)
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self._config.max_retries),
            wait=wait_exponential(multiplier=1, min=2, max=10),
            retry=retry_if_exception_type((smtplib.SMTPException, OSError)),
            reraise=True,
        ):
            with attempt:
                await asyncio.to_thread(self._deliver, message)


class LogMailTransport:
    """Development transport: logs instead of sending."""

    async def send(self, to: str, subject: str, html_body: str) -> None:
        logger.info(f"[mail:log] to={to} subject={subject!r} ({len(html_body)} chars)")


def build_transport(config: MailSettings | None = None) -> MailTransport:
    """Create the transport selected by MAIL_BACKEND."""
    config = config or settings.mail
    if config.backend == MailBackend.SMTP:
        return SmtpMailTransport(config)
    return LogMailTransport()


@dataclass
class NotifyResult:
    """Delivery outcome for one welcome email."""
    email: str
    delivered: bool
    error: str | None = None


class WelcomeNotifier:
    """Render and send role-specific welcome emails."""

    def __init__(self, transport: MailTransport, config: MailSettings | None = None):
        self._transport = transport
        self._config = config or settings.mail
        self._env = Environment(
            loader=PackageLoader("portal", "templates"),
            autoescape=select_autoescape(["html"]),
        )

    def render(self, identity: CommittedIdentity) -> tuple[str, str]:
        """Return (subject, html_body) for an identity."""
        label, title = _ROLE_LABELS[identity.role]
        subject = (
            f"Welcome to {self._config.portal_name} Portal - "
            f"{title} Registration Confirmation"
        )
        body = self._env.get_template("welcome.html").render(
            portal_name=self._config.portal_name,
            login_url=self._config.login_url,
            name=identity.name,
            email=identity.email,
            password=identity.provisional_password,
            role_label=label,
            batch_name=identity.batch_name,
        )
        return subject, body

    async def send_welcome(self, identity: CommittedIdentity) -> None:
        """Render and send the welcome email.

        Raises:
            NotifyError: If rendering or delivery fails
        """
        try:
            subject, body = self.render(identity)
            await self._transport.send(identity.email, subject, body)
        except Exception as e:
            raise NotifyError(identity.email, str(e)) from e

    async def notify(self, identity: CommittedIdentity) -> NotifyResult:
        """Send the welcome email; failures are logged and returned, not raised."""
        try:
            await self.send_welcome(identity)
        except NotifyError as e:
            logger.warning(str(e))
            return NotifyResult(email=identity.email, delivered=False, error=e.reason)

        logger.debug(f"Welcome email sent to {identity.email}")
        return NotifyResult(email=identity.email, delivered=True)
