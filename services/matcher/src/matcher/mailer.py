from __future__ import annotations

import html
import logging
import smtplib
import ssl
from dataclasses import dataclass
from email.message import EmailMessage
from typing import Protocol

from common.utils import env_flag, env_int, env_str, log_event
from fastapi.concurrency import run_in_threadpool

from matcher.models import Opportunity

LOGGER = logging.getLogger("catchment.matcher")


@dataclass(frozen=True)
class OutgoingMail:
    sender: str
    to: str
    subject: str
    html: str


@dataclass(frozen=True)
class SendResult:
    recipient: str
    ok: bool
    error: str | None = None


@dataclass(frozen=True)
class SmtpSettings:
    host: str = "smtp.gmail.com"
    port: int = 587
    secure: bool = False
    user: str = ""
    password: str = ""
    sender: str = "noreply@yourdomain.com"
    timeout_seconds: int = 15

    @classmethod
    def from_env(cls) -> SmtpSettings:
        return cls(
            host=env_str("SMTP_HOST", cls.host),
            port=env_int("SMTP_PORT", cls.port),
            secure=env_flag("SMTP_SECURE", cls.secure),
            user=env_str("SMTP_USER"),
            password=env_str("SMTP_PASSWORD"),
            sender=env_str("SMTP_FROM", cls.sender),
            timeout_seconds=env_int("SMTP_TIMEOUT_SECONDS", cls.timeout_seconds),
        )

    def __repr__(self) -> str:
        return (
            f"SmtpSettings(host={self.host!r}, port={self.port}, secure={self.secure}, "
            f"user={self.user!r}, sender={self.sender!r})"
        )


class MailTransport(Protocol):
    async def send_mail(self, mail: OutgoingMail) -> None: ...


class SmtpMailTransport:
    def __init__(self, settings: SmtpSettings) -> None:
        self.settings = settings

    async def send_mail(self, mail: OutgoingMail) -> None:
        await run_in_threadpool(self._send_blocking, mail)

    def _send_blocking(self, mail: OutgoingMail) -> None:
        message = EmailMessage()
        message["From"] = mail.sender
        message["To"] = mail.to
        message["Subject"] = mail.subject
        message.set_content("This message requires an HTML-capable mail client.")
        message.add_alternative(mail.html, subtype="html")

        settings = self.settings
        if settings.secure:
            with smtplib.SMTP_SSL(
                settings.host,
                settings.port,
                timeout=settings.timeout_seconds,
                context=ssl.create_default_context(),
            ) as server:
                self._login_and_send(server, message)
            return

        with smtplib.SMTP(settings.host, settings.port, timeout=settings.timeout_seconds) as server:
            server.ehlo()
            if server.has_extn("starttls"):
                server.starttls(context=ssl.create_default_context())
                server.ehlo()
            self._login_and_send(server, message)

    def _login_and_send(self, server: smtplib.SMTP, message: EmailMessage) -> None:
        if self.settings.user:
            server.login(self.settings.user, self.settings.password)
        server.send_message(message)


def render_opportunity_mail(sender: str, recipient: str, opportunity: Opportunity) -> OutgoingMail:
    title = html.escape(opportunity.title)
    description = html.escape(opportunity.description)
    if opportunity.location is not None:
        where = f"{opportunity.location.latitude}, {opportunity.location.longitude}"
    else:
        where = "not specified"
    body = (
        "<h2>New Opportunity Match!</h2>\n"
        f"<h3>{title}</h3>\n"
        f"<p>{description}</p>\n"
        f"<p>Location: {where}</p>\n"
    )
    return OutgoingMail(
        sender=sender,
        to=recipient,
        # Header values may not contain line breaks.
        subject=f"New Opportunity: {' '.join(opportunity.title.split())}",
        html=body,
    )


class NotificationSender:
    """Sends one opportunity email per call and reports the outcome instead of raising."""

    def __init__(self, transport: MailTransport, *, sender: str, transport_label: str = "") -> None:
        self.transport = transport
        self.sender = sender
        self.transport_label = transport_label

    async def send(self, email: str, opportunity: Opportunity) -> SendResult:
        mail = render_opportunity_mail(self.sender, email, opportunity)
        try:
            await self.transport.send_mail(mail)
        except Exception as exc:
            log_event(
                LOGGER,
                logging.ERROR,
                "notification_failed",
                opportunity_id=opportunity.id,
                recipient=email,
                transport=self.transport_label,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return SendResult(recipient=email, ok=False, error=f"{type(exc).__name__}: {exc}")

        log_event(
            LOGGER,
            logging.INFO,
            "notification_sent",
            opportunity_id=opportunity.id,
            recipient=email,
            transport=self.transport_label,
        )
        return SendResult(recipient=email, ok=True)


def build_smtp_sender(settings: SmtpSettings | None = None) -> NotificationSender:
    resolved = settings or SmtpSettings.from_env()
    return NotificationSender(
        SmtpMailTransport(resolved),
        sender=resolved.sender,
        transport_label=f"{resolved.host}:{resolved.port}",
    )
