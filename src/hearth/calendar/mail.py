"""Outbound email transport for ICS invitations."""

from __future__ import annotations

import abc
import asyncio
import logging
import smtplib
from dataclasses import dataclass, field
from email.mime.base import MIMEBase
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from email.utils import formataddr

from hearth.config import SmtpConfig

logger = logging.getLogger(__name__)


@dataclass
class OutboundEmail:
    """One invitation email: text and HTML bodies plus a calendar payload."""

    from_address: str
    to: list[str]
    subject: str
    text_body: str
    html_body: str | None = None
    calendar_payload: str | None = None
    method: str = "REQUEST"
    from_name: str | None = None
    headers: dict[str, str] = field(default_factory=dict)


def _calendar_part(payload: str, method: str, *, attachment: bool) -> MIMEBase:
    part = MIMEText(payload, "calendar", "utf-8")
    part.set_param("method", method)
    part.set_param("component", "VEVENT")
    part.set_param("name", "invite.ics")
    disposition = "attachment" if attachment else "inline"
    part.add_header("Content-Disposition", disposition, filename="invite.ics")
    part.add_header("Content-Class", "urn:content-classes:calendarmessage")
    return part


def build_mime_message(email: OutboundEmail) -> MIMEMultipart:
    """Assemble the MIME tree for an invitation.

    multipart/mixed
      multipart/alternative (text/plain, text/html, text/calendar inline)
      text/calendar attachment ``invite.ics``
    """
    message = MIMEMultipart("mixed")
    message["From"] = (
        formataddr((email.from_name, email.from_address)) if email.from_name else email.from_address
    )
    message["To"] = ", ".join(email.to)
    message["Subject"] = email.subject
    for name, value in email.headers.items():
        message[name] = value

    alternative = MIMEMultipart("alternative")
    alternative.attach(MIMEText(email.text_body, "plain", "utf-8"))
    if email.html_body:
        alternative.attach(MIMEText(email.html_body, "html", "utf-8"))
    if email.calendar_payload:
        alternative.attach(_calendar_part(email.calendar_payload, email.method, attachment=False))
    message.attach(alternative)

    if email.calendar_payload:
        message.attach(_calendar_part(email.calendar_payload, email.method, attachment=True))
    return message


class EmailTransport(abc.ABC):
    """Sends a fully described email. Raises on delivery failure."""

    @abc.abstractmethod
    async def send(self, email: OutboundEmail) -> None: ...


class SmtpEmailTransport(EmailTransport):
    """SMTP delivery; blocking smtplib calls run via ``asyncio.to_thread``."""

    def __init__(self, config: SmtpConfig) -> None:
        self._config = config

    def _smtp_send(self, email: OutboundEmail) -> None:
        """Blocking SMTP send, run via ``asyncio.to_thread``."""
        message = build_mime_message(email)

        server = smtplib.SMTP(self._config.host, self._config.port)
        try:
            if self._config.use_tls:
                server.starttls()
            if self._config.username and self._config.password:
                server.login(self._config.username, self._config.password)
            server.sendmail(email.from_address, email.to, message.as_string())
        finally:
            server.quit()

        logger.info("Invitation email sent to %s: %s", ", ".join(email.to), email.subject)

    async def send(self, email: OutboundEmail) -> None:
        if not email.to:
            return
        await asyncio.to_thread(self._smtp_send, email)
