"""ICS (RFC 5545) invitations sent by email when the provider will not notify.

The payload uses the same naive wall clock + explicit ``TZID`` representation
as the provider push, so an attendee sees the same time whether the invite
came from the provider or from this fallback.
"""

from __future__ import annotations

import enum
import html
import logging
import unicodedata
from collections.abc import Iterable
from datetime import UTC, date, datetime

from icalendar import Calendar, Event, vCalAddress

from hearth.calendar.instants import (
    all_day_range,
    exclusive_end_for,
    parse_naive,
    push_zones_for,
)
from hearth.calendar.mail import EmailTransport, OutboundEmail
from hearth.calendar.models import CalendarEvent, Organizer, normalize_email_list
from hearth.calendar.store import EventStore
from hearth.config import DEFAULT_TIMEZONE, IcsConfig, IcsFallbackPolicy
from hearth.core.metrics import SyncMetrics
from hearth.core.worker import BackgroundTaskPool

logger = logging.getLogger(__name__)

PRODID = "-//Hearth//Calendar Sync//EN"
_FALLBACK_UID_DOMAIN = "hearth.local"


class IcsMethod(enum.StrEnum):
    REQUEST = "REQUEST"
    CANCEL = "CANCEL"


# ---------------------------------------------------------------------------
# Formatting
# ---------------------------------------------------------------------------

_ASCII_REPLACEMENTS = str.maketrans({"→": "->", "⟶": "->", "➔": "->"})


def plain_text(value: str) -> str:
    """Normalise free text for mail clients that choke on arrows and compatibility forms."""
    return unicodedata.normalize("NFKC", value.translate(_ASCII_REPLACEMENTS))


def _mailto(email: str, name: str | None = None) -> vCalAddress:
    address = vCalAddress(f"mailto:{email}")
    if name:
        address.params["CN"] = plain_text(name).replace('"', "")
    return address


def build_ics(
    *,
    uid: str,
    sequence: int,
    method: IcsMethod,
    summary: str,
    start: str,
    end: str | None,
    all_day: bool,
    start_zone: str,
    end_zone: str,
    organizer: Organizer,
    attendees: Iterable[str],
    description: str | None = None,
    location: str | None = None,
    url: str | None = None,
    stamp: datetime | None = None,
) -> str:
    """Render a single-VEVENT calendar. Lines are CRLF-terminated and folded."""
    calendar = Calendar()
    calendar.add("prodid", PRODID)
    calendar.add("version", "2.0")
    calendar.add("calscale", "GREGORIAN")
    calendar.add("method", str(method))

    event = Event()
    event.add("uid", uid)
    event.add("dtstamp", (stamp or datetime.now(UTC)).astimezone(UTC))
    if all_day:
        first, last = all_day_range(start, end)
        event.add("dtstart", first)
        event.add("dtend", date.fromisoformat(exclusive_end_for(first, last)))
    else:
        event.add("dtstart", parse_naive(start), parameters={"TZID": start_zone})
        event.add("dtend", parse_naive(end or start), parameters={"TZID": end_zone})

    event.add("summary", plain_text(summary or "Event"))
    if location:
        event.add("location", plain_text(location))
    if description:
        event.add("description", plain_text(description))
    if url:
        event.add("url", url)

    event.add("organizer", _mailto(organizer.email, organizer.name))
    for email in attendees:
        attendee = _mailto(email, email)
        attendee.params["ROLE"] = "REQ-PARTICIPANT"
        attendee.params["PARTSTAT"] = "NEEDS-ACTION"
        attendee.params["RSVP"] = "TRUE"
        event.add("attendee", attendee)

    event.add("sequence", sequence)
    event.add("status", "CANCELLED" if method is IcsMethod.CANCEL else "CONFIRMED")
    event.add("transp", "OPAQUE")
    calendar.add_component(event)

    if not all_day:
        calendar.add_missing_timezones()
    return calendar.to_ical().decode("utf-8")


def _time_range_text(event: CalendarEvent, start_zone: str, end_zone: str) -> str:
    if event.all_day:
        first, last = all_day_range(event.start, event.end)
        if first == last:
            return f"{first.isoformat()} (all day)"
        return f"{first.isoformat()} to {last.isoformat()} (all day)"
    end = event.end or event.start
    if start_zone == end_zone:
        return f"{event.start} to {end} ({start_zone})"
    return f"{event.start} ({start_zone}) to {end} ({end_zone})"


def build_invite_bodies(
    event: CalendarEvent, method: IcsMethod, start_zone: str, end_zone: str
) -> tuple[str, str]:
    """Plain-text and HTML summaries shown next to the calendar part."""
    title = event.title or "Event"
    when = _time_range_text(event, start_zone, end_zone)
    heading = f"Cancelled: {title}" if method is IcsMethod.CANCEL else title

    text_lines = [heading, when]
    html_parts = [
        f"<h2>{html.escape(heading)}</h2>",
        f"<p><strong>When:</strong> {html.escape(when)}</p>",
    ]
    if event.location:
        text_lines.append(f"Where: {event.location}")
        html_parts.append(f"<p><strong>Where:</strong> {html.escape(event.location)}</p>")
    if event.meeting_link:
        text_lines.append(f"Join: {event.meeting_link}")
        link = html.escape(event.meeting_link, quote=True)
        html_parts.append(f'<p><strong>Join:</strong> <a href="{link}">{link}</a></p>')
    if event.description:
        text_lines += ["", event.description]
        html_parts.append(f"<p>{html.escape(event.description).replace(chr(10), '<br/>')}</p>")
    return "\n".join(text_lines), "\n".join(html_parts)


# ---------------------------------------------------------------------------
# Inviter
# ---------------------------------------------------------------------------


def filter_recipients(
    recipients: Iterable[str], organizer: Organizer, policy: IcsFallbackPolicy
) -> list[str]:
    """Apply the fallback recipient policy; the organizer never invites themself."""
    if policy is IcsFallbackPolicy.OFF:
        return []
    normalized = [e for e in normalize_email_list(list(recipients)) if e != organizer.email.lower()]
    if policy is IcsFallbackPolicy.EXTERNAL_ONLY and organizer.domain:
        suffix = f"@{organizer.domain}"
        normalized = [e for e in normalized if not e.endswith(suffix)]
    return normalized


class IcsFallbackInviter:
    """Best-effort ICS invitations; never raises into the caller.

    Each recipient gets its own email so one bad address cannot block the
    others. When a started :class:`BackgroundTaskPool` is supplied, sends run
    there with bounded retry; otherwise they are awaited inline.
    """

    def __init__(
        self,
        store: EventStore,
        transport: EmailTransport,
        config: IcsConfig | None = None,
        *,
        default_timezone: str = DEFAULT_TIMEZONE,
        pool: BackgroundTaskPool | None = None,
        metrics: SyncMetrics | None = None,
    ) -> None:
        self._store = store
        self._transport = transport
        self._config = config or IcsConfig()
        self._default_timezone = default_timezone
        self._pool = pool
        self._metrics = metrics or SyncMetrics()

    async def invite(
        self,
        event: CalendarEvent,
        recipients: Iterable[str],
        method: IcsMethod = IcsMethod.REQUEST,
        *,
        user_id: str,
    ) -> bool:
        """Send *method* for *event* to *recipients*; returns True when anything was sent."""
        try:
            return await self._invite(event, list(recipients), method, user_id=user_id)
        except Exception:
            logger.exception("ICS fallback failed for event %s (method=%s)", event.id, method)
            return False

    async def _invite(
        self, event: CalendarEvent, recipients: list[str], method: IcsMethod, *, user_id: str
    ) -> bool:
        if self._config.policy is IcsFallbackPolicy.OFF:
            return False
        organizer = await self._store.get_organizer(user_id)
        if organizer is None:
            logger.warning("No organizer email for user %s; skipping ICS fallback", user_id)
            return False
        targets = filter_recipients(recipients, organizer, self._config.policy)
        if not targets:
            logger.debug("ICS fallback for %s has no eligible recipients", event.id)
            return False

        calendar_zone = (
            await self._store.get_calendar_timezone(event.provider_calendar_id)
            if event.provider_calendar_id
            else None
        )
        start_zone, end_zone = push_zones_for(event, calendar_zone, self._default_timezone)
        uid_domain = self._config.uid_domain or organizer.domain or _FALLBACK_UID_DOMAIN
        uid = f"{event.id}@{uid_domain}"
        sequence = (event.metadata.ics_sequence or 0) + 1

        payload = build_ics(
            uid=uid,
            sequence=sequence,
            method=method,
            summary=event.title,
            start=event.start,
            end=event.end,
            all_day=event.all_day,
            start_zone=start_zone,
            end_zone=end_zone,
            organizer=organizer,
            attendees=targets,
            description=event.description,
            location=event.meeting_link or event.location,
            url=event.meeting_link,
        )
        text_body, html_body = build_invite_bodies(event, method, start_zone, end_zone)
        subject = f"Cancelled: {event.title}" if method is IcsMethod.CANCEL else event.title
        from_address = self._config.smtp.from_address or organizer.email

        sent_any = False
        for recipient in targets:
            email = OutboundEmail(
                from_address=from_address,
                from_name=organizer.name,
                to=[recipient],
                subject=subject or "Event",
                text_body=text_body,
                html_body=html_body,
                calendar_payload=payload,
                method=str(method),
                headers={"Reply-To": organizer.email},
            )
            if self._pool is not None and self._pool.running:
                sent_any |= self._pool.submit(
                    f"ics:{event.id}:{recipient}", lambda email=email: self.deliver(email)
                )
            else:
                try:
                    await self.deliver(email)
                    sent_any = True
                except Exception as exc:
                    logger.warning(
                        "ICS email to %s failed for event %s: %s", recipient, event.id, exc
                    )

        if sent_any:
            metadata = event.metadata.model_copy(update={"ics_sequence": sequence, "ics_uid": uid})
            await self._store.update(event.id, {"metadata": metadata})
            event.metadata = metadata
            logger.info(
                "ICS %s sent for event %s (sequence=%d, recipients=%d)",
                method,
                event.id,
                sequence,
                len(targets),
            )
        return sent_any

    async def deliver(self, email: OutboundEmail) -> None:
        """Send one email; raises so the worker pool can retry it."""
        try:
            await self._transport.send(email)
        except Exception:
            self._metrics.ics_sent("failed")
            raise
        self._metrics.ics_sent("sent")
