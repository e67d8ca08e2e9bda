"""Tests for ICS rendering and the email fallback inviter."""

from __future__ import annotations

from datetime import UTC, datetime

import pytest

from hearth.calendar.ics import (
    IcsFallbackInviter,
    IcsMethod,
    build_ics,
    build_invite_bodies,
    filter_recipients,
    plain_text,
)
from hearth.calendar.models import CalendarEvent, Organizer
from hearth.config import IcsConfig, IcsFallbackPolicy, WorkerConfig
from hearth.core.worker import BackgroundTaskPool
from hearth.testing import InMemoryEventStore, RecordingEmailTransport

pytestmark = pytest.mark.unit

NY = "America/New_York"
MOM = Organizer(email="mom@family.org", name="Mom")


def _unfold(payload: str) -> list[str]:
    return payload.replace("\r\n ", "").split("\r\n")


def _render(**overrides) -> str:
    fields = {
        "uid": "ev-1@family.org",
        "sequence": 1,
        "method": IcsMethod.REQUEST,
        "summary": "Dinner, with; friends",
        "start": "2024-07-01T18:00:00",
        "end": "2024-07-01T20:00",
        "all_day": False,
        "start_zone": NY,
        "end_zone": NY,
        "organizer": MOM,
        "attendees": ["guest@other.org"],
        "stamp": datetime(2024, 6, 1, 12, 0, tzinfo=UTC),
    }
    fields.update(overrides)
    return build_ics(**fields)


# ---------------------------------------------------------------------------
# Text helpers
# ---------------------------------------------------------------------------


class TestTextHandling:
    def test_text_values_are_escaped(self):
        lines = _unfold(_render(description="a\\b\nc,d;e"))
        assert "DESCRIPTION:a\\\\b\\nc\\,d\\;e" in lines

    def test_arrows_become_ascii(self):
        assert plain_text("NYC → LON") == "NYC -> LON"
        assert "SUMMARY:Flight NYC -> LON" in _unfold(_render(summary="Flight NYC → LON"))

    def test_organizer_name_with_delimiters_is_quoted(self):
        organizer = Organizer(email="mom@family.org", name="Smith, Jane")
        lines = _unfold(_render(organizer=organizer))
        assert 'ORGANIZER;CN="Smith, Jane":mailto:mom@family.org' in lines

    def test_long_lines_fold_at_75_octets(self):
        payload = _render(description="x" * 200, location="é" * 60)
        physical = payload.split("\r\n")
        assert all(len(line.encode()) <= 75 for line in physical)
        assert "DESCRIPTION:" + "x" * 200 in _unfold(payload)
        assert "LOCATION:" + "é" * 60 in _unfold(payload)


# ---------------------------------------------------------------------------
# build_ics
# ---------------------------------------------------------------------------


class TestBuildIcs:
    def test_timed_request(self):
        payload = _render()
        lines = _unfold(payload)

        assert payload.endswith("\r\n")
        assert lines[0] == "BEGIN:VCALENDAR"
        assert "METHOD:REQUEST" in lines
        assert lines.count(f"TZID:{NY}") == 1
        assert "UID:ev-1@family.org" in lines
        assert "DTSTAMP:20240601T120000Z" in lines
        assert f"DTSTART;TZID={NY}:20240701T180000" in lines
        assert f"DTEND;TZID={NY}:20240701T200000" in lines
        assert "SUMMARY:Dinner\\, with\\; friends" in lines
        assert "ORGANIZER;CN=Mom:mailto:mom@family.org" in lines
        (attendee,) = [line for line in lines if line.startswith("ATTENDEE;")]
        assert attendee.endswith(":mailto:guest@other.org")
        for param in ("CN=guest@other.org", "ROLE=REQ-PARTICIPANT", "PARTSTAT=NEEDS-ACTION"):
            assert param in attendee
        assert "RSVP=TRUE" in attendee
        assert "SEQUENCE:1" in lines
        assert "STATUS:CONFIRMED" in lines

    def test_legs_in_different_zones(self):
        lines = _unfold(_render(end_zone="Europe/London", end="2024-07-02T07:00:00"))
        assert f"DTSTART;TZID={NY}:20240701T180000" in lines
        assert "DTEND;TZID=Europe/London:20240702T070000" in lines
        assert "TZID:Europe/London" in lines

    def test_all_day(self):
        lines = _unfold(_render(all_day=True, start="2024-05-01", end="2024-05-03"))
        assert "DTSTART;VALUE=DATE:20240501" in lines
        assert "DTEND;VALUE=DATE:20240503" in lines
        assert not any(line.startswith("BEGIN:VTIMEZONE") for line in lines)

    def test_cancel(self):
        lines = _unfold(_render(method=IcsMethod.CANCEL, sequence=3))
        assert "METHOD:CANCEL" in lines
        assert "STATUS:CANCELLED" in lines
        assert "SEQUENCE:3" in lines


class TestInviteBodies:
    def test_cancel_heading_and_html_escaping(self):
        event = CalendarEvent(
            id="ev-1",
            title="Dinner",
            start="2024-07-01T18:00:00",
            end="2024-07-01T20:00:00",
            description="<b>bring dessert</b>",
        )
        text, html_body = build_invite_bodies(event, IcsMethod.CANCEL, NY, NY)
        assert text.splitlines()[0] == "Cancelled: Dinner"
        assert f"2024-07-01T18:00:00 to 2024-07-01T20:00:00 ({NY})" in text
        assert "&lt;b&gt;bring dessert&lt;/b&gt;" in html_body

    def test_all_day_range(self):
        event = CalendarEvent(
            id="ev-1", title="Camp", start="2024-05-01", end="2024-05-04", all_day=True
        )
        text, _ = build_invite_bodies(event, IcsMethod.REQUEST, NY, NY)
        assert "2024-05-01 to 2024-05-03 (all day)" in text


class TestFilterRecipients:
    def test_external_only_drops_organizer_domain(self):
        recipients = ["Coach@Club.org", "dad@family.org", "mom@family.org", "bad-address"]
        assert filter_recipients(recipients, MOM, IcsFallbackPolicy.EXTERNAL_ONLY) == [
            "coach@club.org"
        ]

    def test_all_keeps_family_but_not_organizer(self):
        recipients = ["coach@club.org", "dad@family.org", "mom@family.org"]
        assert filter_recipients(recipients, MOM, IcsFallbackPolicy.ALL) == [
            "coach@club.org",
            "dad@family.org",
        ]

    def test_off(self):
        assert filter_recipients(["coach@club.org"], MOM, IcsFallbackPolicy.OFF) == []


# ---------------------------------------------------------------------------
# Inviter
# ---------------------------------------------------------------------------


def _make_inviter(config: IcsConfig | None = None, *, failing=(), pool=None):
    store = InMemoryEventStore()
    store.organizers["u1"] = MOM
    event = CalendarEvent(
        id="ev-1",
        title="Recital",
        start="2024-07-01T18:00:00",
        end="2024-07-01T19:00:00",
        timezone=NY,
    )
    store.add_event(event)
    transport = RecordingEmailTransport(failing=failing)
    inviter = IcsFallbackInviter(
        store, transport, config or IcsConfig(), default_timezone=NY, pool=pool
    )
    return inviter, store, transport, event


class TestInviter:
    async def test_one_email_per_recipient(self):
        inviter, store, transport, event = _make_inviter()

        sent = await inviter.invite(event, ["coach@club.org", "aunt@else.net"], user_id="u1")

        assert sent is True
        assert [e.to for e in transport.sent] == [["coach@club.org"], ["aunt@else.net"]]
        email = transport.sent[0]
        assert email.subject == "Recital"
        assert email.from_address == "mom@family.org"
        assert email.headers == {"Reply-To": "mom@family.org"}
        assert email.method == "REQUEST"
        metadata = store.events["ev-1"].metadata
        assert metadata.ics_sequence == 1
        assert metadata.ics_uid == "ev-1@family.org"

    async def test_sequence_increments_per_send(self):
        inviter, store, _, event = _make_inviter()

        await inviter.invite(event, ["coach@club.org"], user_id="u1")
        await inviter.invite(event, ["coach@club.org"], IcsMethod.CANCEL, user_id="u1")

        assert store.events["ev-1"].metadata.ics_sequence == 2

    async def test_failing_recipient_does_not_block_others(self):
        inviter, _, transport, event = _make_inviter(failing=["bad@club.org"])

        sent = await inviter.invite(event, ["bad@club.org", "coach@club.org"], user_id="u1")

        assert sent is True
        assert transport.recipients == ["coach@club.org"]

    async def test_uid_domain_from_config(self):
        inviter, store, _, event = _make_inviter(IcsConfig(uid_domain="hearth.example"))

        await inviter.invite(event, ["coach@club.org"], user_id="u1")

        assert store.events["ev-1"].metadata.ics_uid == "ev-1@hearth.example"

    async def test_no_organizer(self):
        inviter, store, transport, event = _make_inviter()
        store.organizers.clear()

        assert await inviter.invite(event, ["coach@club.org"], user_id="u1") is False
        assert transport.sent == []

    async def test_policy_off(self):
        inviter, _, transport, event = _make_inviter(IcsConfig(policy=IcsFallbackPolicy.OFF))

        assert await inviter.invite(event, ["coach@club.org"], user_id="u1") is False
        assert transport.sent == []

    async def test_sends_through_worker_pool(self):
        pool = BackgroundTaskPool(WorkerConfig(worker_count=1), retryable=(ConnectionError,))
        await pool.start()
        try:
            inviter, _, transport, event = _make_inviter(pool=pool)

            assert await inviter.invite(event, ["coach@club.org"], user_id="u1") is True
            await pool.join()

            assert transport.recipients == ["coach@club.org"]
            assert pool.completed == 1
        finally:
            await pool.stop()
