"""Wall-clock / instant conversion for calendar events.

Events store naive local date-times (``2024-03-10T02:30:00``) next to an IANA
zone. Everything that needs an absolute point in time (day views, provider
payload checks, DST annotations) goes through these helpers so there is one
interpretation of a naive string.

All functions are pure; zones are looked up through :mod:`zoneinfo`.
"""

from __future__ import annotations

import re
from datetime import UTC, date, datetime, timedelta
from functools import lru_cache
from typing import TYPE_CHECKING
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from hearth.calendar.errors import ValidationError

if TYPE_CHECKING:
    from hearth.calendar.models import CalendarEvent

MINUTES_PER_DAY = 1440

_OFFSET_RE = re.compile(r"(Z|[+-]\d{2}:?\d{2})$")
_DATE_ONLY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


@lru_cache(maxsize=128)
def get_zone(name: str) -> ZoneInfo:
    """Return the ZoneInfo for *name*, raising ValidationError for unknown zones."""
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValidationError(f"Unknown time zone: {name!r}") from exc


def is_valid_zone(name: str | None) -> bool:
    if not name:
        return False
    try:
        get_zone(name)
    except ValidationError:
        return False
    return True


def has_explicit_offset(value: str) -> bool:
    """True when *value* ends in ``Z`` or a ``±HH:MM`` / ``±HHMM`` offset."""
    return _OFFSET_RE.search(value.strip()) is not None


def is_date_only(value: str) -> bool:
    return _DATE_ONLY_RE.match(value.strip()) is not None


def parse_naive(value: str) -> datetime:
    """Parse a naive wall-clock string, dropping any trailing offset.

    Accepts ``YYYY-MM-DD``, ``YYYY-MM-DDTHH:MM`` and ``YYYY-MM-DDTHH:MM:SS[.ffffff]``
    (a space separator is also accepted).
    """
    text = _OFFSET_RE.sub("", value.strip())
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date-time: {value!r}") from exc
    return parsed.replace(tzinfo=None)


def _parse_aware(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    elif re.search(r"[+-]\d{4}$", text):
        text = f"{text[:-2]}:{text[-2:]}"
    try:
        return datetime.fromisoformat(text)
    except ValueError as exc:
        raise ValidationError(f"Invalid date-time: {value!r}") from exc


def to_instant(value: str, zone: str) -> datetime:
    """Interpret *value* as wall-clock time in *zone* and return the UTC instant.

    Strings carrying ``Z`` or an explicit offset are honoured as-is and *zone*
    is ignored. Otherwise the instant is found by correction: start from the
    wall clock read as UTC, format that guess in the zone, and shift by the
    difference. A second pass is only accepted when it lands exactly on the
    requested wall clock, so a time that does not exist (spring-forward gap)
    resolves to the instant after the gap instead of oscillating.
    """
    if has_explicit_offset(value):
        return _parse_aware(value).astimezone(UTC)

    desired = parse_naive(value)
    tz = get_zone(zone)
    guess = desired.replace(tzinfo=UTC)
    for pass_number in range(2):
        wall = guess.astimezone(tz).replace(tzinfo=None)
        delta = desired - wall
        if not delta:
            return guess
        candidate = guess + delta
        if pass_number == 0:
            guess = candidate
        elif candidate.astimezone(tz).replace(tzinfo=None) == desired:
            guess = candidate
    return guess


def format_in_zone(instant: datetime, zone: str) -> str:
    """Render *instant* as a naive ``YYYY-MM-DDTHH:MM:SS`` wall clock in *zone*.

    Naive datetimes are taken to be UTC.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    local = instant.astimezone(get_zone(zone))
    return local.replace(tzinfo=None, microsecond=0).isoformat(timespec="seconds")


def to_wall_clock_string(value: str) -> str:
    """Normalise a naive (or offset-carrying) string to ``YYYY-MM-DDTHH:MM:SS``.

    Missing seconds are added and a trailing offset is stripped; the wall
    clock digits are kept untouched. Used when the zone travels separately.
    """
    return parse_naive(value).replace(microsecond=0).isoformat(timespec="seconds")


def day_window(instant: datetime, zone: str) -> tuple[datetime, datetime]:
    """Return ``(start, end)`` of the local day containing *instant*.

    ``end`` is the next local midnight (exclusive), so the window is 23 or 25
    hours long on DST transition days.
    """
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=UTC)
    local_day = instant.astimezone(get_zone(zone)).date()
    return _local_midnight(local_day, zone), _local_midnight(local_day + timedelta(days=1), zone)


def _local_midnight(day: date, zone: str) -> datetime:
    return to_instant(day.isoformat() + "T00:00:00", zone)


def _wall_minutes(instant: datetime, zone: str) -> int:
    local = instant.astimezone(get_zone(zone))
    return local.hour * 60 + local.minute


def minutes_on_day(
    start: datetime, end: datetime, zone: str, target_date: date
) -> tuple[int, int] | None:
    """Return the wall-clock minute span ``(start_min, end_min)`` an event covers on a day.

    Both bounds lie in ``[0, 1440]`` and ``end_min >= start_min + 1`` so
    zero-length events stay visible. Returns ``None`` when the event does not
    touch *target_date*.
    """
    if start.tzinfo is None or end.tzinfo is None:
        raise ValidationError("minutes_on_day requires timezone-aware instants")
    if end < start:
        end = start
    day_start = _local_midnight(target_date, zone)
    day_end = _local_midnight(target_date + timedelta(days=1), zone)

    if start >= day_end or end < day_start:
        return None
    if end == day_start and start < end:
        return None

    start_min = 0 if start <= day_start else _wall_minutes(start, zone)
    end_min = MINUTES_PER_DAY if end >= day_end else _wall_minutes(end, zone)
    end_min = min(MINUTES_PER_DAY, max(end_min, start_min + 1))
    start_min = max(0, min(start_min, MINUTES_PER_DAY - 1))
    return start_min, end_min


# ---------------------------------------------------------------------------
# All-day ranges
# ---------------------------------------------------------------------------


def _date_part(value: str) -> date:
    try:
        return date.fromisoformat(value.strip()[:10])
    except ValueError as exc:
        raise ValidationError(f"Invalid date: {value!r}") from exc


def all_day_range(start: str, end: str | None) -> tuple[date, date]:
    """Return ``(first_day, last_day)`` inclusive for a stored all-day event.

    Only the date components are used, never an instant, so the result does
    not depend on the viewer's zone. The stored end is exclusive; a missing or
    non-advancing end yields a single-day event.
    """
    first = _date_part(start)
    if not end:
        return first, first
    exclusive_end = _date_part(end)
    if exclusive_end <= first:
        return first, first
    return first, exclusive_end - timedelta(days=1)


def exclusive_end_for(first_day: date, last_day: date) -> str:
    """Stored (exclusive) end date for an inclusive ``[first_day, last_day]`` range."""
    if last_day < first_day:
        last_day = first_day
    return (last_day + timedelta(days=1)).isoformat()


def normalize_all_day_end(start: str, end: str | None) -> tuple[str, str]:
    """Return ``(start_date, exclusive_end_date)`` strings for an all-day event."""
    first, last = all_day_range(start, end)
    return first.isoformat(), exclusive_end_for(first, last)


def normalize_event_times(
    start: str,
    end: str | None,
    all_day: bool,
    *,
    start_zone: str = "UTC",
    end_zone: str | None = None,
) -> tuple[str, str]:
    """Enforce stored timing invariants and return ``(start, end)``.

    All-day events become plain dates with an exclusive end. Timed events keep
    their strings. Each leg is read in its own zone (*end_zone* defaults to
    *start_zone*), so an arrival whose local time reads earlier than the
    departure is kept when its instant is later. A missing, unparseable or
    earlier end collapses to the start instant, written in the end zone.
    """
    if all_day:
        return normalize_all_day_end(start, end)
    end_zone = end_zone or start_zone
    begin = to_instant(start, start_zone)
    if end:
        try:
            finish = to_instant(end, end_zone)
        except ValidationError:
            finish = None
        if finish is not None and finish >= begin:
            return start, end
    if end_zone == start_zone:
        return start, start
    return start, format_in_zone(begin, end_zone)


# ---------------------------------------------------------------------------
# DST
# ---------------------------------------------------------------------------

_DST_SAMPLE_OFFSET = timedelta(hours=2)


def detect_dst_transition(value: str, zone: str) -> bool:
    """True when the zone abbreviation changes within two hours of *value*.

    Samples the abbreviation at T-2h, T and T+2h; any difference means the
    event sits on a DST boundary.
    """
    instant = to_instant(value, zone)
    tz = get_zone(zone)
    samples = (instant - _DST_SAMPLE_OFFSET, instant, instant + _DST_SAMPLE_OFFSET)
    return len({sample.astimezone(tz).tzname() for sample in samples}) > 1


def annotate_dst_transition(event: CalendarEvent, zone: str) -> bool:
    """Set ``metadata.dst_transition`` for a timed event starting near a DST change.

    All-day events are never annotated. Returns the flag that was stored.
    """
    flagged = not event.all_day and detect_dst_transition(event.start, zone)
    event.metadata.dst_transition = flagged or None
    return flagged


# ---------------------------------------------------------------------------
# Zone resolution
# ---------------------------------------------------------------------------


def resolve_event_zone(
    event_zone: str | None,
    metadata_zone: str | None,
    calendar_zone: str | None,
    fallback_zone: str,
) -> str:
    """First valid zone of event → metadata → provider calendar → fallback."""
    for candidate in (event_zone, metadata_zone, calendar_zone):
        if is_valid_zone(candidate):
            return candidate  # type: ignore[return-value]
    return fallback_zone


def select_push_zones(
    base_zone: str,
    *,
    start_zone: str | None = None,
    departure_zone: str | None = None,
    end_zone: str | None = None,
    arrival_zone: str | None = None,
) -> tuple[str, str]:
    """Return ``(start_tz, end_tz)`` for an event whose legs may sit in different zones.

    The start leg prefers ``start_zone`` then ``departure_zone``; the end leg
    prefers ``end_zone`` then ``arrival_zone``. Each leg falls back to
    *base_zone* on its own, so a flight departing New York and arriving in
    London keeps both zones.
    """
    start_tz = next((z for z in (start_zone, departure_zone) if is_valid_zone(z)), base_zone)
    end_tz = next((z for z in (end_zone, arrival_zone) if is_valid_zone(z)), base_zone)
    return start_tz, end_tz


def push_zones_for(
    event: CalendarEvent, calendar_zone: str | None, default_zone: str
) -> tuple[str, str]:
    """``(start_tz, end_tz)`` an event is written with, to the provider and in ICS."""
    metadata = event.metadata
    return select_push_zones(
        event.zone(calendar_zone, default_zone),
        start_zone=metadata.start_timezone,
        departure_zone=metadata.departure_timezone,
        end_zone=metadata.end_timezone,
        arrival_zone=metadata.arrival_timezone,
    )
