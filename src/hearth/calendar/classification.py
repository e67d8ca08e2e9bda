"""Category inference, meeting-link extraction and change-domain classification."""

from __future__ import annotations

import re
from typing import Any

from hearth.calendar.models import Domain

# Ordered: first matching rule wins.
_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("medical", ("doctor", "medical", "appointment", "health")),
    ("work", ("work", "meeting", "conference")),
    ("travel", ("travel", "flight", "trip")),
    ("school", ("school", "class", "education")),
    ("family", ("family",)),
)
DEFAULT_CATEGORY = "personal"

_ZOOM_URL_RE = re.compile(r"https://[\w.-]*zoom\.us/j/[^\s<>\"]+", re.IGNORECASE)


def infer_category(title: str | None, description: str | None = None) -> str:
    """Keyword-based best guess at an event category from its title and description."""
    text = f"{title or ''} {description or ''}".lower()
    for category, keywords in _CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return category
    return DEFAULT_CATEGORY


def extract_meeting_link(provider_event: dict[str, Any]) -> str | None:
    """Video link of a provider event.

    Order: ``hangoutLink``, then the first ``video`` conference entry point,
    then a Zoom URL found in the description.
    """
    hangout = provider_event.get("hangoutLink")
    if isinstance(hangout, str) and hangout:
        return hangout

    conference = provider_event.get("conferenceData")
    if isinstance(conference, dict):
        for entry in conference.get("entryPoints") or []:
            if (
                isinstance(entry, dict)
                and entry.get("entryPointType") == "video"
                and isinstance(entry.get("uri"), str)
            ):
                return entry["uri"]

    description = provider_event.get("description")
    if isinstance(description, str):
        match = _ZOOM_URL_RE.search(description)
        if match:
            return match.group(0)
    return None


def is_virtual_meeting(provider_event: dict[str, Any]) -> bool:
    return extract_meeting_link(provider_event) is not None


def extract_reminder_minutes(provider_event: dict[str, Any]) -> int | None:
    """Smallest override reminder in minutes, or None when defaults are used."""
    reminders = provider_event.get("reminders")
    if not isinstance(reminders, dict):
        return None
    overrides = [
        o["minutes"]
        for o in reminders.get("overrides") or []
        if isinstance(o, dict) and isinstance(o.get("minutes"), int)
    ]
    return min(overrides) if overrides else None


# ---------------------------------------------------------------------------
# Domains
# ---------------------------------------------------------------------------

WATCHED_TABLES = ("calendar_events", "tasks", "travel_details", "academic_events")

_SOURCE_DOMAINS: dict[str, Domain] = {
    "travel": Domain.TRAVEL,
    "health": Domain.HEALTH,
    "pets": Domain.PETS,
    "academics": Domain.ACADEMICS,
}

_CATEGORY_DOMAINS: dict[str, Domain] = {
    "medical": Domain.HEALTH,
    "pets": Domain.PETS,
    "education": Domain.ACADEMICS,
}

_TABLE_DOMAINS: dict[str, Domain] = {
    "travel_details": Domain.TRAVEL,
    "academic_events": Domain.ACADEMICS,
}


def classify_domain(table: str, source: str | None, category: str | None) -> Domain:
    """Map a changed row to the product domain it belongs to.

    An explicit ``source`` wins over ``category``. Task rows only leave the
    general bucket for medical (health) and pet categories.
    """
    if table == "tasks":
        key = (category or "").strip().lower()
        if key == "medical":
            return Domain.HEALTH
        if key == "pets":
            return Domain.PETS
        return Domain.GENERAL

    if table in _TABLE_DOMAINS:
        return _TABLE_DOMAINS[table]

    source_domain = _SOURCE_DOMAINS.get((source or "").strip().lower())
    if source_domain is not None:
        return source_domain
    return _CATEGORY_DOMAINS.get((category or "").strip().lower(), Domain.GENERAL)


def domains_to_invalidate(table: str, source: str | None, category: str | None) -> set[Domain]:
    """Every subscriber domain a row change should refresh.

    The calendar view is always refreshed. Health and pet changes also
    refresh tasks.
    """
    domain = classify_domain(table, source, category)
    targets: set[Domain] = {Domain.CALENDAR}
    if domain is Domain.TRAVEL:
        targets.add(Domain.TRAVEL)
    elif domain is Domain.HEALTH:
        targets.update((Domain.HEALTH, Domain.TASKS))
    elif domain is Domain.PETS:
        targets.update((Domain.PETS, Domain.TASKS))
    elif domain is Domain.ACADEMICS:
        targets.add(Domain.ACADEMICS)
    if table == "tasks" or (source or "").strip().lower() == "tasks":
        targets.add(Domain.TASKS)
    return targets
