"""
Field mapping between Google Calendar events and Discord scheduled events.

Pure functions, no I/O. Translation is lossy: descriptions are truncated,
attendees, recurrence and colours are dropped.

Origin markers:
- Discord → Google writes carry a structured tag in
  extendedProperties.private and a human-readable "Synced from Discord" line.
- Google → Discord writes end with a footer line the translator owns: the
  "[View in Google Calendar](...)" link, or "Synced from Google Calendar"
  when the event has no link. Discord has no free-form metadata field, so
  the footer is matched exactly and only at the end of the description.

Markers are stripped before new ones are appended so round trips stay stable.
"""

import re
from typing import Any, Dict, Optional

from common.discord_client import ENTITY_TYPE_EXTERNAL, PRIVACY_LEVEL_GUILD_ONLY
from common.utils import format_rfc3339
from calendar_sync.models import (
    CalendarEvent,
    DEFAULT_EVENT_LENGTH,
    DISCORD_ID_PROPERTY,
    ORIGIN_DISCORD,
    ORIGIN_PROPERTY,
    ScheduledEntity,
)

DESCRIPTION_BUDGET = 800
NAME_LIMIT = 100          # Discord scheduled event name limit
LOCATION_LIMIT = 100      # Discord entity_metadata.location limit

UNTITLED_EVENT = "Untitled Event"
LOCATION_PLACEHOLDER = "See calendar for details"
CALENDAR_LINK_LABEL = "View in Google Calendar"
REMOTE_ORIGIN_MARKER = "Synced from Google Calendar"
LOCAL_ORIGIN_MARKER = "Synced from Discord"

_REMOTE_LINK_FOOTER = re.compile(r"\s*\[" + re.escape(CALENDAR_LINK_LABEL) + r"\]\([^)\s]*\)\s*\Z")
_REMOTE_TEXT_FOOTER = re.compile(r"\s*^" + re.escape(REMOTE_ORIGIN_MARKER) + r"\s*\Z", re.MULTILINE)
_LOCAL_MARKER_FOOTER = re.compile(r"\s*^" + re.escape(LOCAL_ORIGIN_MARKER) + r"\s*\Z", re.MULTILINE)
_LOCAL_MARKER_LINE = re.compile(r"^" + re.escape(LOCAL_ORIGIN_MARKER) + r"\s*$", re.MULTILINE)

_FOOTERS = (_REMOTE_LINK_FOOTER, _REMOTE_TEXT_FOOTER, _LOCAL_MARKER_FOOTER)


def strip_sync_markers(text: Optional[str]) -> str:
    """Remove any trailing footers this module appended."""
    result = text or ""
    changed = True
    while changed:
        changed = False
        for pattern in _FOOTERS:
            stripped = pattern.sub("", result)
            if stripped != result:
                result = stripped
                changed = True
    return result.strip()


def is_remote_origin(description: Optional[str]) -> bool:
    """True when a Discord description ends with the Google footer and
    carries no Discord origin marker."""
    if not description:
        return False
    has_footer = bool(_REMOTE_LINK_FOOTER.search(description) or _REMOTE_TEXT_FOOTER.search(description))
    return has_footer and not _LOCAL_MARKER_LINE.search(description)


def is_local_origin(event: CalendarEvent) -> bool:
    """True when the Google event was written by the Discord → Google path."""
    return event.origin == ORIGIN_DISCORD


def _append_footer(body: str, footer: str) -> str:
    return f"{body}\n\n{footer}" if body else footer


def format_event_description(event: CalendarEvent) -> str:
    body = strip_sync_markers(event.description)[:DESCRIPTION_BUDGET].rstrip()
    if event.html_link:
        footer = f"[{CALENDAR_LINK_LABEL}]({event.html_link})"
    else:
        footer = REMOTE_ORIGIN_MARKER
    return _append_footer(body, footer)


def to_scheduled_event(event: CalendarEvent) -> Dict[str, Any]:
    """Google event → Discord scheduled event payload."""
    if event.start is None:
        raise ValueError(f"Google event {event.id} has no start time")
    end = event.end if event.end is not None and event.end > event.start else event.start + DEFAULT_EVENT_LENGTH

    return {
        "name": (event.summary.strip() or UNTITLED_EVENT)[:NAME_LIMIT],
        "description": format_event_description(event),
        "scheduled_start_time": format_rfc3339(event.start),
        "scheduled_end_time": format_rfc3339(end),
        "privacy_level": PRIVACY_LEVEL_GUILD_ONLY,
        "entity_type": ENTITY_TYPE_EXTERNAL,
        "entity_metadata": {
            "location": (event.location or LOCATION_PLACEHOLDER)[:LOCATION_LIMIT],
        },
    }


def to_calendar_event(entity: ScheduledEntity) -> Dict[str, Any]:
    """Discord scheduled event → Google Calendar event body."""
    if entity.start is None:
        raise ValueError(f"Discord event {entity.id} has no start time")

    body: Dict[str, Any] = {
        "summary": entity.name or UNTITLED_EVENT,
        "description": _append_footer(strip_sync_markers(entity.description), LOCAL_ORIGIN_MARKER),
        "start": {"dateTime": format_rfc3339(entity.start), "timeZone": "UTC"},
        "end": {"dateTime": format_rfc3339(entity.effective_end), "timeZone": "UTC"},
        "extendedProperties": {
            "private": {
                ORIGIN_PROPERTY: ORIGIN_DISCORD,
                DISCORD_ID_PROPERTY: entity.id,
            }
        },
    }
    if entity.location:
        body["location"] = entity.location
    return body
