"""
Typed views over the raw API payloads, plus the sync result records.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from common.utils import parse_timestamp

# Google Calendar extendedProperties.private keys written by this service
ORIGIN_PROPERTY = "syncOrigin"
DISCORD_ID_PROPERTY = "discordEventId"
ORIGIN_DISCORD = "discord"

# Discord scheduled event status for events that have not started
STATUS_SCHEDULED = 1

DEFAULT_EVENT_LENGTH = timedelta(hours=1)


def _google_time(value: Dict[str, Any]) -> Optional[datetime]:
    # Timed events carry dateTime, all-day events carry date only
    return parse_timestamp(value.get("dateTime") or value.get("date"))


@dataclass
class CalendarEvent:
    """A Google Calendar event."""
    id: str
    summary: str = ""
    description: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    location: Optional[str] = None
    html_link: Optional[str] = None
    status: str = "confirmed"
    all_day: bool = False
    origin: Optional[str] = None
    origin_id: Optional[str] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "CalendarEvent":
        start = data.get("start") or {}
        end = data.get("end") or {}
        private = (data.get("extendedProperties") or {}).get("private") or {}
        return cls(
            id=data["id"],
            summary=data.get("summary") or "",
            description=data.get("description") or "",
            start=_google_time(start),
            end=_google_time(end),
            location=data.get("location") or None,
            html_link=data.get("htmlLink") or None,
            status=data.get("status") or "confirmed",
            all_day="date" in start and "dateTime" not in start,
            origin=private.get(ORIGIN_PROPERTY),
            origin_id=private.get(DISCORD_ID_PROPERTY),
        )

    @property
    def is_cancelled(self) -> bool:
        return self.status == "cancelled"

    def has_ended(self, now: datetime) -> bool:
        return self.end is not None and self.end <= now


@dataclass
class ScheduledEntity:
    """A Discord guild scheduled event."""
    id: str
    name: str = ""
    description: str = ""
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    location: Optional[str] = None
    creator_id: Optional[str] = None
    status: int = STATUS_SCHEDULED
    entity_type: Optional[int] = None

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> "ScheduledEntity":
        metadata = data.get("entity_metadata") or {}
        creator_id = data.get("creator_id") or (data.get("creator") or {}).get("id")
        return cls(
            id=str(data["id"]),
            name=data.get("name") or "",
            description=data.get("description") or "",
            start=parse_timestamp(data.get("scheduled_start_time")),
            end=parse_timestamp(data.get("scheduled_end_time")),
            location=metadata.get("location") or None,
            creator_id=str(creator_id) if creator_id else None,
            status=data.get("status") or STATUS_SCHEDULED,
            entity_type=data.get("entity_type"),
        )

    @property
    def effective_end(self) -> Optional[datetime]:
        """Discord only requires an end time for external events."""
        if self.end is not None:
            return self.end
        if self.start is not None:
            return self.start + DEFAULT_EVENT_LENGTH
        return None


@dataclass
class SyncStats:
    """Statistics from a sync operation."""
    created: int = 0
    updated: int = 0
    deleted: int = 0
    skipped: int = 0
    errors: int = 0

    @property
    def total_processed(self) -> int:
        return self.created + self.updated + self.deleted + self.skipped

    def to_dict(self) -> Dict:
        return {
            'created': self.created,
            'updated': self.updated,
            'deleted': self.deleted,
            'skipped': self.skipped,
            'errors': self.errors,
            'total_processed': self.total_processed
        }


@dataclass
class SyncResult:
    """Result of a complete reconciliation pass."""
    success: bool
    direction: str
    stats: SyncStats = field(default_factory=SyncStats)
    source_count: int = 0
    destination_count: int = 0
    elapsed_seconds: float = 0.0
    error_message: Optional[str] = None
    finished_at: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict:
        return {
            'success': self.success,
            'direction': self.direction,
            'stats': self.stats.to_dict(),
            'source_count': self.source_count,
            'destination_count': self.destination_count,
            'elapsed_seconds': round(self.elapsed_seconds, 2),
            'error_message': self.error_message,
            'finished_at': self.finished_at,
        }
