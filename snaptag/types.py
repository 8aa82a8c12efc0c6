"""
Data types for tagged photos and their reminders.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional


def utc_now() -> datetime:
    """Current time as a timezone-aware UTC datetime.

    All timestamps in snaptag are UTC. This is the single source of truth
    for "now" so tests can patch it in one place.
    """
    return datetime.now(timezone.utc)


def format_utc(dt: datetime) -> str:
    """Format a datetime for storage (ISO 8601, UTC, microseconds kept)."""
    return ensure_utc(dt).isoformat()


def ensure_utc(dt: datetime) -> datetime:
    """Return dt as an aware UTC datetime. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_utc_timestamp(ts: str) -> datetime:
    """Parse a stored timestamp string to a timezone-aware UTC datetime.

    Accepts the canonical format as well as a 'Z' suffix or a naive value.
    """
    ts = ts.replace("Z", "+00:00")
    return ensure_utc(datetime.fromisoformat(ts))


def local_display(dt: Optional[datetime]) -> str:
    """Short local-time rendering (YYYY-MM-DD HH:MM) for CLI output."""
    if dt is None:
        return ""
    return dt.astimezone().strftime("%Y-%m-%d %H:%M")


class AlarmStatus(str, enum.Enum):
    """Alarm lifecycle. FIRED and CANCELLED are terminal."""
    PENDING = "pending"
    FIRED = "fired"
    CANCELLED = "cancelled"

    @property
    def terminal(self) -> bool:
        return self is not AlarmStatus.PENDING


@dataclass
class TaggedRecord:
    """
    A photo reference bound to its tags and comment.

    The photo itself lives with the media collaborator; only the opaque
    reference is stored here.
    """
    id: str
    photo_ref: str
    tags: list[str]
    comment: str
    created_at: datetime
    updated_at: datetime

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "photo_ref": self.photo_ref,
            "tags": list(self.tags),
            "comment": self.comment,
            "created_at": format_utc(self.created_at),
            "updated_at": format_utc(self.updated_at),
        }


@dataclass
class Alarm:
    """
    A one-shot reminder for exactly one TaggedRecord.

    The alarm id doubles as the platform notification id.
    """
    id: str
    record_id: str
    fire_at: datetime
    status: AlarmStatus = AlarmStatus.PENDING
    created_at: datetime = field(default_factory=utc_now)
    resolved_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.status is AlarmStatus.PENDING

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "record_id": self.record_id,
            "fire_at": format_utc(self.fire_at),
            "status": self.status.value,
            "created_at": format_utc(self.created_at),
            "resolved_at": format_utc(self.resolved_at) if self.resolved_at else None,
            "last_error": self.last_error,
        }


@dataclass
class ShowRecordEvent:
    """Emitted when a reminder fires or its notification is tapped."""
    record: TaggedRecord
    alarm_id: str
    source: str  # "fired" or "tapped"
