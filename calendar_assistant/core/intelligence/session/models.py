"""
Conversation state models.

One ConversationState per user holds everything a multi-turn scheduling
negotiation needs: the stage, the meeting parameters gathered so far, the
slots offered in the last reply and the field the last question asked for.
"""

import datetime as dt
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Optional

from calendar_assistant.config import settings
from calendar_assistant.core.calendar.base import CandidateSlot
from .state import ConversationStage

logger = logging.getLogger(__name__)

# Fields that must be known before availability can be resolved, in ask order
REQUIRED_FIELDS = ["title", "date", "time"]

TIME_FORMAT = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")
EMAIL_FORMAT = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
PROVIDERS = {"google", "microsoft"}


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


@dataclass
class MeetingParams:
    """Meeting parameters accumulated across turns."""

    title: Optional[str] = None
    date: Optional[dt.date] = None
    time: Optional[str] = None  # HH:MM, 24h
    duration_minutes: Optional[int] = None
    attendees: list[str] = field(default_factory=list)
    description: Optional[str] = None
    provider: Optional[str] = None  # Explicit calendar request

    @property
    def duration(self) -> int:
        """Requested duration, or the configured default."""
        return self.duration_minutes or settings.default_duration_minutes

    @property
    def missing_fields(self) -> list[str]:
        """Required fields not yet known, in ask order."""
        return [name for name in REQUIRED_FIELDS if not getattr(self, name)]

    def merge(self, partial: dict[str, Any]) -> list[str]:
        """
        Merge well-typed values into these params.

        New values replace old ones, except attendees which are unioned.
        Ill-typed values are dropped.

        Returns:
            Names of the keys that were rejected
        """
        rejected = []

        for key, value in partial.items():
            if value is None:
                continue

            if key == "title" and isinstance(value, str) and value.strip():
                self.title = value.strip()
            elif key == "description" and isinstance(value, str):
                self.description = value.strip() or None
            elif key == "date" and isinstance(value, date) and not isinstance(value, datetime):
                self.date = value
            elif key == "time" and isinstance(value, str) and TIME_FORMAT.match(value):
                self.time = value
            elif (
                key == "duration_minutes"
                and isinstance(value, int)
                and not isinstance(value, bool)
                and 0 < value < 24 * 60
            ):
                self.duration_minutes = value
            elif key == "attendees" and isinstance(value, list):
                for email in value:
                    if isinstance(email, str) and EMAIL_FORMAT.match(email.strip()):
                        email = email.strip().lower()
                        if email not in self.attendees:
                            self.attendees.append(email)
            elif key == "provider" and isinstance(value, str) and value in PROVIDERS:
                self.provider = value
            elif key in ("time_range", "choice", "cancel"):
                # Turn-level hints, not meeting parameters
                continue
            else:
                rejected.append(key)

        if rejected:
            logger.debug(f"Dropped ill-typed params: {rejected}")
        return rejected

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "title": self.title,
            "date": self.date.isoformat() if self.date else None,
            "time": self.time,
            "duration_minutes": self.duration_minutes,
            "attendees": list(self.attendees),
            "description": self.description,
            "provider": self.provider,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "MeetingParams":
        """Create from dictionary."""
        return cls(
            title=data.get("title"),
            date=date.fromisoformat(data["date"]) if data.get("date") else None,
            time=data.get("time"),
            duration_minutes=data.get("duration_minutes"),
            attendees=list(data.get("attendees") or []),
            description=data.get("description"),
            provider=data.get("provider"),
        )


@dataclass
class ConversationState:
    """
    Per-user negotiation state stored in Redis.

    Key: calendar-assistant:v1:conversation:{user_id}
    """

    user_id: str
    stage: ConversationStage = ConversationStage.IDLE
    params: MeetingParams = field(default_factory=MeetingParams)
    missing_fields: list[str] = field(default_factory=list)
    offered_slots: list[CandidateSlot] = field(default_factory=list)
    expected_field: Optional[str] = None
    timezone: Optional[str] = None

    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    def recompute_missing(self) -> list[str]:
        """Refresh missing_fields from the current params."""
        self.missing_fields = self.params.missing_fields
        return self.missing_fields

    def reset(self) -> None:
        """Drop the negotiation and return to idle. Timezone is kept."""
        self.stage = ConversationStage.IDLE
        self.params = MeetingParams()
        self.missing_fields = []
        self.offered_slots = []
        self.expected_field = None
        self.updated_at = _utcnow()

    def is_expired(self, ttl_seconds: int, now: Optional[datetime] = None) -> bool:
        """Check if the state has been idle longer than the TTL."""
        now = now or _utcnow()
        return now - self.updated_at > timedelta(seconds=ttl_seconds)

    def context(self) -> dict:
        """Context passed to the intent classifier."""
        return {
            "stage": self.stage.value,
            "timezone": self.timezone,
            "expected_field": self.expected_field,
            "offered_slots": len(self.offered_slots),
        }

    def to_json(self) -> str:
        """Convert to JSON string for Redis storage."""
        data = {
            "user_id": self.user_id,
            "stage": self.stage.value,
            "params": self.params.to_dict(),
            "missing_fields": self.missing_fields,
            "offered_slots": [slot.to_dict() for slot in self.offered_slots],
            "expected_field": self.expected_field,
            "timezone": self.timezone,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }
        return json.dumps(data)

    @classmethod
    def from_json(cls, json_str: str) -> "ConversationState":
        """Create from JSON string."""
        data = json.loads(json_str)
        return cls(
            user_id=data["user_id"],
            stage=ConversationStage(data.get("stage", "idle")),
            params=MeetingParams.from_dict(data.get("params") or {}),
            missing_fields=data.get("missing_fields", []),
            offered_slots=[CandidateSlot.from_dict(s) for s in data.get("offered_slots", [])],
            expected_field=data.get("expected_field"),
            timezone=data.get("timezone"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
        )

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return json.loads(self.to_json())
