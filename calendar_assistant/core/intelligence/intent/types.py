"""Intent types for utterance classification."""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class IntentType(str, Enum):
    """What the user is trying to do with this utterance."""

    CREATE_MEETING = "create_meeting"    # Schedule a new meeting
    CHECK_SCHEDULE = "check_schedule"    # "What's on my calendar tomorrow?"
    SLOT_SELECTION = "slot_selection"    # "2", "14:00", "cancel" after slots were offered
    GENERAL_QUERY = "general_query"      # Anything else (also the degraded result)


@dataclass
class IntentResult:
    """Result of intent classification."""

    type: IntentType

    # Extracted, not yet validated parameters. Keys used:
    #   title, date, time, duration, attendees, description, provider,
    #   time_range (check_schedule), choice / cancel (slot_selection)
    params: dict[str, Any] = field(default_factory=dict)

    # Resolved without calling the language model
    local: bool = False

    # Model failed or replied with garbage; type is GENERAL_QUERY
    degraded: bool = False

    # Raw LLM output for debugging
    raw_response: Optional[str] = None

    processing_time_ms: float = 0.0

    @property
    def is_cancel(self) -> bool:
        """Check if the user asked to abandon the negotiation."""
        return self.type == IntentType.SLOT_SELECTION and bool(self.params.get("cancel"))

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "type": self.type.value,
            "params": dict(self.params),
            "local": self.local,
            "degraded": self.degraded,
            "processing_time_ms": self.processing_time_ms,
        }
