"""
Response Composer for the calendar assistant.

Turns the outcome of a turn into the reply payload the chat UI renders.
Every reply is built from templates except answers to general questions,
which come from Claude with a canned fallback.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, tzinfo
from typing import Any, Optional, Union

from calendar_assistant.config import settings
from calendar_assistant.core.calendar.base import CalendarEvent, CalendarProvider, CandidateSlot
from calendar_assistant.core.intelligence.session.models import MeetingParams
from calendar_assistant.infra.claude import ClaudeClient, get_claude_client

logger = logging.getLogger(__name__)


ANSWER_PROMPT = """You are a helpful calendar assistant. Today's date is {today}.
You can schedule meetings on the user's Google or Microsoft calendar and tell them what is on their schedule.
Answer concisely in one to three sentences. Do not invent calendar events."""

FOLLOW_UP_QUESTIONS = {
    "title": "What should the meeting be called?",
    "date": 'On which date? (e.g. YYYY-MM-DD or "tomorrow")',
    "time": "What start time? (HH:MM, 24h or am/pm)",
}

PROVIDER_NAMES = {
    CalendarProvider.GOOGLE: "Google Calendar",
    CalendarProvider.MICROSOFT: "Microsoft Calendar",
}

TIME_RANGES = {
    "morning": (0, 12),
    "afternoon": (12, 17),
    "evening": (17, 24),
}

CHOICE_HINT = 'Reply with a number or a start time (HH:MM) to book, or "cancel".'
REPLACED_NOTE = "I've cancelled your previous meeting request and started a new one."


# === Payload ===


@dataclass
class ResponsePayload:
    """Reply for one chat turn."""

    message: str
    code: str  # booked, follow_up, choose_slot, no_slots, connect_calendar, ...
    success: bool = True
    follow_up: Optional[str] = None
    pending: Optional[Union[list[str], bool]] = None
    collected_params: Optional[dict] = None
    available_slots: Optional[list[dict]] = None
    event: Optional[dict] = None
    events: Optional[list[dict]] = None

    def to_dict(self) -> dict:
        """Convert to dictionary for API response (camelCase keys)."""
        result: dict[str, Any] = {
            "success": self.success,
            "message": self.message,
            "code": self.code,
        }

        if self.follow_up is not None:
            result["followUp"] = self.follow_up
        if self.pending is not None:
            result["pending"] = self.pending
        if self.collected_params is not None:
            result["collectedParams"] = self.collected_params
        if self.available_slots is not None:
            result["availableSlots"] = self.available_slots
        if self.event is not None:
            result["event"] = self.event
        if self.events is not None:
            result["events"] = self.events

        return result


# === Formatting helpers ===


def format_time(value: datetime) -> str:
    """12-hour clock without a leading zero: '2:00 PM'."""
    hour = value.hour % 12 or 12
    suffix = "AM" if value.hour < 12 else "PM"
    return f"{hour}:{value.minute:02d} {suffix}"


def format_date(value: date) -> str:
    """'March 10, 2025'."""
    return f"{value.strftime('%B')} {value.day}, {value.year}"


def format_day(value: date) -> str:
    """'Monday, March 10'."""
    return f"{value.strftime('%A, %B')} {value.day}"


def slot_label(slot: CandidateSlot, tz: tzinfo) -> str:
    """'2:00 PM – 2:30 PM' in the user's timezone."""
    return f"{format_time(slot.start.astimezone(tz))} – {format_time(slot.end.astimezone(tz))}"


def slot_options(slots: list[CandidateSlot], tz: tzinfo) -> list[dict]:
    """Serialize offered slots with their 1-based selection index."""
    return [
        {
            "start": slot.start.isoformat(),
            "end": slot.end.isoformat(),
            "index": index,
            "label": slot_label(slot, tz),
            "score": slot.score,
        }
        for index, slot in enumerate(slots, 1)
    ]


def collected_params(params: MeetingParams) -> dict:
    """Public camelCase view of the gathered meeting parameters."""
    return {
        "title": params.title,
        "date": params.date.isoformat() if params.date else None,
        "time": params.time,
        "durationMinutes": params.duration,
        "attendees": list(params.attendees),
        "description": params.description,
    }


def in_time_range(event: CalendarEvent, time_range: Optional[str], tz: tzinfo) -> bool:
    """Check if an event starts inside a named part of the day."""
    if not time_range or time_range not in TIME_RANGES:
        return True
    start_hour, end_hour = TIME_RANGES[time_range]
    return start_hour <= event.start.astimezone(tz).hour < end_hour


class ResponseComposer:
    """
    Builds reply payloads.

    Template methods are pure; answer_question() calls Claude and falls
    back to a canned reply on failure.
    """

    def __init__(self, claude_client: Optional[ClaudeClient] = None):
        """Initialize composer.

        Args:
            claude_client: Claude client (uses singleton if not provided)
        """
        self._claude_client = claude_client

    async def _get_client(self) -> ClaudeClient:
        """Get Claude client."""
        if self._claude_client is None:
            self._claude_client = await get_claude_client()
        return self._claude_client

    # === Negotiation ===

    def follow_up(
        self,
        field_name: str,
        params: MeetingParams,
        missing: list[str],
        replaced_previous: bool = False,
    ) -> ResponsePayload:
        """Ask for the next missing field."""
        question = FOLLOW_UP_QUESTIONS.get(field_name, f"What is the {field_name}?")
        message = f"{REPLACED_NOTE} {question}" if replaced_previous else question
        return ResponsePayload(
            message=message,
            code="follow_up",
            follow_up=question,
            pending=list(missing),
            collected_params=collected_params(params),
        )

    def slot_choices(
        self,
        slots: list[CandidateSlot],
        params: MeetingParams,
        tz: tzinfo,
        requested_free: bool = False,
        reprompt: bool = False,
        replaced_previous: bool = False,
    ) -> ResponsePayload:
        """Offer candidate slots for the user to pick from."""
        day = slots[0].start.astimezone(tz).date()

        if reprompt:
            intro = "Sorry, that doesn't match any of the options. Please choose one of these times:"
        elif requested_free:
            requested = format_time(slots[0].start.astimezone(tz))
            intro = f"{requested} on {format_day(day)} is free. Reply 1 to confirm it or pick another time:"
        else:
            intro = f"That time isn't available. Here are the best open times on {format_day(day)}:"

        if replaced_previous:
            intro = f"{REPLACED_NOTE} {intro}"

        lines = [intro]
        for option in slot_options(slots, tz):
            lines.append(f"{option['index']}. {option['label']}")
        lines.append(CHOICE_HINT)

        return ResponsePayload(
            message="\n".join(lines),
            code="choose_slot",
            pending=True,
            collected_params=collected_params(params),
            available_slots=slot_options(slots, tz),
        )

    def booked(
        self,
        event: CalendarEvent,
        params: MeetingParams,
        tz: tzinfo,
    ) -> ResponsePayload:
        """Confirm a created event."""
        start = event.start.astimezone(tz)
        end = event.end.astimezone(tz)
        provider = PROVIDER_NAMES.get(event.provider, event.provider.value)

        message = (
            f'Your meeting "{event.title}" is booked for {format_date(start.date())}, '
            f"{format_time(start)} – {format_time(end)} on your {provider}."
        )
        if params.attendees:
            message += f" Invitations were sent to {', '.join(params.attendees)}."

        return ResponsePayload(
            message=message,
            code="booked",
            pending=False,
            collected_params=collected_params(params),
            event=event.to_dict(),
        )

    def no_slots(self, day: date, duration: int) -> ResponsePayload:
        """Nothing free on the requested day; ask for another date."""
        question = FOLLOW_UP_QUESTIONS["date"]
        return ResponsePayload(
            message=(
                f"There are no free {duration}-minute slots during business hours on "
                f"{format_date(day)}. {question}"
            ),
            code="no_slots",
            follow_up=question,
            pending=["date"],
            available_slots=[],
        )

    def cancelled(self, had_negotiation: bool = True) -> ResponsePayload:
        """Confirm the negotiation was dropped."""
        if not had_negotiation:
            return ResponsePayload(
                message="There's nothing to cancel. How can I help with your calendar?",
                code="cancelled",
                pending=False,
            )
        return ResponsePayload(
            message="Okay, I've cancelled that meeting request. Nothing was booked.",
            code="cancelled",
            pending=False,
        )

    # === Calendar problems ===

    def connect_calendar(self) -> ResponsePayload:
        """No calendar connected."""
        return ResponsePayload(
            message=(
                "You need to connect a calendar service first. "
                "Please connect Google or Microsoft Calendar in your profile."
            ),
            code="connect_calendar",
            success=False,
            pending=False,
        )

    def reconnect_calendar(self, provider: CalendarProvider) -> ResponsePayload:
        """Stored authorization no longer works."""
        name = PROVIDER_NAMES.get(provider, provider.value)
        return ResponsePayload(
            message=(
                f"I couldn't access your {name} because its authorization has expired. "
                "Please reconnect it in your profile and try again."
            ),
            code="reconnect_calendar",
            success=False,
        )

    def provider_unavailable(self, provider: Optional[CalendarProvider] = None) -> ResponsePayload:
        """Transient provider failure; state is kept so the user can retry."""
        name = PROVIDER_NAMES.get(provider, "your calendar") if provider else "your calendar"
        return ResponsePayload(
            message=f"I couldn't reach {name} just now. Please try again in a moment.",
            code="provider_unavailable",
            success=False,
        )

    def error(self) -> ResponsePayload:
        """Unexpected failure."""
        return ResponsePayload(
            message="Sorry, something went wrong while handling your request. Please try again.",
            code="error",
            success=False,
        )

    # === Schedule and questions ===

    def schedule(
        self,
        events: list[CalendarEvent],
        day: date,
        time_range: Optional[str],
        tz: tzinfo,
    ) -> ResponsePayload:
        """Summarize events on a day."""
        range_part = f" in the {time_range}" if time_range in TIME_RANGES else ""
        day_text = format_date(day)

        if not events:
            return ResponsePayload(
                message=f"You have no events scheduled for {day_text}{range_part}.",
                code="schedule",
                events=[],
            )

        plural = "event" if len(events) == 1 else "events"
        lines = [f"You have {len(events)} {plural} scheduled for {day_text}{range_part}."]
        for event in events:
            lines.append(
                f"- {format_time(event.start.astimezone(tz))} – "
                f"{format_time(event.end.astimezone(tz))}: {event.title}"
            )

        return ResponsePayload(
            message="\n".join(lines),
            code="schedule",
            events=[event.to_dict() for event in events],
        )

    async def answer_question(
        self,
        utterance: str,
        today: date,
        model: Optional[str] = None,
    ) -> str:
        """Answer a general question with Claude; canned reply on failure."""
        try:
            client = await self._get_client()
            response = await client.generate(
                prompt=utterance,
                system_prompt=ANSWER_PROMPT.format(today=format_date(today)),
                model=model or settings.claude_response_model,
                max_tokens=300,
                temperature=0.7,
            )
            return response.content.strip()
        except Exception as e:
            logger.warning(f"LLM answer generation failed: {e}")
            return (
                "I can schedule meetings on your Google or Microsoft calendar and tell you "
                "what's on your schedule. What would you like to do?"
            )

    def answer(self, text: str, reminder: Optional[str] = None) -> ResponsePayload:
        """Wrap a free-text answer, reminding the user of a pending question."""
        message = f"{text}\n\n{reminder}" if reminder else text
        return ResponsePayload(
            message=message,
            code="answer",
            follow_up=reminder,
        )

    def pending_reminder(
        self,
        expected_field: Optional[str],
        offered: int,
    ) -> Optional[str]:
        """The question still waiting for an answer, if any."""
        if offered:
            return f"I'm still holding {offered} time options for you. {CHOICE_HINT}"
        if expected_field:
            return FOLLOW_UP_QUESTIONS.get(expected_field)
        return None


# Singleton
_composer: Optional[ResponseComposer] = None


def get_response_composer() -> ResponseComposer:
    """Get singleton ResponseComposer."""
    global _composer
    if _composer is None:
        _composer = ResponseComposer()
    return _composer
