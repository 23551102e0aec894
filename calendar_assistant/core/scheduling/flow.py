"""
Conversation Flow Manager.

Decides what a turn should do from the current ConversationState and the
classified intent. Decisions are pure: the flow may update the in-memory
state's params, but all I/O (availability, booking, persistence) is left
to the SchedulingEngine executing the returned FlowAction.
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import date
from typing import Optional

from calendar_assistant.config import settings
from calendar_assistant.core.calendar.base import CalendarProvider, CandidateSlot
from calendar_assistant.core.intelligence.intent.normalizer import interpret_field, to_24_hour
from calendar_assistant.core.intelligence.intent.types import IntentResult, IntentType
from calendar_assistant.core.intelligence.session.models import ConversationState
from calendar_assistant.core.intelligence.session.state import (
    ConversationStage,
    is_active_stage,
)

logger = logging.getLogger(__name__)

MEETING_KEYS = {"title", "date", "time", "duration_minutes", "attendees", "description"}

# Any text parses as one of these, so only the classifier can tell an answer
# from a side question
FREE_TEXT_FIELDS = {"title"}

INDEX_CHOICE = re.compile(r"^\d+$")


@dataclass
class FlowAction:
    """Action determined by flow manager."""

    next_stage: ConversationStage
    action_type: str  # ask, resolve, book, reprompt, cancel, check_schedule, answer
    prompt_for: Optional[str] = None  # Field the follow-up asks about
    slot: Optional[CandidateSlot] = None  # Slot to book
    replaced_previous: bool = False  # A new request cancelled an offered-slot negotiation
    metadata: dict = field(default_factory=dict)


def resolve_choice(choice: Optional[str], offered: list[CandidateSlot]) -> Optional[CandidateSlot]:
    """
    Map a slot_selection reply to one of the offered slots.

    Accepts a 1-based index or a start time that matches an offered slot
    exactly ('14:00', '2pm'). Returns None when nothing matches.
    """
    if not choice or not offered:
        return None

    choice = choice.strip()
    if INDEX_CHOICE.match(choice):
        index = int(choice)
        if 1 <= index <= len(offered):
            return offered[index - 1]
        return None

    wanted = to_24_hour(choice)
    if wanted is None:
        return None
    for slot in offered:
        if slot.start.strftime("%H:%M") == wanted:
            return slot
    return None


def select_provider(
    connected: list[CalendarProvider],
    requested: Optional[str] = None,
    order: Optional[list[str]] = None,
) -> Optional[CalendarProvider]:
    """
    Pick the calendar to book on.

    One connected calendar is always used. With several, an explicit
    request wins if that calendar is connected, otherwise the configured
    provider_order decides.
    """
    if not connected:
        return None
    if len(connected) == 1:
        return connected[0]

    if requested:
        for provider in connected:
            if provider.value == requested:
                return provider

    for name in order if order is not None else settings.provider_order_list:
        for provider in connected:
            if provider.value == name:
                return provider

    return connected[0]


class ConversationFlow:
    """
    Stage machine for scheduling negotiations.

    Determines the next action based on:
    - Current stage
    - Classified intent
    - Which meeting fields are still missing
    """

    def process(
        self,
        state: ConversationState,
        intent: IntentResult,
        utterance: str,
        today: date,
    ) -> FlowAction:
        """Process one classified utterance and determine the next action.

        Args:
            state: Current conversation state (params may be updated)
            intent: Classified intent
            utterance: Raw user text, used to answer follow-up questions
            today: Today's date in the user's timezone

        Returns:
            FlowAction for the engine to execute
        """
        stage = state.stage

        if intent.is_cancel:
            return FlowAction(
                next_stage=ConversationStage.IDLE,
                action_type="cancel",
                metadata={"had_negotiation": is_active_stage(stage)},
            )

        # Schedule lookups never disturb a negotiation
        if intent.type == IntentType.CHECK_SCHEDULE:
            return FlowAction(next_stage=stage, action_type="check_schedule")

        if stage == ConversationStage.AWAITING_SLOT_CHOICE:
            if intent.type == IntentType.CREATE_MEETING:
                logger.info(f"New meeting request replaces pending slot offer for {state.user_id}")
                action = self._start_new(state, intent)
                action.replaced_previous = True
                return action
            return self._handle_slot_choice(state, intent)

        if stage == ConversationStage.COLLECTING_PARAMS:
            return self._handle_answer(state, intent, utterance, today)

        if intent.type == IntentType.CREATE_MEETING:
            return self._start_new(state, intent)

        return FlowAction(next_stage=stage, action_type="answer")

    def _start_new(self, state: ConversationState, intent: IntentResult) -> FlowAction:
        """Begin a fresh negotiation from a create_meeting intent."""
        state.reset()
        state.params.merge(intent.params)
        return self._next_step(state)

    def _handle_answer(
        self,
        state: ConversationState,
        intent: IntentResult,
        utterance: str,
        today: date,
    ) -> FlowAction:
        """Treat the utterance as an answer to the pending follow-up."""
        state.params.merge(intent.params)

        expected = state.expected_field
        extracted = MEETING_KEYS.intersection(intent.params)
        if expected and not extracted:
            side_question = intent.type == IntentType.GENERAL_QUERY and not intent.degraded
            if side_question and expected in FREE_TEXT_FIELDS:
                interpreted = {}
            else:
                interpreted = interpret_field(expected, utterance, today)

            if interpreted:
                state.params.merge(interpreted)
            elif side_question:
                # A side question; answer it and keep waiting for the field
                return FlowAction(next_stage=state.stage, action_type="answer")
            else:
                logger.debug(f"Could not read {expected!r} from reply")

        return self._next_step(state)

    def _handle_slot_choice(self, state: ConversationState, intent: IntentResult) -> FlowAction:
        """Book the chosen slot, or re-offer the same list."""
        chosen = None
        if intent.type == IntentType.SLOT_SELECTION:
            chosen = resolve_choice(intent.params.get("choice"), state.offered_slots)

        if chosen is None:
            return FlowAction(
                next_stage=ConversationStage.AWAITING_SLOT_CHOICE,
                action_type="reprompt",
            )

        return FlowAction(
            next_stage=ConversationStage.DONE,
            action_type="book",
            slot=chosen,
        )

    def _next_step(self, state: ConversationState) -> FlowAction:
        """Ask for the first missing field, or resolve availability."""
        missing = state.recompute_missing()

        if missing:
            return FlowAction(
                next_stage=ConversationStage.COLLECTING_PARAMS,
                action_type="ask",
                prompt_for=missing[0],
            )

        return FlowAction(
            next_stage=ConversationStage.AWAITING_SLOT_CHOICE,
            action_type="resolve",
        )


# Singleton
_flow: Optional[ConversationFlow] = None


def get_conversation_flow() -> ConversationFlow:
    """Get singleton ConversationFlow."""
    global _flow
    if _flow is None:
        _flow = ConversationFlow()
    return _flow
