"""
Scheduling Engine - Main Orchestrator.

Runs one chat turn end to end: classify the utterance, let the flow decide
the next step, execute it against the calendars and compose the reply.
Turns for the same user are serialized by the state tracker's lock.
"""

import logging
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from typing import Optional

from calendar_assistant.config import settings
from calendar_assistant.core.calendar import (
    CalendarEvent,
    CalendarProvider,
    CandidateSlot,
    CredentialRefreshManager,
    EventRequest,
    ProviderUnavailableError,
    ReconnectRequiredError,
    get_refresh_manager,
)
from calendar_assistant.core.intelligence import (
    ConversationStage,
    ConversationState,
    ConversationStateTracker,
    IntentClassifier,
    IntentResult,
    can_transition,
    get_intent_classifier,
    get_state_tracker,
    is_active_stage,
)
from calendar_assistant.core.intelligence.intent.normalizer import get_zone
from calendar_assistant.core.scheduling.availability import (
    REASON_NO_PROVIDER,
    AvailabilityResolver,
    get_availability_resolver,
    is_free,
    parse_hhmm,
)
from calendar_assistant.core.scheduling.flow import (
    ConversationFlow,
    FlowAction,
    get_conversation_flow,
    select_provider,
)
from calendar_assistant.core.scheduling.response import (
    ResponseComposer,
    ResponsePayload,
    get_response_composer,
    in_time_range,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    """Get current UTC time as timezone-aware datetime."""
    return datetime.now(timezone.utc)


class SchedulingEngine:
    """
    Main orchestrator for the calendar assistant.

    Coordinates:
    - Intent classification
    - Conversation state
    - Availability resolution
    - Event creation through the credential refresh manager
    - Response composition
    """

    def __init__(
        self,
        classifier: Optional[IntentClassifier] = None,
        tracker: Optional[ConversationStateTracker] = None,
        resolver: Optional[AvailabilityResolver] = None,
        refresh_manager: Optional[CredentialRefreshManager] = None,
        composer: Optional[ResponseComposer] = None,
        flow_manager: Optional[ConversationFlow] = None,
    ):
        """Initialize engine with optional dependencies (for testing)."""
        self._classifier = classifier
        self._tracker = tracker
        self._resolver = resolver
        self._refresh_manager = refresh_manager
        self._composer = composer
        self._flow_manager = flow_manager

    async def _get_classifier(self) -> IntentClassifier:
        if self._classifier is None:
            self._classifier = await get_intent_classifier()
        return self._classifier

    async def _get_tracker(self) -> ConversationStateTracker:
        if self._tracker is None:
            self._tracker = await get_state_tracker()
        return self._tracker

    def _get_resolver(self) -> AvailabilityResolver:
        if self._resolver is None:
            self._resolver = get_availability_resolver()
        return self._resolver

    def _get_refresh_manager(self) -> CredentialRefreshManager:
        if self._refresh_manager is None:
            self._refresh_manager = get_refresh_manager()
        return self._refresh_manager

    def _get_composer(self) -> ResponseComposer:
        if self._composer is None:
            self._composer = get_response_composer()
        return self._composer

    def _get_flow_manager(self) -> ConversationFlow:
        if self._flow_manager is None:
            self._flow_manager = get_conversation_flow()
        return self._flow_manager

    async def process_turn(
        self,
        user_id: str,
        utterance: str,
        timezone_name: Optional[str] = None,
        model: Optional[str] = None,
    ) -> ResponsePayload:
        """Process one user message.

        Args:
            user_id: Authenticated user identifier
            utterance: Raw chat text
            timezone_name: IANA timezone reported by the client (optional)
            model: Language model picked by the client (optional)

        Returns:
            ResponsePayload; never raises
        """
        start_time = _utcnow()
        tracker = await self._get_tracker()

        async with tracker.lock(user_id):
            try:
                response = await self._process_locked(
                    tracker, user_id, utterance, timezone_name, model
                )
            except Exception as e:
                logger.error(f"Error processing message for user {user_id}: {e}", exc_info=True)
                return self._get_composer().error()

        elapsed_ms = (_utcnow() - start_time).total_seconds() * 1000
        logger.debug(f"Turn for {user_id} -> {response.code} in {elapsed_ms:.0f}ms")
        return response

    async def _process_locked(
        self,
        tracker: ConversationStateTracker,
        user_id: str,
        utterance: str,
        timezone_name: Optional[str],
        model: Optional[str] = None,
    ) -> ResponsePayload:
        state = await tracker.get(user_id)
        if timezone_name:
            state.timezone = timezone_name

        tz = get_zone(state.timezone, settings.default_timezone)
        today = datetime.now(tz).date()

        classifier = await self._get_classifier()
        intent = await classifier.classify(utterance, state.context(), model=model)

        action = self._get_flow_manager().process(state, intent, utterance, today)
        logger.debug(
            f"User {user_id}: {state.stage.value} + {intent.type.value} -> {action.action_type}"
        )

        return await self._execute_action(
            tracker, state, action, intent, utterance, tz, today, model
        )

    async def _execute_action(
        self,
        tracker: ConversationStateTracker,
        state: ConversationState,
        action: FlowAction,
        intent: IntentResult,
        utterance: str,
        tz: tzinfo,
        today: date,
        model: Optional[str] = None,
    ) -> ResponsePayload:
        """Execute the determined action and persist the resulting state."""
        composer = self._get_composer()

        if action.action_type == "cancel":
            state.reset()
            await tracker.save(state)
            return composer.cancelled(action.metadata.get("had_negotiation", True))

        if action.action_type == "ask":
            self._transition(state, action.next_stage)
            state.expected_field = action.prompt_for
            state.offered_slots = []
            await tracker.save(state)
            return composer.follow_up(
                action.prompt_for,
                state.params,
                state.missing_fields,
                replaced_previous=action.replaced_previous,
            )

        if action.action_type == "resolve":
            return await self._resolve(tracker, state, tz, action.replaced_previous)

        if action.action_type == "book":
            return await self._book(tracker, state, action.slot, tz)

        if action.action_type == "reprompt":
            await tracker.save(state)
            return composer.slot_choices(state.offered_slots, state.params, tz, reprompt=True)

        if action.action_type == "check_schedule":
            await tracker.save(state)
            return await self._check_schedule(state.user_id, intent, tz, today)

        # answer
        text = await composer.answer_question(utterance, today, model=model)
        reminder = None
        if is_active_stage(state.stage):
            reminder = composer.pending_reminder(state.expected_field, len(state.offered_slots))
        await tracker.save(state)
        return composer.answer(text, reminder)

    def _transition(self, state: ConversationState, next_stage: ConversationStage) -> None:
        """Move to next_stage, logging transitions outside the stage machine."""
        if state.stage != next_stage and not can_transition(state.stage, next_stage):
            logger.warning(
                f"Unexpected transition for {state.user_id}: "
                f"{state.stage.value} -> {next_stage.value}"
            )
        state.stage = next_stage

    # === Availability ===

    async def _resolve(
        self,
        tracker: ConversationStateTracker,
        state: ConversationState,
        tz: tzinfo,
        replaced_previous: bool = False,
    ) -> ResponsePayload:
        """All parameters known: book the requested time or offer slots."""
        composer = self._get_composer()
        resolver = self._get_resolver()
        params = state.params

        start = datetime.combine(params.date, parse_hhmm(params.time), tzinfo=tz)
        end = start + timedelta(minutes=params.duration)

        # Keep what was gathered so "try again" resumes from here
        self._transition(state, ConversationStage.COLLECTING_PARAMS)
        state.expected_field = None

        try:
            result = await resolver.find_slots(
                state.user_id,
                params.date,
                params.duration,
                tz,
                attendees=params.attendees,
            )

            if result.reason == REASON_NO_PROVIDER:
                state.reset()
                await tracker.save(state)
                return composer.connect_calendar()

            window_start, window_end = resolver.business_window(params.date, tz)
            if window_start <= start and end <= window_end:
                requested_free = is_free(start, end, result.busy)
            else:
                requested_free = await resolver.is_slot_free(state.user_id, start, end)

        except ReconnectRequiredError as e:
            await tracker.save(state)
            return composer.reconnect_calendar(e.provider)
        except ProviderUnavailableError as e:
            logger.error(f"Availability lookup failed for {state.user_id}: {e}")
            await tracker.save(state)
            return composer.provider_unavailable(e.provider)

        requested = CandidateSlot(start=start, end=end, score=1.0)

        if requested_free and not params.attendees:
            return await self._book(tracker, state, requested, tz)

        slots = list(result.slots)
        if requested_free:
            slots = [requested] + [s for s in slots if s.start != start]
            slots = slots[: settings.max_slot_results]

        if not slots:
            day = params.date
            params.date = None
            state.recompute_missing()
            state.expected_field = "date"
            await tracker.save(state)
            return composer.no_slots(day, params.duration)

        self._transition(state, ConversationStage.AWAITING_SLOT_CHOICE)
        state.offered_slots = slots
        await tracker.save(state)

        return composer.slot_choices(
            slots,
            params,
            tz,
            requested_free=requested_free,
            replaced_previous=replaced_previous,
        )

    # === Booking ===

    async def _book(
        self,
        tracker: ConversationStateTracker,
        state: ConversationState,
        slot: CandidateSlot,
        tz: tzinfo,
    ) -> ResponsePayload:
        """Create the event for exactly this slot on the selected calendar."""
        composer = self._get_composer()
        manager = self._get_refresh_manager()
        params = state.params

        connected = await manager.connected_providers(state.user_id)
        provider = select_provider(connected, params.provider)
        if provider is None:
            state.reset()
            await tracker.save(state)
            return composer.connect_calendar()

        request = EventRequest(
            title=params.title,
            start=slot.start,
            end=slot.end,
            timezone=getattr(tz, "key", str(tz)),
            attendees=list(params.attendees),
            description=params.description or "",
        )

        try:
            event: CalendarEvent = await manager.call(
                state.user_id,
                provider,
                lambda adapter, credential: adapter.create_event(credential, request),
            )
        except ReconnectRequiredError as e:
            await tracker.save(state)
            return composer.reconnect_calendar(e.provider)
        except ProviderUnavailableError as e:
            logger.error(f"Booking failed for {state.user_id} on {provider.value}: {e}")
            await tracker.save(state)
            return composer.provider_unavailable(e.provider)

        logger.info(f"Booked {event.id} on {provider.value} for user {state.user_id}")

        booked_params = params
        self._transition(state, ConversationStage.DONE)
        state.reset()
        await tracker.save(state)

        return composer.booked(event, booked_params, tz)

    # === Schedule lookup ===

    async def _check_schedule(
        self,
        user_id: str,
        intent: IntentResult,
        tz: tzinfo,
        today: date,
    ) -> ResponsePayload:
        """List events for a day across every connected calendar."""
        composer = self._get_composer()
        manager = self._get_refresh_manager()

        day = intent.params.get("date") or today
        time_range = intent.params.get("time_range")

        providers = await manager.connected_providers(user_id)
        if not providers:
            return composer.connect_calendar()

        start = datetime.combine(day, time.min, tzinfo=tz)
        end = start + timedelta(days=1)

        events: list[CalendarEvent] = []
        try:
            for provider in providers:
                provider_events = await manager.call(
                    user_id,
                    provider,
                    lambda adapter, credential: adapter.list_events(credential, start, end),
                )
                events.extend(provider_events)
        except ReconnectRequiredError as e:
            return composer.reconnect_calendar(e.provider)
        except ProviderUnavailableError as e:
            logger.error(f"Schedule lookup failed for {user_id}: {e}")
            return composer.provider_unavailable(e.provider)

        events = sorted(
            (e for e in events if in_time_range(e, time_range, tz)),
            key=lambda e: e.start,
        )
        return composer.schedule(events, day, time_range, tz)

    # === Session access ===

    async def get_state(self, user_id: str) -> ConversationState:
        """Get the user's conversation state."""
        tracker = await self._get_tracker()
        return await tracker.get(user_id)

    async def reset_state(self, user_id: str) -> ConversationState:
        """Drop any in-progress negotiation for the user."""
        tracker = await self._get_tracker()
        async with tracker.lock(user_id):
            return await tracker.reset(user_id)


# Singleton
_engine: Optional[SchedulingEngine] = None


def get_scheduling_engine() -> SchedulingEngine:
    """Get singleton SchedulingEngine."""
    global _engine
    if _engine is None:
        _engine = SchedulingEngine()
    return _engine


async def process_turn(
    user_id: str,
    utterance: str,
    timezone_name: Optional[str] = None,
    model: Optional[str] = None,
) -> ResponsePayload:
    """Convenience function to process a message.

    Args:
        user_id: User identifier
        utterance: User's message
        timezone_name: Optional IANA timezone
        model: Optional model override

    Returns:
        ResponsePayload
    """
    engine = get_scheduling_engine()
    return await engine.process_turn(user_id, utterance, timezone_name, model)
