"""Tests for the scheduling engine."""

import asyncio

import pytest
from unittest.mock import AsyncMock, MagicMock, patch
from datetime import date, datetime, timezone

from calendar_assistant.core.calendar.base import (
    BusyInterval,
    CalendarEvent,
    CalendarProvider,
    ProviderAuthExpiredError,
    ProviderCredential,
    ProviderUnavailableError,
    ReconnectRequiredError,
)
from calendar_assistant.core.calendar.credentials import CredentialRefreshManager
from calendar_assistant.core.calendar.store import InMemoryCredentialStore
from calendar_assistant.core.intelligence.intent.types import IntentResult, IntentType
from calendar_assistant.core.intelligence.session.manager import ConversationStateTracker
from calendar_assistant.core.intelligence.session.state import ConversationStage
from calendar_assistant.core.scheduling.availability import AvailabilityResolver
from calendar_assistant.core.scheduling.engine import SchedulingEngine
from calendar_assistant.core.scheduling.response import REPLACED_NOTE, ResponseComposer


UTC = timezone.utc
DAY = date(2025, 3, 10)
USER = "user-1"


def at(hour: int, minute: int = 0) -> datetime:
    return datetime(2025, 3, 10, hour, minute, tzinfo=UTC)


def create_meeting(**params) -> IntentResult:
    return IntentResult(type=IntentType.CREATE_MEETING, params=params)


def choose(choice: str) -> IntentResult:
    return IntentResult(type=IntentType.SLOT_SELECTION, params={"choice": choice}, local=True)


def make_adapter(provider: CalendarProvider) -> MagicMock:
    """Adapter mock that echoes created events back."""

    async def create_event(credential, request):
        return CalendarEvent(
            id=f"{provider.value}-evt",
            title=request.title,
            start=request.start,
            end=request.end,
            provider=provider,
            attendees=list(request.attendees),
        )

    adapter = MagicMock()
    adapter.list_busy = AsyncMock(return_value=[BusyInterval(start=at(10), end=at(11))])
    adapter.list_events = AsyncMock(return_value=[])
    adapter.create_event = AsyncMock(side_effect=create_event)
    adapter.refresh_credential = AsyncMock()
    return adapter


class TestSchedulingEngine:
    """Test whole turns against mocked calendars and classifier."""

    @pytest.fixture(autouse=True)
    def no_redis(self):
        """Keep conversation state in memory."""
        with patch(
            "calendar_assistant.core.intelligence.session.manager.get_redis",
            return_value=None,
        ):
            yield

    @pytest.fixture
    def classifier(self):
        mock = MagicMock()
        mock.classify = AsyncMock()
        return mock

    @pytest.fixture
    def google(self):
        return make_adapter(CalendarProvider.GOOGLE)

    @pytest.fixture
    def microsoft(self):
        return make_adapter(CalendarProvider.MICROSOFT)

    @pytest.fixture
    def store(self):
        return InMemoryCredentialStore({
            (USER, CalendarProvider.GOOGLE): ProviderCredential(
                provider=CalendarProvider.GOOGLE,
                access_token="g-token",
                refresh_token="g-refresh",
            ),
        })

    @pytest.fixture
    def manager(self, google, microsoft, store):
        return CredentialRefreshManager(
            adapters={CalendarProvider.GOOGLE: google, CalendarProvider.MICROSOFT: microsoft},
            store=store,
        )

    @pytest.fixture
    def claude(self):
        client = AsyncMock()
        client.generate = AsyncMock(return_value=MagicMock(content="I schedule meetings."))
        return client

    @pytest.fixture
    def tracker(self):
        return ConversationStateTracker()

    @pytest.fixture
    def engine(self, classifier, tracker, manager, claude):
        return SchedulingEngine(
            classifier=classifier,
            tracker=tracker,
            resolver=AvailabilityResolver(refresh_manager=manager),
            refresh_manager=manager,
            composer=ResponseComposer(claude_client=claude),
        )

    async def _say(self, engine, classifier, intent: IntentResult, text: str = "..."):
        classifier.classify.return_value = intent
        return await engine.process_turn(USER, text, "UTC")

    # === Negotiation ===

    @pytest.mark.asyncio
    async def test_free_slot_without_attendees_books_directly(self, engine, classifier, google):
        response = await self._say(
            engine, classifier, create_meeting(title="Focus", date=DAY, time="14:00")
        )

        assert response.code == "booked"
        assert response.success
        request = google.create_event.await_args.args[1]
        assert (request.start, request.end) == (at(14), at(14, 30))
        assert request.timezone == "UTC"
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.IDLE

    @pytest.mark.asyncio
    async def test_follow_up_questions_in_order(self, engine, classifier, google):
        response = await self._say(engine, classifier, create_meeting(title="Sync"))
        assert response.code == "follow_up"
        assert response.follow_up == 'On which date? (e.g. YYYY-MM-DD or "tomorrow")'
        assert response.pending == ["date", "time"]

        response = await self._say(
            engine, classifier, IntentResult(type=IntentType.GENERAL_QUERY), "2025-03-10"
        )
        assert response.code == "follow_up"
        assert response.pending == ["time"]

        response = await self._say(
            engine, classifier, IntentResult(type=IntentType.GENERAL_QUERY), "2pm"
        )
        assert response.code == "booked"
        assert google.create_event.await_args.args[1].start == at(14)

    @pytest.mark.asyncio
    async def test_chosen_index_books_exact_slot(self, engine, classifier, google):
        """Choosing option k books exactly the k-th offered slot."""
        response = await self._say(
            engine,
            classifier,
            create_meeting(title="Sync", date=DAY, time="10:00", attendees=["ana@example.com"]),
        )

        assert response.code == "choose_slot"
        assert "isn't available" in response.message
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.AWAITING_SLOT_CHOICE
        offered = list(state.offered_slots)
        assert [s["index"] for s in response.available_slots] == list(range(1, len(offered) + 1))
        assert all(not (s.start < at(11) and s.end > at(10)) for s in offered)

        response = await self._say(engine, classifier, choose("2"), "2")

        assert response.code == "booked"
        request = google.create_event.await_args.args[1]
        assert (request.start, request.end) == (offered[1].start, offered[1].end)
        assert request.attendees == ["ana@example.com"]
        assert (await engine.get_state(USER)).stage == ConversationStage.IDLE

    @pytest.mark.asyncio
    async def test_requested_time_offered_first_with_attendees(self, engine, classifier, google):
        response = await self._say(
            engine,
            classifier,
            create_meeting(title="Sync", date=DAY, time="15:00", attendees=["ana@example.com"]),
        )

        assert response.code == "choose_slot"
        assert response.available_slots[0]["start"] == at(15).isoformat()
        assert response.available_slots[0]["score"] == 1.0
        google.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_invalid_choice_reprompts_same_slots(self, engine, classifier, google):
        first = await self._say(
            engine,
            classifier,
            create_meeting(title="Sync", date=DAY, time="10:00", attendees=["ana@example.com"]),
        )

        response = await self._say(engine, classifier, choose("9"), "9")

        assert response.code == "choose_slot"
        assert response.available_slots == first.available_slots
        assert "doesn't match" in response.message
        assert (await engine.get_state(USER)).stage == ConversationStage.AWAITING_SLOT_CHOICE
        google.create_event.assert_not_awaited()
        # Slots are never recomputed for a clarification
        assert google.list_busy.await_count == 1

    @pytest.mark.asyncio
    async def test_cancel_then_independent_request(self, engine, classifier, google):
        await self._say(
            engine,
            classifier,
            create_meeting(title="Old", date=DAY, time="10:00", attendees=["ana@example.com"]),
        )

        response = await self._say(
            engine,
            classifier,
            IntentResult(type=IntentType.SLOT_SELECTION, params={"cancel": True}),
            "cancel",
        )

        assert response.code == "cancelled"
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.IDLE
        assert state.offered_slots == []
        google.create_event.assert_not_awaited()

        response = await self._say(engine, classifier, create_meeting(title="New"))

        assert response.code == "follow_up"
        assert response.collected_params["title"] == "New"
        assert response.collected_params["date"] is None
        assert response.collected_params["attendees"] == []

    @pytest.mark.asyncio
    async def test_new_request_replaces_offer(self, engine, classifier):
        await self._say(
            engine,
            classifier,
            create_meeting(title="Old", date=DAY, time="10:00", attendees=["ana@example.com"]),
        )

        response = await self._say(engine, classifier, create_meeting(title="Retro"))

        assert response.code == "follow_up"
        assert response.message.startswith(REPLACED_NOTE)
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.COLLECTING_PARAMS
        assert state.offered_slots == []

    @pytest.mark.asyncio
    async def test_fully_booked_asks_for_another_date(self, engine, classifier, google):
        google.list_busy = AsyncMock(return_value=[BusyInterval(start=at(0), end=at(23))])

        response = await self._say(
            engine, classifier, create_meeting(title="Sync", date=DAY, time="10:00")
        )

        assert response.code == "no_slots"
        assert response.success
        assert response.available_slots == []
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.COLLECTING_PARAMS
        assert state.expected_field == "date"
        assert state.params.date is None
        assert state.params.title == "Sync"

    # === Providers ===

    @pytest.mark.asyncio
    async def test_no_calendar_connected(self, engine, classifier, store):
        store._credentials.clear()

        response = await self._say(
            engine, classifier, create_meeting(title="Sync", date=DAY, time="14:00")
        )

        assert response.code == "connect_calendar"
        assert not response.success
        assert (await engine.get_state(USER)).stage == ConversationStage.IDLE

    @pytest.mark.asyncio
    async def test_explicit_provider_used_when_both_connected(
        self, engine, classifier, store, google, microsoft
    ):
        await store.save_credential(
            USER, ProviderCredential(provider=CalendarProvider.MICROSOFT, access_token="m-token")
        )

        response = await self._say(
            engine,
            classifier,
            create_meeting(title="Sync", date=DAY, time="14:00", provider="microsoft"),
        )

        assert response.code == "booked"
        assert response.event["provider"] == "microsoft"
        microsoft.create_event.assert_awaited_once()
        google.create_event.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_expired_token_refreshed_once_and_booked(
        self, engine, classifier, google, store
    ):
        google.list_busy = AsyncMock(side_effect=[
            ProviderAuthExpiredError(CalendarProvider.GOOGLE),
            [BusyInterval(start=at(10), end=at(11))],
        ])
        google.refresh_credential = AsyncMock(return_value=ProviderCredential(
            provider=CalendarProvider.GOOGLE,
            access_token="g-token-2",
            refresh_token="g-refresh",
        ))

        response = await self._say(
            engine, classifier, create_meeting(title="Sync", date=DAY, time="14:00")
        )

        assert response.code == "booked"
        google.refresh_credential.assert_awaited_once()
        assert store.save_count == 1
        credential, _ = google.create_event.await_args.args
        assert credential.access_token == "g-token-2"

    @pytest.mark.asyncio
    async def test_expired_authorization_asks_to_reconnect(self, engine, classifier, google):
        google.list_busy = AsyncMock(side_effect=ProviderAuthExpiredError(CalendarProvider.GOOGLE))
        google.refresh_credential = AsyncMock(
            side_effect=ReconnectRequiredError(CalendarProvider.GOOGLE)
        )

        response = await self._say(
            engine, classifier, create_meeting(title="Sync", date=DAY, time="14:00")
        )

        assert response.code == "reconnect_calendar"
        assert not response.success
        assert "Google Calendar" in response.message
        assert (await engine.get_state(USER)).params.title == "Sync"

    @pytest.mark.asyncio
    async def test_unavailable_provider_keeps_progress(self, engine, classifier, google):
        google.list_busy = AsyncMock(
            side_effect=ProviderUnavailableError(CalendarProvider.GOOGLE, "HTTP 503")
        )

        response = await self._say(
            engine, classifier, create_meeting(title="Sync", date=DAY, time="14:00")
        )

        assert response.code == "provider_unavailable"
        assert not response.success
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.COLLECTING_PARAMS
        assert state.params.missing_fields == []

        # The next message retries with what was already gathered
        google.list_busy = AsyncMock(return_value=[])
        response = await self._say(
            engine, classifier, IntentResult(type=IntentType.GENERAL_QUERY), "try again"
        )

        assert response.code == "booked"

    @pytest.mark.asyncio
    async def test_booking_failure_keeps_offer(self, engine, classifier, google):
        await self._say(
            engine,
            classifier,
            create_meeting(title="Sync", date=DAY, time="10:00", attendees=["ana@example.com"]),
        )
        google.create_event = AsyncMock(
            side_effect=ProviderUnavailableError(CalendarProvider.GOOGLE, "HTTP 500")
        )

        response = await self._say(engine, classifier, choose("1"), "1")

        assert response.code == "provider_unavailable"
        state = await engine.get_state(USER)
        assert state.stage == ConversationStage.AWAITING_SLOT_CHOICE
        assert state.offered_slots

    # === Other intents ===

    @pytest.mark.asyncio
    async def test_check_schedule_filters_time_range(self, engine, classifier, google):
        google.list_events = AsyncMock(return_value=[
            CalendarEvent(
                id="b", title="Review", start=at(15), end=at(16),
                provider=CalendarProvider.GOOGLE,
            ),
            CalendarEvent(
                id="a", title="Standup", start=at(9), end=at(9, 15),
                provider=CalendarProvider.GOOGLE,
            ),
        ])

        response = await self._say(
            engine,
            classifier,
            IntentResult(
                type=IntentType.CHECK_SCHEDULE,
                params={"date": DAY, "time_range": "afternoon"},
            ),
        )

        assert response.code == "schedule"
        assert response.message.startswith(
            "You have 1 event scheduled for March 10, 2025 in the afternoon."
        )
        assert [e["id"] for e in response.events] == ["b"]
        _, start, end = google.list_events.await_args.args
        assert (start, end) == (at(0), datetime(2025, 3, 11, tzinfo=UTC))

    @pytest.mark.asyncio
    async def test_side_question_reminds_pending_field(self, engine, classifier, claude):
        await self._say(engine, classifier, create_meeting(title="Sync"))

        response = await self._say(
            engine,
            classifier,
            IntentResult(type=IntentType.GENERAL_QUERY),
            "which calendars do you support?",
        )

        assert response.code == "answer"
        assert response.message.startswith("I schedule meetings.")
        assert response.follow_up == 'On which date? (e.g. YYYY-MM-DD or "tomorrow")'
        claude.generate.assert_awaited_once()
        assert (await engine.get_state(USER)).params.title == "Sync"

    @pytest.mark.asyncio
    async def test_unexpected_error_becomes_reply(self, engine, classifier):
        classifier.classify.side_effect = RuntimeError("boom")

        response = await engine.process_turn(USER, "hello", "UTC")

        assert response.code == "error"
        assert not response.success

    @pytest.mark.asyncio
    async def test_selected_model_used_for_turn(self, engine, classifier, claude):
        classifier.classify.return_value = IntentResult(type=IntentType.GENERAL_QUERY)

        await engine.process_turn(USER, "what can you do?", "UTC", "claude-3-5-sonnet-20241022")

        assert classifier.classify.await_args.kwargs["model"] == "claude-3-5-sonnet-20241022"
        assert claude.generate.await_args.kwargs["model"] == "claude-3-5-sonnet-20241022"

    # === Concurrency ===

    @pytest.mark.asyncio
    async def test_turns_for_one_user_run_one_at_a_time(self, engine, classifier, google):
        """A second message waits for the state the first turn saves."""
        release = asyncio.Event()
        contexts = []

        async def classify(utterance, context=None, model=None):
            contexts.append(context)
            if utterance == "sync with ana":
                await release.wait()
                return create_meeting(
                    title="Sync", date=DAY, time="10:00", attendees=["ana@example.com"]
                )
            return choose("2")

        classifier.classify.side_effect = classify

        first = asyncio.create_task(engine.process_turn(USER, "sync with ana", "UTC"))
        while not contexts:
            await asyncio.sleep(0)
        second = asyncio.create_task(engine.process_turn(USER, "2", "UTC"))
        for _ in range(10):
            await asyncio.sleep(0)

        # Still queued behind the first turn
        assert len(contexts) == 1

        release.set()
        offered, booked = await asyncio.gather(first, second)

        assert offered.code == "choose_slot"
        assert contexts[1]["stage"] == "awaiting_slot_choice"
        assert contexts[1]["offered_slots"] == len(offered.available_slots)
        assert booked.code == "booked"
        request = google.create_event.await_args.args[1]
        assert request.start.isoformat() == offered.available_slots[1]["start"]
        assert (await engine.get_state(USER)).stage == ConversationStage.IDLE

    @pytest.mark.asyncio
    async def test_reset_state(self, engine, classifier):
        await self._say(engine, classifier, create_meeting(title="Sync"))

        state = await engine.reset_state(USER)

        assert state.stage == ConversationStage.IDLE
        assert state.params.title is None
