"""Tests for availability resolution and slot scoring."""

import pytest
from unittest.mock import AsyncMock, MagicMock
from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from calendar_assistant.core.calendar.base import (
    BusyInterval,
    CalendarProvider,
    ProviderCredential,
    ProviderUnavailableError,
)
from calendar_assistant.core.calendar.credentials import CredentialRefreshManager
from calendar_assistant.core.calendar.store import InMemoryCredentialStore
from calendar_assistant.core.scheduling.availability import (
    REASON_FULLY_BOOKED,
    REASON_NO_PROVIDER,
    AvailabilityResolver,
    enumerate_slots,
    is_free,
    merge_busy,
    rank_slots,
    score_slot,
)


UTC = timezone.utc
DAY = date(2025, 3, 10)


def at(hour: int, minute: int = 0, tz=UTC) -> datetime:
    return datetime(2025, 3, 10, hour, minute, tzinfo=tz)


def busy(start: datetime, end: datetime) -> BusyInterval:
    return BusyInterval(start=start, end=end)


class TestMergeBusy:
    """Test busy interval union."""

    def test_overlapping_coalesce(self):
        merged = merge_busy([busy(at(10), at(11)), busy(at(10, 30), at(12))])
        assert merged == [busy(at(10), at(12))]

    def test_touching_coalesce(self):
        merged = merge_busy([busy(at(13), at(14)), busy(at(10), at(11)), busy(at(11), at(12))])
        assert merged == [busy(at(10), at(12)), busy(at(13), at(14))]

    def test_contained_interval_absorbed(self):
        merged = merge_busy([busy(at(9), at(12)), busy(at(10), at(11))])
        assert merged == [busy(at(9), at(12))]

    def test_half_open_boundaries(self):
        intervals = [busy(at(10), at(11))]
        assert is_free(at(9, 30), at(10), intervals)
        assert is_free(at(11), at(11, 30), intervals)
        assert not is_free(at(10, 30), at(11, 30), intervals)

    def test_create_rejects_malformed(self):
        assert BusyInterval.create(at(11), at(10)) is None
        assert BusyInterval.create(at(10), at(10)) is None
        assert BusyInterval.create(datetime(2025, 3, 10, 10), at(11)) is None


class TestScoring:
    """Test slot enumeration and ranking."""

    def test_conflicting_slots_excluded(self):
        """Nothing overlapping the busy hour is offered."""
        intervals = [busy(at(10), at(11))]

        slots = enumerate_slots(at(9), at(17), 30, 30, intervals, 120)
        starts = [s.start for s in slots]

        assert at(9) in starts
        assert at(9, 30) in starts
        assert at(11) in starts
        assert at(10) not in starts
        assert at(10, 30) not in starts
        assert all(is_free(s.start, s.end, intervals) for s in slots)
        assert all(s.end <= at(17) for s in slots)

    def test_disjoint_from_every_busy_interval(self):
        intervals = [
            busy(at(9, 45), at(10, 15)),
            busy(at(10), at(11)),
            busy(at(13, 10), at(13, 20)),
        ]
        merged = merge_busy(intervals)

        slots = enumerate_slots(at(9), at(17), 30, 15, intervals, 120)

        assert slots
        assert all(s.end <= b.start or s.start >= b.end for s in slots for b in merged)

    def test_equal_buffers_prefer_earlier(self):
        """09:00 and 11:30 both sit 30 minutes from the busy hour."""
        intervals = [busy(at(10), at(11))]

        slots = {s.start: s for s in enumerate_slots(at(9), at(17), 30, 30, intervals, 120)}

        assert at(9) in slots and at(11) in slots
        assert slots[at(9)].end == at(9, 30)
        assert slots[at(11)].end == at(11, 30)
        assert slots[at(9)].score >= slots[at(11, 30)].score
        assert slots[at(9)].score >= slots[at(11)].score

    def test_buffer_outweighs_earliness(self):
        """9:00 keeps 30 minutes to the meeting; 11:00 sits right after it."""
        intervals = [busy(at(10), at(11))]

        nine = score_slot(at(9), at(9, 30), intervals, at(9), at(17), 30, 120)
        eleven = score_slot(at(11), at(11, 30), intervals, at(9), at(17), 30, 120)
        afternoon = score_slot(at(14), at(14, 30), intervals, at(9), at(17), 30, 120)

        assert nine > eleven
        assert afternoon > nine

    def test_scores_in_unit_interval(self):
        slots = enumerate_slots(at(9), at(17), 45, 15, [busy(at(12), at(13))], 120)
        assert slots
        assert all(0 < s.score <= 1 for s in slots)

    def test_empty_calendar_prefers_earliest(self):
        slots = rank_slots(enumerate_slots(at(9), at(17), 30, 30, [], 120), 3)

        assert [s.start for s in slots] == [at(9), at(9, 30), at(10)]
        assert slots[0].score == 1.0

    def test_ranking_is_deterministic(self):
        intervals = [busy(at(10), at(11)), busy(at(15), at(16))]

        first = rank_slots(enumerate_slots(at(9), at(17), 30, 30, intervals, 120), 5)
        second = rank_slots(enumerate_slots(at(9), at(17), 30, 30, list(reversed(intervals)), 120), 5)

        assert first == second
        assert [s.score for s in first] == sorted((s.score for s in first), reverse=True)

    def test_duration_longer_than_window(self):
        assert enumerate_slots(at(9), at(10), 90, 30, [], 120) == []


class TestAvailabilityResolver:
    """Test resolver against mocked provider adapters."""

    @pytest.fixture
    def google_adapter(self):
        adapter = MagicMock()
        adapter.list_busy = AsyncMock(return_value=[busy(at(10), at(11))])
        return adapter

    @pytest.fixture
    def microsoft_adapter(self):
        adapter = MagicMock()
        adapter.list_busy = AsyncMock(return_value=[busy(at(10, 30), at(11, 30))])
        return adapter

    @pytest.fixture
    def store(self):
        return InMemoryCredentialStore({
            ("user-1", CalendarProvider.GOOGLE): ProviderCredential(
                provider=CalendarProvider.GOOGLE, access_token="g"
            ),
            ("user-1", CalendarProvider.MICROSOFT): ProviderCredential(
                provider=CalendarProvider.MICROSOFT, access_token="m"
            ),
        })

    @pytest.fixture
    def resolver(self, google_adapter, microsoft_adapter, store):
        manager = CredentialRefreshManager(
            adapters={
                CalendarProvider.GOOGLE: google_adapter,
                CalendarProvider.MICROSOFT: microsoft_adapter,
            },
            store=store,
        )
        return AvailabilityResolver(refresh_manager=manager)

    @pytest.mark.asyncio
    async def test_find_slots_merges_both_calendars(self, resolver, google_adapter):
        result = await resolver.find_slots("user-1", DAY, 30, UTC, max_results=20)

        assert result.reason is None
        assert result.busy == [busy(at(10), at(11, 30))]
        assert result.providers == [CalendarProvider.GOOGLE, CalendarProvider.MICROSOFT]
        starts = [s.start for s in result.slots]
        assert at(11) not in starts
        assert at(11, 30) in starts
        google_adapter.list_busy.assert_awaited_once()
        _, window_start, window_end = google_adapter.list_busy.await_args.args
        assert (window_start, window_end) == (at(9), at(17))

    @pytest.mark.asyncio
    async def test_find_slots_is_deterministic(self, resolver):
        first = await resolver.find_slots("user-1", DAY, 30, UTC)
        second = await resolver.find_slots("user-1", DAY, 30, UTC)

        assert first.slots
        assert first.slots == second.slots

    @pytest.mark.asyncio
    async def test_find_slots_truncates(self, resolver):
        result = await resolver.find_slots("user-1", DAY, 30, UTC, max_results=3)
        assert len(result.slots) == 3

    @pytest.mark.asyncio
    async def test_window_in_user_timezone(self, resolver, google_adapter):
        tokyo = ZoneInfo("Asia/Tokyo")

        await resolver.find_slots("user-1", DAY, 30, tokyo)

        _, window_start, _ = google_adapter.list_busy.await_args.args
        assert window_start == datetime(2025, 3, 10, 9, 0, tzinfo=tokyo)
        assert window_start.astimezone(UTC).hour == 0

    @pytest.mark.asyncio
    async def test_no_provider(self):
        manager = CredentialRefreshManager(adapters={}, store=InMemoryCredentialStore())
        resolver = AvailabilityResolver(refresh_manager=manager)

        result = await resolver.find_slots("user-1", DAY, 30, UTC)

        assert result.slots == []
        assert result.reason == REASON_NO_PROVIDER

    @pytest.mark.asyncio
    async def test_fully_booked(self, resolver, google_adapter):
        google_adapter.list_busy = AsyncMock(return_value=[busy(at(8), at(18))])

        result = await resolver.find_slots("user-1", DAY, 30, UTC)

        assert result.slots == []
        assert result.reason == REASON_FULLY_BOOKED

    @pytest.mark.asyncio
    async def test_provider_failure_propagates(self, resolver, microsoft_adapter):
        microsoft_adapter.list_busy = AsyncMock(
            side_effect=ProviderUnavailableError(CalendarProvider.MICROSOFT, "HTTP 503")
        )

        with pytest.raises(ProviderUnavailableError):
            await resolver.find_slots("user-1", DAY, 30, UTC)

    @pytest.mark.asyncio
    async def test_is_slot_free(self, resolver):
        assert await resolver.is_slot_free("user-1", at(14), at(14, 30))
        assert not await resolver.is_slot_free("user-1", at(11), at(11, 15))

    def test_business_window_custom_hours(self, resolver):
        start, end = resolver.business_window(DAY, UTC, "08:30", "12:00")

        assert start == at(8, 30)
        assert end - start == timedelta(hours=3, minutes=30)
