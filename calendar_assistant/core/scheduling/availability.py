"""
Availability Resolver.

Merges busy intervals from every connected calendar, walks business hours
in fixed increments and scores the conflict-free candidates.

Scoring:
    buffer    = minutes to the nearest busy edge, capped at buffer_cap
    level     = floor(buffer / increment)          0 .. levels
    earliness = 1 - offset / window_length         (0, 1]
    score     = (level + earliness) / (levels + 1)

A whole increment of extra buffer always outweighs earliness, so score is
monotonic in buffer and earlier slots win ties within a buffer level.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from typing import Iterable, Optional

from calendar_assistant.config import settings
from calendar_assistant.core.calendar.base import BusyInterval, CandidateSlot, CalendarProvider
from calendar_assistant.core.calendar.credentials import (
    CredentialRefreshManager,
    get_refresh_manager,
)

logger = logging.getLogger(__name__)

REASON_NO_PROVIDER = "no_provider"
REASON_FULLY_BOOKED = "fully_booked"


@dataclass
class AvailabilityResult:
    """Scored slots plus the merged busy set they were computed from."""

    slots: list[CandidateSlot] = field(default_factory=list)
    busy: list[BusyInterval] = field(default_factory=list)
    reason: Optional[str] = None  # no_provider | fully_booked
    providers: list[CalendarProvider] = field(default_factory=list)


def parse_hhmm(value: str) -> time:
    """'09:30' -> time(9, 30)."""
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


def merge_busy(intervals: Iterable[BusyInterval]) -> list[BusyInterval]:
    """Union intervals, coalescing overlapping and touching ranges."""
    merged: list[BusyInterval] = []
    for interval in sorted(intervals, key=lambda i: (i.start, i.end)):
        if merged and interval.start <= merged[-1].end:
            last = merged[-1]
            if interval.end > last.end:
                merged[-1] = BusyInterval(start=last.start, end=interval.end)
        else:
            merged.append(interval)
    return merged


def is_free(start: datetime, end: datetime, busy: Iterable[BusyInterval]) -> bool:
    """True if [start, end) overlaps none of the busy intervals."""
    return not any(interval.overlaps(start, end) for interval in busy)


def buffer_minutes(start: datetime, end: datetime, busy: list[BusyInterval], cap: int) -> float:
    """Minutes between a free slot and its nearest busy interval, capped."""
    nearest = float(cap)
    for interval in busy:
        if interval.end <= start:
            gap = (start - interval.end).total_seconds() / 60
        elif interval.start >= end:
            gap = (interval.start - end).total_seconds() / 60
        else:
            gap = 0.0
        nearest = min(nearest, gap)
    return nearest


def score_slot(
    start: datetime,
    end: datetime,
    busy: list[BusyInterval],
    window_start: datetime,
    window_end: datetime,
    increment: int,
    buffer_cap: int,
) -> float:
    """Score a conflict-free slot in (0, 1]."""
    levels = max(buffer_cap // increment, 1)
    level = min(int(buffer_minutes(start, end, busy, buffer_cap) // increment), levels)

    window_length = (window_end - window_start).total_seconds()
    offset = (start - window_start).total_seconds()
    earliness = 1 - offset / window_length

    return round((level + earliness) / (levels + 1), 6)


def enumerate_slots(
    window_start: datetime,
    window_end: datetime,
    duration: int,
    increment: int,
    busy: list[BusyInterval],
    buffer_cap: int,
) -> list[CandidateSlot]:
    """All conflict-free candidates in the window, unsorted."""
    slots = []
    length = timedelta(minutes=duration)
    step = timedelta(minutes=increment)

    cursor = window_start
    while cursor + length <= window_end:
        slot_end = cursor + length
        if is_free(cursor, slot_end, busy):
            slots.append(
                CandidateSlot(
                    start=cursor,
                    end=slot_end,
                    score=score_slot(
                        cursor, slot_end, busy, window_start, window_end, increment, buffer_cap
                    ),
                )
            )
        cursor += step

    return slots


def rank_slots(slots: list[CandidateSlot], max_results: int) -> list[CandidateSlot]:
    """Sort by score descending, earlier start first on ties, and truncate."""
    return sorted(slots, key=lambda s: (-s.score, s.start))[:max_results]


class AvailabilityResolver:
    """Computes candidate slots for a user's day across connected calendars."""

    def __init__(self, refresh_manager: Optional[CredentialRefreshManager] = None):
        """Initialize resolver.

        Args:
            refresh_manager: Wrapper for provider calls (defaults to singleton)
        """
        self._manager = refresh_manager

    @property
    def manager(self) -> CredentialRefreshManager:
        if self._manager is None:
            self._manager = get_refresh_manager()
        return self._manager

    def business_window(
        self,
        day: date,
        tz: tzinfo,
        business_start: Optional[str] = None,
        business_end: Optional[str] = None,
    ) -> tuple[datetime, datetime]:
        """Aware [start, end) of business hours on day in tz."""
        start = datetime.combine(day, parse_hhmm(business_start or settings.business_hours_start), tzinfo=tz)
        end = datetime.combine(day, parse_hhmm(business_end or settings.business_hours_end), tzinfo=tz)
        return start, end

    async def fetch_busy(
        self,
        user_id: str,
        providers: list[CalendarProvider],
        start: datetime,
        end: datetime,
    ) -> list[BusyInterval]:
        """
        Merged busy intervals from every given provider.

        Raises:
            ProviderUnavailableError / ReconnectRequiredError from any provider
        """
        intervals: list[BusyInterval] = []
        for provider in providers:
            provider_busy = await self.manager.call(
                user_id,
                provider,
                lambda adapter, credential: adapter.list_busy(credential, start, end),
            )
            logger.debug(f"{provider.value}: {len(provider_busy)} busy intervals")
            intervals.extend(provider_busy)
        return merge_busy(intervals)

    async def find_slots(
        self,
        user_id: str,
        day: date,
        duration: int,
        tz: tzinfo,
        attendees: Optional[list[str]] = None,
        business_start: Optional[str] = None,
        business_end: Optional[str] = None,
        increment: Optional[int] = None,
        max_results: Optional[int] = None,
    ) -> AvailabilityResult:
        """
        Find scored candidate slots for one day.

        Args:
            user_id: User whose calendars are consulted
            day: Calendar date in tz
            duration: Slot length in minutes
            tz: User's timezone
            attendees: Informational only; not a scoring input
            business_start: HH:MM (defaults to settings)
            business_end: HH:MM (defaults to settings)
            increment: Step between candidate starts in minutes
            max_results: Maximum number of slots returned

        Returns:
            AvailabilityResult; an empty slot list carries a reason code
        """
        increment = increment or settings.slot_increment_minutes
        max_results = max_results or settings.max_slot_results

        providers = await self.manager.connected_providers(user_id)
        if not providers:
            logger.info(f"No calendar connected for user {user_id}")
            return AvailabilityResult(reason=REASON_NO_PROVIDER)

        window_start, window_end = self.business_window(day, tz, business_start, business_end)
        busy = await self.fetch_busy(user_id, providers, window_start, window_end)

        candidates = enumerate_slots(
            window_start,
            window_end,
            duration,
            increment,
            busy,
            settings.buffer_cap_minutes,
        )

        if not candidates:
            logger.info(f"No free {duration}min slot on {day} for user {user_id}")
            return AvailabilityResult(busy=busy, reason=REASON_FULLY_BOOKED, providers=providers)

        slots = rank_slots(candidates, max_results)
        logger.debug(f"{len(candidates)} candidates on {day}, returning {len(slots)}")
        return AvailabilityResult(slots=slots, busy=busy, providers=providers)

    async def is_slot_free(
        self,
        user_id: str,
        start: datetime,
        end: datetime,
    ) -> bool:
        """Check a specific range against every connected calendar."""
        providers = await self.manager.connected_providers(user_id)
        busy = await self.fetch_busy(user_id, providers, start, end)
        return is_free(start, end, busy)


# Singleton
_resolver: Optional[AvailabilityResolver] = None


def get_availability_resolver() -> AvailabilityResolver:
    """Get singleton AvailabilityResolver."""
    global _resolver
    if _resolver is None:
        _resolver = AvailabilityResolver()
    return _resolver
