"""
Google Calendar adapter (Provider A).

Talks to the Calendar v3 REST API:
- GET  /calendars/primary/events - events in a window (expanded recurrences)
- POST /calendars/primary/events - create an event and invite attendees
"""

import logging
from datetime import datetime
from typing import Optional

import httpx

from calendar_assistant.config import settings
from .base import (
    CalendarAdapter,
    CalendarEvent,
    CalendarProvider,
    EventRequest,
    ProviderCredential,
    ProviderUnavailableError,
    parse_all_day,
    parse_provider_datetime,
)

logger = logging.getLogger(__name__)

# Google caps maxResults at 2500; one page covers any single day
PAGE_SIZE = 250


class GoogleCalendarAdapter(CalendarAdapter):
    """Adapter for the user's primary Google calendar."""

    provider = CalendarProvider.GOOGLE

    def __init__(
        self,
        base_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_secret: Optional[str] = None,
        token_url: Optional[str] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        super().__init__(
            base_url=base_url or settings.google_calendar_base_url,
            http_client=http_client,
            timeout=timeout,
        )
        self.client_id = client_id or settings.google_client_id
        self.client_secret = client_secret or settings.google_client_secret
        self.token_url = token_url or settings.google_token_url

    async def list_events(
        self,
        credential: ProviderCredential,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        """List events overlapping [start, end) from the primary calendar."""
        events: list[CalendarEvent] = []
        page_token: Optional[str] = None

        while True:
            params = {
                "timeMin": start.isoformat(),
                "timeMax": end.isoformat(),
                "singleEvents": "true",
                "orderBy": "startTime",
                "maxResults": str(PAGE_SIZE),
            }
            if page_token:
                params["pageToken"] = page_token

            data = await self._request(
                "GET", "/calendars/primary/events", credential, params=params
            )

            for item in data.get("items", []):
                event = self._to_event(item, start)
                if event is not None:
                    events.append(event)

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        logger.debug(f"Google returned {len(events)} events for {start.date()}")
        return events

    async def create_event(
        self,
        credential: ProviderCredential,
        request: EventRequest,
    ) -> CalendarEvent:
        """Insert an event on the primary calendar and notify attendees."""
        body = {
            "summary": request.title,
            "description": request.description or "",
            "start": {
                "dateTime": request.start.replace(tzinfo=None).isoformat(),
                "timeZone": request.timezone,
            },
            "end": {
                "dateTime": request.end.replace(tzinfo=None).isoformat(),
                "timeZone": request.timezone,
            },
            "attendees": [{"email": email} for email in request.attendees],
        }

        data = await self._request(
            "POST",
            "/calendars/primary/events",
            credential,
            params={"sendUpdates": "all"},
            json=body,
        )

        event = self._to_event(data, request.start)
        if event is None:
            raise ProviderUnavailableError(self.provider, "Unexpected create response")

        logger.info(f"Google event created: {event.id}")
        return event

    def _token_request(self, refresh_token: str) -> tuple[str, dict[str, str]]:
        return self.token_url, {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }

    def _to_event(self, item: dict, reference: datetime) -> Optional[CalendarEvent]:
        """Normalize a Google event resource. Cancelled events are skipped."""
        if item.get("status") == "cancelled":
            return None

        tz = reference.tzinfo
        start_raw = item.get("start") or {}
        end_raw = item.get("end") or {}

        if "dateTime" in start_raw:
            start = parse_provider_datetime(start_raw.get("dateTime"), tz)
            end = parse_provider_datetime(end_raw.get("dateTime"), tz)
        else:
            start = parse_all_day(start_raw.get("date"), tz)
            end = parse_all_day(end_raw.get("date"), tz)

        if start is None or end is None:
            logger.warning(f"Skipping Google event with unparsable times: {item.get('id')}")
            return None

        return CalendarEvent(
            id=item.get("id", ""),
            title=item.get("summary") or "(no title)",
            start=start,
            end=end,
            provider=self.provider,
            attendees=[
                a["email"] for a in item.get("attendees", []) if a.get("email")
            ],
            is_busy=item.get("transparency") != "transparent",
            html_link=item.get("htmlLink"),
        )
