"""
Microsoft Outlook calendar adapter (Provider B).

Talks to Microsoft Graph v1.0:
- GET  /me/calendarView - event occurrences in a window
- POST /me/events       - create an event and invite attendees
"""

import logging
from datetime import datetime, timezone
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
    parse_provider_datetime,
)

logger = logging.getLogger(__name__)

GRAPH_SCOPE = "offline_access https://graph.microsoft.com/Calendars.ReadWrite"

# Ask Graph to express every returned time in UTC
UTC_PREFERENCE = {"Prefer": 'outlook.timezone="UTC"'}


class MicrosoftCalendarAdapter(CalendarAdapter):
    """Adapter for the user's default Outlook calendar."""

    provider = CalendarProvider.MICROSOFT

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
            base_url=base_url or settings.microsoft_graph_base_url,
            http_client=http_client,
            timeout=timeout,
        )
        self.client_id = client_id or settings.microsoft_client_id
        self.client_secret = client_secret or settings.microsoft_client_secret
        self.token_url = token_url or settings.microsoft_token_url

    async def list_events(
        self,
        credential: ProviderCredential,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        """List event occurrences overlapping [start, end)."""
        events: list[CalendarEvent] = []
        path = "/me/calendarView"
        params: Optional[dict] = {
            "startDateTime": start.astimezone(timezone.utc).isoformat(),
            "endDateTime": end.astimezone(timezone.utc).isoformat(),
            "$top": "200",
            "$select": "id,subject,start,end,attendees,showAs,isCancelled,isAllDay,webLink",
            "$orderby": "start/dateTime",
        }

        while path:
            data = await self._request(
                "GET", path, credential, headers=UTC_PREFERENCE, params=params
            )

            for item in data.get("value", []):
                event = self._to_event(item)
                if event is not None:
                    events.append(event)

            # nextLink already carries the query string
            path = data.get("@odata.nextLink")
            params = None

        logger.debug(f"Microsoft returned {len(events)} events for {start.date()}")
        return events

    async def create_event(
        self,
        credential: ProviderCredential,
        request: EventRequest,
    ) -> CalendarEvent:
        """Create an event on the default calendar and invite attendees."""
        body = {
            "subject": request.title,
            "body": {
                "contentType": "HTML",
                "content": request.description or "",
            },
            "start": {
                "dateTime": request.start.replace(tzinfo=None).isoformat(),
                "timeZone": request.timezone,
            },
            "end": {
                "dateTime": request.end.replace(tzinfo=None).isoformat(),
                "timeZone": request.timezone,
            },
            "attendees": [
                {"emailAddress": {"address": email}, "type": "required"}
                for email in request.attendees
            ],
        }

        data = await self._request(
            "POST", "/me/events", credential, headers=UTC_PREFERENCE, json=body
        )

        event = self._to_event(data)
        if event is None:
            raise ProviderUnavailableError(self.provider, "Unexpected create response")

        logger.info(f"Microsoft event created: {event.id}")
        return event

    def _token_request(self, refresh_token: str) -> tuple[str, dict[str, str]]:
        return self.token_url, {
            "client_id": self.client_id,
            "client_secret": self.client_secret,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
            "scope": GRAPH_SCOPE,
        }

    def _to_event(self, item: dict) -> Optional[CalendarEvent]:
        """Normalize a Graph event resource. Cancelled events are skipped."""
        if item.get("isCancelled"):
            return None

        start = parse_provider_datetime((item.get("start") or {}).get("dateTime"), timezone.utc)
        end = parse_provider_datetime((item.get("end") or {}).get("dateTime"), timezone.utc)

        if start is None or end is None:
            logger.warning(f"Skipping Microsoft event with unparsable times: {item.get('id')}")
            return None

        attendees = []
        for attendee in item.get("attendees", []):
            address = (attendee.get("emailAddress") or {}).get("address")
            if address:
                attendees.append(address)

        return CalendarEvent(
            id=item.get("id", ""),
            title=item.get("subject") or "(no title)",
            start=start,
            end=end,
            provider=self.provider,
            attendees=attendees,
            is_busy=item.get("showAs", "busy") != "free",
            html_link=item.get("webLink"),
        )
