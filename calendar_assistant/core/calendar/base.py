"""
Provider adapter contract and shared calendar types.

Every calendar backend is reached through a CalendarAdapter subclass that
translates the provider's event model into BusyInterval / CalendarEvent and
reports an expired access token distinctly from every other failure.
"""

import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, timezone, tzinfo
from enum import Enum
from typing import Any, Optional

import httpx

from calendar_assistant.config import settings

logger = logging.getLogger(__name__)


class CalendarProvider(str, Enum):
    """Supported calendar providers."""

    GOOGLE = "google"          # Provider A
    MICROSOFT = "microsoft"    # Provider B


# === Errors ===


class ProviderError(Exception):
    """Base class for calendar provider failures."""

    def __init__(self, provider: CalendarProvider, message: str = ""):
        self.provider = provider
        super().__init__(message or f"{provider.value} calendar request failed")


class ProviderAuthExpiredError(ProviderError):
    """The access token was rejected; a refresh may fix it."""


class ProviderUnavailableError(ProviderError):
    """Any provider failure other than an expired token."""


class ReconnectRequiredError(ProviderError):
    """Refreshing did not help; the user must reconnect the calendar."""


# === Types ===


@dataclass(frozen=True)
class BusyInterval:
    """Half-open [start, end) range during which an account is busy."""

    start: datetime
    end: datetime

    @classmethod
    def create(cls, start: Optional[datetime], end: Optional[datetime]) -> Optional["BusyInterval"]:
        """Build an interval, or return None when the range is malformed."""
        if start is None or end is None:
            return None
        if start.tzinfo is None or end.tzinfo is None:
            return None
        if not start < end:
            return None
        return cls(start=start, end=end)

    def overlaps(self, start: datetime, end: datetime) -> bool:
        """True if [start, end) shares any instant with this interval."""
        return start < self.end and end > self.start


@dataclass(frozen=True)
class CandidateSlot:
    """A bookable [start, end) range with a preference score in [0, 1]."""

    start: datetime
    end: datetime
    score: float = 0.0

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "score": self.score,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CandidateSlot":
        """Create from dictionary."""
        return cls(
            start=datetime.fromisoformat(data["start"]),
            end=datetime.fromisoformat(data["end"]),
            score=float(data.get("score", 0.0)),
        )


@dataclass
class ProviderCredential:
    """OAuth tokens for one provider account."""

    provider: CalendarProvider
    access_token: str
    refresh_token: Optional[str] = None
    expires_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "provider": self.provider.value,
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ProviderCredential":
        """Create from dictionary."""
        expires_at = data.get("expires_at")
        return cls(
            provider=CalendarProvider(data["provider"]),
            access_token=data["access_token"],
            refresh_token=data.get("refresh_token"),
            expires_at=datetime.fromisoformat(expires_at) if expires_at else None,
        )


@dataclass
class EventRequest:
    """Provider-neutral description of an event to create."""

    title: str
    start: datetime
    end: datetime
    timezone: str
    attendees: list[str] = field(default_factory=list)
    description: str = ""


@dataclass
class CalendarEvent:
    """Provider event normalized to the fields the assistant uses."""

    id: str
    title: str
    start: datetime
    end: datetime
    provider: CalendarProvider
    attendees: list[str] = field(default_factory=list)
    is_busy: bool = True
    html_link: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "title": self.title,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
            "provider": self.provider.value,
            "attendees": list(self.attendees),
            "html_link": self.html_link,
        }


# === Parsing helpers ===

_FRACTION = re.compile(r"\.(\d+)")


def parse_provider_datetime(value: Optional[str], default_tz: tzinfo) -> Optional[datetime]:
    """Parse a provider timestamp into an aware datetime.

    Accepts RFC 3339 values (with offset or trailing Z) and Graph's naive
    values with 7 fractional digits. Naive values are placed in default_tz.
    Returns None for anything unparsable.
    """
    if not value:
        return None

    value = value.strip()
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)

    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=default_tz)
    return parsed


def parse_all_day(value: Optional[str], tz: tzinfo) -> Optional[datetime]:
    """Midnight of a YYYY-MM-DD date in tz."""
    if not value:
        return None
    try:
        day = date.fromisoformat(value)
    except ValueError:
        return None
    return datetime.combine(day, time.min, tzinfo=tz)


# === Adapter contract ===


class CalendarAdapter(ABC):
    """
    Base class for provider adapters.

    Subclasses implement list_events / create_event against their REST API
    and describe their OAuth token endpoint; everything else (auth headers,
    error classification, busy-interval derivation, token refresh) is shared.
    """

    provider: CalendarProvider

    def __init__(
        self,
        base_url: str,
        http_client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        """Initialize adapter.

        Args:
            base_url: Provider REST API base URL
            http_client: Optional preconfigured client (for testing)
            timeout: Request timeout in seconds (defaults to settings)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout or settings.provider_timeout
        self._client = http_client

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        """Close HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    # --- provider-specific surface ---

    @abstractmethod
    async def list_events(
        self,
        credential: ProviderCredential,
        start: datetime,
        end: datetime,
    ) -> list[CalendarEvent]:
        """List events overlapping [start, end)."""

    @abstractmethod
    async def create_event(
        self,
        credential: ProviderCredential,
        request: EventRequest,
    ) -> CalendarEvent:
        """Create an event and return the provider's acknowledgement."""

    @abstractmethod
    def _token_request(self, refresh_token: str) -> tuple[str, dict[str, str]]:
        """Return (token_url, form_data) for a refresh_token grant."""

    # --- shared behaviour ---

    async def list_busy(
        self,
        credential: ProviderCredential,
        start: datetime,
        end: datetime,
    ) -> list[BusyInterval]:
        """Busy intervals for [start, end); malformed ranges are discarded."""
        events = await self.list_events(credential, start, end)

        intervals: list[BusyInterval] = []
        for event in events:
            if not event.is_busy:
                continue
            interval = BusyInterval.create(event.start, event.end)
            if interval is None:
                logger.warning(
                    f"Discarding malformed {self.provider.value} event {event.id}: "
                    f"{event.start} -> {event.end}"
                )
                continue
            intervals.append(interval)

        return intervals

    async def refresh_credential(self, credential: ProviderCredential) -> ProviderCredential:
        """Exchange the refresh token for a new access token.

        Raises:
            ReconnectRequiredError: No refresh token, or the grant was rejected
            ProviderUnavailableError: Token endpoint unreachable or erroring
        """
        if not credential.refresh_token:
            raise ReconnectRequiredError(self.provider, "No refresh token stored")

        url, data = self._token_request(credential.refresh_token)
        client = await self._get_client()

        try:
            response = await client.post(url, data=data)
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.value} token refresh failed: {e}")
            raise ProviderUnavailableError(self.provider, str(e)) from e

        if response.status_code in (400, 401):
            logger.warning(
                f"{self.provider.value} refresh token rejected: {response.status_code}"
            )
            raise ReconnectRequiredError(self.provider, "Refresh token rejected")
        if response.status_code >= 400:
            raise ProviderUnavailableError(
                self.provider, f"Token endpoint returned {response.status_code}"
            )

        payload = self._decode(response)
        access_token = payload.get("access_token") if isinstance(payload, dict) else None
        if not access_token:
            raise ProviderUnavailableError(self.provider, "Token response missing access_token")

        expires_at = None
        if payload.get("expires_in"):
            expires_at = datetime.now(timezone.utc) + timedelta(
                seconds=int(payload["expires_in"])
            )

        return ProviderCredential(
            provider=self.provider,
            access_token=access_token,
            # Providers may omit the refresh token on renewal; keep the old one
            refresh_token=payload.get("refresh_token") or credential.refresh_token,
            expires_at=expires_at,
        )

    async def _request(
        self,
        method: str,
        path: str,
        credential: ProviderCredential,
        headers: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> Any:
        """Send an authenticated request and return the decoded JSON body.

        Raises:
            ProviderAuthExpiredError: HTTP 401
            ProviderUnavailableError: Transport error or any other HTTP error
        """
        client = await self._get_client()
        request_headers = {"Authorization": f"Bearer {credential.access_token}"}
        if headers:
            request_headers.update(headers)

        # Paging links come back as absolute URLs
        url = path if path.startswith("http") else f"{self.base_url}{path}"

        try:
            response = await client.request(
                method,
                url,
                headers=request_headers,
                **kwargs,
            )
        except httpx.HTTPError as e:
            logger.error(f"{self.provider.value} {method} {path} failed: {e}")
            raise ProviderUnavailableError(self.provider, str(e)) from e

        if response.status_code == 401:
            raise ProviderAuthExpiredError(self.provider, "Access token expired")
        if response.status_code >= 400:
            logger.error(
                f"{self.provider.value} {method} {path} returned "
                f"{response.status_code}: {response.text[:200]}"
            )
            raise ProviderUnavailableError(
                self.provider, f"HTTP {response.status_code}"
            )

        return self._decode(response)

    def _decode(self, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            logger.error(
                f"{self.provider.value} returned a non-JSON body "
                f"({response.headers.get('content-type', '?')}): {response.text[:200]}"
            )
            raise ProviderUnavailableError(self.provider, "Invalid JSON response") from e
