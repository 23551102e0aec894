"""
Calendar Provider Module

Provider adapters for Google Calendar and Microsoft Outlook, the credential
store boundary, and the refresh-and-retry wrapper every provider call goes
through.

Usage:
    from calendar_assistant.core.calendar import (
        CalendarProvider,
        get_refresh_manager,
    )

    manager = get_refresh_manager()
    busy = await manager.call(
        user_id,
        CalendarProvider.GOOGLE,
        lambda adapter, cred: adapter.list_busy(cred, start, end),
    )
"""

from calendar_assistant.core.calendar.base import (
    BusyInterval,
    CalendarAdapter,
    CalendarEvent,
    CalendarProvider,
    CandidateSlot,
    EventRequest,
    ProviderAuthExpiredError,
    ProviderCredential,
    ProviderError,
    ProviderUnavailableError,
    ReconnectRequiredError,
)
from calendar_assistant.core.calendar.google import GoogleCalendarAdapter
from calendar_assistant.core.calendar.microsoft import MicrosoftCalendarAdapter
from calendar_assistant.core.calendar.store import (
    CredentialStore,
    InMemoryCredentialStore,
    SqlCredentialStore,
    get_credential_store,
    set_credential_store,
)
from calendar_assistant.core.calendar.credentials import (
    CredentialRefreshManager,
    get_refresh_manager,
)

__all__ = [
    # Types
    "BusyInterval",
    "CalendarEvent",
    "CalendarProvider",
    "CandidateSlot",
    "EventRequest",
    "ProviderCredential",
    # Errors
    "ProviderError",
    "ProviderAuthExpiredError",
    "ProviderUnavailableError",
    "ReconnectRequiredError",
    # Adapters
    "CalendarAdapter",
    "GoogleCalendarAdapter",
    "MicrosoftCalendarAdapter",
    # Credentials
    "CredentialStore",
    "InMemoryCredentialStore",
    "SqlCredentialStore",
    "get_credential_store",
    "set_credential_store",
    "CredentialRefreshManager",
    "get_refresh_manager",
]
