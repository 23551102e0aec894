"""
Credential Refresh Manager.

Every provider call goes through CredentialRefreshManager.call(), which
loads the stored credential, runs the call, and on an expired access token
refreshes once, persists the new token and retries exactly once.
"""

import logging
from typing import Awaitable, Callable, Optional, TypeVar

from .base import (
    CalendarAdapter,
    CalendarProvider,
    ProviderAuthExpiredError,
    ProviderCredential,
    ReconnectRequiredError,
)
from .google import GoogleCalendarAdapter
from .microsoft import MicrosoftCalendarAdapter
from .store import CredentialStore, get_credential_store

logger = logging.getLogger(__name__)

T = TypeVar("T")

ProviderOperation = Callable[[CalendarAdapter, ProviderCredential], Awaitable[T]]


class CredentialRefreshManager:
    """Wraps adapter calls with refresh-and-retry-once semantics."""

    def __init__(
        self,
        adapters: Optional[dict[CalendarProvider, CalendarAdapter]] = None,
        store: Optional[CredentialStore] = None,
    ):
        """Initialize manager.

        Args:
            adapters: Adapter per provider (defaults to the real adapters)
            store: Credential store (defaults to the singleton)
        """
        self._adapters = adapters
        self._store = store

    @property
    def adapters(self) -> dict[CalendarProvider, CalendarAdapter]:
        if self._adapters is None:
            self._adapters = {
                CalendarProvider.GOOGLE: GoogleCalendarAdapter(),
                CalendarProvider.MICROSOFT: MicrosoftCalendarAdapter(),
            }
        return self._adapters

    @property
    def store(self) -> CredentialStore:
        if self._store is None:
            self._store = get_credential_store()
        return self._store

    async def connected_providers(self, user_id: str) -> list[CalendarProvider]:
        """Providers the user has connected and we have an adapter for."""
        connected = await self.store.connected_providers(user_id)
        return [p for p in connected if p in self.adapters]

    async def call(
        self,
        user_id: str,
        provider: CalendarProvider,
        operation: ProviderOperation,
    ) -> T:
        """Run operation(adapter, credential), refreshing once on auth expiry.

        Raises:
            ReconnectRequiredError: Not connected, refresh rejected, or the
                retried call was still unauthorized
            ProviderUnavailableError: Any other provider failure
        """
        adapter = self.adapters[provider]
        credential = await self.store.get_credential(user_id, provider)
        if credential is None:
            raise ReconnectRequiredError(provider, f"{provider.value} calendar not connected")

        try:
            return await operation(adapter, credential)
        except ProviderAuthExpiredError:
            logger.info(f"{provider.value} token expired for user {user_id}, refreshing")

        refreshed = await adapter.refresh_credential(credential)
        await self.store.save_credential(user_id, refreshed)

        try:
            return await operation(adapter, refreshed)
        except ProviderAuthExpiredError as e:
            logger.warning(f"{provider.value} still unauthorized after refresh for user {user_id}")
            raise ReconnectRequiredError(provider, "Authorization failed after refresh") from e

    async def close(self) -> None:
        """Close adapter HTTP clients."""
        for adapter in self.adapters.values():
            await adapter.close()


# Singleton
_manager: Optional[CredentialRefreshManager] = None


def get_refresh_manager() -> CredentialRefreshManager:
    """Get singleton CredentialRefreshManager."""
    global _manager
    if _manager is None:
        _manager = CredentialRefreshManager()
    return _manager
