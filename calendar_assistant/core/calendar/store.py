"""
Credential store boundary.

The user record (and the tokens on it) is owned by the account service.
This module defines the narrow interface the scheduler needs plus two
implementations: a SQLAlchemy store over the shared credential table and an
in-memory store for development and tests.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

from sqlalchemy import select

from .base import CalendarProvider, ProviderCredential

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """Read/write access to a user's provider credentials."""

    @abstractmethod
    async def get_credential(
        self,
        user_id: str,
        provider: CalendarProvider,
    ) -> Optional[ProviderCredential]:
        """Get the stored credential, or None if the provider is not connected."""

    @abstractmethod
    async def save_credential(
        self,
        user_id: str,
        credential: ProviderCredential,
    ) -> None:
        """Persist a credential (insert or overwrite; last write wins)."""

    async def connected_providers(self, user_id: str) -> list[CalendarProvider]:
        """Providers with a stored access token, in enum order."""
        connected = []
        for provider in CalendarProvider:
            credential = await self.get_credential(user_id, provider)
            if credential is not None and credential.access_token:
                connected.append(provider)
        return connected


class InMemoryCredentialStore(CredentialStore):
    """Dictionary-backed store."""

    def __init__(self, credentials: Optional[dict[tuple[str, CalendarProvider], ProviderCredential]] = None):
        self._credentials = dict(credentials or {})
        self.save_count = 0

    async def get_credential(
        self,
        user_id: str,
        provider: CalendarProvider,
    ) -> Optional[ProviderCredential]:
        return self._credentials.get((user_id, provider))

    async def save_credential(
        self,
        user_id: str,
        credential: ProviderCredential,
    ) -> None:
        self._credentials[(user_id, credential.provider)] = credential
        self.save_count += 1


class SqlCredentialStore(CredentialStore):
    """Store backed by the provider_credentials table."""

    @staticmethod
    def _lookup(user_id: str, provider: CalendarProvider):
        from calendar_assistant.models.database import ProviderCredentialRecord

        return select(ProviderCredentialRecord).where(
            ProviderCredentialRecord.user_id == user_id,
            ProviderCredentialRecord.provider == provider.value,
        )

    async def get_credential(
        self,
        user_id: str,
        provider: CalendarProvider,
    ) -> Optional[ProviderCredential]:
        # Imported here so the in-memory path never builds an engine
        from calendar_assistant.infra.database import get_db_context

        async with get_db_context() as db:
            result = await db.execute(self._lookup(user_id, provider))
            record = result.scalar_one_or_none()

        return record.to_credential() if record is not None else None

    async def save_credential(
        self,
        user_id: str,
        credential: ProviderCredential,
    ) -> None:
        from calendar_assistant.infra.database import get_db_context
        from calendar_assistant.models.database import ProviderCredentialRecord

        async with get_db_context() as db:
            result = await db.execute(self._lookup(user_id, credential.provider))
            record = result.scalar_one_or_none()

            if record is None:
                record = ProviderCredentialRecord(user_id=user_id, provider=credential.provider.value)
                db.add(record)

            record.apply(credential)

        logger.debug(f"Credential saved for user {user_id} ({credential.provider.value})")


# Singleton
_store: Optional[CredentialStore] = None


def get_credential_store() -> CredentialStore:
    """Get singleton CredentialStore."""
    global _store
    if _store is None:
        _store = SqlCredentialStore()
    return _store


def set_credential_store(store: CredentialStore) -> None:
    """Replace the singleton (used by the app factory and tests)."""
    global _store
    _store = store
