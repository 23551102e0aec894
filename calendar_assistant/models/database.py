"""
Database Models

The scheduler owns a single table: one row of OAuth tokens per connected
calendar provider per user. The rest of the user record lives with the
account service.
"""

import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import CheckConstraint, DateTime, String, Text, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from calendar_assistant.core.calendar.base import CalendarProvider, ProviderCredential


class Base(DeclarativeBase):
    """Declarative base for scheduler tables."""


class ProviderCredentialRecord(Base):
    """
    OAuth tokens for one calendar provider of one user.

    Written when a user connects a calendar. Rewritten by the credential
    refresh manager every time an access token is renewed, which also
    bumps refreshed_at.
    """

    __tablename__ = "provider_credentials"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_provider_credentials_user_provider"),
        CheckConstraint(
            "provider IN ({})".format(", ".join(f"'{p.value}'" for p in CalendarProvider)),
            name="ck_provider_credentials_provider",
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    provider: Mapped[str] = mapped_column(String(20), nullable=False)
    account_email: Mapped[Optional[str]] = mapped_column(
        String(320),
        nullable=True,
        doc="Mailbox the tokens were granted for, as reported at connect time",
    )

    access_token: Mapped[str] = mapped_column(Text, nullable=False)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    connected_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    refreshed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    def to_credential(self) -> ProviderCredential:
        """Convert the row into the adapter-facing credential."""
        return ProviderCredential(
            provider=CalendarProvider(self.provider),
            access_token=self.access_token,
            refresh_token=self.refresh_token,
            expires_at=self.expires_at,
        )

    def apply(self, credential: ProviderCredential) -> None:
        """Overwrite the stored tokens with a renewed credential."""
        self.access_token = credential.access_token
        self.refresh_token = credential.refresh_token
        self.expires_at = credential.expires_at
        self.refreshed_at = datetime.now(timezone.utc)

    def __repr__(self) -> str:
        return f"<ProviderCredentialRecord(user_id={self.user_id}, provider={self.provider})>"
