"""SQLAlchemy ORM models."""

from __future__ import annotations

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from vesta_calendar.db.base import Base
from vesta_calendar.db.enums import (
    AppointmentStatus,
    AppointmentType,
    GOOGLE_CALENDAR_PROVIDER,
    SyncDirection,
)
from vesta_calendar.utils.datetime_parsing import now_utc


class User(Base):
    """
    CRM user.

    Owned by the auth service; mapped here so sessions can be verified and
    integrations/appointments can reference their owner.
    """

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    display_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    token_version: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)

    integrations: Mapped[list["UserIntegration"]] = relationship(back_populates="user")


class UserIntegration(Base):
    """
    Per-user OAuth integration (Google Calendar).

    Stores encrypted tokens, the incremental sync cursor and the active
    push-notification channel. Never deleted: disconnect and revoked refresh
    tokens flip is_active off.

    current_version is the mapper's version counter, so every UPDATE is a
    compare-and-swap; concurrent writers get StaleDataError instead of
    silently overwriting each other's sync token.
    """

    __tablename__ = "user_integrations"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    provider: Mapped[str] = mapped_column(
        String(30), default=GOOGLE_CALENDAR_PROVIDER, nullable=False
    )

    # OAuth tokens (Fernet-encrypted)
    access_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    refresh_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Calendar + incremental sync cursor
    calendar_id: Mapped[str] = mapped_column(String(255), default="primary", nullable=False)
    sync_token: Mapped[str | None] = mapped_column(Text, nullable=True)
    sync_direction: Mapped[str] = mapped_column(
        String(30), default=SyncDirection.BIDIRECTIONAL.value, nullable=False
    )

    # Push notification channel
    channel_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    resource_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    channel_token_encrypted: Mapped[str | None] = mapped_column(Text, nullable=True)
    channel_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    last_sync_at: Mapped[datetime | None] = mapped_column(nullable=True)
    last_sync_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    # Start of the current connection; local rows edited before it are not pushed
    connected_at: Mapped[datetime | None] = mapped_column(nullable=True)

    current_version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)

    user: Mapped["User"] = relationship(back_populates="integrations")

    __mapper_args__ = {"version_id_col": current_version}

    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_user_integration_provider"),
        Index("idx_user_integrations_channel", "channel_id", "resource_id"),
    )


class Appointment(Base):
    """
    CRM appointment (visit, meeting, signing...).

    google_event_id/google_etag/last_synced_at correlate the row with its
    Google Calendar event. Rows are soft-deleted (is_active=False).
    updated_at > last_synced_at means the row has local edits not yet pushed.
    """

    __tablename__ = "appointments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    # Contacts and listings live in other CRM modules
    contact_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    listing_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    contact_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    datetime_start: Mapped[datetime] = mapped_column(nullable=False)
    datetime_end: Mapped[datetime] = mapped_column(nullable=False)
    type: Mapped[str] = mapped_column(
        String(30), default=AppointmentType.REUNION.value, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(
        String(30), default=AppointmentStatus.SCHEDULED.value, nullable=False
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    # Google Calendar correlation
    google_event_id: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    google_etag: Mapped[str | None] = mapped_column(String(255), nullable=True)
    last_synced_at: Mapped[datetime | None] = mapped_column(nullable=True)

    created_at: Mapped[datetime] = mapped_column(default=now_utc, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=now_utc, onupdate=now_utc, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("user_id", "google_event_id", name="uq_appointment_google_event"),
        Index("idx_appointments_user_start", "user_id", "datetime_start"),
    )
