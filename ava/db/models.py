"""SQLAlchemy ORM models."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ava.core.constants import DEFAULT_BOOKING_DURATION_MINUTES
from ava.db.base import Base
from ava.db.enums import BookingSource, BookingStatus, CalendarProvider
from ava.db.types import EncryptedString


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Properties & Leads
# =============================================================================

class Property(Base):
    """A rental unit showings are booked against."""

    __tablename__ = "properties"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    slug: Mapped[str] = mapped_column(String(200), unique=True, nullable=False)
    address: Mapped[str] = mapped_column(String(500), nullable=False)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="property")
    availability_intervals: Mapped[list["AvailabilityInterval"]] = relationship(
        back_populates="property", cascade="all, delete-orphan"
    )


class Lead(Base):
    """
    A prospective tenant, keyed by E.164 phone.

    Leads are never deleted. The reserved sentinel lead owns bookings
    imported from the external calendar.
    """

    __tablename__ = "leads"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    phone: Mapped[str] = mapped_column(String(32), unique=True, nullable=False)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    source: Mapped[str | None] = mapped_column(String(50), nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    bookings: Mapped[list["Booking"]] = relationship(back_populates="lead")


# =============================================================================
# Bookings
# =============================================================================

class Booking(Base):
    """
    A 30-minute showing.

    At most one pending/confirmed booking may exist per (property, slot_start);
    the partial unique index enforces it so cancelled rows can pile up.
    """

    __tablename__ = "bookings"
    __table_args__ = (
        Index(
            "uq_bookings_active_slot",
            "property_id",
            "slot_start",
            unique=True,
            postgresql_where=text("status != 'cancelled'"),
            sqlite_where=text("status != 'cancelled'"),
        ),
        Index("idx_bookings_slot_start", "slot_start"),
        Index("idx_bookings_external_event", "external_event_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id", ondelete="RESTRICT"), nullable=False
    )
    lead_id: Mapped[int] = mapped_column(
        ForeignKey("leads.id", ondelete="RESTRICT"), nullable=False
    )
    slot_start: Mapped[datetime] = mapped_column(nullable=False)
    duration_minutes: Mapped[int] = mapped_column(
        Integer, default=DEFAULT_BOOKING_DURATION_MINUTES, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(20), default=BookingStatus.PENDING.value, nullable=False
    )
    source: Mapped[str] = mapped_column(
        String(20), default=BookingSource.DASHBOARD.value, nullable=False
    )
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    external_event_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )

    property: Mapped["Property"] = relationship(back_populates="bookings")
    lead: Mapped["Lead"] = relationship(back_populates="bookings")


# =============================================================================
# Availability
# =============================================================================

class AvailabilityInterval(Base):
    """A manual (or calendar-imported) block on a property's schedule."""

    __tablename__ = "availability_intervals"
    __table_args__ = (
        UniqueConstraint("property_id", "start_time", name="uq_availability_property_start"),
        Index("idx_availability_end", "end_time"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    property_id: Mapped[int] = mapped_column(
        ForeignKey("properties.id", ondelete="CASCADE"), nullable=False
    )
    start_time: Mapped[datetime] = mapped_column(nullable=False)
    end_time: Mapped[datetime] = mapped_column(nullable=False)
    is_blocked: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)

    property: Mapped["Property"] = relationship(back_populates="availability_intervals")


class GlobalSettings(Base):
    """Singleton row of weekly open hours as local "HH:MM" strings."""

    __tablename__ = "global_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    monday_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    monday_end: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    tuesday_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    tuesday_end: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    wednesday_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    wednesday_end: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    thursday_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    thursday_end: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    friday_start: Mapped[str] = mapped_column(String(5), default="09:00", nullable=False)
    friday_end: Mapped[str] = mapped_column(String(5), default="18:00", nullable=False)
    saturday_start: Mapped[str] = mapped_column(String(5), default="10:00", nullable=False)
    saturday_end: Mapped[str] = mapped_column(String(5), default="16:00", nullable=False)
    sunday_start: Mapped[str] = mapped_column(String(5), default="10:00", nullable=False)
    sunday_end: Mapped[str] = mapped_column(String(5), default="16:00", nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )


# =============================================================================
# Calendar Integration
# =============================================================================

class CalendarAccount(Base):
    """
    OAuth credentials for the leasing agent's external calendar.

    Tokens are Fernet-encrypted at rest. Only the connector's single-flight
    refresh path writes to this row after the initial connect.
    """

    __tablename__ = "calendar_accounts"
    __table_args__ = (
        UniqueConstraint("user_id", "provider", name="uq_calendar_account_user_provider"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    provider: Mapped[str] = mapped_column(
        String(20), default=CalendarProvider.OUTLOOK.value, nullable=False
    )
    account_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    access_token: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    refresh_token: Mapped[str | None] = mapped_column(EncryptedString, nullable=True)
    token_expires_at: Mapped[datetime | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(default=utc_now, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        default=utc_now, onupdate=utc_now, nullable=False
    )
