"""Enum definitions for booking and calendar constants."""

from enum import Enum


class BookingStatus(str, Enum):
    """
    Booking lifecycle status.

    Flow: pending → confirmed → cancelled
              ↘ cancelled
    """

    PENDING = "pending"  # Stored, not yet mirrored to Outlook
    CONFIRMED = "confirmed"  # Mirrored (or imported) calendar event
    CANCELLED = "cancelled"


class BookingSource(str, Enum):
    """Where a booking request originated."""

    DASHBOARD = "dashboard"
    SMS = "sms"
    OUTLOOK = "outlook"


class CalendarProvider(str, Enum):
    OUTLOOK = "outlook"


ACTIVE_BOOKING_STATUSES = (BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value)
