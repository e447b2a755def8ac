"""Lead registry - phone-keyed prospective tenants."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ava.core.config import settings
from ava.core.structured_logging import mask_phone
from ava.db.models import Lead
from ava.utils.normalization import normalize_phone

logger = logging.getLogger(__name__)


def get_lead_by_phone(db: Session, phone: str) -> Lead | None:
    return db.execute(select(Lead).where(Lead.phone == phone)).scalar_one_or_none()


def upsert_lead(
    db: Session,
    phone: str,
    name: str | None = None,
    source: str | None = None,
) -> Lead:
    """
    Find or create a lead by phone.

    Raises ValueError when the phone cannot be normalised. A concurrent
    insert of the same phone loses the race and re-reads the winner.
    """
    normalized = normalize_phone(phone)
    lead = get_lead_by_phone(db, normalized)
    if lead is not None:
        if name and not lead.name:
            lead.name = name
            db.commit()
        return lead

    lead = Lead(phone=normalized, name=name, source=source)
    db.add(lead)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        lead = get_lead_by_phone(db, normalized)
        if lead is None:
            raise
        return lead

    logger.info("Lead created for %s", mask_phone(normalized))
    return lead


def get_sentinel_lead(db: Session) -> Lead:
    """The reserved lead that owns bookings imported from the calendar."""
    return upsert_lead(
        db,
        settings.SENTINEL_LEAD_PHONE,
        name=settings.SENTINEL_LEAD_NAME,
        source="outlook",
    )
