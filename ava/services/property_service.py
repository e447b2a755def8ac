"""Property registry and subject-to-property matching."""

from __future__ import annotations

import logging

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ava.db.models import Property
from ava.utils.normalization import slugify

logger = logging.getLogger(__name__)


def list_properties(db: Session) -> list[Property]:
    return list(db.execute(select(Property).order_by(Property.id)).scalars())


def get_property(db: Session, property_id: int) -> Property | None:
    return db.get(Property, property_id)


def get_property_by_slug(db: Session, slug: str) -> Property | None:
    if not slug:
        return None
    return db.execute(
        select(Property).where(Property.slug == slug.strip().lower())
    ).scalar_one_or_none()


def upsert_property(db: Session, slug: str, address: str) -> Property:
    """Create a property or update the address of an existing slug."""
    normalized = slugify(slug)
    if not normalized:
        raise ValueError("Property slug is required")
    if not address or not address.strip():
        raise ValueError("Property address is required")

    prop = get_property_by_slug(db, normalized)
    if prop is None:
        prop = Property(slug=normalized, address=address.strip())
        db.add(prop)
    else:
        prop.address = address.strip()
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        prop = get_property_by_slug(db, normalized)
        if prop is None:
            raise
    return prop


def match_property_for_subject(
    db: Session, subject: str | None, fallback_id: int
) -> Property | None:
    """
    Pick the property an external calendar event belongs to.

    Address containing the subject (case-insensitive) wins, then a slug equal
    to slugify(subject), then the fallback property when it exists.
    """
    text = (subject or "").strip()
    if text:
        lowered = text.lower()
        for prop in list_properties(db):
            if lowered in prop.address.lower():
                return prop
        by_slug = get_property_by_slug(db, slugify(text))
        if by_slug is not None:
            return by_slug

    fallback = get_property(db, fallback_id)
    if fallback is None:
        logger.warning("Fallback property %s does not exist", fallback_id)
    return fallback


def showing_subject(address: str) -> str:
    """Subject of the Outlook event mirrored for a showing."""
    return f"Showing – {address}"
