"""Custom SQLAlchemy types for encrypted fields and UTC instants."""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy.types import DateTime, TypeDecorator, Text

from ava.core.encryption import decrypt_value, encrypt_value


class EncryptedString(TypeDecorator):
    """Encrypt/decrypt string values transparently."""

    impl = Text
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, str):
            value = str(value)
        if value == "":
            return ""
        return encrypt_value(value)

    def process_result_value(self, value, dialect):
        if value is None or value == "":
            return value
        return decrypt_value(value)


class UTCDateTime(TypeDecorator):
    """
    Store instants in UTC and always hand back aware datetimes.

    Naive values are taken to already be UTC. SQLite drops tzinfo on the
    way in, so results are re-tagged as UTC on the way out.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)
