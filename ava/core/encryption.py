"""Encryption utilities for OAuth tokens at rest."""

from cryptography.fernet import Fernet, InvalidToken

from ava.core.config import settings


_fernet: Fernet | None = None
_ENCRYPTED_PREFIX = "enc:"


def get_fernet() -> Fernet:
    """Get or create Fernet instance for encryption/decryption."""
    global _fernet
    if _fernet is None:
        if not settings.TOKEN_ENCRYPTION_KEY:
            raise RuntimeError(
                "TOKEN_ENCRYPTION_KEY not configured. "
                'Generate with: python -c "from cryptography.fernet import Fernet; print(Fernet.generate_key().decode())"'
            )
        _fernet = Fernet(settings.TOKEN_ENCRYPTION_KEY.encode())
    return _fernet


def encrypt_value(value: str) -> str:
    """Encrypt a string value for storage."""
    if value is None:
        return value
    if value == "":
        return ""
    if value.startswith(_ENCRYPTED_PREFIX):
        return value
    encrypted = get_fernet().encrypt(value.encode()).decode()
    return f"{_ENCRYPTED_PREFIX}{encrypted}"


def decrypt_value(value: str) -> str:
    """Decrypt a stored value."""
    if value is None:
        return value
    if value == "":
        return ""
    if not value.startswith(_ENCRYPTED_PREFIX):
        raise ValueError("Encrypted data is missing prefix")
    token = value[len(_ENCRYPTED_PREFIX) :]
    try:
        return get_fernet().decrypt(token.encode()).decode()
    except InvalidToken:
        raise ValueError("Invalid or corrupted encrypted data")


def is_encryption_configured() -> bool:
    """Check if encryption is properly configured."""
    return bool(settings.TOKEN_ENCRYPTION_KEY)
