"""Encryption utilities for sensitive database fields.

Provides transparent encryption/decryption for payout account numbers
using Fernet symmetric encryption.
"""

import base64
import logging
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from ekotaka import metrics
from ekotaka.config import settings

logger = logging.getLogger(__name__)


@lru_cache(maxsize=1)
def get_encryption_key() -> bytes:
    """
    Get the Fernet key from settings.

    A process-local key is generated when none is configured, so values
    written without ENCRYPTION_KEY are unreadable after a restart.
    """
    key_str = settings.encryption_key
    if not key_str:
        logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
        return Fernet.generate_key()

    # Key should be base64-encoded Fernet key (32 bytes, base64-encoded to 44 chars)
    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except (ValueError, TypeError):
        pass
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        bkash_number: Mapped[Optional[str]] = mapped_column(EncryptedString(256), nullable=True)
    """

    impl = String
    cache_ok = True

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        return encrypt_value(value)

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None
        return decrypt_value(value)


def encrypt_value(value: str) -> str:
    """
    Encrypt a value for storage.

    Args:
        value: Plaintext value to encrypt

    Returns:
        Encrypted value as base64 string
    """
    if not value:
        return value

    fernet = Fernet(get_encryption_key())
    encrypted = fernet.encrypt(value.encode())
    return base64.urlsafe_b64encode(encrypted).decode()


def decrypt_value(value: str) -> str | None:
    """
    Decrypt a value from storage.

    Args:
        value: Encrypted value as base64 string

    Returns:
        Decrypted plaintext value or None on failure
    """
    if not value:
        return value

    try:
        fernet = Fernet(get_encryption_key())
        encrypted = base64.urlsafe_b64decode(value.encode())
        return fernet.decrypt(encrypted).decode()
    except (InvalidToken, ValueError) as e:
        exception_type = type(e).__name__
        metrics.record_decryption_failure(exception_type)
        logger.error(
            f"Decryption failed: {exception_type} (value_length={len(value)}). "
            f"This may indicate key rotation or data corruption."
        )
        return None
