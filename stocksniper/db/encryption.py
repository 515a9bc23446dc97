"""Encryption utilities for retailer credential columns.

Provides transparent encryption/decryption for sensitive columns
using Fernet symmetric encryption.
"""

import base64
import logging
from typing import Any

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import String, TypeDecorator

from stocksniper import metrics
from stocksniper.config import settings

logger = logging.getLogger(__name__)

_generated_key: bytes | None = None


def get_encryption_key() -> bytes:
    """
    Get the Fernet key from settings.

    Accepts a proper urlsafe-base64 Fernet key, or any other string which is
    padded/truncated to 32 bytes. A process-local key is generated when none
    is configured (development only: values will not survive a restart).
    """
    global _generated_key

    key_str = settings.encryption_key
    if not key_str:
        if _generated_key is None:
            logger.warning("ENCRYPTION_KEY not set, generating temporary key (not secure for production)")
            _generated_key = Fernet.generate_key()
        return _generated_key

    try:
        key_bytes = base64.urlsafe_b64decode(key_str)
        if len(key_bytes) == 32:
            return base64.urlsafe_b64encode(key_bytes)
    except ValueError:
        pass
    return base64.urlsafe_b64encode(key_str.encode().ljust(32)[:32])


class EncryptedString(TypeDecorator):
    """
    SQLAlchemy TypeDecorator for transparently encrypting/decrypting string columns.

    Usage:
        password: Mapped[str] = mapped_column(EncryptedString(512), nullable=False)
    """

    impl = String
    cache_ok = True

    def __init__(self, length: int = 512, *args: Any, **kwargs: Any):
        super().__init__(length, *args, **kwargs)
        self._fernet: Fernet | None = None

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(get_encryption_key())
        return self._fernet

    def process_bind_param(self, value: str | None, dialect: Any) -> str | None:
        """Encrypt value before storing in database."""
        if value is None:
            return None
        return self._get_fernet().encrypt(value.encode()).decode()

    def process_result_value(self, value: str | None, dialect: Any) -> str | None:
        """Decrypt value after reading from database."""
        if value is None:
            return None

        try:
            return self._get_fernet().decrypt(value.encode()).decode()
        except (InvalidToken, ValueError) as e:
            exception_type = type(e).__name__
            metrics.record_decryption_failure(exception_type)
            # Never log the value itself
            logger.error(
                f"Decryption failed: {exception_type} (value_length={len(value)}). "
                f"This may indicate key rotation or data corruption."
            )
            return None
