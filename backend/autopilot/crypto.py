"""
Field-level encryption for stored Amazon Ads tokens.

Fernet symmetric encryption from the `cryptography` package, keyed by
ENCRYPTION_KEY. Without a key (development only) values pass through
unchanged so a local database can be seeded by hand.
"""

import logging
from functools import lru_cache
from cryptography.fernet import Fernet, InvalidToken
from autopilot.config import get_settings
from autopilot.exceptions import CredentialError

logger = logging.getLogger(__name__)


@lru_cache
def _cipher() -> Fernet | None:
    settings = get_settings()
    key = settings.encryption_key
    if not key:
        if settings.is_production:
            raise RuntimeError("ENCRYPTION_KEY must be set in production.")
        logger.warning("ENCRYPTION_KEY not set; API tokens are stored in plaintext (development only).")
        return None
    try:
        return Fernet(key.encode())
    except (ValueError, TypeError) as exc:
        raise RuntimeError(f"Invalid ENCRYPTION_KEY: {exc}") from exc


def encrypt_secret(value: str | None) -> str | None:
    if value is None:
        return None
    cipher = _cipher()
    if cipher is None:
        return value
    return cipher.encrypt(value.encode()).decode()


def decrypt_secret(value: str | None) -> str | None:
    """
    Decrypt a stored token. A token that no longer decrypts (rotated key)
    cannot be used to call Amazon, so it surfaces as a credential error.
    """
    if value is None:
        return None
    cipher = _cipher()
    if cipher is None:
        return value
    try:
        return cipher.decrypt(value.encode()).decode()
    except InvalidToken as exc:
        raise CredentialError("Stored token could not be decrypted; reconnect the profile.") from exc
