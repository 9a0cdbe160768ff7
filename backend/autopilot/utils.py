"""
Shared utility functions.
"""

import logging
import uuid as uuid_mod
from datetime import datetime, timezone
from fastapi import HTTPException
from autopilot.exceptions import ConfigurationError, ConflictError, CredentialError, NotFoundError

logger = logging.getLogger(__name__)

MICROS_PER_UNIT = 1_000_000


def parse_uuid(value: str, field_name: str = "id") -> uuid_mod.UUID:
    """
    Parse a string as UUID, raising a 400 HTTPException on invalid input
    instead of letting a bare ValueError bubble up as a 500.
    """
    try:
        return uuid_mod.UUID(value)
    except (ValueError, AttributeError):
        raise HTTPException(
            status_code=400,
            detail=f"Invalid UUID for '{field_name}': {value!r}",
        )


def safe_error_detail(exc: Exception, fallback: str = "An internal error occurred. Please try again later.") -> str:
    """
    Return a sanitized error message safe for client consumption.
    Logs the real exception detail server-side.
    """
    logger.error(f"Operation failed: {exc}", exc_info=True)
    return fallback


def utcnow() -> datetime:
    """
    Return the current UTC time as a naive datetime (no tzinfo).
    Naive datetimes are used because our DB columns are TIMESTAMP WITHOUT TIME ZONE.
    """
    return datetime.now(timezone.utc).replace(tzinfo=None)


def micros_to_amount(micros: int | None) -> float | None:
    """Amazon Ads v3 takes currency units; we store micros."""
    if micros is None:
        return None
    return round(micros / MICROS_PER_UNIT, 2)


def amount_to_micros(amount: float | None) -> int | None:
    if amount is None:
        return None
    return int(round(amount * MICROS_PER_UNIT))


def http_error(exc: Exception) -> HTTPException:
    """Translate a domain error into the HTTP response routers raise."""
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    if isinstance(exc, (ConfigurationError, CredentialError)):
        return HTTPException(status_code=400, detail=str(exc))
    return HTTPException(status_code=500, detail=safe_error_detail(exc))
