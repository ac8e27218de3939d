"""
Input validation utilities.
"""

import re
import uuid

from pos_sim.constants import (
    DEFAULT_EVENT_PAGE_SIZE,
    MAX_EVENT_PAGE_SIZE,
    SESSION_CODE_ALPHABET,
    SESSION_CODE_LENGTH,
)


class ValidationError(Exception):
    """Raised when validation fails."""

    code = "VALID_001"


_SESSION_CODE_RE = re.compile(
    rf"^[{SESSION_CODE_ALPHABET}]{{{SESSION_CODE_LENGTH}}}$"
)


def require_text(value, field_name: str) -> str:
    """Return the stripped string, rejecting missing or blank values."""
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(f"{field_name} is required")
    return value.strip()


def validate_session_id(session_id) -> str:
    value = require_text(session_id, "session_id")
    try:
        uuid.UUID(value)
    except ValueError:
        raise ValidationError(f"Malformed session_id: {value}") from None
    return value


def normalize_session_code(code) -> str:
    value = require_text(code, "session_code").upper()
    if not _SESSION_CODE_RE.match(value):
        raise ValidationError(f"Malformed session_code: {value}")
    return value


def validate_event_limit(limit: int | None) -> int:
    """Clamp an event page size to the allowed window."""
    if limit is None or limit < 1:
        return DEFAULT_EVENT_PAGE_SIZE
    return min(limit, MAX_EVENT_PAGE_SIZE)
