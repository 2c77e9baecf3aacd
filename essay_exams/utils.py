"""Utility functions for sanitization and time handling."""

import html
from datetime import datetime, timezone

import bleach


def utcnow() -> datetime:
    """Current time as a naive UTC datetime (the format stored in the database)."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_naive_utc(value: datetime) -> datetime:
    """Normalize an incoming datetime to naive UTC."""
    if value.tzinfo is not None:
        value = value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def sanitize_prompt_text(text: str) -> str:
    """Sanitize teacher-authored prompt / passage text to prevent XSS attacks.

    Allows basic formatting tags but removes script/dangerous content.
    """
    allowed_tags = ['b', 'i', 'u', 'em', 'strong', 'p', 'br', 'code', 'pre', 'ul', 'ol', 'li']
    allowed_attributes = {}

    sanitized = bleach.clean(text, tags=allowed_tags, attributes=allowed_attributes, strip=True)
    return sanitized.strip()


def sanitize_plain_text(text: str) -> str:
    """Strip all HTML from free text (titles, AI feedback).

    The result is served as JSON text, so the entities bleach escapes
    remaining characters into are decoded again.
    """
    sanitized = html.unescape(bleach.clean(text, tags=[], strip=True))
    return sanitized.strip()
