"""Hashed-email helpers for cross-device identity stitching.

The tracker never sends raw email addresses. It lowercases and trims the
address and sends the SHA-256 hex digest, which is the key of the identity
map (email hash -> visitor ids).

Example:
    >>> hash_email("  Jane@Example.com ") == hash_email("jane@example.com")
    True
    >>> is_valid_email_hash(hash_email("jane@example.com"))
    True
"""

from __future__ import annotations

import hashlib
import logging
import re

logger = logging.getLogger(__name__)

EMAIL_HASH_PATTERN = re.compile(r"^[a-f0-9]{64}$")


def hash_email(email: str) -> str:
    """Hash an email address the same way the browser tracker does.

    Args:
        email: Raw email address.

    Returns:
        Lowercase SHA-256 hex digest of the trimmed, lowercased address.

    Raises:
        ValueError: If the address is empty after trimming.
    """
    normalized = (email or "").strip().lower()
    if not normalized:
        raise ValueError("Cannot hash an empty email address")
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()


def is_valid_email_hash(value: str | None) -> bool:
    """Return True if ``value`` looks like a SHA-256 hex digest."""
    return isinstance(value, str) and bool(EMAIL_HASH_PATTERN.match(value))


def usable_email_hash(value: str | None) -> str | None:
    """Return the hash if valid, else None (logging a warning for bad values)."""
    if not value:
        return None
    if not is_valid_email_hash(value):
        logger.warning(f"Ignoring invalid email hash: {value[:12]}...")
        return None
    return value
