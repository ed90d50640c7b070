"""Helpers shared between the memory and postgres store implementations."""

from __future__ import annotations

import hashlib
import unicodedata
from datetime import datetime, timezone
from typing import Optional


def normalize_email(email: str) -> str:
    """Canonical form used for storage and lookups (NFKC, trimmed, lower case)."""
    return unicodedata.normalize("NFKC", email).strip().lower()


def hash_token(raw_token: str) -> str:
    """One-way digest stored in place of a raw token."""
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Treat naive datetimes coming back from a driver as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_expired(expires_at: datetime, now: datetime) -> bool:
    return as_utc(expires_at) <= now
