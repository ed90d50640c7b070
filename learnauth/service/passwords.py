from __future__ import annotations

import re
import secrets
import string
from typing import List, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from learnauth.logging import get_logger
from learnauth.service.errors import ValidationError, WeakPasswordError
from learnauth.storage.common import normalize_email

logger = get_logger(__name__)

MIN_PASSWORD_LENGTH = 8
MAX_PASSWORD_LENGTH = 128

_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")
# ASCII punctuation only; accented letters are not special characters
_SPECIAL_CHAR = re.compile(f"[{re.escape(string.punctuation)}]")


def validate_email(value: str) -> str:
    """Return the normalized address or raise ValidationError."""
    if not isinstance(value, str):
        raise ValidationError("email must be a string", detail={"field": "email"})
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValidationError("email address too long", detail={"field": "email"})
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValidationError("invalid email address", detail={"field": "email"})
    if len(local) > 64 or not _EMAIL_LOCAL_PART.match(local):
        raise ValidationError("invalid email address format", detail={"field": "email"})
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValidationError("invalid email address format", detail={"field": "email"})
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValidationError(
                "invalid email address format", detail={"field": "email"}
            )
    return normalized


def password_policy_violations(value: str) -> List[str]:
    violations: List[str] = []
    if len(value) < MIN_PASSWORD_LENGTH:
        violations.append(f"password must be at least {MIN_PASSWORD_LENGTH} characters")
    if len(value) > MAX_PASSWORD_LENGTH:
        violations.append(f"password must be at most {MAX_PASSWORD_LENGTH} characters")
    if not re.search(r"[a-z]", value):
        violations.append("password must contain a lowercase letter")
    if not re.search(r"[A-Z]", value):
        violations.append("password must contain an uppercase letter")
    if not re.search(r"[0-9]", value):
        violations.append("password must contain a digit")
    if not _SPECIAL_CHAR.search(value):
        violations.append("password must contain a special character")
    return violations


def validate_password_strength(value: Optional[str]) -> str:
    """Raise WeakPasswordError listing every rule the password breaks."""
    if not isinstance(value, str):
        raise WeakPasswordError("password is required", violations=["password is required"])
    violations = password_policy_violations(value)
    if violations:
        raise WeakPasswordError(
            "password does not meet strength requirements", violations=violations
        )
    return value


class PasswordHashing:
    """argon2id hashing with a single cost knob.

    ``cost`` scales memory: each step doubles it, and the default of 12
    lands on argon2-cffi's stock 64 MiB.
    """

    def __init__(self, cost: int = 12) -> None:
        self.cost = cost
        self._hasher = PasswordHasher(memory_cost=2 ** (cost + 4), type=Type.ID)
        self._dummy_hash: Optional[str] = None

    def hash(self, password: str) -> str:
        return self._hasher.hash(password)

    def verify(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError) as exc:
            logger.warning("password_hash_unverifiable", error=str(exc))
            return False

    def burn_verification(self, password: str) -> None:
        """Spend one verification so unknown accounts take as long as known ones."""
        if self._dummy_hash is None:
            self._dummy_hash = self._hasher.hash(secrets.token_urlsafe(16))
        self.verify(self._dummy_hash, password)

    def needs_rehash(self, password_hash: str) -> bool:
        try:
            return self._hasher.check_needs_rehash(password_hash)
        except InvalidHash:
            return True
