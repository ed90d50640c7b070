from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Optional


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class AccountStatus(str, Enum):
    """Lifecycle states of an account; deactivation is a status, never a delete."""

    ACTIVE = "ACTIVE"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    INACTIVE = "INACTIVE"
    SUSPENDED = "SUSPENDED"


# Email verification activates these; suspended or inactive accounts keep their status
VERIFIABLE_STATUSES = (AccountStatus.PENDING_VERIFICATION, AccountStatus.ACTIVE)


@dataclass
class Account:
    id: str
    email: str
    password_hash: str
    status: AccountStatus = AccountStatus.PENDING_VERIFICATION
    email_verified: bool = False
    email_verified_at: Optional[datetime] = None
    failed_login_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)
    updated_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        password_hash: str,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> "Account":
        return cls(id=_new_id(), email=email, password_hash=password_hash, status=status)


@dataclass
class RefreshToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    user_agent: Optional[str] = None
    ip_address: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> "RefreshToken":
        return cls(
            id=_new_id(),
            account_id=account_id,
            token_hash=token_hash,
            expires_at=expires_at,
            user_agent=user_agent,
            ip_address=ip_address,
        )


@dataclass
class Session:
    id: str
    account_id: str
    session_token_hash: str
    expires_at: datetime
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    is_active: bool = True
    last_activity: datetime = field(default_factory=_utcnow)
    ended_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        session_token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "Session":
        return cls(
            id=_new_id(),
            account_id=account_id,
            session_token_hash=session_token_hash,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class PasswordResetToken:
    id: str
    account_id: str
    token_hash: str
    expires_at: datetime
    used: bool = False
    used_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "PasswordResetToken":
        return cls(
            id=_new_id(),
            account_id=account_id,
            token_hash=token_hash,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )


@dataclass
class EmailVerificationToken:
    id: str
    email: str
    account_id: str
    token_hash: str
    expires_at: datetime
    verified: bool = False
    verified_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> "EmailVerificationToken":
        return cls(
            id=_new_id(),
            email=email,
            account_id=account_id,
            token_hash=token_hash,
            expires_at=expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
