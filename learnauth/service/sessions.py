from __future__ import annotations

import secrets
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Callable, Optional, Tuple

from learnauth.config import Settings
from learnauth.logging import get_logger
from learnauth.service.errors import InvalidOrExpiredTokenError, storage_errors
from learnauth.storage.common import hash_token
from learnauth.storage.models import Account, EmailVerificationToken

if TYPE_CHECKING:
    from learnauth.service.auth import AuthStore

logger = get_logger(__name__)

RAW_TOKEN_BYTES = 32


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_raw_token() -> str:
    return secrets.token_hex(RAW_TOKEN_BYTES)


class SessionManager:
    """Sessions plus single-use password-reset and email-verification tokens.

    Raw tokens leave this class exactly once, on creation; the store only ever
    sees their SHA-256.
    """

    def __init__(
        self,
        store: "AuthStore",
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.settings = settings
        self._clock = clock or _utcnow
        self.logger = logger

    def _now(self) -> datetime:
        return self._clock()

    def create_session(
        self,
        account_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        raw = generate_raw_token()
        expires_at = self._now() + timedelta(minutes=self.settings.session_ttl_minutes)
        with storage_errors("create_session"):
            sess = self.store.create_session(
                account_id,
                hash_token(raw),
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        self.logger.info("session_created", account_id=account_id, session_id=sess.id)
        return raw

    def end_all_sessions(self, account_id: str) -> int:
        with storage_errors("end_all_sessions"):
            ended = self.store.end_account_sessions(account_id, now=self._now())
        if ended:
            self.logger.info("sessions_ended", account_id=account_id, count=ended)
        return ended

    def end_all_refresh_tokens(self, account_id: str) -> int:
        with storage_errors("end_all_refresh_tokens"):
            revoked = self.store.revoke_account_refresh_tokens(account_id, now=self._now())
        if revoked:
            self.logger.info("refresh_tokens_revoked", account_id=account_id, count=revoked)
        return revoked

    def create_password_reset_token(
        self,
        account_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        raw = generate_raw_token()
        expires_at = self._now() + timedelta(
            minutes=self.settings.password_reset_ttl_minutes
        )
        with storage_errors("create_password_reset_token"):
            self.store.create_password_reset_token(
                account_id,
                hash_token(raw),
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return raw

    def consume_password_reset_token(self, raw_token: Optional[str]) -> str:
        """Mark the token used and return its account id."""
        if not raw_token:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        with storage_errors("consume_password_reset_token"):
            record = self.store.consume_password_reset_token(
                hash_token(raw_token), now=self._now()
            )
        if not record:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        return record.account_id

    def create_email_verification_token(
        self,
        email: str,
        account_id: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> str:
        raw = generate_raw_token()
        expires_at = self._now() + timedelta(
            minutes=self.settings.email_verification_ttl_minutes
        )
        with storage_errors("create_email_verification_token"):
            self.store.create_email_verification_token(
                email,
                account_id,
                hash_token(raw),
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return raw

    def consume_email_verification_token(
        self, raw_token: Optional[str]
    ) -> EmailVerificationToken:
        if not raw_token:
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        with storage_errors("consume_email_verification_token"):
            record = self.store.consume_email_verification_token(
                hash_token(raw_token), now=self._now()
            )
        if not record:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        return record

    def register_account(
        self,
        email: str,
        password_hash: str,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Tuple[Account, str]:
        """Create a pending account and its verification token together.

        Returns the account and the raw verification token. ConstraintViolation
        from the store propagates so the caller can report the duplicate email.
        """
        raw = generate_raw_token()
        expires_at = self._now() + timedelta(
            minutes=self.settings.email_verification_ttl_minutes
        )
        with storage_errors("register_account"):
            account = self.store.register_account(
                email,
                password_hash,
                hash_token(raw),
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
        return account, raw

    def redeem_password_reset_token(
        self, raw_token: Optional[str], password_hash: str
    ) -> str:
        """Consume the token, apply the new hash and sign the account out.

        The store does all of it at once; an outage leaves the token redeemable.
        """
        if not raw_token:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        with storage_errors("redeem_password_reset_token"):
            record = self.store.reset_password_with_token(
                hash_token(raw_token), password_hash, now=self._now()
            )
        if not record:
            self.logger.warning("password_reset_invalid_token")
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        return record.account_id

    def redeem_email_verification_token(self, raw_token: Optional[str]) -> Account:
        if not raw_token:
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        with storage_errors("redeem_email_verification_token"):
            account = self.store.verify_email_with_token(
                hash_token(raw_token), now=self._now()
            )
        if not account:
            self.logger.warning("email_verification_invalid_token")
            raise InvalidOrExpiredTokenError("invalid or expired verification token")
        return account
