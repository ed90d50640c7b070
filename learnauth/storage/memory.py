from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional

from learnauth.logging import get_logger
from learnauth.storage.common import is_expired, normalize_email
from learnauth.storage.errors import ConstraintViolation
from learnauth.storage.models import (
    Account,
    AccountStatus,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Session,
    VERIFIABLE_STATUSES,
)


class MemoryStore:
    """In-process backing store for tests and single-node development.

    Every read returns a copy so callers never observe a row mid-update; every
    check-and-set runs under one re-entrant lock.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self._refresh_by_hash: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self._session_by_hash: Dict[str, str] = {}
        self.password_resets: Dict[str, PasswordResetToken] = {}
        self.email_verifications: Dict[str, EmailVerificationToken] = {}
        # RLock so helpers can re-acquire inside an outer critical section
        self._data_lock = threading.RLock()

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            account = Account.new(normalized, password_hash, status)
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
            return replace(account)

    def register_account(
        self,
        email: str,
        password_hash: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account:
        """Create a pending account together with its email verification token."""
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            if token_hash in self.email_verifications:
                raise ConstraintViolation(
                    "verification token already exists", {"field": "token_hash"}
                )
            account = Account.new(
                normalized, password_hash, AccountStatus.PENDING_VERIFICATION
            )
            record = EmailVerificationToken.new(
                normalized,
                account.id,
                token_hash,
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            # Both rows land together or not at all
            self.accounts[account.id] = account
            self._email_index[normalized] = account.id
            self.email_verifications[token_hash] = record
            return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(normalize_email(email))
            if not account_id:
                return None
            return replace(self.accounts[account_id])

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        now: datetime,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.status = status
            if email_verified is not None:
                account.email_verified = email_verified
                account.email_verified_at = now if email_verified else None
            account.updated_at = now
            return replace(account)

    def update_password_hash(
        self, account_id: str, password_hash: str, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.password_hash = password_hash
            account.updated_at = now
            return replace(account)

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            if account.locked_until and account.locked_until > now:
                # Already locked; never extend or re-count
                return replace(account)
            if account.locked_until and account.locked_until <= now:
                account.failed_login_attempts = 0
                account.locked_until = None
            account.failed_login_attempts += 1
            if account.failed_login_attempts >= max_attempts:
                account.locked_until = lock_until
            account.updated_at = now
            return replace(account)

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            account.failed_login_attempts = 0
            account.locked_until = None
            account.last_login_at = now
            account.updated_at = now
            return replace(account)

    # refresh tokens
    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if token_hash in self._refresh_by_hash:
                raise ConstraintViolation("refresh token already exists", {"field": "token_hash"})
            token = RefreshToken.new(
                account_id,
                token_hash,
                expires_at,
                user_agent=user_agent,
                ip_address=ip_address,
            )
            self.refresh_tokens[token.id] = token
            self._refresh_by_hash[token_hash] = token.id
            return replace(token)

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            token_id = self._refresh_by_hash.get(token_hash)
            if not token_id:
                return None
            return replace(self.refresh_tokens[token_id])

    def revoke_refresh_token_if_active(self, token_id: str, *, now: datetime) -> bool:
        """Revoke a token only if it is still unrevoked and unexpired."""
        with self._data_lock:
            token = self.refresh_tokens.get(token_id)
            if not token or token.revoked or is_expired(token.expires_at, now):
                return False
            token.revoked = True
            token.revoked_at = now
            return True

    def revoke_account_refresh_tokens(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for token in self.refresh_tokens.values():
                if token.account_id == account_id and not token.revoked:
                    token.revoked = True
                    token.revoked_at = now
                    revoked += 1
            return revoked

    # sessions
    def create_session(
        self,
        account_id: str,
        session_token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            sess = Session.new(
                account_id,
                session_token_hash,
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.sessions[sess.id] = sess
            self._session_by_hash[session_token_hash] = sess.id
            return replace(sess)

    def get_session_by_hash(self, session_token_hash: str) -> Optional[Session]:
        with self._data_lock:
            session_id = self._session_by_hash.get(session_token_hash)
            if not session_id:
                return None
            return replace(self.sessions[session_id])

    def end_account_sessions(self, account_id: str, *, now: datetime) -> int:
        with self._data_lock:
            ended = 0
            for sess in self.sessions.values():
                if sess.account_id == account_id and sess.is_active:
                    sess.is_active = False
                    sess.ended_at = now
                    ended += 1
            return ended

    # password reset
    def create_password_reset_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if token_hash in self.password_resets:
                raise ConstraintViolation("reset token already exists", {"field": "token_hash"})
            record = PasswordResetToken.new(
                account_id,
                token_hash,
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.password_resets[token_hash] = record
            return replace(record)

    def consume_password_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        """Mark a reset token used; returns None if unknown, used or expired."""
        with self._data_lock:
            record = self.password_resets.get(token_hash)
            if not record or record.used or is_expired(record.expires_at, now):
                return None
            record.used = True
            record.used_at = now
            return replace(record)

    def reset_password_with_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        """Consume a reset token, set the new hash and sign the account out everywhere."""
        with self._data_lock:
            record = self.password_resets.get(token_hash)
            if not record or record.used or is_expired(record.expires_at, now):
                return None
            account = self.accounts.get(record.account_id)
            if not account:
                return None
            record.used = True
            record.used_at = now
            account.password_hash = password_hash
            account.updated_at = now
            for token in self.refresh_tokens.values():
                if token.account_id == account.id and not token.revoked:
                    token.revoked = True
                    token.revoked_at = now
            for sess in self.sessions.values():
                if sess.account_id == account.id and sess.is_active:
                    sess.is_active = False
                    sess.ended_at = now
            return replace(record)

    # email verification
    def create_email_verification_token(
        self,
        email: str,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EmailVerificationToken:
        with self._data_lock:
            if account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", {"account_id": account_id})
            if token_hash in self.email_verifications:
                raise ConstraintViolation(
                    "verification token already exists", {"field": "token_hash"}
                )
            record = EmailVerificationToken.new(
                normalize_email(email),
                account_id,
                token_hash,
                expires_at,
                ip_address=ip_address,
                user_agent=user_agent,
            )
            self.email_verifications[token_hash] = record
            return replace(record)

    def consume_email_verification_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._data_lock:
            record = self.email_verifications.get(token_hash)
            if not record or record.verified or is_expired(record.expires_at, now):
                return None
            record.verified = True
            record.verified_at = now
            return replace(record)

    def verify_email_with_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[Account]:
        """Consume a verification token and mark its account verified."""
        with self._data_lock:
            record = self.email_verifications.get(token_hash)
            if not record or record.verified or is_expired(record.expires_at, now):
                return None
            account = self.accounts.get(record.account_id)
            if not account:
                return None
            record.verified = True
            record.verified_at = now
            if account.status in VERIFIABLE_STATUSES:
                account.status = AccountStatus.ACTIVE
            account.email_verified = True
            account.email_verified_at = now
            account.updated_at = now
            return replace(account)

    # housekeeping
    def purge_expired_tokens(self, *, now: datetime) -> int:
        """Drop expired token/session rows; intended for an external batch job."""
        with self._data_lock:
            purged = 0
            for token_id, token in list(self.refresh_tokens.items()):
                if is_expired(token.expires_at, now):
                    self.refresh_tokens.pop(token_id, None)
                    self._refresh_by_hash.pop(token.token_hash, None)
                    purged += 1
            for session_id, sess in list(self.sessions.items()):
                if is_expired(sess.expires_at, now):
                    self.sessions.pop(session_id, None)
                    self._session_by_hash.pop(sess.session_token_hash, None)
                    purged += 1
            for token_hash, record in list(self.password_resets.items()):
                if is_expired(record.expires_at, now):
                    self.password_resets.pop(token_hash, None)
                    purged += 1
            for token_hash, record in list(self.email_verifications.items()):
                if is_expired(record.expires_at, now):
                    self.email_verifications.pop(token_hash, None)
                    purged += 1
            if purged:
                self.logger.debug("expired_tokens_purged", purged=purged)
            return purged
