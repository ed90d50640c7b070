from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Any, Callable, Optional, Protocol

from learnauth.config import Settings
from learnauth.logging import email_digest, get_logger, set_correlation_id
from learnauth.service.delivery import LoggingTokenDelivery, TokenDelivery
from learnauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    ConflictError,
    EmailNotVerifiedError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    storage_errors,
)
from learnauth.service.events import (
    AUTH_EMAIL_VERIFIED,
    AUTH_LOGIN,
    AUTH_LOGOUT,
    AUTH_PASSWORD_RESET,
    AUTH_REGISTERED,
    AuthEvent,
    AuthEventPublisher,
)
from learnauth.service.lockout import LockoutPolicy
from learnauth.service.passwords import (
    PasswordHashing,
    validate_email,
    validate_password_strength,
)
from learnauth.service.sessions import SessionManager
from learnauth.service.tokens import TokenIssuer, TokenPair
from learnauth.storage.common import normalize_email
from learnauth.storage.errors import ConstraintViolation
from learnauth.storage.models import (
    Account,
    AccountStatus,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Session,
)

logger = get_logger(__name__)

FORGOT_PASSWORD_MESSAGE = "If the email exists, a password reset link has been sent."
RESET_PASSWORD_MESSAGE = "Password reset successfully"
LOGOUT_MESSAGE = "Logged out successfully"


class AuthStore(Protocol):
    def create_account(
        self,
        email: str,
        password_hash: str,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account: ...

    def register_account(
        self,
        email: str,
        password_hash: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        now: datetime,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]: ...

    def update_password_hash(
        self, account_id: str, password_hash: str, *, now: datetime
    ) -> Optional[Account]: ...

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[Account]: ...

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]: ...

    def create_refresh_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> RefreshToken: ...

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]: ...

    def revoke_refresh_token_if_active(self, token_id: str, *, now: datetime) -> bool: ...

    def revoke_account_refresh_tokens(self, account_id: str, *, now: datetime) -> int: ...

    def create_session(
        self,
        account_id: str,
        session_token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> Session: ...

    def get_session_by_hash(self, session_token_hash: str) -> Optional[Session]: ...

    def end_account_sessions(self, account_id: str, *, now: datetime) -> int: ...

    def create_password_reset_token(
        self,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> PasswordResetToken: ...

    def consume_password_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def reset_password_with_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]: ...

    def create_email_verification_token(
        self,
        email: str,
        account_id: str,
        token_hash: str,
        expires_at: datetime,
        *,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> EmailVerificationToken: ...

    def consume_email_verification_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerificationToken]: ...

    def verify_email_with_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[Account]: ...

    def purge_expired_tokens(self, *, now: datetime) -> int: ...


@dataclass
class RequestContext:
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    correlation_id: Optional[str] = None


@dataclass
class AccountSummary:
    id: str
    email: str
    status: AccountStatus
    email_verified: bool
    last_login_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

    @classmethod
    def from_account(cls, account: Account) -> "AccountSummary":
        return cls(
            id=account.id,
            email=account.email,
            status=account.status,
            email_verified=account.email_verified,
            last_login_at=account.last_login_at,
            created_at=account.created_at,
        )


@dataclass
class RegistrationResult:
    account_id: str
    email: str
    status: AccountStatus


@dataclass
class LoginResult:
    account: AccountSummary
    tokens: TokenPair
    session_token: str


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AuthService:
    """Register, login, refresh, logout, password reset and email verification.

    One instance per process. Every collaborator is injected; nothing here
    holds per-request state, so concurrent calls only meet at the store.
    """

    def __init__(
        self,
        store: AuthStore,
        settings: Settings,
        *,
        delivery: Optional[TokenDelivery] = None,
        events: Optional[AuthEventPublisher] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store: AuthStore = store
        self.settings = settings
        self._clock = clock or _utcnow
        self.delivery: TokenDelivery = delivery or LoggingTokenDelivery(
            log_raw_tokens=settings.log_raw_tokens
        )
        self.events = events or AuthEventPublisher()
        self.passwords = PasswordHashing(settings.password_hash_cost)
        self.tokens = TokenIssuer(store, settings, clock=self._clock)
        self.sessions = SessionManager(store, settings, clock=self._clock)
        self.lockout = LockoutPolicy(store, settings)
        self.logger = logger

    def _now(self) -> datetime:
        """Timezone-aware UTC helper; tests swap the clock."""

        return self._clock()

    def _begin(self, context: Optional[RequestContext]) -> RequestContext:
        """Bind the request's correlation id (generated when absent) to log entries."""
        ctx = context or RequestContext()
        return replace(ctx, correlation_id=set_correlation_id(ctx.correlation_id))

    def register(
        self,
        email: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> RegistrationResult:
        ctx = self._begin(context)
        normalized = validate_email(email)
        validate_password_strength(password)
        with storage_errors("register"):
            if self.store.get_account_by_email(normalized):
                raise ConflictError(
                    "an account with this email already exists",
                    detail={"field": "email"},
                )
        password_hash = self.passwords.hash(password)
        try:
            account, raw_token = self.sessions.register_account(
                normalized,
                password_hash,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
            )
        except ConstraintViolation as exc:
            # Lost a race with a concurrent registration of the same address
            raise ConflictError(
                "an account with this email already exists", detail={"field": "email"}
            ) from exc
        self._deliver("email_verification", account.email, raw_token)
        self.logger.info(
            "account_registered",
            account_id=account.id,
            email_hash=email_digest(account.email),
        )
        self._publish(AUTH_REGISTERED, account.id, ctx)
        return RegistrationResult(
            account_id=account.id, email=account.email, status=account.status
        )

    def login(
        self,
        email: str,
        password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> LoginResult:
        ctx = self._begin(context)
        password = password if isinstance(password, str) else ""
        normalized = normalize_email(email) if isinstance(email, str) else ""
        now = self._now()
        with storage_errors("login"):
            account = self.store.get_account_by_email(normalized) if normalized else None
        if not account:
            self.passwords.burn_verification(password)
            self.logger.warning(
                "login_failed", reason="unknown_email", email_hash=email_digest(normalized)
            )
            raise InvalidCredentialsError("invalid email or password")
        if self.lockout.is_locked(account, now):
            self.logger.warning(
                "login_rejected_locked",
                account_id=account.id,
                locked_until=account.locked_until.isoformat(),
            )
            raise AccountLockedError(
                "account is temporarily locked due to repeated failed logins",
                detail={
                    "retry_after_seconds": self.lockout.remaining_lock_seconds(
                        account, now
                    )
                },
            )
        if not self.passwords.verify(account.password_hash, password):
            updated = self.lockout.record_failure(account, now)
            self.logger.warning(
                "login_failed",
                reason="bad_password",
                account_id=account.id,
                failed_login_attempts=updated.failed_login_attempts if updated else None,
            )
            raise InvalidCredentialsError("invalid email or password")
        if account.status == AccountStatus.PENDING_VERIFICATION:
            raise EmailNotVerifiedError("email address has not been verified")
        if account.status != AccountStatus.ACTIVE:
            self.logger.warning(
                "login_rejected_inactive", account_id=account.id, status=account.status.value
            )
            raise AccountNotActiveError("account is not active")

        updated = self.lockout.record_success(account, now) or account
        if self.passwords.needs_rehash(account.password_hash):
            with storage_errors("login"):
                self.store.update_password_hash(
                    account.id, self.passwords.hash(password), now=now
                )
            self.logger.info("password_rehashed", account_id=account.id)
        tokens = self.tokens.issue_token_pair(
            account.id, user_agent=ctx.user_agent, ip_address=ctx.ip_address
        )
        session_token = self.sessions.create_session(
            account.id, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )
        self.logger.info("login_succeeded", account_id=account.id)
        self._publish(AUTH_LOGIN, account.id, ctx)
        return LoginResult(
            account=AccountSummary.from_account(updated),
            tokens=tokens,
            session_token=session_token,
        )

    def refresh_token(
        self, raw_refresh_token: str, *, context: Optional[RequestContext] = None
    ) -> TokenPair:
        ctx = self._begin(context)
        return self.tokens.rotate_refresh_token(
            raw_refresh_token, user_agent=ctx.user_agent, ip_address=ctx.ip_address
        )

    def logout(
        self, account_id: str, *, context: Optional[RequestContext] = None
    ) -> str:
        """Revoke every refresh token and session of the account; repeatable."""
        ctx = self._begin(context)
        revoked = self.sessions.end_all_refresh_tokens(account_id)
        ended = self.sessions.end_all_sessions(account_id)
        self.logger.info(
            "logout_completed",
            account_id=account_id,
            refresh_tokens_revoked=revoked,
            sessions_ended=ended,
        )
        self._publish(AUTH_LOGOUT, account_id, ctx)
        return LOGOUT_MESSAGE

    def forgot_password(
        self, email: str, *, context: Optional[RequestContext] = None
    ) -> str:
        ctx = self._begin(context)
        normalized = normalize_email(email) if isinstance(email, str) else ""
        with storage_errors("forgot_password"):
            account = self.store.get_account_by_email(normalized) if normalized else None
        if not account:
            self.logger.info(
                "password_reset_requested_unknown", email_hash=email_digest(normalized)
            )
            return FORGOT_PASSWORD_MESSAGE
        raw_token = self.sessions.create_password_reset_token(
            account.id, ip_address=ctx.ip_address, user_agent=ctx.user_agent
        )
        self._deliver("password_reset", account.email, raw_token)
        self.logger.info("password_reset_requested", account_id=account.id)
        return FORGOT_PASSWORD_MESSAGE

    def reset_password(
        self,
        raw_token: str,
        new_password: str,
        *,
        context: Optional[RequestContext] = None,
    ) -> str:
        ctx = self._begin(context)
        # Checked first so a rejected password leaves the token redeemable
        validate_password_strength(new_password)
        if not raw_token:
            raise InvalidOrExpiredTokenError("invalid or expired reset token")
        password_hash = self.passwords.hash(new_password)
        account_id = self.sessions.redeem_password_reset_token(raw_token, password_hash)
        self.logger.info("password_reset_completed", account_id=account_id)
        self._publish(AUTH_PASSWORD_RESET, account_id, ctx)
        return RESET_PASSWORD_MESSAGE

    def verify_email(
        self, raw_token: str, *, context: Optional[RequestContext] = None
    ) -> AccountSummary:
        ctx = self._begin(context)
        # Suspended or deactivated accounts are verified but keep their status
        account = self.sessions.redeem_email_verification_token(raw_token)
        self.logger.info(
            "email_verified", account_id=account.id, status=account.status.value
        )
        self._publish(AUTH_EMAIL_VERIFIED, account.id, ctx)
        return AccountSummary.from_account(account)

    def get_account(self, account_id: str) -> AccountSummary:
        with storage_errors("get_account"):
            account = self.store.get_account(account_id)
        if not account:
            raise NotFoundError("account not found", detail={"account_id": account_id})
        return AccountSummary.from_account(account)

    def authenticate(self, access_token: str) -> AccountSummary:
        """Resolve a bearer access token to the active account it was issued to."""
        account_id = self.tokens.verify_access_token(access_token)
        with storage_errors("authenticate"):
            account = self.store.get_account(account_id)
        if not account or account.status != AccountStatus.ACTIVE:
            raise InvalidTokenError("invalid or expired access token")
        return AccountSummary.from_account(account)

    def purge_expired_tokens(self) -> int:
        with storage_errors("purge_expired_tokens"):
            return self.store.purge_expired_tokens(now=self._now())

    def _deliver(self, kind: str, email: str, raw_token: str) -> None:
        send = (
            self.delivery.send_email_verification
            if kind == "email_verification"
            else self.delivery.send_password_reset
        )
        try:
            send(email, raw_token)
        except Exception as exc:
            # Delivery is best effort; the token stays valid and can be re-requested
            self.logger.error(
                "token_delivery_failed",
                kind=kind,
                email_hash=email_digest(email),
                error_type=type(exc).__name__,
                error=str(exc),
            )

    def _publish(
        self, event_type: str, account_id: str, ctx: RequestContext, **data: Any
    ) -> None:
        self.events.publish(
            AuthEvent(
                type=event_type,
                account_id=account_id,
                ip_address=ctx.ip_address,
                user_agent=ctx.user_agent,
                data=data,
                timestamp=self._now(),
            )
        )
