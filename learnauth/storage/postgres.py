from __future__ import annotations

import contextlib
import uuid
from datetime import datetime
from typing import Any, Iterator, Optional

from psycopg import OperationalError, errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from learnauth.logging import get_logger
from learnauth.storage.common import as_utc, normalize_email
from learnauth.storage.errors import ConstraintViolation, StorageUnavailable
from learnauth.storage.models import (
    Account,
    AccountStatus,
    EmailVerificationToken,
    PasswordResetToken,
    RefreshToken,
    Session,
    VERIFIABLE_STATUSES,
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS auth_account (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL CHECK (email = lower(email)),
        password_hash TEXT NOT NULL,
        status TEXT NOT NULL DEFAULT 'PENDING_VERIFICATION',
        email_verified BOOLEAN NOT NULL DEFAULT FALSE,
        email_verified_at TIMESTAMPTZ,
        failed_login_attempts INTEGER NOT NULL DEFAULT 0 CHECK (failed_login_attempts >= 0),
        locked_until TIMESTAMPTZ,
        last_login_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS auth_account_email_key ON auth_account (email)",
    """
    CREATE TABLE IF NOT EXISTS auth_refresh_token (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account (id),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        revoked BOOLEAN NOT NULL DEFAULT FALSE,
        revoked_at TIMESTAMPTZ,
        user_agent TEXT,
        ip_address TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_refresh_token_account_idx ON auth_refresh_token (account_id) WHERE NOT revoked",
    """
    CREATE TABLE IF NOT EXISTS auth_session (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account (id),
        session_token_hash TEXT NOT NULL UNIQUE,
        ip_address TEXT,
        user_agent TEXT,
        is_active BOOLEAN NOT NULL DEFAULT TRUE,
        expires_at TIMESTAMPTZ NOT NULL,
        last_activity TIMESTAMPTZ NOT NULL DEFAULT now(),
        ended_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS auth_session_account_idx ON auth_session (account_id) WHERE is_active",
    """
    CREATE TABLE IF NOT EXISTS auth_password_reset (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES auth_account (id),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        used BOOLEAN NOT NULL DEFAULT FALSE,
        used_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS auth_email_verification (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL,
        account_id UUID NOT NULL REFERENCES auth_account (id),
        token_hash TEXT NOT NULL UNIQUE,
        expires_at TIMESTAMPTZ NOT NULL,
        verified BOOLEAN NOT NULL DEFAULT FALSE,
        verified_at TIMESTAMPTZ,
        ip_address TEXT,
        user_agent TEXT,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
)


def _parse_id(value: Any) -> Optional[str]:
    """Canonical UUID text, or None when the value cannot name a row."""
    try:
        return str(uuid.UUID(str(value)))
    except (TypeError, ValueError):
        return None


_CONSUME_RESET_SQL = """
    UPDATE auth_password_reset SET used = TRUE, used_at = %s
    WHERE token_hash = %s AND used = FALSE AND expires_at > %s
    RETURNING *
"""

_CONSUME_VERIFICATION_SQL = """
    UPDATE auth_email_verification SET verified = TRUE, verified_at = %s
    WHERE token_hash = %s AND verified = FALSE AND expires_at > %s
    RETURNING *
"""


class PostgresStore:
    """Postgres-backed credential store.

    Single-use transitions (token rotation, reset and verification consumption)
    are conditional ``UPDATE ... RETURNING`` statements, so row locks decide
    which of two concurrent requests wins. Flows that consume a token and then
    change the account run in one transaction, so a failure rolls the token
    back to unused.
    """

    def __init__(
        self,
        dsn: str,
        *,
        min_size: int = 2,
        max_size: int = 10,
        connect_timeout: float = 5.0,
        statement_timeout_ms: int = 5000,
        ensure_schema: bool = True,
    ) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            timeout=connect_timeout,
            open=True,
            kwargs={
                "row_factory": dict_row,
                "autocommit": False,
                "options": f"-c statement_timeout={int(statement_timeout_ms)}",
            },
        )
        if ensure_schema:
            self.ensure_schema()

    @contextlib.contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (errors.UniqueViolation, errors.ForeignKeyViolation) as exc:
            constraint = getattr(getattr(exc, "diag", None), "constraint_name", None)
            raise ConstraintViolation(
                "constraint violated", {"constraint": constraint}
            ) from exc
        except PoolTimeout as exc:
            self.logger.error("postgres_pool_timeout", error=str(exc))
            raise StorageUnavailable("database connection unavailable") from exc
        except OperationalError as exc:
            self.logger.error("postgres_operational_error", error=str(exc))
            raise StorageUnavailable("database operation failed") from exc

    def ensure_schema(self) -> None:
        """Create the auth tables and indexes if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    # row mapping
    @staticmethod
    def _account_from_row(row: dict) -> Account:
        return Account(
            id=str(row["id"]),
            email=row["email"],
            password_hash=row["password_hash"],
            status=AccountStatus(row["status"]),
            email_verified=bool(row.get("email_verified", False)),
            email_verified_at=as_utc(row.get("email_verified_at")),
            failed_login_attempts=int(row.get("failed_login_attempts") or 0),
            locked_until=as_utc(row.get("locked_until")),
            last_login_at=as_utc(row.get("last_login_at")),
            created_at=as_utc(row["created_at"]),
            updated_at=as_utc(row["updated_at"]),
        )

    @staticmethod
    def _refresh_from_row(row: dict) -> RefreshToken:
        return RefreshToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=as_utc(row["expires_at"]),
            revoked=bool(row["revoked"]),
            revoked_at=as_utc(row.get("revoked_at")),
            user_agent=row.get("user_agent"),
            ip_address=row.get("ip_address"),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _session_from_row(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            session_token_hash=row["session_token_hash"],
            expires_at=as_utc(row["expires_at"]),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            is_active=bool(row["is_active"]),
            last_activity=as_utc(row["last_activity"]),
            ended_at=as_utc(row.get("ended_at")),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _reset_from_row(row: dict) -> PasswordResetToken:
        return PasswordResetToken(
            id=str(row["id"]),
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=as_utc(row["expires_at"]),
            used=bool(row["used"]),
            used_at=as_utc(row.get("used_at")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=as_utc(row["created_at"]),
        )

    @staticmethod
    def _verification_from_row(row: dict) -> EmailVerificationToken:
        return EmailVerificationToken(
            id=str(row["id"]),
            email=row["email"],
            account_id=str(row["account_id"]),
            token_hash=row["token_hash"],
            expires_at=as_utc(row["expires_at"]),
            verified=bool(row["verified"]),
            verified_at=as_utc(row.get("verified_at")),
            ip_address=row.get("ip_address"),
            user_agent=row.get("user_agent"),
            created_at=as_utc(row["created_at"]),
        )

    # accounts
    def create_account(
        self,
        email: str,
        password_hash: str,
        status: AccountStatus = AccountStatus.PENDING_VERIFICATION,
    ) -> Account:
        account = Account.new(normalize_email(email), password_hash, status)
        try:
            with self._connect() as conn:
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.status.value,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._account_from_row(row)

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
        """Insert a pending account and its verification token in one transaction."""
        account = Account.new(
            normalize_email(email), password_hash, AccountStatus.PENDING_VERIFICATION
        )
        record = EmailVerificationToken.new(
            account.email,
            account.id,
            token_hash,
            expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        try:
            with self._connect() as conn, conn.transaction():
                row = conn.execute(
                    """
                    INSERT INTO auth_account (id, email, password_hash, status, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    RETURNING *
                    """,
                    (
                        account.id,
                        account.email,
                        account.password_hash,
                        account.status.value,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
                conn.execute(
                    """
                    INSERT INTO auth_email_verification (id, email, account_id, token_hash, expires_at, ip_address, user_agent, created_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        record.id,
                        record.email,
                        record.account_id,
                        record.token_hash,
                        record.expires_at,
                        record.ip_address,
                        record.user_agent,
                        record.created_at,
                    ),
                )
        except ConstraintViolation as exc:
            raise ConstraintViolation("email already exists", {"field": "email"}) from exc
        return self._account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        key = _parse_id(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE id = %s", (key,)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_account WHERE email = %s", (normalize_email(email),)
            ).fetchone()
        return self._account_from_row(row) if row else None

    def update_account_status(
        self,
        account_id: str,
        status: AccountStatus,
        *,
        now: datetime,
        email_verified: Optional[bool] = None,
    ) -> Optional[Account]:
        key = _parse_id(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            if email_verified is None:
                row = conn.execute(
                    "UPDATE auth_account SET status = %s, updated_at = %s WHERE id = %s RETURNING *",
                    (status.value, now, key),
                ).fetchone()
            else:
                row = conn.execute(
                    """
                    UPDATE auth_account
                    SET status = %s,
                        email_verified = %s,
                        email_verified_at = CASE WHEN %s THEN %s ELSE NULL END,
                        updated_at = %s
                    WHERE id = %s
                    RETURNING *
                    """,
                    (status.value, email_verified, email_verified, now, now, key),
                ).fetchone()
        return self._account_from_row(row) if row else None

    def update_password_hash(
        self, account_id: str, password_hash: str, *, now: datetime
    ) -> Optional[Account]:
        key = _parse_id(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "UPDATE auth_account SET password_hash = %s, updated_at = %s WHERE id = %s RETURNING *",
                (password_hash, now, key),
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_failed_login(
        self,
        account_id: str,
        *,
        now: datetime,
        max_attempts: int,
        lock_until: datetime,
    ) -> Optional[Account]:
        key = _parse_id(account_id)
        if key is None:
            return None
        # SET expressions see the pre-update row; an expired lock restarts the count
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET failed_login_attempts = CASE
                        WHEN locked_until IS NOT NULL AND locked_until > %(now)s THEN failed_login_attempts
                        WHEN locked_until IS NOT NULL THEN 1
                        ELSE failed_login_attempts + 1
                    END,
                    locked_until = CASE
                        WHEN locked_until IS NOT NULL AND locked_until > %(now)s THEN locked_until
                        WHEN (CASE WHEN locked_until IS NOT NULL THEN 1 ELSE failed_login_attempts + 1 END) >= %(max)s
                            THEN %(lock_until)s
                        ELSE NULL
                    END,
                    updated_at = %(now)s
                WHERE id = %(id)s
                RETURNING *
                """,
                {
                    "now": now,
                    "max": max_attempts,
                    "lock_until": lock_until,
                    "id": key,
                },
            ).fetchone()
        return self._account_from_row(row) if row else None

    def record_successful_login(
        self, account_id: str, *, now: datetime
    ) -> Optional[Account]:
        key = _parse_id(account_id)
        if key is None:
            return None
        with self._connect() as conn:
            row = conn.execute(
                """
                UPDATE auth_account
                SET failed_login_attempts = 0, locked_until = NULL, last_login_at = %s, updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (now, now, key),
            ).fetchone()
        return self._account_from_row(row) if row else None

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
        if _parse_id(account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        token = RefreshToken.new(
            account_id, token_hash, expires_at, user_agent=user_agent, ip_address=ip_address
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_refresh_token (id, account_id, token_hash, expires_at, user_agent, ip_address, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    token.id,
                    token.account_id,
                    token.token_hash,
                    token.expires_at,
                    token.user_agent,
                    token.ip_address,
                    token.created_at,
                ),
            )
        return token

    def get_refresh_token_by_hash(self, token_hash: str) -> Optional[RefreshToken]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_refresh_token WHERE token_hash = %s", (token_hash,)
            ).fetchone()
        return self._refresh_from_row(row) if row else None

    def revoke_refresh_token_if_active(self, token_id: str, *, now: datetime) -> bool:
        key = _parse_id(token_id)
        if key is None:
            return False
        with self._connect() as conn:
            result = conn.execute(
                """
                UPDATE auth_refresh_token
                SET revoked = TRUE, revoked_at = %s
                WHERE id = %s AND revoked = FALSE AND expires_at > %s
                """,
                (now, key, now),
            )
            return result.rowcount == 1

    @staticmethod
    def _revoke_refresh_tokens(conn: Any, account_id: str, now: datetime) -> int:
        result = conn.execute(
            """
            UPDATE auth_refresh_token SET revoked = TRUE, revoked_at = %s
            WHERE account_id = %s AND revoked = FALSE
            """,
            (now, account_id),
        )
        return result.rowcount

    @staticmethod
    def _end_sessions(conn: Any, account_id: str, now: datetime) -> int:
        result = conn.execute(
            """
            UPDATE auth_session SET is_active = FALSE, ended_at = %s
            WHERE account_id = %s AND is_active = TRUE
            """,
            (now, account_id),
        )
        return result.rowcount

    def revoke_account_refresh_tokens(self, account_id: str, *, now: datetime) -> int:
        key = _parse_id(account_id)
        if key is None:
            return 0
        with self._connect() as conn:
            return self._revoke_refresh_tokens(conn, key, now)

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
        if _parse_id(account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        sess = Session.new(
            account_id,
            session_token_hash,
            expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_session (id, account_id, session_token_hash, ip_address, user_agent, expires_at, last_activity, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    sess.id,
                    sess.account_id,
                    sess.session_token_hash,
                    sess.ip_address,
                    sess.user_agent,
                    sess.expires_at,
                    sess.last_activity,
                    sess.created_at,
                ),
            )
        return sess

    def get_session_by_hash(self, session_token_hash: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM auth_session WHERE session_token_hash = %s",
                (session_token_hash,),
            ).fetchone()
        return self._session_from_row(row) if row else None

    def end_account_sessions(self, account_id: str, *, now: datetime) -> int:
        key = _parse_id(account_id)
        if key is None:
            return 0
        with self._connect() as conn:
            return self._end_sessions(conn, key, now)

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
        if _parse_id(account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        record = PasswordResetToken.new(
            account_id, token_hash, expires_at, ip_address=ip_address, user_agent=user_agent
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_password_reset (id, account_id, token_hash, expires_at, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.account_id,
                    record.token_hash,
                    record.expires_at,
                    record.ip_address,
                    record.user_agent,
                    record.created_at,
                ),
            )
        return record

    def consume_password_reset_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        with self._connect() as conn:
            row = conn.execute(_CONSUME_RESET_SQL, (now, token_hash, now)).fetchone()
        return self._reset_from_row(row) if row else None

    def reset_password_with_token(
        self, token_hash: str, password_hash: str, *, now: datetime
    ) -> Optional[PasswordResetToken]:
        """Consume the token, store the new hash and sign the account out, in one transaction."""
        with self._connect() as conn, conn.transaction():
            row = conn.execute(_CONSUME_RESET_SQL, (now, token_hash, now)).fetchone()
            if not row:
                return None
            record = self._reset_from_row(row)
            conn.execute(
                "UPDATE auth_account SET password_hash = %s, updated_at = %s WHERE id = %s",
                (password_hash, now, record.account_id),
            )
            self._revoke_refresh_tokens(conn, record.account_id, now)
            self._end_sessions(conn, record.account_id, now)
        return record

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
        if _parse_id(account_id) is None:
            raise ConstraintViolation("account does not exist", {"account_id": account_id})
        record = EmailVerificationToken.new(
            normalize_email(email),
            account_id,
            token_hash,
            expires_at,
            ip_address=ip_address,
            user_agent=user_agent,
        )
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO auth_email_verification (id, email, account_id, token_hash, expires_at, ip_address, user_agent, created_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                """,
                (
                    record.id,
                    record.email,
                    record.account_id,
                    record.token_hash,
                    record.expires_at,
                    record.ip_address,
                    record.user_agent,
                    record.created_at,
                ),
            )
        return record

    def consume_email_verification_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[EmailVerificationToken]:
        with self._connect() as conn:
            row = conn.execute(
                _CONSUME_VERIFICATION_SQL, (now, token_hash, now)
            ).fetchone()
        return self._verification_from_row(row) if row else None

    def verify_email_with_token(
        self, token_hash: str, *, now: datetime
    ) -> Optional[Account]:
        """Consume the token and mark its account verified, in one transaction."""
        with self._connect() as conn, conn.transaction():
            row = conn.execute(
                _CONSUME_VERIFICATION_SQL, (now, token_hash, now)
            ).fetchone()
            if not row:
                return None
            account_row = conn.execute(
                """
                UPDATE auth_account
                SET status = CASE WHEN status = ANY(%s) THEN %s ELSE status END,
                    email_verified = TRUE,
                    email_verified_at = %s,
                    updated_at = %s
                WHERE id = %s
                RETURNING *
                """,
                (
                    [status.value for status in VERIFIABLE_STATUSES],
                    AccountStatus.ACTIVE.value,
                    now,
                    now,
                    str(row["account_id"]),
                ),
            ).fetchone()
        return self._account_from_row(account_row) if account_row else None

    # housekeeping
    def purge_expired_tokens(self, *, now: datetime) -> int:
        purged = 0
        with self._connect() as conn:
            for table in (
                "auth_refresh_token",
                "auth_session",
                "auth_password_reset",
                "auth_email_verification",
            ):
                result = conn.execute(
                    f"DELETE FROM {table} WHERE expires_at <= %s", (now,)
                )
                purged += result.rowcount
        if purged:
            self.logger.info("expired_tokens_purged", purged=purged)
        return purged
