from __future__ import annotations

from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Optional

from learnauth.config import Settings
from learnauth.logging import get_logger
from learnauth.service.errors import storage_errors
from learnauth.storage.common import as_utc
from learnauth.storage.models import Account

if TYPE_CHECKING:
    from learnauth.service.auth import AuthStore

logger = get_logger(__name__)


class LockoutPolicy:
    """Failed-login counter and temporary lock, evaluated lazily on each attempt.

    Unlocked -> Locked once ``max_attempts`` consecutive failures are recorded;
    Locked -> Unlocked as soon as ``locked_until`` passes. Counting happens in
    the store in one atomic step so the decision is made on the row the
    increment returned, not on a stale read.
    """

    def __init__(self, store: "AuthStore", settings: Settings) -> None:
        self.store = store
        self.max_attempts = settings.max_failed_login_attempts
        self.lock_duration = timedelta(minutes=settings.account_lock_minutes)
        self.logger = logger

    def is_locked(self, account: Account, now: datetime) -> bool:
        locked_until = as_utc(account.locked_until)
        return bool(locked_until and locked_until > now)

    def remaining_lock_seconds(self, account: Account, now: datetime) -> int:
        if not self.is_locked(account, now):
            return 0
        return max(int((as_utc(account.locked_until) - now).total_seconds()), 1)

    def record_failure(self, account: Account, now: datetime) -> Optional[Account]:
        with storage_errors("record_failed_login"):
            updated = self.store.record_failed_login(
                account.id,
                now=now,
                max_attempts=self.max_attempts,
                lock_until=now + self.lock_duration,
            )
        if updated is None:
            return None
        if self.is_locked(updated, now) and not self.is_locked(account, now):
            self.logger.warning(
                "account_locked",
                account_id=account.id,
                failed_login_attempts=updated.failed_login_attempts,
                locked_until=updated.locked_until.isoformat(),
            )
        return updated

    def record_success(self, account: Account, now: datetime) -> Optional[Account]:
        with storage_errors("record_successful_login"):
            return self.store.record_successful_login(account.id, now=now)
