"""Unit tests for sessions and single-use reset/verification tokens."""

import threading
from datetime import timedelta

import pytest

from learnauth.service.errors import InvalidOrExpiredTokenError
from learnauth.service.sessions import SessionManager
from learnauth.storage.common import hash_token
from learnauth.storage.models import AccountStatus


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("sess@x.com", "hash", AccountStatus.ACTIVE)


@pytest.fixture
def manager(memory_store, settings, clock):
    return SessionManager(memory_store, settings, clock=clock)


class TestSessions:
    def test_create_session_stores_hash_with_default_expiry(
        self, manager, account, memory_store, clock
    ):
        raw = manager.create_session(account.id, ip_address="10.1.1.1", user_agent="ua")

        session = memory_store.get_session_by_hash(hash_token(raw))
        assert session.account_id == account.id
        assert session.is_active is True
        assert session.ip_address == "10.1.1.1"
        assert (session.expires_at - clock.now).days == 7
        assert raw not in memory_store._session_by_hash

    def test_end_all_sessions_counts_and_is_idempotent(self, manager, account):
        manager.create_session(account.id)
        manager.create_session(account.id)

        assert manager.end_all_sessions(account.id) == 2
        assert manager.end_all_sessions(account.id) == 0

    def test_end_all_refresh_tokens(self, manager, account, memory_store, clock):
        memory_store.create_refresh_token(account.id, "h1", clock.now + timedelta(days=1))
        memory_store.create_refresh_token(account.id, "h2", clock.now + timedelta(days=1))

        assert manager.end_all_refresh_tokens(account.id) == 2
        assert memory_store.get_refresh_token_by_hash("h1").revoked is True


class TestPasswordResetTokens:
    def test_consume_returns_account_once(self, manager, account):
        raw = manager.create_password_reset_token(account.id)

        assert manager.consume_password_reset_token(raw) == account.id
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume_password_reset_token(raw)

    def test_expires_after_one_hour(self, manager, account, clock):
        raw = manager.create_password_reset_token(account.id)
        clock.advance(minutes=59)
        still_valid = manager.create_password_reset_token(account.id)

        clock.advance(minutes=1)

        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume_password_reset_token(raw)
        assert manager.consume_password_reset_token(still_valid) == account.id

    @pytest.mark.parametrize("raw", [None, "", "deadbeef"])
    def test_unknown_or_empty(self, manager, raw):
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume_password_reset_token(raw)

    def test_concurrent_consumption_single_winner(self, manager, account):
        raw = manager.create_password_reset_token(account.id)
        barrier = threading.Barrier(4)
        wins: list = []
        lock = threading.Lock()

        def consume():
            barrier.wait()
            try:
                manager.consume_password_reset_token(raw)
            except InvalidOrExpiredTokenError:
                return
            with lock:
                wins.append(1)

        threads = [threading.Thread(target=consume) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1


class TestEmailVerificationTokens:
    def test_consume_returns_record_with_account(self, manager, account):
        raw = manager.create_email_verification_token(account.email, account.id)

        record = manager.consume_email_verification_token(raw)

        assert record.account_id == account.id
        assert record.email == account.email
        assert record.verified is True

    def test_single_use(self, manager, account):
        raw = manager.create_email_verification_token(account.email, account.id)
        manager.consume_email_verification_token(raw)

        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume_email_verification_token(raw)

    def test_expires_after_a_day(self, manager, account, clock):
        raw = manager.create_email_verification_token(account.email, account.id)
        clock.advance(hours=24)

        with pytest.raises(InvalidOrExpiredTokenError):
            manager.consume_email_verification_token(raw)

    def test_concurrent_consumption_single_winner(self, manager, account):
        raw = manager.create_email_verification_token(account.email, account.id)
        barrier = threading.Barrier(2)
        wins: list = []
        lock = threading.Lock()

        def consume():
            barrier.wait()
            try:
                manager.consume_email_verification_token(raw)
            except InvalidOrExpiredTokenError:
                return
            with lock:
                wins.append(1)

        threads = [threading.Thread(target=consume) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(wins) == 1

    def test_redeem_marks_account_verified(self, manager, memory_store, clock):
        pending = memory_store.create_account("pending@x.com", "hash")
        raw = manager.create_email_verification_token(pending.email, pending.id)

        account = manager.redeem_email_verification_token(raw)

        assert account.status == AccountStatus.ACTIVE
        assert account.email_verified_at == clock.now
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.redeem_email_verification_token(raw)


class TestRedeemPasswordReset:
    def test_redeem_sets_hash_and_signs_out(self, manager, account, memory_store):
        session_raw = manager.create_session(account.id)
        raw = manager.create_password_reset_token(account.id)

        assert manager.redeem_password_reset_token(raw, "new-hash") == account.id
        assert memory_store.get_account(account.id).password_hash == "new-hash"
        assert memory_store.get_session_by_hash(hash_token(session_raw)).is_active is False

    @pytest.mark.parametrize("raw", [None, "", "deadbeef"])
    def test_unknown_or_empty(self, manager, raw):
        with pytest.raises(InvalidOrExpiredTokenError):
            manager.redeem_password_reset_token(raw, "new-hash")


class TestRegisterAccount:
    def test_returns_account_and_redeemable_token(self, manager):
        account, raw = manager.register_account("Reg@X.com", "hash")

        assert account.status == AccountStatus.PENDING_VERIFICATION
        assert manager.consume_email_verification_token(raw).account_id == account.id
