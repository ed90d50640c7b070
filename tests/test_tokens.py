"""Unit tests for the token issuer: JWT encoding, verification and rotation."""

import base64
import json

import pytest

from learnauth.config import Settings
from learnauth.service.errors import InvalidTokenError
from learnauth.service.tokens import TokenIssuer
from learnauth.storage.common import hash_token
from learnauth.storage.models import AccountStatus


@pytest.fixture
def account(memory_store):
    return memory_store.create_account("tok@x.com", "hash", AccountStatus.ACTIVE)


@pytest.fixture
def issuer(memory_store, settings, clock):
    return TokenIssuer(memory_store, settings, clock=clock)


def _segment(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestIssue:
    def test_pair_shape(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)

        assert pair.token_type == "Bearer"
        assert pair.expires_in == 900
        assert pair.refresh_expires_in == 7 * 24 * 60 * 60
        assert pair.to_dict()["access_token"] == pair.access_token

    def test_only_refresh_hash_is_stored(self, issuer, account, memory_store):
        pair = issuer.issue_token_pair(account.id, user_agent="ua", ip_address="10.0.0.1")

        record = memory_store.get_refresh_token_by_hash(hash_token(pair.refresh_token))
        assert record is not None
        assert record.token_hash != pair.refresh_token
        assert record.user_agent == "ua"

    def test_claims(self, issuer, account, settings, clock):
        pair = issuer.issue_token_pair(account.id)

        payload = issuer._decode_jwt(pair.access_token)
        assert payload["sub"] == account.id
        assert payload["iss"] == settings.jwt_issuer
        assert payload["aud"] == settings.jwt_audience
        assert payload["token_type"] == "access"
        assert payload["exp"] == int(clock.now.timestamp()) + 900


class TestVerifyAccessToken:
    def test_valid_token(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)

        assert issuer.verify_access_token(pair.access_token) == account.id

    def test_expired_token(self, issuer, account, clock):
        pair = issuer.issue_token_pair(account.id)
        clock.advance(minutes=15)

        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(pair.access_token)

    def test_tampered_payload(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)
        header, _, signature = pair.access_token.split(".")
        forged = _segment(
            {
                "sub": "someone-else",
                "token_type": "access",
                "iss": issuer.settings.jwt_issuer,
                "aud": issuer.settings.jwt_audience,
                "exp": 4102444800,
            }
        )

        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(f"{header}.{forged}.{signature}")

    def test_alg_none_rejected(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)
        _, payload, _ = pair.access_token.split(".")
        header = _segment({"alg": "none", "typ": "JWT"})

        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(f"{header}.{payload}.")

    def test_other_secret_rejected(self, issuer, account, memory_store, clock):
        other = TokenIssuer(
            memory_store,
            Settings(jwt_secret="another-secret-that-is-long-enough-1234567", password_hash_cost=4),
            clock=clock,
        )
        pair = other.issue_token_pair(account.id)

        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(pair.access_token)

    def test_refresh_token_is_not_an_access_token(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)

        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(pair.refresh_token)

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "###.###.###"])
    def test_malformed(self, issuer, token):
        with pytest.raises(InvalidTokenError):
            issuer.verify_access_token(token)


class TestRotate:
    def test_rotation_revokes_old_row(self, issuer, account, memory_store):
        pair = issuer.issue_token_pair(account.id)

        new_pair = issuer.rotate_refresh_token(pair.refresh_token)

        old = memory_store.get_refresh_token_by_hash(hash_token(pair.refresh_token))
        new = memory_store.get_refresh_token_by_hash(hash_token(new_pair.refresh_token))
        assert old.revoked is True
        assert old.revoked_at is not None
        assert new.revoked is False

    def test_rotation_keeps_client_metadata(self, issuer, account, memory_store):
        pair = issuer.issue_token_pair(account.id, user_agent="ua-1", ip_address="10.0.0.1")

        new_pair = issuer.rotate_refresh_token(pair.refresh_token)

        new = memory_store.get_refresh_token_by_hash(hash_token(new_pair.refresh_token))
        assert new.user_agent == "ua-1"
        assert new.ip_address == "10.0.0.1"

    def test_revoked_token_rejected(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)
        issuer.rotate_refresh_token(pair.refresh_token)

        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(pair.refresh_token)

    def test_unknown_but_well_signed_token_rejected(self, issuer, account, memory_store):
        """A validly signed refresh JWT with no stored row is refused."""
        pair = issuer.issue_token_pair(account.id)
        token_hash = hash_token(pair.refresh_token)
        token_id = memory_store._refresh_by_hash.pop(token_hash)
        memory_store.refresh_tokens.pop(token_id)

        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(pair.refresh_token)

    def test_access_token_cannot_be_rotated(self, issuer, account):
        pair = issuer.issue_token_pair(account.id)

        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(pair.access_token)

    def test_inactive_account_cannot_rotate(self, issuer, account, memory_store, clock):
        pair = issuer.issue_token_pair(account.id)
        memory_store.update_account_status(account.id, AccountStatus.SUSPENDED, now=clock())

        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(pair.refresh_token)

    def test_rotation_reports_lost_race(self, issuer, account, memory_store, monkeypatch):
        """If the compare-and-swap loses, nothing new is minted."""
        pair = issuer.issue_token_pair(account.id)
        monkeypatch.setattr(
            memory_store, "revoke_refresh_token_if_active", lambda token_id, *, now: False
        )
        before = len(memory_store.refresh_tokens)

        with pytest.raises(InvalidTokenError):
            issuer.rotate_refresh_token(pair.refresh_token)
        assert len(memory_store.refresh_tokens) == before
