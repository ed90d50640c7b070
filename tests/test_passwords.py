"""Tests for password policy, email validation and argon2 hashing."""

import pytest

from learnauth.service.errors import ValidationError, WeakPasswordError
from learnauth.service.passwords import (
    PasswordHashing,
    validate_email,
    validate_password_strength,
)


@pytest.fixture
def hashing():
    return PasswordHashing(cost=4)


class TestPasswordPolicy:
    @pytest.mark.parametrize("password", ["Passw0rd!", "NewPassw0rd!", "Aa1#aaaa", "Zz9 zz-zz"])
    def test_strong_passwords_accepted(self, password):
        assert validate_password_strength(password) == password

    @pytest.mark.parametrize(
        "password, rule",
        [
            ("Pa0!", "at least 8"),
            ("password0!", "uppercase"),
            ("PASSWORD0!", "lowercase"),
            ("Password!!", "digit"),
            ("Passw0rdd", "special"),
            ("Aa1!" + "a" * 200, "at most 128"),
        ],
    )
    def test_each_rule_enforced(self, password, rule):
        with pytest.raises(WeakPasswordError) as excinfo:
            validate_password_strength(password)

        assert any(rule in v for v in excinfo.value.violations)
        assert excinfo.value.error_code == "weak_password"

    @pytest.mark.parametrize("password", ["Passwordé1", "Passwörd12", "Pass wor1d"])
    def test_non_ascii_letters_and_spaces_are_not_special(self, password):
        with pytest.raises(WeakPasswordError) as excinfo:
            validate_password_strength(password)

        assert any("special" in v for v in excinfo.value.violations)

    def test_missing_password(self):
        with pytest.raises(WeakPasswordError):
            validate_password_strength(None)


class TestEmailValidation:
    def test_normalizes(self):
        assert validate_email("  Alice@Example.COM ") == "alice@example.com"

    @pytest.mark.parametrize(
        "email",
        ["", "no-at-sign", "@x.com", "a@", "a@localhost", "a b@x.com", "a@-x.com", None],
    )
    def test_rejects_bad_addresses(self, email):
        with pytest.raises(ValidationError):
            validate_email(email)


class TestPasswordHashing:
    def test_hash_is_salted_argon2id(self, hashing):
        first = hashing.hash("Passw0rd!")
        second = hashing.hash("Passw0rd!")

        assert first.startswith("$argon2id$")
        assert first != second
        assert "m=256" in first

    def test_verify(self, hashing):
        digest = hashing.hash("Passw0rd!")

        assert hashing.verify(digest, "Passw0rd!") is True
        assert hashing.verify(digest, "passw0rd!") is False

    def test_verify_garbage_hash(self, hashing):
        assert hashing.verify("not-a-hash", "Passw0rd!") is False

    def test_default_cost_matches_argon2_default(self):
        assert PasswordHashing()._hasher.memory_cost == 65536

    def test_needs_rehash_on_cost_change(self, hashing):
        digest = hashing.hash("Passw0rd!")

        assert hashing.needs_rehash(digest) is False
        assert PasswordHashing(cost=5).needs_rehash(digest) is True

    def test_burn_verification_does_not_raise(self, hashing):
        hashing.burn_verification("anything")
