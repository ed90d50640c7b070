"""Tests for the error taxonomy, storage error translation and log redaction."""

import pytest

from learnauth.logging import _redact_pii, email_digest
from learnauth.service.errors import (
    AccountLockedError,
    AccountNotActiveError,
    ConflictError,
    EmailNotVerifiedError,
    InfrastructureError,
    InvalidCredentialsError,
    InvalidOrExpiredTokenError,
    InvalidTokenError,
    NotFoundError,
    ServiceError,
    ValidationError,
    WeakPasswordError,
    storage_errors,
)
from learnauth.storage.errors import ConstraintViolation, StorageUnavailable


class TestErrorTaxonomy:
    @pytest.mark.parametrize(
        "exc_cls, status, code",
        [
            (ValidationError, 400, "validation_error"),
            (WeakPasswordError, 400, "weak_password"),
            (ConflictError, 409, "conflict"),
            (InvalidCredentialsError, 401, "invalid_credentials"),
            (AccountLockedError, 403, "account_locked"),
            (EmailNotVerifiedError, 403, "email_not_verified"),
            (AccountNotActiveError, 403, "account_inactive"),
            (InvalidTokenError, 401, "invalid_token"),
            (InvalidOrExpiredTokenError, 400, "invalid_or_expired_token"),
            (NotFoundError, 404, "not_found"),
            (InfrastructureError, 503, "infrastructure_error"),
        ],
    )
    def test_status_and_code(self, exc_cls, status, code):
        exc = exc_cls("boom")

        assert isinstance(exc, ServiceError)
        assert exc.status_code == status
        assert exc.error_code == code

    def test_only_infrastructure_errors_are_retryable(self):
        assert InfrastructureError("x").retryable is True
        assert InvalidCredentialsError("x").retryable is False

    def test_weak_password_carries_violations(self):
        exc = WeakPasswordError("weak", violations=["a", "b"])

        assert exc.violations == ["a", "b"]
        assert exc.detail == {"violations": ["a", "b"]}


class TestStorageErrors:
    def test_storage_unavailable_translated(self):
        with pytest.raises(InfrastructureError) as excinfo:
            with storage_errors("lookup"):
                raise StorageUnavailable("db down")

        assert excinfo.value.detail == {"operation": "lookup"}
        assert isinstance(excinfo.value.__cause__, StorageUnavailable)

    def test_other_errors_pass_through(self):
        with pytest.raises(ConstraintViolation):
            with storage_errors("create"):
                raise ConstraintViolation("dup")


class TestLogRedaction:
    def test_secret_fields_redacted(self):
        event = _redact_pii(
            None,
            "info",
            {"event": "x", "password": "hunter2-long", "refresh_token": "abcdefghij"},
        )

        assert event["password"] == "hu***ng"
        assert event["refresh_token"] == "ab***ij"

    def test_digests_and_ids_untouched(self):
        digest = email_digest("A@x.com")
        event = _redact_pii(
            None, "info", {"event": "x", "email_hash": digest, "token_id": "row-12345"}
        )

        assert event["email_hash"] == digest
        assert event["token_id"] == "row-12345"

    def test_email_digest_is_case_insensitive(self):
        assert email_digest(" A@X.com") == email_digest("a@x.com")
