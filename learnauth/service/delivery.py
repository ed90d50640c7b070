from __future__ import annotations

from typing import Protocol

from learnauth.logging import email_digest, get_logger

logger = get_logger(__name__)


class TokenDelivery(Protocol):
    """Out-of-band channel that gets raw verification/reset tokens to the user."""

    def send_email_verification(self, email: str, raw_token: str) -> None: ...

    def send_password_reset(self, email: str, raw_token: str) -> None: ...


class LoggingTokenDelivery:
    """Development channel: records that a token went out instead of mailing it.

    With ``log_raw_tokens`` the raw value is written under ``dev_code`` so a
    local user can finish the flow by hand. Never enable it in production.
    """

    def __init__(self, *, log_raw_tokens: bool = False) -> None:
        self.log_raw_tokens = log_raw_tokens

    def _emit(self, event: str, email: str, raw_token: str) -> None:
        fields = {"email_hash": email_digest(email)}
        if self.log_raw_tokens:
            fields["dev_code"] = raw_token
        logger.info(event, **fields)

    def send_email_verification(self, email: str, raw_token: str) -> None:
        self._emit("email_verification_dispatched", email, raw_token)

    def send_password_reset(self, email: str, raw_token: str) -> None:
        self._emit("password_reset_dispatched", email, raw_token)
