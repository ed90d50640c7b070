from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Callable, Optional

from learnauth.config import Settings
from learnauth.logging import get_logger
from learnauth.service.errors import InvalidTokenError, storage_errors
from learnauth.storage.common import hash_token, is_expired
from learnauth.storage.models import AccountStatus

if TYPE_CHECKING:
    from learnauth.service.auth import AuthStore

logger = get_logger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class TokenPair:
    access_token: str
    refresh_token: str
    expires_in: int
    refresh_expires_in: int
    token_type: str = "Bearer"

    def to_dict(self) -> dict[str, Any]:
        return {
            "access_token": self.access_token,
            "refresh_token": self.refresh_token,
            "token_type": self.token_type,
            "expires_in": self.expires_in,
            "refresh_expires_in": self.refresh_expires_in,
        }


class TokenIssuer:
    """Mints, verifies and rotates HS256 access/refresh tokens.

    Only the SHA-256 of a refresh token is stored. Rotation revokes the stored
    row with a compare-and-swap before anything new is minted, so a refresh
    token yields at most one successor.
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

    @property
    def access_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.access_token_ttl_minutes)

    @property
    def refresh_ttl(self) -> timedelta:
        return timedelta(minutes=self.settings.refresh_token_ttl_minutes)

    def issue_token_pair(
        self,
        account_id: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        now = self._now()
        access_exp = now + self.access_ttl
        refresh_exp = now + self.refresh_ttl
        access_token = self._encode_jwt(
            self._claims(account_id, "access", now, access_exp, str(uuid.uuid4()))
        )
        # Random jti keeps two refresh tokens minted in the same second distinct
        refresh_token = self._encode_jwt(
            self._claims(account_id, "refresh", now, refresh_exp, secrets.token_hex(32))
        )
        with storage_errors("issue_token_pair"):
            self.store.create_refresh_token(
                account_id,
                hash_token(refresh_token),
                refresh_exp,
                user_agent=user_agent,
                ip_address=ip_address,
            )
        return TokenPair(
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_expires_in=int(self.refresh_ttl.total_seconds()),
        )

    def verify_access_token(self, token: str) -> str:
        """Return the account id the access token was issued to."""
        payload = self._decode_jwt(token)
        if not payload or payload.get("token_type") != "access":
            raise InvalidTokenError("invalid or expired access token")
        subject = payload.get("sub")
        if not isinstance(subject, str) or not subject:
            raise InvalidTokenError("invalid or expired access token")
        return subject

    def rotate_refresh_token(
        self,
        raw_token: str,
        *,
        user_agent: Optional[str] = None,
        ip_address: Optional[str] = None,
    ) -> TokenPair:
        payload = self._decode_jwt(raw_token) if raw_token else None
        if not payload or payload.get("token_type") != "refresh":
            self.logger.warning("refresh_token_rejected", reason="malformed")
            raise InvalidTokenError("invalid refresh token")
        token_hash = hash_token(raw_token)
        now = self._now()
        with storage_errors("rotate_refresh_token"):
            record = self.store.get_refresh_token_by_hash(token_hash)
            if not record or not hmac.compare_digest(record.token_hash, token_hash):
                self.logger.warning("refresh_token_rejected", reason="unknown")
                raise InvalidTokenError("invalid refresh token")
            if record.account_id != payload.get("sub"):
                self.logger.warning("refresh_token_rejected", reason="subject_mismatch")
                raise InvalidTokenError("invalid refresh token")
            if record.revoked:
                self.logger.warning(
                    "refresh_token_reuse_detected",
                    account_id=record.account_id,
                    token_id=record.id,
                )
                raise InvalidTokenError("refresh token has been revoked")
            if is_expired(record.expires_at, now):
                raise InvalidTokenError("refresh token has expired")
            account = self.store.get_account(record.account_id)
            if not account or account.status != AccountStatus.ACTIVE:
                self.logger.warning(
                    "refresh_token_rejected",
                    reason="account_inactive",
                    account_id=record.account_id,
                )
                raise InvalidTokenError("invalid refresh token")
            if not self.store.revoke_refresh_token_if_active(record.id, now=now):
                # Lost the race to a concurrent rotation of the same token
                self.logger.warning(
                    "refresh_token_rotation_conflict",
                    account_id=record.account_id,
                    token_id=record.id,
                )
                raise InvalidTokenError("refresh token has been revoked")
        tokens = self.issue_token_pair(
            record.account_id,
            user_agent=user_agent or record.user_agent,
            ip_address=ip_address or record.ip_address,
        )
        self.logger.info(
            "refresh_token_rotated", account_id=record.account_id, token_id=record.id
        )
        return tokens

    def _claims(
        self,
        account_id: str,
        token_type: str,
        issued_at: datetime,
        expires_at: datetime,
        jti: str,
    ) -> dict[str, Any]:
        return {
            "iss": self.settings.jwt_issuer,
            "aud": self.settings.jwt_audience,
            "sub": account_id,
            "token_type": token_type,
            "jti": jti,
            "iat": int(issued_at.timestamp()),
            "exp": int(expires_at.timestamp()),
        }

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(
                self.settings.jwt_secret.encode(),
                signing_input.encode(),
                hashlib.sha256,
            ).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> Optional[dict[str, Any]]:
        if not isinstance(token, str):
            return None
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            return None

        # HS256 only
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_header_decode_failed", error=str(exc))
            return None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return None

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            return None
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return None
        if not isinstance(payload, dict):
            return None
        if payload.get("iss") != self.settings.jwt_issuer:
            return None
        aud = payload.get("aud")
        valid_aud = False
        if isinstance(aud, str):
            valid_aud = aud == self.settings.jwt_audience
        elif isinstance(aud, list):
            valid_aud = self.settings.jwt_audience in aud
        if not valid_aud:
            return None
        exp = payload.get("exp")
        if not exp:
            return None
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError):
            return None
        if exp_ts <= self._now().timestamp():
            return None
        return payload
