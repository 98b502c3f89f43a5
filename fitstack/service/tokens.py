from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from fitstack.logging import get_logger
from fitstack.service.errors import ConfigurationError, InvalidTokenError
from fitstack.storage.models import utcnow

logger = get_logger(__name__)

MIN_SECRET_BYTES = 32
_ALGORITHM = "HS256"


@dataclass(frozen=True)
class AccessClaims:
    subject_email: str
    user_id: int
    token_id: str
    issued_at: datetime
    expires_at: datetime


def validate_signing_key(secret: Optional[str]) -> bytes:
    """Return the signing key bytes or raise ConfigurationError.

    A missing or short key is fatal: the service must not start with a
    signing key an attacker could brute force.
    """
    if not secret:
        raise ConfigurationError("JWT_SECRET is not set")
    key = secret.encode("utf-8")
    if len(key) < MIN_SECRET_BYTES:
        raise ConfigurationError(
            f"JWT_SECRET must be at least {MIN_SECRET_BYTES} bytes (got {len(key)})"
        )
    if len(set(secret)) < 10:
        logger.warning("jwt_secret_low_entropy", distinct_chars=len(set(secret)))
    return key


class TokenCodec:
    """Issues and checks HS256-signed access tokens."""

    def __init__(
        self,
        secret: Optional[str],
        *,
        issuer: str = "fitstack",
        now: Callable[[], datetime] = utcnow,
    ) -> None:
        self._key = validate_signing_key(secret)
        self.issuer = issuer
        self._now = now

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._key, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue(self, user_id: int, subject_email: str, ttl: timedelta) -> str:
        issued = int(self._now().timestamp())
        payload = {
            "sub": subject_email,
            "uid": user_id,
            "jti": str(uuid.uuid4()),
            "iat": issued,
            "exp": issued + int(ttl.total_seconds()),
            "iss": self.issuer,
        }
        header = {"alg": _ALGORITHM, "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def decode(self, token: Optional[str]) -> AccessClaims:
        """Check signature and structure and return the claims.

        Expiry is not enforced here so that logout and account deletion can
        still read the token id of a token that is about to lapse.
        """
        if not token or not isinstance(token, str):
            raise InvalidTokenError()
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise InvalidTokenError() from None

        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError() from None
        if not isinstance(header, dict) or header.get("alg") != _ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError()

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode()):
            raise InvalidTokenError()

        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError() from None
        return self._claims_from_payload(payload)

    def _claims_from_payload(self, payload: Any) -> AccessClaims:
        if not isinstance(payload, dict) or payload.get("iss") != self.issuer:
            raise InvalidTokenError()
        try:
            subject = payload["sub"]
            user_id = payload["uid"]
            token_id = payload["jti"]
            issued_at = datetime.fromtimestamp(int(payload["iat"]), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(int(payload["exp"]), tz=timezone.utc)
        except (KeyError, TypeError, ValueError, OverflowError, OSError):
            raise InvalidTokenError() from None
        if (
            not isinstance(subject, str)
            or not isinstance(token_id, str)
            or not isinstance(user_id, int)
            or isinstance(user_id, bool)
        ):
            raise InvalidTokenError()
        return AccessClaims(
            subject_email=subject,
            user_id=user_id,
            token_id=token_id,
            issued_at=issued_at,
            expires_at=expires_at,
        )

    def is_expired(self, claims: AccessClaims) -> bool:
        return self._now() >= claims.expires_at

    def verify(self, token: Optional[str]) -> AccessClaims:
        """Strict check: signature, structure and expiry."""
        claims = self.decode(token)
        if self.is_expired(claims):
            raise InvalidTokenError()
        return claims
