from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

import httpx

from fitstack.logging import get_logger
from fitstack.service.errors import BadRequestError

logger = get_logger(__name__)

VERIFICATION_FAILED = "token verification failed"


@dataclass(frozen=True)
class VerifiedIdentity:
    email: str
    subject_id: str


class IdentityProviderVerifier:
    """Checks a caller-supplied provider token against the tokeninfo endpoint.

    Every failure mode (network, timeout, bad status, audience or email
    mismatch) surfaces as the same BadRequestError so callers cannot tell
    which check rejected them.
    """

    def __init__(
        self,
        client_id: Optional[str],
        *,
        tokeninfo_url: str = "https://www.googleapis.com/oauth2/v3/tokeninfo",
        timeout_seconds: float = 5.0,
        max_retries: int = 2,
        client: Optional[httpx.Client] = None,
    ) -> None:
        self.client_id = client_id
        self.tokeninfo_url = tokeninfo_url
        self.max_retries = max_retries
        self._client = client or httpx.Client(
            timeout=httpx.Timeout(timeout_seconds), follow_redirects=False
        )

    def _fetch_tokeninfo(self, provider_token: str) -> Optional[dict[str, Any]]:
        attempts = self.max_retries + 1
        for attempt in range(1, attempts + 1):
            try:
                response = self._client.get(
                    self.tokeninfo_url, params={"access_token": provider_token}
                )
            except httpx.TimeoutException:
                logger.warning("oauth_tokeninfo_timeout", attempt=attempt)
                continue
            except httpx.TransportError as exc:
                logger.warning("oauth_tokeninfo_transport_error", attempt=attempt, error=str(exc))
                continue
            if response.status_code >= 500:
                logger.warning(
                    "oauth_tokeninfo_server_error", attempt=attempt, status=response.status_code
                )
                continue
            if response.status_code != 200:
                # Rejected by the provider; retrying will not change the answer
                logger.warning("oauth_tokeninfo_rejected", status=response.status_code)
                return None
            try:
                payload = response.json()
            except ValueError:
                logger.warning("oauth_tokeninfo_parse_error")
                return None
            return payload if isinstance(payload, dict) else None
        logger.error("oauth_tokeninfo_unavailable", attempts=attempts)
        return None

    def verify(
        self, provider_token: Optional[str], claimed_email: str, claimed_subject_id: str
    ) -> VerifiedIdentity:
        if not self.client_id:
            logger.error("oauth_client_id_missing")
            raise BadRequestError(VERIFICATION_FAILED)
        if not provider_token or not claimed_email or not claimed_subject_id:
            raise BadRequestError(VERIFICATION_FAILED)

        info = self._fetch_tokeninfo(provider_token)
        if info is None:
            raise BadRequestError(VERIFICATION_FAILED)

        # Access tokens carry the client in azp; ID tokens in aud
        if info.get("aud") != self.client_id and info.get("azp") != self.client_id:
            logger.warning("oauth_audience_mismatch", aud=info.get("aud"), azp=info.get("azp"))
            raise BadRequestError(VERIFICATION_FAILED)

        token_email = info.get("email")
        if not isinstance(token_email, str) or token_email.lower() != claimed_email.lower():
            logger.warning("oauth_email_mismatch")
            raise BadRequestError(VERIFICATION_FAILED)

        token_subject = info.get("sub")
        if token_subject is not None and str(token_subject) != claimed_subject_id:
            logger.warning("oauth_subject_mismatch")
            raise BadRequestError(VERIFICATION_FAILED)

        return VerifiedIdentity(email=token_email.lower(), subject_id=claimed_subject_id)

    def close(self) -> None:
        self._client.close()
