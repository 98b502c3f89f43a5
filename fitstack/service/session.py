from __future__ import annotations

from dataclasses import dataclass
from datetime import timedelta
from typing import ContextManager, Optional, Protocol

from fitstack.config import EndpointClass
from fitstack.logging import get_logger
from fitstack.service.blacklist import TokenBlacklist
from fitstack.service.data_deletion import AccountDeletionScope, UserDataDeletionService
from fitstack.service.errors import (
    AuthenticationError,
    BadRequestError,
    InvalidTokenError,
    NotFoundError,
    RefreshTokenExpired,
    RefreshTokenNotFound,
)
from fitstack.service.oauth import IdentityProviderVerifier
from fitstack.service.passwords import CredentialVerifier
from fitstack.service.rate_limit import RateLimiter
from fitstack.service.refresh_tokens import RefreshTokenStore
from fitstack.service.tokens import TokenCodec
from fitstack.storage.errors import ConstraintViolation
from fitstack.storage.models import User

logger = get_logger(__name__)

INVALID_CREDENTIALS = "Invalid email or password"
EMAIL_TAKEN = "Email already registered"


class UserDirectory(Protocol):
    def create_user(
        self,
        email: str,
        password_hash: Optional[str] = None,
        *,
        provider_subject_id: Optional[str] = None,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def email_exists(self, email: str) -> bool: ...

    def get_user_by_provider_subject(self, subject_id: str) -> Optional[User]: ...

    def link_provider_subject(
        self,
        user_id: int,
        subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> Optional[User]: ...

    def delete_user(self, user_id: int) -> bool: ...

    def account_deletion(self, user_id: int) -> ContextManager[AccountDeletionScope]: ...


@dataclass
class AuthResult:
    access_token: str
    expires_in: int
    refresh_token: str
    refresh_expires_in: int
    user: User
    token_type: str = "bearer"


@dataclass(frozen=True)
class AuthContext:
    user_id: int
    email: str
    token_id: str


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer" or not value.strip():
        return None
    return value.strip()


class SessionService:
    """Register, login, refresh, logout and account deletion.

    Composes the rate limiter, token codec, refresh-token store and blacklist.
    Credential failures are reported with one generic message per endpoint
    so responses cannot be used to enumerate accounts.
    """

    def __init__(
        self,
        users: UserDirectory,
        *,
        codec: TokenCodec,
        refresh_tokens: RefreshTokenStore,
        blacklist: TokenBlacklist,
        rate_limiter: RateLimiter,
        credentials: CredentialVerifier,
        oauth: IdentityProviderVerifier,
        data_deletion: UserDataDeletionService,
        access_ttl: timedelta = timedelta(hours=24),
        remember_me_ttl: timedelta = timedelta(days=30),
    ) -> None:
        self.users = users
        self.codec = codec
        self.refresh_tokens = refresh_tokens
        self.blacklist = blacklist
        self.rate_limiter = rate_limiter
        self.credentials = credentials
        self.oauth = oauth
        self.data_deletion = data_deletion
        self.access_ttl = access_ttl
        self.remember_me_ttl = remember_me_ttl

    def _issue(self, user: User, access_ttl: Optional[timedelta] = None) -> AuthResult:
        ttl = access_ttl or self.access_ttl
        try:
            refresh = self.refresh_tokens.issue(user.id)
        except ConstraintViolation:
            # The account was deleted between lookup and issuance
            logger.warning("token_issue_user_missing", user_id=user.id)
            raise AuthenticationError(INVALID_CREDENTIALS) from None
        access = self.codec.issue(user.id, user.email, ttl)
        return AuthResult(
            access_token=access,
            expires_in=int(ttl.total_seconds()),
            refresh_token=refresh.token,
            refresh_expires_in=self.refresh_tokens.ttl_seconds,
            user=user,
        )

    def register(
        self,
        email: str,
        password: str,
        address: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        self.rate_limiter.ensure_allowed(address, EndpointClass.REGISTER)
        normalized = (email or "").strip().lower()
        if not normalized or not password:
            raise BadRequestError("email and password are required")

        if self.users.email_exists(normalized):
            self.rate_limiter.record_failure(address, EndpointClass.REGISTER)
            logger.warning("register_email_taken", address=address)
            raise BadRequestError(EMAIL_TAKEN)

        try:
            user = self.users.create_user(
                normalized,
                self.credentials.hash(password),
                first_name=first_name,
                last_name=last_name,
            )
        except ConstraintViolation:
            self.rate_limiter.record_failure(address, EndpointClass.REGISTER)
            logger.warning("register_email_taken", address=address)
            raise BadRequestError(EMAIL_TAKEN) from None

        self.rate_limiter.record_success(address, EndpointClass.REGISTER)
        logger.info("user_registered", user_id=user.id, address=address)
        return self._issue(user)

    def login(
        self, email: str, password: str, address: str, *, remember_me: bool = False
    ) -> AuthResult:
        self.rate_limiter.ensure_allowed(address, EndpointClass.LOGIN)
        user = self.users.get_user_by_email((email or "").strip())
        if user is None:
            self.credentials.dummy_verify(password or "")
            reason = "unknown_email"
        elif not self.credentials.verify(password or "", user.password_hash):
            reason = "bad_password"
        else:
            reason = None

        if reason is not None:
            self.rate_limiter.record_failure(address, EndpointClass.LOGIN)
            logger.warning("login_failed", address=address, reason=reason)
            raise AuthenticationError(INVALID_CREDENTIALS)

        self.rate_limiter.record_success(address, EndpointClass.LOGIN)
        logger.info("login_succeeded", user_id=user.id, address=address, remember_me=remember_me)
        return self._issue(user, self.remember_me_ttl if remember_me else self.access_ttl)

    def login_with_oauth(
        self,
        provider_token: Optional[str],
        claimed_email: str,
        provider_subject_id: str,
        *,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
    ) -> AuthResult:
        identity = self.oauth.verify(provider_token, claimed_email, provider_subject_id)
        user = self._find_or_create_oauth_user(
            identity.email, identity.subject_id, first_name, last_name
        )
        logger.info("oauth_login_succeeded", user_id=user.id)
        return self._issue(user)

    def _find_or_create_oauth_user(
        self,
        email: str,
        subject_id: str,
        first_name: Optional[str],
        last_name: Optional[str],
    ) -> User:
        user = self.users.get_user_by_provider_subject(subject_id)
        if user:
            return user
        for _ in range(2):
            existing = self.users.get_user_by_email(email)
            if existing:
                linked = self.users.link_provider_subject(
                    existing.id, subject_id, first_name=first_name, last_name=last_name
                )
                if linked:
                    logger.info("oauth_account_linked", user_id=linked.id)
                    return linked
            try:
                created = self.users.create_user(
                    email,
                    None,
                    provider_subject_id=subject_id,
                    first_name=first_name,
                    last_name=last_name,
                )
            except ConstraintViolation:
                # Lost a race with a concurrent registration; link instead
                continue
            logger.info("oauth_user_created", user_id=created.id)
            return created
        raise BadRequestError("token verification failed")

    def refresh(self, refresh_token: Optional[str], address: str) -> AuthResult:
        self.rate_limiter.ensure_allowed(address, EndpointClass.REFRESH)
        try:
            rotation = self.refresh_tokens.rotate(refresh_token)
        except (RefreshTokenNotFound, RefreshTokenExpired) as exc:
            self.rate_limiter.record_failure(address, EndpointClass.REFRESH)
            reason = "expired" if isinstance(exc, RefreshTokenExpired) else "not_found"
            logger.warning("refresh_failed", address=address, reason=reason)
            raise

        user = self.users.get_user(rotation.issued.user_id)
        if user is None:
            self.refresh_tokens.revoke_all(rotation.issued.user_id)
            self.rate_limiter.record_failure(address, EndpointClass.REFRESH)
            raise RefreshTokenNotFound()

        self.rate_limiter.record_success(address, EndpointClass.REFRESH)
        access = self.codec.issue(user.id, user.email, self.access_ttl)
        return AuthResult(
            access_token=access,
            expires_in=int(self.access_ttl.total_seconds()),
            refresh_token=rotation.issued.token,
            refresh_expires_in=self.refresh_tokens.ttl_seconds,
            user=user,
        )

    def logout(self, access_token: Optional[str]) -> None:
        """Blacklist the token and revoke the user's refresh tokens; never raises."""
        try:
            claims = self.codec.decode(access_token)
        except InvalidTokenError:
            logger.info("logout_unreadable_token")
            return
        try:
            self.blacklist.add(claims.token_id, claims.expires_at)
        except Exception as exc:
            logger.warning("logout_blacklist_failed", user_id=claims.user_id, error=str(exc))
        try:
            self.refresh_tokens.revoke_all(claims.user_id)
        except Exception as exc:
            logger.warning("logout_revoke_failed", user_id=claims.user_id, error=str(exc))
        logger.info("logout_completed", user_id=claims.user_id)

    def delete_account(self, user_id: int, current_access_token: Optional[str]) -> None:
        """Delete the user's domain rows, refresh tokens and user record as one unit.

        The store holds the user row for the whole deletion, so a concurrent
        login cannot slip a new refresh token in between the steps.
        """
        user = self.users.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")

        try:
            claims = self.codec.decode(current_access_token)
            self.blacklist.add(claims.token_id, claims.expires_at)
        except Exception as exc:
            logger.warning("delete_account_blacklist_failed", user_id=user_id, error=str(exc))

        with self.users.account_deletion(user_id) as scope:
            rows = self.data_deletion.within(scope).delete_all_user_data(user_id)
            tokens = scope.delete_refresh_tokens(user_id)
            if not scope.delete_user(user_id):
                # Removed concurrently; raising rolls back the transactional store
                raise NotFoundError("User not found")
        logger.info(
            "account_deleted", user_id=user_id, rows=sum(rows.values()), refresh_tokens=tokens
        )

    def authenticate(self, authorization_header: Optional[str]) -> Optional[AuthContext]:
        """Resolve a bearer header to an AuthContext, or None if unauthenticated."""
        token = extract_bearer(authorization_header)
        if token is None:
            return None
        try:
            claims = self.codec.verify(token)
        except InvalidTokenError:
            return None
        if self.blacklist.is_blacklisted(claims.token_id):
            logger.info("blacklisted_token_rejected", jti=claims.token_id)
            return None
        return AuthContext(
            user_id=claims.user_id, email=claims.subject_email, token_id=claims.token_id
        )
