from __future__ import annotations

from ipaddress import ip_address
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request, status

from fitstack.api.schemas import (
    AuthResponse,
    CurrentUserResponse,
    DeleteAccountRequest,
    Envelope,
    GoogleAuthRequest,
    LoginRequest,
    MessageResponse,
    RefreshRequest,
    RegisterRequest,
    UserSummary,
)
from fitstack.logging import get_logger
from fitstack.service.runtime import get_runtime
from fitstack.service.session import AuthContext, AuthResult, extract_bearer

logger = get_logger(__name__)

router = APIRouter(prefix="/api/users")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _valid_ip(value: str) -> Optional[str]:
    try:
        return str(ip_address(value.strip()))
    except ValueError:
        return None


def get_client_address(request: Request) -> str:
    """Caller address for throttling.

    Forwarded headers are honored only when the direct peer is a configured
    trusted proxy; otherwise a client could pick its own rate-limit key.
    """
    peer = request.client.host if request.client else "unknown"
    trusted = get_runtime().settings.trusted_proxy_ips
    if peer not in trusted:
        return peer
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        first_hop = _valid_ip(forwarded.split(",")[0])
        if first_hop:
            return first_hop
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        candidate = _valid_ip(real_ip)
        if candidate:
            return candidate
    return peer


def get_current_user(authorization: Optional[str] = Header(None)) -> AuthContext:
    ctx = get_runtime().session.authenticate(authorization)
    if not ctx:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    return ctx


def _auth_payload(result: AuthResult) -> AuthResponse:
    user = result.user
    return AuthResponse(
        access_token=result.access_token,
        token_type=result.token_type,
        expires_in=result.expires_in,
        refresh_token=result.refresh_token,
        refresh_expires_in=result.refresh_expires_in,
        user=UserSummary(
            id=user.id,
            email=user.email,
            first_name=user.first_name,
            last_name=user.last_name,
            is_oauth_user=user.is_oauth_user,
        ),
    )


@router.post(
    "/register",
    response_model=Envelope,
    status_code=status.HTTP_201_CREATED,
    tags=["auth"],
)
def register(body: RegisterRequest, address: str = Depends(get_client_address)):
    """Create a password account and return a token pair.

    Raises:
        400: If the email is already registered
        429: If this address has too many failed registrations
    """
    result = get_runtime().session.register(
        body.email,
        body.password,
        address,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/login", response_model=Envelope, tags=["auth"])
def login(body: LoginRequest, address: str = Depends(get_client_address)):
    """Authenticate with email and password.

    Raises:
        401: If credentials are invalid
        429: If this address is locked out
    """
    result = get_runtime().session.login(
        body.email, body.password, address, remember_me=body.remember_me
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/oauth/google", response_model=Envelope, tags=["auth"])
def google_login(body: GoogleAuthRequest):
    result = get_runtime().session.login_with_oauth(
        body.id_token,
        body.email,
        body.google_id,
        first_name=body.first_name,
        last_name=body.last_name,
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/refresh", response_model=Envelope, tags=["auth"])
def refresh(body: RefreshRequest, address: str = Depends(get_client_address)):
    """Exchange a refresh token for a new pair; the presented token is spent."""
    result = get_runtime().session.refresh(body.refresh_token, address)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/logout", response_model=Envelope, tags=["auth"])
def logout(authorization: Optional[str] = Header(None)):
    token = extract_bearer(authorization)
    if token:
        get_runtime().session.logout(token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out successfully"))


@router.get("/me", response_model=Envelope, tags=["auth"])
def current_user(principal: AuthContext = Depends(get_current_user)):
    return Envelope(
        status="ok",
        data=CurrentUserResponse(user_id=principal.user_id, email=principal.email),
    )


@router.delete("/account", response_model=Envelope, tags=["auth"])
def delete_account(
    body: Optional[DeleteAccountRequest] = None,
    authorization: Optional[str] = Header(None),
    principal: AuthContext = Depends(get_current_user),
):
    """Delete the caller's account and every row that belongs to it.

    The confirmation phrase is checked client-side; no password is asked for
    so OAuth-only accounts can be deleted too.
    """
    get_runtime().session.delete_account(principal.user_id, extract_bearer(authorization))
    return Envelope(status="ok", data=MessageResponse(message="Account deleted successfully"))
