from __future__ import annotations

import asyncio
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, Request, Response

from bloggerhub.api.schemas import (
    Envelope,
    LoginRequest,
    LogoutAllResponse,
    MessageResponse,
    RefreshTokenRequest,
    SignupRequest,
    TokenResponse,
    UserListResponse,
    UserResponse,
)
from bloggerhub.logging import get_logger
from bloggerhub.service.auth import AuthContext, TokenPair
from bloggerhub.service.errors import RateLimitedError
from bloggerhub.service.runtime import check_rate_limit, get_runtime
from bloggerhub.storage.models import Role

logger = get_logger(__name__)

router = APIRouter(prefix="/api")


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    headers = {"WWW-Authenticate": "Bearer"} if status_code == 401 else None
    return HTTPException(status_code=status_code, detail=payload, headers=headers)


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime, key: str, limit: int, window_seconds: int, *, response: Optional[Response] = None
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError if the rate limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", scope=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "rate limit exceeded", detail={"retry_after_seconds": reset_seconds}
        )
    return info


def get_principal(request: Request) -> AuthContext:
    """Require the identity attached by the authentication middleware."""
    principal = getattr(request.state, "principal", None)
    if principal is None:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return principal


def get_admin_principal(principal: AuthContext = Depends(get_principal)) -> AuthContext:
    if not principal.has_authority(Role.ADMIN_USER.value):
        raise _http_error("forbidden", "admin access required", status_code=403)
    return principal


def _token_envelope(pair: TokenPair) -> Envelope:
    return Envelope(
        status="ok",
        data=TokenResponse(
            user_id=pair.user_id,
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
        ).to_wire(),
    )


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, response: Response):
    """Exchange a username and password for an access/refresh token pair.

    Raises:
        401: If the credentials do not match an account
        429: If the rate limit for this username is exceeded
    """
    runtime = get_runtime()
    await _enforce_rate_limit(
        runtime,
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        60,
        response=response,
    )
    # argon2 verification and store I/O stay off the event loop
    pair = await asyncio.to_thread(runtime.auth.login, body.username, body.password)
    return _token_envelope(pair)


@router.post("/auth/signup", response_model=Envelope, tags=["auth"])
async def signup(body: SignupRequest, response: Response):
    """Register an account and log it in.

    Raises:
        403: If signup is disabled in settings
        409: If the username or email is already registered
        429: If the rate limit for this email is exceeded
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    pair = await asyncio.to_thread(
        runtime.auth.signup,
        body.username,
        body.email,
        body.password,
        bio=body.bio,
        profile_picture=body.profile_picture,
    )
    return _token_envelope(pair)


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(body: RefreshTokenRequest):
    """Revoke the presented refresh token.

    Raises:
        401: If the refresh token is invalid, expired or already revoked
    """
    runtime = get_runtime()
    await asyncio.to_thread(runtime.auth.logout, body.refresh_token)
    return Envelope(status="ok", data=MessageResponse(message="Logged out").to_wire())


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(body: RefreshTokenRequest):
    """Revoke every refresh token owned by the presented token's user.

    Raises:
        401: If the refresh token is invalid, expired or already revoked
    """
    runtime = get_runtime()
    revoked = await asyncio.to_thread(runtime.auth.logout_all, body.refresh_token)
    return Envelope(
        status="ok",
        data=LogoutAllResponse(message="Logged out from all", revoked=revoked).to_wire(),
    )


@router.post("/auth/access-token", response_model=Envelope, tags=["auth"])
async def access_token(body: RefreshTokenRequest):
    """Mint a fresh access token; the refresh token is echoed back unchanged.

    Raises:
        401: If the refresh token is invalid or its user no longer exists
    """
    runtime = get_runtime()
    pair = await asyncio.to_thread(runtime.auth.refresh_access_token, body.refresh_token)
    return _token_envelope(pair)


@router.post("/auth/refresh-token", response_model=Envelope, tags=["auth"])
async def refresh_token(body: RefreshTokenRequest):
    """Rotate the refresh token; the presented one stops working.

    Raises:
        401: If the refresh token is invalid or its user no longer exists
    """
    runtime = get_runtime()
    pair = await asyncio.to_thread(runtime.auth.rotate_refresh_token, body.refresh_token)
    return _token_envelope(pair)


@router.get("/users/health", response_model=Envelope, tags=["users"])
async def users_health():
    return Envelope(
        status="ok", data=MessageResponse(message="Service is up and running").to_wire()
    )


@router.post("/users/sign-up", response_model=Envelope, status_code=201, tags=["users"])
async def register_user(body: SignupRequest, response: Response):
    """Register an account without logging it in.

    Raises:
        403: If signup is disabled in settings
        409: If the username or email is already registered
        429: If the rate limit for this email is exceeded
    """
    runtime = get_runtime()
    if not runtime.settings.allow_signup:
        raise _http_error("forbidden", "signup disabled", status_code=403)
    await _enforce_rate_limit(
        runtime,
        f"signup:{body.email}",
        runtime.settings.signup_rate_limit_per_minute,
        60,
        response=response,
    )
    user = await asyncio.to_thread(
        runtime.auth.create_user,
        body.username,
        body.email,
        body.password,
        bio=body.bio,
        profile_picture=body.profile_picture,
    )
    return Envelope(
        status="ok",
        data={
            "message": "User registered successfully. Please verify your email.",
            "user": UserResponse.from_user(user).to_wire(),
        },
    )


@router.get("/users/me", response_model=Envelope, tags=["users"])
async def get_me(principal: AuthContext = Depends(get_principal)):
    """Return the authenticated user's profile.

    Raises:
        401: If the request carries no valid access token
    """
    runtime = get_runtime()
    user = await asyncio.to_thread(runtime.store.get_user, principal.user_id)
    if not user:
        raise _http_error("unauthorized", "Unauthorized", status_code=401)
    return Envelope(status="ok", data=UserResponse.from_user(user).to_wire())


@router.get("/users", response_model=Envelope, tags=["users"])
async def list_users(
    limit: int = Query(100, ge=1, le=500),
    principal: AuthContext = Depends(get_admin_principal),
):
    """List registered users.

    Raises:
        401: If the request carries no valid access token
        403: If the caller lacks the ADMIN_USER authority
    """
    runtime = get_runtime()
    users = await asyncio.to_thread(runtime.auth.list_users, limit=limit)
    return Envelope(
        status="ok",
        data=UserListResponse(items=[UserResponse.from_user(u) for u in users]).to_wire(),
    )
