from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Optional
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from bloggerhub.storage.models import User

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "invalid_token",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


class ErrorBody(BaseModel):
    """Error envelope body with a stable, machine-readable code."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """Response envelope shared by every endpoint."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class CamelModel(BaseModel):
    """Accepts and emits camelCase field names on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


def _normalize_unicode(value: str) -> str:
    """NFKC-normalize and strip zero-width and bidi-override characters."""
    zero_width = "\u200b\u200c\u200d\ufeff"
    bidi_overrides = {chr(c) for c in range(0x202A, 0x202F)}
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in value if c not in zero_width and c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def _validate_email(value: str) -> str:
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = _normalize_unicode(value.strip().lower())
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain:
        raise ValueError("invalid email address")
    if len(local) > 64:
        raise ValueError("email local part too long")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    domain_parts = domain.split(".")
    if len(domain_parts) < 2:
        raise ValueError("invalid email address format")
    for label in domain_parts:
        if len(label) > 63 or not _EMAIL_DOMAIN_LABEL.match(label):
            raise ValueError("invalid email address format")
    return normalized


_USERNAME_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")


def _validate_username(value: str) -> str:
    """Alphanumeric with underscores/hyphens, 3 to 64 characters."""
    value = _normalize_unicode(value.strip())
    if len(value) < 3:
        raise ValueError("username must be at least 3 characters")
    if len(value) > 64:
        raise ValueError("username must be at most 64 characters")
    if not _USERNAME_PATTERN.match(value):
        raise ValueError(
            "username must contain only alphanumeric characters, underscores, and hyphens"
        )
    return value


def _validate_password_strength(value: str) -> str:
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    return value


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=64)
    password: str = Field(..., min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _normalize_login_username(cls, value: str) -> str:
        # Same canonical form signup stores
        return _normalize_unicode(value.strip())


class SignupRequest(CamelModel):
    username: str
    email: str
    password: str
    bio: Optional[str] = Field(default=None, max_length=2000)
    profile_picture: Optional[str] = Field(default=None, max_length=2048)

    @field_validator("username")
    @classmethod
    def _validate_signup_username(cls, value: str) -> str:
        return _validate_username(value)

    @field_validator("email")
    @classmethod
    def _validate_signup_email(cls, value: str) -> str:
        return _validate_email(value)

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class RefreshTokenRequest(CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class TokenResponse(CamelModel):
    user_id: str
    access_token: str
    refresh_token: str


class MessageResponse(CamelModel):
    message: str


class LogoutAllResponse(MessageResponse):
    revoked: int


class UserResponse(CamelModel):
    id: str
    username: str
    email: str
    bio: Optional[str] = None
    profile_picture: Optional[str] = None
    roles: List[str]
    is_verified: bool = False
    created_at: datetime

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            username=user.username,
            email=user.email,
            bio=user.bio,
            profile_picture=user.profile_picture,
            roles=list(user.roles),
            is_verified=user.is_verified,
            created_at=user.created_at,
        )


class UserListResponse(CamelModel):
    items: List[UserResponse]
