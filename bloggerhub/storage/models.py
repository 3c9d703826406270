from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """Account roles; each role's name doubles as its authority."""

    FREE_USER = "FREE_USER"
    PREMIUM_USER = "PREMIUM_USER"
    ADMIN_USER = "ADMIN_USER"


DEFAULT_ROLES: tuple[str, ...] = (Role.FREE_USER.value,)


@dataclass
class User:
    id: str
    username: str
    email: str
    password_hash: str
    bio: Optional[str] = None
    profile_picture: Optional[str] = None
    is_verified: bool = False
    roles: List[str] = field(default_factory=lambda: list(DEFAULT_ROLES))
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class RefreshTokenRecord:
    """Server-side half of a refresh token; deleting it revokes the token."""

    id: str
    owner_id: str
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, owner_id: str) -> "RefreshTokenRecord":
        return cls(id=str(uuid.uuid4()), owner_id=owner_id)


def authorities_of(roles: Iterable[str]) -> frozenset[str]:
    """Map role names to authority names, ignoring anything that is not a Role."""
    known = {role.value for role in Role}
    return frozenset(name for name in roles if name in known)
