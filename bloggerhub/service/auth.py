from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional, Protocol, Sequence

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerifyMismatchError

from bloggerhub.logging import get_logger
from bloggerhub.service.errors import (
    AuthenticationFailed,
    DuplicateEmail,
    DuplicateUsername,
    InvalidToken,
    UserNotFound,
)
from bloggerhub.service.tokens import TokenCodec
from bloggerhub.storage.errors import ConstraintViolation
from bloggerhub.storage.models import RefreshTokenRecord, Role, User, authorities_of

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(
        self,
        username: str,
        email: str,
        password_hash: str,
        *,
        bio: Optional[str] = None,
        profile_picture: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
        is_verified: bool = False,
    ) -> User: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def username_exists(self, username: str) -> bool: ...

    def email_exists(self, email: str) -> bool: ...

    def list_users(self, limit: int = 100) -> List[User]: ...

    def create_refresh_token(self, owner_id: str) -> RefreshTokenRecord: ...

    def refresh_token_exists(self, token_id: str) -> bool: ...

    def delete_refresh_token(self, token_id: str) -> None: ...

    def delete_user_refresh_tokens(self, owner_id: str) -> int: ...


@dataclass
class AuthContext:
    """Authenticated identity attached to a request by the gate."""

    user_id: str
    username: str
    roles: List[str] = field(default_factory=list)
    authorities: frozenset[str] = frozenset()

    def has_authority(self, authority: str) -> bool:
        return authority in self.authorities

    @classmethod
    def for_user(cls, user: User) -> "AuthContext":
        return cls(
            user_id=user.id,
            username=user.username,
            roles=list(user.roles),
            authorities=authorities_of(user.roles),
        )


@dataclass
class TokenPair:
    user_id: str
    access_token: str
    refresh_token: str


class AuthService:
    """Login, signup, logout and token refresh/rotation over a user store.

    A refresh token is honoured only when its signature, issuer and expiry
    check out AND its ``tokenId`` still names a stored refresh record. Revoking
    a refresh token therefore means deleting its record.
    """

    def __init__(self, store: AuthStore, tokens: TokenCodec) -> None:
        self.store: AuthStore = store
        self.tokens = tokens
        self._pwd_hasher = PasswordHasher(type=Type.ID)
        self.logger = logger

    # passwords
    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify_password(self, user: User, password: str) -> bool:
        try:
            return self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError):
            return False

    def _issue(self, user: User) -> TokenPair:
        record = self.store.create_refresh_token(user.id)
        return TokenPair(
            user_id=user.id,
            access_token=self.tokens.mint_access_token(user.id),
            refresh_token=self.tokens.mint_refresh_token(user.id, record.id),
        )

    def login(self, username: str, password: str) -> TokenPair:
        user = self.store.get_user_by_username(username)
        if not user or not self.verify_password(user, password):
            self.logger.warning("login_failed", reason="bad_credentials")
            raise AuthenticationFailed()
        pair = self._issue(user)
        self.logger.info("login_succeeded", user_id=user.id)
        return pair

    def signup(
        self,
        username: str,
        email: str,
        password: str,
        *,
        bio: Optional[str] = None,
        profile_picture: Optional[str] = None,
    ) -> TokenPair:
        user = self.create_user(
            username,
            email,
            password,
            bio=bio,
            profile_picture=profile_picture,
        )
        pair = self._issue(user)
        self.logger.info("signup_succeeded", user_id=user.id)
        return pair

    def create_user(
        self,
        username: str,
        email: str,
        password: str,
        *,
        bio: Optional[str] = None,
        profile_picture: Optional[str] = None,
        roles: Optional[Sequence[str]] = None,
    ) -> User:
        """Create an account after the duplicate checks; no tokens are issued."""
        if self.store.username_exists(username):
            raise DuplicateUsername()
        if self.store.email_exists(email):
            raise DuplicateEmail()
        try:
            return self.store.create_user(
                username,
                email,
                self.hash_password(password),
                bio=bio,
                profile_picture=profile_picture,
                roles=list(roles) if roles else [Role.FREE_USER.value],
            )
        except ConstraintViolation as exc:
            # Lost a race against a concurrent signup
            if exc.field == "email":
                raise DuplicateEmail() from exc
            raise DuplicateUsername() from exc

    def _check_refresh_token(self, refresh_token: str) -> tuple[str, str]:
        """Run the signature and store checks; return ``(subject, token_id)``."""
        if not self.tokens.verify_refresh_token(refresh_token):
            raise InvalidToken()
        token_id = self.tokens.token_id_of_refresh_token(refresh_token)
        if not self.store.refresh_token_exists(token_id):
            self.logger.info("refresh_token_revoked", refresh_token_id=token_id)
            raise InvalidToken()
        return self.tokens.subject_of_refresh_token(refresh_token), token_id

    def _resolve_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            self.logger.warning("token_subject_missing", user_id=user_id)
            raise UserNotFound()
        return user

    def logout(self, refresh_token: str) -> None:
        subject, token_id = self._check_refresh_token(refresh_token)
        self.store.delete_refresh_token(token_id)
        self.logger.info("logout", user_id=subject)

    def logout_all(self, refresh_token: str) -> int:
        subject, _ = self._check_refresh_token(refresh_token)
        revoked = self.store.delete_user_refresh_tokens(subject)
        self.logger.info("logout_all", user_id=subject, revoked=revoked)
        return revoked

    def refresh_access_token(self, refresh_token: str) -> TokenPair:
        """Mint a new access token; the refresh token is returned unchanged."""
        subject, _ = self._check_refresh_token(refresh_token)
        user = self._resolve_user(subject)
        return TokenPair(
            user_id=user.id,
            access_token=self.tokens.mint_access_token(user.id),
            refresh_token=refresh_token,
        )

    def rotate_refresh_token(self, refresh_token: str) -> TokenPair:
        """Replace the presented refresh token with a new one.

        The old record is deleted before the new one is created, so the old
        token stops working even if minting fails afterwards.
        """
        subject, token_id = self._check_refresh_token(refresh_token)
        user = self._resolve_user(subject)
        self.store.delete_refresh_token(token_id)
        pair = self._issue(user)
        self.logger.info("refresh_token_rotated", user_id=user.id)
        return pair

    # request authentication
    @staticmethod
    def _extract_bearer(header: Optional[str]) -> Optional[str]:
        if not header:
            return None
        scheme, _, token = header.strip().partition(" ")
        if scheme.lower() != "bearer":
            return None
        token = token.strip()
        return token or None

    def authenticate(self, authorization: Optional[str]) -> Optional[AuthContext]:
        """Resolve an ``Authorization`` header to an identity, or None.

        Missing or malformed headers, invalid or expired tokens, and tokens
        whose subject no longer exists all yield None. Store failures propagate;
        the request gate downgrades them to unauthenticated.
        """
        token = self._extract_bearer(authorization)
        if not token:
            return None
        if not self.tokens.verify_access_token(token):
            return None
        user_id = self.tokens.subject_of_access_token(token)
        user = self.store.get_user(user_id)
        if not user:
            self.logger.info("access_token_subject_missing", user_id=user_id)
            return None
        return AuthContext.for_user(user)

    def list_users(self, limit: int = 100) -> List[User]:
        return self.store.list_users(limit=limit)
