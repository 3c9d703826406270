from __future__ import annotations

import json
import threading
import uuid
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional, Sequence

from bloggerhub.logging import get_logger
from bloggerhub.storage.errors import ConstraintViolation
from bloggerhub.storage.models import (
    DEFAULT_ROLES,
    RefreshTokenRecord,
    User,
    utcnow,
)


class MemoryStore:
    """In-memory backing store with JSON snapshots under ``fs_root/state``."""

    def __init__(self, fs_root: str = "/tmp/bloggerhub") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.refresh_tokens: Dict[str, RefreshTokenRecord] = {}
        # RLock so helpers can re-enter while a public method holds the lock
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "memory_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def ping(self) -> bool:
        return True

    # users
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
    ) -> User:
        with self._data_lock:
            for existing in self.users.values():
                if existing.username == username:
                    raise ConstraintViolation(
                        "username already exists", {"field": "username"}
                    )
                if existing.email == email:
                    raise ConstraintViolation("email already exists", {"field": "email"})
            now = utcnow()
            user = User(
                id=str(uuid.uuid4()),
                username=username,
                email=email,
                password_hash=password_hash,
                bio=bio,
                profile_picture=profile_picture,
                is_verified=is_verified,
                roles=list(roles) if roles else list(DEFAULT_ROLES),
                created_at=now,
                updated_at=now,
            )
            self.users[user.id] = user
            self._persist_state()
            return user

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            return next((u for u in self.users.values() if u.username == username), None)

    def username_exists(self, username: str) -> bool:
        return self.get_user_by_username(username) is not None

    def email_exists(self, email: str) -> bool:
        with self._data_lock:
            return any(u.email == email for u in self.users.values())

    def list_users(self, limit: int = 100) -> List[User]:
        with self._data_lock:
            return sorted(self.users.values(), key=lambda u: u.created_at)[:limit]

    # refresh tokens
    def create_refresh_token(self, owner_id: str) -> RefreshTokenRecord:
        with self._data_lock:
            if owner_id not in self.users:
                raise ConstraintViolation("user does not exist", {"field": "owner_id"})
            record = RefreshTokenRecord.new(owner_id)
            self.refresh_tokens[record.id] = record
            self._persist_state()
            return record

    def refresh_token_exists(self, token_id: str) -> bool:
        with self._data_lock:
            return token_id in self.refresh_tokens

    def delete_refresh_token(self, token_id: str) -> None:
        with self._data_lock:
            if self.refresh_tokens.pop(token_id, None) is not None:
                self._persist_state()

    def delete_user_refresh_tokens(self, owner_id: str) -> int:
        with self._data_lock:
            stale = [
                rid for rid, rec in self.refresh_tokens.items() if rec.owner_id == owner_id
            ]
            for rid in stale:
                self.refresh_tokens.pop(rid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def list_user_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]:
        with self._data_lock:
            return [rec for rec in self.refresh_tokens.values() if rec.owner_id == owner_id]

    # persistence
    def _persist_state(self) -> None:
        state = {
            "users": [self._serialize_user(u) for u in self.users.values()],
            "refresh_tokens": [
                self._serialize_refresh_token(r) for r in self.refresh_tokens.values()
            ],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}") from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {u["id"]: self._deserialize_user(u) for u in data.get("users", [])}
        self.refresh_tokens = {
            r["id"]: self._deserialize_refresh_token(r)
            for r in data.get("refresh_tokens", [])
            if r.get("owner_id") in self.users
        }
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            refresh_tokens=len(self.refresh_tokens),
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "email": user.email,
            "password_hash": user.password_hash,
            "bio": user.bio,
            "profile_picture": user.profile_picture,
            "is_verified": user.is_verified,
            "roles": list(user.roles),
            "created_at": self._serialize_datetime(user.created_at),
            "updated_at": self._serialize_datetime(user.updated_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=str(data["id"]),
            username=data["username"],
            email=data["email"],
            password_hash=data["password_hash"],
            bio=data.get("bio"),
            profile_picture=data.get("profile_picture"),
            is_verified=data.get("is_verified", False),
            roles=list(data.get("roles") or DEFAULT_ROLES),
            created_at=self._deserialize_datetime(data["created_at"]),
            updated_at=self._deserialize_datetime(
                data.get("updated_at", data["created_at"])
            ),
        )

    def _serialize_refresh_token(self, record: RefreshTokenRecord) -> dict:
        return {
            "id": record.id,
            "owner_id": record.owner_id,
            "created_at": self._serialize_datetime(record.created_at),
        }

    def _deserialize_refresh_token(self, data: dict) -> RefreshTokenRecord:
        return RefreshTokenRecord(
            id=str(data["id"]),
            owner_id=str(data["owner_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
        )
