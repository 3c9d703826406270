from __future__ import annotations

import uuid
from pathlib import Path
from typing import Any, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from bloggerhub.logging import get_logger
from bloggerhub.storage.errors import ConstraintViolation
from bloggerhub.storage.models import (
    DEFAULT_ROLES,
    RefreshTokenRecord,
    User,
    utcnow,
)

_SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS blog_user (
        id UUID PRIMARY KEY,
        username TEXT NOT NULL,
        email TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        bio TEXT,
        profile_picture TEXT,
        is_verified BOOLEAN NOT NULL DEFAULT FALSE,
        roles TEXT[] NOT NULL DEFAULT ARRAY['FREE_USER'],
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        CONSTRAINT blog_user_username_key UNIQUE (username),
        CONSTRAINT blog_user_email_key UNIQUE (email)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS refresh_token (
        id UUID PRIMARY KEY,
        owner_id UUID NOT NULL REFERENCES blog_user(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS refresh_token_owner_idx ON refresh_token (owner_id)",
)

_CONSTRAINT_FIELDS = {
    "blog_user_username_key": "username",
    "blog_user_email_key": "email",
}


class PostgresStore:
    """Postgres-backed store for users and refresh-token records."""

    def __init__(self, dsn: str, fs_root: str) -> None:
        self.dsn = dsn
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=2,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def _ensure_schema(self) -> None:
        """Create the user and refresh-token tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA_STATEMENTS:
                conn.execute(statement)

    def close(self) -> None:
        self.pool.close()

    def ping(self) -> bool:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()
        return True

    @staticmethod
    def _row_to_user(row: dict[str, Any]) -> User:
        return User(
            id=str(row["id"]),
            username=row["username"],
            email=row["email"],
            password_hash=row["password_hash"],
            bio=row.get("bio"),
            profile_picture=row.get("profile_picture"),
            is_verified=bool(row.get("is_verified", False)),
            roles=list(row.get("roles") or DEFAULT_ROLES),
            created_at=row.get("created_at") or utcnow(),
            updated_at=row.get("updated_at") or row.get("created_at") or utcnow(),
        )

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
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO blog_user (id, username, email, password_hash, bio, profile_picture, is_verified, roles, created_at, updated_at)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        user.id,
                        user.username,
                        user.email,
                        user.password_hash,
                        user.bio,
                        user.profile_picture,
                        user.is_verified,
                        user.roles,
                        user.created_at,
                        user.updated_at,
                    ),
                )
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None)
            field = _CONSTRAINT_FIELDS.get(constraint or "", "username")
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return user

    def get_user(self, user_id: str) -> Optional[User]:
        try:
            uuid.UUID(str(user_id))
        except ValueError:
            return None
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM blog_user WHERE id = %s", (user_id,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM blog_user WHERE username = %s", (username,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    def username_exists(self, username: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM blog_user WHERE username = %s", (username,)
            ).fetchone()
        return row is not None

    def email_exists(self, email: str) -> bool:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM blog_user WHERE email = %s", (email,)
            ).fetchone()
        return row is not None

    def list_users(self, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM blog_user ORDER BY created_at ASC LIMIT %s", (limit,)
            ).fetchall()
        return [self._row_to_user(row) for row in rows]

    # refresh tokens
    def create_refresh_token(self, owner_id: str) -> RefreshTokenRecord:
        record = RefreshTokenRecord.new(owner_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO refresh_token (id, owner_id, created_at) VALUES (%s, %s, %s)",
                    (record.id, record.owner_id, record.created_at),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("user does not exist", {"field": "owner_id"}) from exc
        return record

    def refresh_token_exists(self, token_id: str) -> bool:
        try:
            uuid.UUID(str(token_id))
        except ValueError:
            return False
        with self._connect() as conn:
            row = conn.execute(
                "SELECT 1 FROM refresh_token WHERE id = %s", (token_id,)
            ).fetchone()
        return row is not None

    def delete_refresh_token(self, token_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM refresh_token WHERE id = %s", (token_id,))

    def delete_user_refresh_tokens(self, owner_id: str) -> int:
        with self._connect() as conn:
            result = conn.execute(
                "DELETE FROM refresh_token WHERE owner_id = %s", (owner_id,)
            )
            return result.rowcount

    def list_user_refresh_tokens(self, owner_id: str) -> List[RefreshTokenRecord]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM refresh_token WHERE owner_id = %s ORDER BY created_at",
                (owner_id,),
            ).fetchall()
        return [
            RefreshTokenRecord(
                id=str(row["id"]),
                owner_id=str(row["owner_id"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]
