from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime
from typing import Any, Iterator, List, Optional

import psycopg
from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool, PoolTimeout

from portalauth.logging import get_logger, mask_url_password
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import (
    DEFAULT_TENANT_ID,
    ROLE_EMPLOYEE,
    Session,
    User,
    utcnow,
)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS users (
        id BIGSERIAL PRIMARY KEY,
        username TEXT NOT NULL UNIQUE,
        password_hash TEXT,
        sso_id TEXT UNIQUE,
        role TEXT NOT NULL DEFAULT 'employee',
        first_name TEXT,
        last_name TEXT,
        email TEXT,
        department TEXT,
        position TEXT,
        avatar_url TEXT,
        tenant_id INTEGER NOT NULL DEFAULT 1,
        last_login TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id TEXT PRIMARY KEY,
        user_id BIGINT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        expires_at TIMESTAMPTZ NOT NULL,
        user_agent TEXT,
        ip_addr TEXT
    )
    """,
    "CREATE INDEX IF NOT EXISTS sessions_user_id_idx ON sessions (user_id)",
)

_USER_COLUMNS = (
    "id, username, password_hash, sso_id, role, first_name, last_name, email, "
    "department, position, avatar_url, tenant_id, last_login, created_at"
)


class PostgresStore:
    """Postgres-backed user and session persistence."""

    def __init__(self, dsn: str, *, pool: Any = None) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = pool or ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            open=True,
            kwargs={"row_factory": dict_row, "autocommit": True},
        )
        self._ensure_schema()

    @contextmanager
    def _connect(self) -> Iterator[Any]:
        try:
            with self.pool.connection() as conn:
                yield conn
        except (psycopg.OperationalError, PoolTimeout) as exc:
            self.logger.error(
                "postgres_unavailable", dsn=mask_url_password(self.dsn), error=str(exc)
            )
            raise StoreUnavailable("database unavailable", {"error": str(exc)}) from exc

    def _ensure_schema(self) -> None:
        """Create the ``users`` and ``sessions`` tables if they are missing."""

        with self._connect() as conn:
            for statement in _SCHEMA:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    @staticmethod
    def _row_to_user(row: dict) -> User:
        return User(
            id=int(row["id"]),
            username=row["username"],
            password_hash=row.get("password_hash"),
            sso_id=row.get("sso_id"),
            role=row.get("role") or ROLE_EMPLOYEE,
            first_name=row.get("first_name"),
            last_name=row.get("last_name"),
            email=row.get("email"),
            department=row.get("department"),
            position=row.get("position"),
            avatar_url=row.get("avatar_url"),
            tenant_id=int(row.get("tenant_id") or DEFAULT_TENANT_ID),
            last_login=row.get("last_login"),
            created_at=row.get("created_at") or utcnow(),
        )

    @staticmethod
    def _row_to_session(row: dict) -> Session:
        return Session(
            id=str(row["id"]),
            user_id=int(row["user_id"]),
            created_at=row.get("created_at") or utcnow(),
            expires_at=row["expires_at"],
            user_agent=row.get("user_agent"),
            ip_addr=row.get("ip_addr"),
        )

    def _fetch_user(self, where: str, value: Any) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE {where} = %s", (value,)
            ).fetchone()
        return self._row_to_user(row) if row else None

    # users
    def create_user(
        self,
        username: str,
        *,
        password_hash: Optional[str] = None,
        sso_id: Optional[str] = None,
        role: str = ROLE_EMPLOYEE,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        email: Optional[str] = None,
        department: Optional[str] = None,
        position: Optional[str] = None,
        avatar_url: Optional[str] = None,
        tenant_id: int = DEFAULT_TENANT_ID,
        last_login: Optional[datetime] = None,
    ) -> User:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO users (username, password_hash, sso_id, role, first_name, last_name,
                                       email, department, position, avatar_url, tenant_id, last_login)
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_USER_COLUMNS}
                    """,
                    (
                        username,
                        password_hash,
                        sso_id,
                        role,
                        first_name,
                        last_name,
                        email,
                        department,
                        position,
                        avatar_url,
                        tenant_id,
                        last_login,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            constraint = getattr(exc.diag, "constraint_name", None) or ""
            field = "sso_id" if "sso_id" in constraint else "username"
            raise ConstraintViolation(f"{field} already exists", {"field": field}) from exc
        return self._row_to_user(row)

    def get_user(self, user_id: int) -> Optional[User]:
        return self._fetch_user("id", user_id)

    def get_user_by_username(self, username: str) -> Optional[User]:
        return self._fetch_user("username", username)

    def get_user_by_sso_id(self, sso_id: str) -> Optional[User]:
        return self._fetch_user("sso_id", sso_id)

    def list_users(self, tenant_id: Optional[int] = None, limit: int = 100) -> List[User]:
        with self._connect() as conn:
            if tenant_id is None:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users ORDER BY id LIMIT %s", (limit,)
                ).fetchall()
            else:
                rows = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE tenant_id = %s ORDER BY id LIMIT %s",
                    (tenant_id, limit),
                ).fetchall()
        return [self._row_to_user(row) for row in rows]

    def link_sso_id(self, user_id: int, sso_id: str) -> Optional[User]:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"UPDATE users SET sso_id = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                    (sso_id, user_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("sso_id already linked", {"field": "sso_id"}) from exc
        return self._row_to_user(row) if row else None

    def update_user_profile(
        self,
        user_id: int,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        avatar_url: Optional[str],
        last_login: datetime,
    ) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE users
                SET first_name = %s, last_name = %s, email = %s, avatar_url = %s, last_login = %s
                WHERE id = %s
                RETURNING {_USER_COLUMNS}
                """,
                (first_name, last_name, email, avatar_url, last_login, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET last_login = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (when or utcnow(), user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"UPDATE users SET role = %s WHERE id = %s RETURNING {_USER_COLUMNS}",
                (role, user_id),
            ).fetchone()
        return self._row_to_user(row) if row else None

    def save_password(self, user_id: int, password_hash: str) -> None:
        with self._connect() as conn:
            result = conn.execute(
                "UPDATE users SET password_hash = %s WHERE id = %s",
                (password_hash, user_id),
            )
            if result.rowcount == 0:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )

    # sessions
    def create_session(
        self,
        user_id: int,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        sess = Session.new(
            user_id=user_id,
            ttl_minutes=ttl_minutes,
            user_agent=user_agent,
            ip_addr=ip_addr,
        )
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, user_id, created_at, expires_at, user_agent, ip_addr)
                    VALUES (%s, %s, %s, %s, %s, %s)
                    """,
                    (
                        sess.id,
                        sess.user_id,
                        sess.created_at,
                        sess.expires_at,
                        user_agent,
                        ip_addr,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("session user missing", {"user_id": user_id}) from exc
        return sess

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM sessions WHERE id = %s", (session_id,)
            ).fetchone()
        return self._row_to_session(row) if row else None

    def revoke_session(self, session_id: str) -> None:
        with self._connect() as conn:
            conn.execute("DELETE FROM sessions WHERE id = %s", (session_id,))

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE user_id = %s", (user_id,))
            return result.rowcount or 0

    def purge_expired_sessions(self) -> int:
        with self._connect() as conn:
            result = conn.execute("DELETE FROM sessions WHERE expires_at <= now()")
            removed = result.rowcount or 0
        if removed:
            self.logger.info("expired_sessions_purged", count=removed)
        return removed
