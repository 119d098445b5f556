from __future__ import annotations

import json
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

from portalauth.logging import get_logger
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import (
    DEFAULT_TENANT_ID,
    ROLE_EMPLOYEE,
    Session,
    User,
    utcnow,
)


class MemoryStore:
    """In-process identity and session store with JSON state snapshots."""

    def __init__(self, fs_root: str = "/tmp/portalauth", *, persist: bool = True) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[str, Session] = {}
        self._user_id_seq = 1
        # RLock so store methods can call each other while holding it
        self._data_lock = threading.RLock()
        self.persist = persist
        self.fs_root = Path(fs_root)
        if self.persist:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identity_store.json"

    @contextmanager
    def _mutation(self) -> Iterator[None]:
        """Hold the data lock; undo in-memory changes if the snapshot write fails."""
        with self._data_lock:
            users = {uid: replace(u) for uid, u in self.users.items()}
            sessions = {sid: replace(s) for sid, s in self.sessions.items()}
            user_id_seq = self._user_id_seq
            try:
                yield
            except StoreUnavailable:
                self.users = users
                self.sessions = sessions
                self._user_id_seq = user_id_seq
                raise

    @staticmethod
    def _serialize_datetime(dt: Optional[datetime]) -> Optional[str]:
        return dt.isoformat() if dt else None

    @staticmethod
    def _deserialize_datetime(raw: Optional[str]) -> Optional[datetime]:
        return datetime.fromisoformat(raw) if raw else None

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
        with self._mutation():
            if any(existing.username == username for existing in self.users.values()):
                raise ConstraintViolation("username already exists", {"field": "username"})
            if sso_id is not None and self._find_by_sso_id(sso_id):
                raise ConstraintViolation("sso_id already linked", {"field": "sso_id"})
            user = User(
                id=self._user_id_seq,
                username=username,
                password_hash=password_hash,
                sso_id=sso_id,
                role=role,
                first_name=first_name,
                last_name=last_name,
                email=email,
                department=department,
                position=position,
                avatar_url=avatar_url,
                tenant_id=tenant_id,
                last_login=last_login,
            )
            self._user_id_seq += 1
            self.users[user.id] = user
            self._persist_state()
            return replace(user)

    def _find_by_sso_id(self, sso_id: str) -> Optional[User]:
        return next((u for u in self.users.values() if u.sso_id == sso_id), None)

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_username(self, username: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.username == username), None)
            return replace(user) if user else None

    def get_user_by_sso_id(self, sso_id: str) -> Optional[User]:
        with self._data_lock:
            user = self._find_by_sso_id(sso_id)
            return replace(user) if user else None

    def list_users(self, tenant_id: Optional[int] = None, limit: int = 100) -> List[User]:
        with self._data_lock:
            results = [
                replace(u)
                for u in self.users.values()
                if tenant_id is None or u.tenant_id == tenant_id
            ]
            return sorted(results, key=lambda u: u.id)[:limit]

    def link_sso_id(self, user_id: int, sso_id: str) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            owner = self._find_by_sso_id(sso_id)
            if owner and owner.id != user_id:
                raise ConstraintViolation("sso_id already linked", {"field": "sso_id"})
            user.sso_id = sso_id
            self._persist_state()
            return replace(user)

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
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.first_name = first_name
            user.last_name = last_name
            user.email = email
            user.avatar_url = avatar_url
            user.last_login = last_login
            self._persist_state()
            return replace(user)

    def touch_last_login(self, user_id: int, when: Optional[datetime] = None) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.last_login = when or utcnow()
            self._persist_state()
            return replace(user)

    def update_user_role(self, user_id: int, role: str) -> Optional[User]:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                return None
            user.role = role
            self._persist_state()
            return replace(user)

    def save_password(self, user_id: int, password_hash: str) -> None:
        with self._mutation():
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash
            self._persist_state()

    # sessions
    def create_session(
        self,
        user_id: int,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session:
        with self._mutation():
            if user_id not in self.users:
                raise ConstraintViolation("user does not exist", {"user_id": user_id})
            sess = Session.new(
                user_id=user_id,
                ttl_minutes=ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
            self.sessions[sess.id] = sess
            self._persist_state()
            return replace(sess)

    def get_session(self, session_id: str) -> Optional[Session]:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            return replace(sess) if sess else None

    def revoke_session(self, session_id: str) -> None:
        with self._mutation():
            if self.sessions.pop(session_id, None) is not None:
                self._persist_state()

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._mutation():
            stale = [sid for sid, sess in self.sessions.items() if sess.user_id == user_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            if stale:
                self._persist_state()
            return len(stale)

    def purge_expired_sessions(self) -> int:
        with self._mutation():
            now = utcnow()
            expired = [sid for sid, sess in self.sessions.items() if sess.is_expired(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self._persist_state()
            return len(expired)

    def _persist_state(self) -> None:
        if not self.persist:
            return
        state = {
            "user_id_seq": self._user_id_seq,
            "users": [self._serialize_user(u) for u in self.users.values()],
            "sessions": [self._serialize_session(s) for s in self.sessions.values()],
        }
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except OSError as exc:
            raise StoreUnavailable("failed to persist in-memory state", {"error": str(exc)}) from exc

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])}
        self.sessions = {
            s["id"]: self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._user_id_seq = max(
            int(data.get("user_id_seq", 1)), max(self.users, default=0) + 1
        )
        return True

    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "username": user.username,
            "password_hash": user.password_hash,
            "sso_id": user.sso_id,
            "role": user.role,
            "first_name": user.first_name,
            "last_name": user.last_name,
            "email": user.email,
            "department": user.department,
            "position": user.position,
            "avatar_url": user.avatar_url,
            "tenant_id": user.tenant_id,
            "last_login": self._serialize_datetime(user.last_login),
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            username=data["username"],
            password_hash=data.get("password_hash"),
            sso_id=data.get("sso_id"),
            role=data.get("role", ROLE_EMPLOYEE),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            email=data.get("email"),
            department=data.get("department"),
            position=data.get("position"),
            avatar_url=data.get("avatar_url"),
            tenant_id=int(data.get("tenant_id") or DEFAULT_TENANT_ID),
            last_login=self._deserialize_datetime(data.get("last_login")),
            created_at=self._deserialize_datetime(data.get("created_at")) or utcnow(),
        )

    def _serialize_session(self, session: Session) -> dict:
        return {
            "id": session.id,
            "user_id": session.user_id,
            "created_at": self._serialize_datetime(session.created_at),
            "expires_at": self._serialize_datetime(session.expires_at),
            "user_agent": session.user_agent,
            "ip_addr": session.ip_addr,
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=data["id"],
            user_id=int(data["user_id"]),
            created_at=self._deserialize_datetime(data["created_at"]),
            expires_at=self._deserialize_datetime(data["expires_at"]),
            user_agent=data.get("user_agent"),
            ip_addr=data.get("ip_addr"),
        )
