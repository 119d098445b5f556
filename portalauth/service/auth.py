from __future__ import annotations

import base64
import hashlib
import hmac
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError
from redis.exceptions import RedisError

from portalauth.config import Settings
from portalauth.logging import get_logger
from portalauth.service.errors import (
    BadCredentialError,
    SessionBindError,
    SessionPersistError,
    StoreUnavailableError,
    UserNotFoundError,
)
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import Session, User, utcnow

logger = get_logger(__name__)


class AuthStore(Protocol):
    def create_user(self, username: str, **fields) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_username(self, username: str) -> Optional[User]: ...

    def get_user_by_sso_id(self, sso_id: str) -> Optional[User]: ...

    def link_sso_id(self, user_id: int, sso_id: str) -> Optional[User]: ...

    def update_user_profile(
        self,
        user_id: int,
        *,
        first_name: Optional[str],
        last_name: Optional[str],
        email: Optional[str],
        avatar_url: Optional[str],
        last_login: datetime,
    ) -> Optional[User]: ...

    def touch_last_login(
        self, user_id: int, when: Optional[datetime] = None
    ) -> Optional[User]: ...

    def save_password(self, user_id: int, password_hash: str) -> None: ...

    def update_user_role(self, user_id: int, role: str) -> Optional[User]: ...

    def list_users(
        self, tenant_id: Optional[int] = None, limit: int = 100
    ) -> List[User]: ...

    def create_session(
        self,
        user_id: int,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> Session: ...

    def get_session(self, session_id: str) -> Optional[Session]: ...

    def revoke_session(self, session_id: str) -> None: ...

    def purge_expired_sessions(self) -> int: ...


@dataclass
class AuthContext:
    user: User
    session_id: str

    @property
    def user_id(self) -> int:
        return self.user.id

    @property
    def role(self) -> str:
        return self.user.role


class CredentialVerifier:
    """Check a username/password pair against the stored argon2id hash."""

    def __init__(self, store: AuthStore, hasher: Optional[PasswordHasher] = None) -> None:
        self.store = store
        self._pwd_hasher = hasher or PasswordHasher(type=Type.ID)

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def verify(self, username: str, password: str) -> User:
        try:
            user = self.store.get_user_by_username(username)
        except StoreUnavailable as exc:
            raise StoreUnavailableError("identity store unavailable") from exc
        if user is None:
            logger.warning("login_unknown_user", username=username)
            raise UserNotFoundError("invalid username or password")
        if not user.password_hash:
            logger.warning("login_no_local_credential", user_id=user.id)
            raise BadCredentialError("invalid username or password")
        try:
            self._pwd_hasher.verify(user.password_hash, password)
        except (InvalidHash, VerifyMismatchError, VerificationError):
            logger.warning("password_verification_failed", user_id=user.id)
            raise BadCredentialError("invalid username or password")

        try:
            if self._pwd_hasher.check_needs_rehash(user.password_hash):
                self.store.save_password(user.id, self._pwd_hasher.hash(password))
            refreshed = self.store.touch_last_login(user.id, utcnow())
        except StoreUnavailable as exc:
            raise StoreUnavailableError("identity store unavailable") from exc
        return refreshed or user


class AuthService:
    """Local and demo login, session binding, and signed session cookies.

    Sessions are persisted in the store and only reference a user id; every
    request re-reads the user so role and profile changes apply immediately.
    When a Redis cache is configured the session id is mirrored there after the
    authoritative write, repaired on read when it disagrees with the store, and
    removed on logout.
    """

    def __init__(
        self,
        store: AuthStore,
        cache,
        settings: Settings,
        *,
        verifier: Optional[CredentialVerifier] = None,
    ) -> None:
        self.store: AuthStore = store
        self.cache = cache
        self.settings = settings
        self.verifier = verifier or CredentialVerifier(store)
        self.logger = logger

    # cookie signing
    def _signature(self, session_id: str) -> str:
        digest = hmac.new(
            self.settings.session_secret.encode(), session_id.encode(), hashlib.sha256
        ).digest()
        return base64.urlsafe_b64encode(digest).rstrip(b"=").decode()

    def sign_session_id(self, session_id: str) -> str:
        return f"{session_id}.{self._signature(session_id)}"

    def unsign_session_id(self, cookie_value: Optional[str]) -> Optional[str]:
        """Return the session id from a signed cookie, or None if it was tampered with."""

        if not cookie_value or "." not in cookie_value:
            return None
        session_id, _, signature = cookie_value.rpartition(".")
        if not session_id or not hmac.compare_digest(signature, self._signature(session_id)):
            return None
        return session_id

    # login paths
    async def login(
        self,
        username: str,
        password: str,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session]:
        user = self.verifier.verify(username, password)
        session = await self.bind_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("login_success", user_id=user.id, method="password")
        return user, session

    async def demo_login(
        self,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> tuple[User, Session]:
        try:
            user = self.store.get_user_by_username(self.settings.demo_username)
            if user is not None:
                user = self.store.touch_last_login(user.id, utcnow()) or user
        except StoreUnavailable as exc:
            raise StoreUnavailableError("identity store unavailable") from exc
        if user is None:
            raise UserNotFoundError("demo account does not exist", status_code=404)
        session = await self.bind_session(user, user_agent=user_agent, ip_addr=ip_addr)
        self.logger.info("login_success", user_id=user.id, method="demo")
        return user, session

    async def bind_session(
        self,
        user: User,
        *,
        user_agent: Optional[str] = None,
        ip_addr: Optional[str] = None,
    ) -> Session:
        """Persist a new session for ``user``; the caller sets the cookie afterwards."""

        try:
            session = self.store.create_session(
                user.id,
                ttl_minutes=self.settings.session_ttl_minutes,
                user_agent=user_agent,
                ip_addr=ip_addr,
            )
        except ConstraintViolation as exc:
            self.logger.error("session_bind_failed", user_id=user.id, detail=exc.detail)
            raise SessionBindError("user no longer exists") from exc
        except StoreUnavailable as exc:
            self.logger.error("session_persist_failed", user_id=user.id, error=exc.message)
            raise SessionPersistError("could not persist session") from exc

        if self.cache:
            try:
                await self.cache.cache_session(session.id, user.id, session.expires_at)
            except RedisError as exc:
                self.logger.warning("session_cache_write_failed", error=str(exc))
        return session

    async def resolve_session(self, cookie_value: Optional[str]) -> Optional[AuthContext]:
        session_id = self.unsign_session_id(cookie_value)
        if not session_id:
            return None
        try:
            sess = self.store.get_session(session_id)
            if sess is not None and sess.is_expired():
                self.store.revoke_session(session_id)
                sess = None
            user = self.store.get_user(sess.user_id) if sess is not None else None
        except StoreUnavailable as exc:
            raise StoreUnavailableError("session store unavailable") from exc
        await self._sync_mirror(session_id, sess if user is not None else None)
        if user is None:
            return None
        return AuthContext(user=user, session_id=sess.id)

    async def _sync_mirror(self, session_id: str, sess: Optional[Session]) -> None:
        """Bring the Redis entry for ``session_id`` in line with the store row."""

        if not self.cache:
            return
        try:
            mirrored = await self.cache.get_session_user(session_id)
            if sess is None:
                if mirrored is not None:
                    await self.cache.revoke_session(session_id)
                    self.logger.info("session_cache_stale_removed")
            elif mirrored != sess.user_id:
                await self.cache.cache_session(sess.id, sess.user_id, sess.expires_at)
        except RedisError as exc:
            self.logger.warning("session_cache_sync_failed", error=str(exc))

    async def logout(self, cookie_value: Optional[str]) -> None:
        session_id = self.unsign_session_id(cookie_value)
        if not session_id:
            return
        try:
            self.store.revoke_session(session_id)
        except StoreUnavailable as exc:
            raise StoreUnavailableError("session store unavailable") from exc
        if self.cache:
            try:
                await self.cache.revoke_session(session_id)
            except RedisError as exc:
                self.logger.warning("session_cache_revoke_failed", error=str(exc))
        self.logger.info("logout")
