from __future__ import annotations

import secrets
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

ROLE_ADMIN = "admin"
ROLE_MANAGER = "manager"
ROLE_EMPLOYEE = "employee"
ROLES = frozenset({ROLE_ADMIN, ROLE_MANAGER, ROLE_EMPLOYEE})

DEFAULT_TENANT_ID = 1


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class User:
    id: int
    username: str
    password_hash: Optional[str] = None
    sso_id: Optional[str] = None
    role: str = ROLE_EMPLOYEE
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    department: Optional[str] = None
    position: Optional[str] = None
    avatar_url: Optional[str] = None
    tenant_id: int = DEFAULT_TENANT_ID
    last_login: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)

    def safe_projection(self) -> Dict[str, Any]:
        """Fields safe to expose to clients; never includes the credential."""

        return {
            "id": self.id,
            "username": self.username,
            "first_name": self.first_name,
            "last_name": self.last_name,
            "email": self.email,
            "role": self.role,
            "department": self.department,
            "position": self.position,
            "avatar_url": self.avatar_url,
            "sso_id": self.sso_id,
            "tenant_id": self.tenant_id,
        }


@dataclass
class Session:
    id: str
    user_id: int
    created_at: datetime
    expires_at: datetime
    user_agent: Optional[str] = None
    ip_addr: Optional[str] = None

    @classmethod
    def new(
        cls,
        user_id: int,
        ttl_minutes: int = 60 * 24 * 7,
        user_agent: str | None = None,
        ip_addr: str | None = None,
    ) -> "Session":
        now = utcnow()
        return cls(
            id=secrets.token_urlsafe(32),
            user_id=user_id,
            created_at=now,
            expires_at=now + timedelta(minutes=ttl_minutes),
            user_agent=user_agent,
            ip_addr=ip_addr,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        expires_at = self.expires_at
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        return expires_at <= now
