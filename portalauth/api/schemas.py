from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from portalauth.storage.models import User

MAX_USERNAME_LENGTH = 150
MAX_PASSWORD_LENGTH = 1024


class ErrorBody(BaseModel):
    """JSON body of every API-path failure."""

    message: str
    code: str


class MessageResponse(BaseModel):
    message: str


class LoginRequest(BaseModel):
    username: str = Field(..., min_length=1, max_length=MAX_USERNAME_LENGTH)
    password: str = Field(..., min_length=1, max_length=MAX_PASSWORD_LENGTH)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        value = value.strip()
        if not value:
            raise ValueError("username is required")
        return value


class UserResponse(BaseModel):
    """Client-safe projection of a user; serialized with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: int
    username: str
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: Optional[str] = None
    role: str
    department: Optional[str] = None
    position: Optional[str] = None
    avatar_url: Optional[str] = None
    sso_id: Optional[str] = None
    tenant_id: int

    @classmethod
    def from_user(cls, user: User) -> "UserResponse":
        return cls(**user.safe_projection())


class HealthResponse(BaseModel):
    status: str
    store: str
    cache: str
