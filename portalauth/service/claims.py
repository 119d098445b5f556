from __future__ import annotations

from typing import Any, Literal, Optional, Tuple

from pydantic import BaseModel, field_validator, model_validator

from portalauth.storage.models import DEFAULT_TENANT_ID


def _clean(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


class Claims(BaseModel):
    """Identity asserted by the SSO provider, or synthesized from a bare user id."""

    subject: str = ""
    username: str = ""
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    full_name: Optional[str] = None
    email: Optional[str] = None
    avatar_image: Optional[str] = None
    tenant_id: Optional[int] = None
    source: Literal["idp", "fallback"] = "idp"

    @field_validator("subject", "username", mode="before")
    @classmethod
    def _strip_identifier(cls, value: Any) -> str:
        return _clean(value) or ""

    @field_validator("first_name", "last_name", "full_name", "email", "avatar_image", mode="before")
    @classmethod
    def _strip_optional(cls, value: Any) -> Optional[str]:
        return _clean(value)

    @field_validator("tenant_id", mode="before")
    @classmethod
    def _coerce_tenant(cls, value: Any) -> Optional[int]:
        if value is None or value == "":
            return None
        try:
            return int(value)
        except (TypeError, ValueError):
            return None

    @model_validator(mode="after")
    def _fill_identifiers(self) -> "Claims":
        # subject and username stand in for each other
        if not self.subject and self.username:
            self.subject = self.username
        if not self.username and self.subject:
            self.username = self.subject
        return self

    @classmethod
    def from_idp_payload(cls, data: dict) -> "Claims":
        """Build claims from the ``data`` object of a user-info response."""

        return cls(
            subject=data.get("sub"),
            username=data.get("username"),
            first_name=data.get("first_name"),
            last_name=data.get("last_name"),
            full_name=data.get("name"),
            email=data.get("email"),
            avatar_image=data.get("profile_image_url"),
            tenant_id=data.get("tenantId", data.get("tenant_id")),
            source="idp",
        )

    @classmethod
    def fallback(cls, external_user_id: str) -> "Claims":
        ident = external_user_id.strip()
        full_name = "System Administrator" if ident == "admin" else f"User {ident}"
        return cls(
            subject=ident,
            username=ident,
            full_name=full_name,
            email=f"{ident}@example.com",
            tenant_id=DEFAULT_TENANT_ID,
            source="fallback",
        )

    @property
    def has_identity(self) -> bool:
        return bool(self.subject.strip() or self.username.strip())

    def split_full_name(self) -> Tuple[Optional[str], Optional[str]]:
        """Split ``full_name`` at the first whitespace run.

        "Jane Doe" -> ("Jane", "Doe"); "Jane" -> ("Jane", None).
        """

        if not self.full_name:
            return None, None
        parts = self.full_name.split(None, 1)
        first = parts[0]
        last = parts[1].strip() if len(parts) > 1 else None
        return first, last or None
