from __future__ import annotations

from typing import Optional

from portalauth.logging import get_logger
from portalauth.service.claims import Claims
from portalauth.service.errors import (
    InvalidIdentityError,
    ReconciliationConflictError,
    StoreUnavailableError,
)
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable
from portalauth.storage.models import DEFAULT_TENANT_ID, ROLE_EMPLOYEE, User, utcnow

logger = get_logger(__name__)


class UserReconciler:
    """Map federated claims onto exactly one local user row.

    Rows are keyed first by ``sso_id`` (the claims subject) and then by
    ``username``. A unique-key collision means another request provisioned the
    same identity in between our read and write; the whole lookup-then-write
    sequence is replayed once before giving up.
    """

    MAX_ATTEMPTS = 2

    def __init__(self, store) -> None:
        self.store = store

    def reconcile(self, claims: Claims) -> User:
        if not claims.has_identity:
            raise InvalidIdentityError("claims carry neither subject nor username")
        subject = claims.subject.strip() or claims.username.strip()
        username = claims.username.strip() or subject

        for attempt in range(1, self.MAX_ATTEMPTS + 1):
            try:
                return self._reconcile_once(subject, username, claims)
            except ConstraintViolation as exc:
                logger.warning(
                    "user_reconcile_conflict",
                    subject=subject,
                    attempt=attempt,
                    detail=exc.detail,
                )
            except StoreUnavailable as exc:
                logger.error("user_reconcile_store_unavailable", subject=subject, error=exc.message)
                raise StoreUnavailableError("identity store unavailable") from exc
        raise ReconciliationConflictError(
            "concurrent provisioning conflict", detail={"subject": subject}
        )

    def _lookup(self, subject: str, username: str) -> Optional[User]:
        user = self.store.get_user_by_sso_id(subject)
        if user is None:
            user = self.store.get_user_by_username(username)
        return user

    def _reconcile_once(self, subject: str, username: str, claims: Claims) -> User:
        now = utcnow()
        derived_first, derived_last = claims.split_full_name()
        existing = self._lookup(subject, username)

        if existing is None:
            user = self.store.create_user(
                username,
                sso_id=subject,
                role=ROLE_EMPLOYEE,
                first_name=claims.first_name or derived_first or username,
                last_name=claims.last_name or derived_last or "",
                email=claims.email or f"{username}@example.com",
                avatar_url=claims.avatar_image,
                tenant_id=claims.tenant_id or DEFAULT_TENANT_ID,
                last_login=now,
            )
            logger.info("user_reconciled", user_id=user.id, subject=subject, created=True)
            return user

        if existing.sso_id != subject:
            if self.store.link_sso_id(existing.id, subject) is None:
                raise ConstraintViolation("user vanished during link", {"user_id": existing.id})
            logger.info("user_sso_linked", user_id=existing.id, subject=subject)

        updated = self.store.update_user_profile(
            existing.id,
            first_name=claims.first_name or derived_first or existing.first_name,
            last_name=claims.last_name or derived_last or existing.last_name,
            email=claims.email or existing.email,
            avatar_url=claims.avatar_image or existing.avatar_url,
            last_login=now,
        )
        if updated is None:
            raise ConstraintViolation("user vanished during update", {"user_id": existing.id})
        logger.info("user_reconciled", user_id=updated.id, subject=subject, created=False)
        return updated
