from __future__ import annotations

from typing import Optional


class ServiceError(Exception):
    """Base class for service-layer exceptions mapped to HTTP responses.

    Each subclass carries an HTTP ``status_code``, a stable ``error_code`` used
    in JSON bodies, and a ``redirect_code`` used when the failure happens on the
    browser-facing SSO path and must be rendered as ``/auth?error=<code>``.
    """

    status_code: int = 400
    error_code: str = "validation_error"
    redirect_code: str = "auth_failed"

    def __init__(
        self,
        message: str,
        *,
        status_code: Optional[int] = None,
        detail: Optional[dict] = None,
        error_code: Optional[str] = None,
        redirect_code: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code
        if error_code is not None:
            self.error_code = error_code
        if redirect_code is not None:
            self.redirect_code = redirect_code
        self.detail = detail or {}


class AuthenticationError(ServiceError):
    """Authentication failed or missing (401)."""
    status_code = 401
    error_code = "unauthorized"


class BadCredentialError(AuthenticationError):
    """Password did not verify, or the account has no local credential."""
    error_code = "auth_failed"


class UserNotFoundError(AuthenticationError):
    """No account for the given username.

    Rendered as 401 on the login path so usernames cannot be enumerated; the demo
    login raises it with ``status_code=404``.
    """
    error_code = "auth_failed"


class ForbiddenError(ServiceError):
    """Access denied - insufficient permissions (403)."""
    status_code = 403
    error_code = "forbidden"


class NoIdentityError(ServiceError):
    """SSO callback produced no usable identity."""
    status_code = 400
    error_code = "no_token"
    redirect_code = "no_token"


class InvalidIdentityError(ServiceError):
    """Claims lack both a subject and a username."""
    status_code = 400
    error_code = "invalid_user_data"
    redirect_code = "invalid_user_data"


class IdentityProviderError(ServiceError):
    """The identity provider could not be reached or answered with an error."""
    status_code = 502
    error_code = "auth_failed"
    redirect_code = "auth_failed"


class StoreUnavailableError(ServiceError):
    status_code = 503
    error_code = "upsert_failed"
    redirect_code = "upsert_failed"


class ReconciliationConflictError(ServiceError):
    """Concurrent provisioning kept colliding on a unique key."""
    status_code = 409
    error_code = "upsert_failed"
    redirect_code = "upsert_failed"


class SessionBindError(ServiceError):
    status_code = 500
    error_code = "session_error"
    redirect_code = "session_error"


class SessionPersistError(ServiceError):
    status_code = 503
    error_code = "session_save_error"
    redirect_code = "session_save_error"


class RateLimitedError(ServiceError):
    """Rate limit exceeded (429)."""
    status_code = 429
    error_code = "rate_limited"


__all__ = [
    "ServiceError",
    "AuthenticationError",
    "BadCredentialError",
    "UserNotFoundError",
    "ForbiddenError",
    "NoIdentityError",
    "InvalidIdentityError",
    "IdentityProviderError",
    "StoreUnavailableError",
    "ReconciliationConflictError",
    "SessionBindError",
    "SessionPersistError",
    "RateLimitedError",
]
