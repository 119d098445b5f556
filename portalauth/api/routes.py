from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.responses import JSONResponse, RedirectResponse

from portalauth.api.gates import (
    LOGIN_PAGE,
    current_auth,
    get_runtime,
    session_cookie,
    wants_json,
)
from portalauth.api.schemas import LoginRequest, MessageResponse, UserResponse
from portalauth.logging import get_logger
from portalauth.service.errors import (
    AuthenticationError,
    RateLimitedError,
    ServiceError,
    StoreUnavailableError,
)
from portalauth.service.runtime import Runtime
from portalauth.storage.models import Session

logger = get_logger(__name__)

auth_router = APIRouter(prefix="/api/auth", tags=["auth"])
sso_router = APIRouter(prefix="/api/sso", tags=["sso"])

LOGIN_WINDOW_SECONDS = 60

SSO_LOGIN_HEADERS = {
    "Cache-Control": "no-cache, no-store, must-revalidate",
    "Pragma": "no-cache",
    "Expires": "0",
    "X-Frame-Options": "SAMEORIGIN",
    "Content-Security-Policy": "frame-ancestors 'self';",
}


def _client_ip(request: Request) -> Optional[str]:
    return request.client.host if request.client else None


def _apply_session_cookie(response: Response, runtime: Runtime, session: Session) -> None:
    settings = runtime.settings
    response.set_cookie(
        settings.session_cookie_name,
        runtime.auth.sign_session_id(session.id),
        max_age=settings.session_ttl_days * 24 * 60 * 60,
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
        path="/",
    )


def _clear_session_cookie(response: Response, runtime: Runtime) -> None:
    settings = runtime.settings
    response.delete_cookie(
        settings.session_cookie_name,
        path="/",
        httponly=True,
        secure=settings.secure_cookies,
        samesite="lax",
    )


async def _drop_previous_session(request: Request, runtime: Runtime, new_session: Session) -> None:
    # A fresh login never keeps the session id the browser arrived with
    previous = runtime.auth.unsign_session_id(session_cookie(request))
    if not previous or previous == new_session.id:
        return
    try:
        await runtime.auth.logout(session_cookie(request))
    except StoreUnavailableError as exc:
        # The new session is already bound; the old row expires on its own
        logger.warning("previous_session_revoke_failed", error=exc.message)


@auth_router.post("/login", response_model=UserResponse)
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    """Verify a local username/password and bind a new session."""

    allowed = await runtime.check_rate_limit(
        f"login:{body.username.lower()}",
        runtime.settings.login_rate_limit_per_minute,
        LOGIN_WINDOW_SECONDS,
    )
    if not allowed:
        raise RateLimitedError(
            "too many login attempts", detail={"retry_after": LOGIN_WINDOW_SECONDS}
        )
    user, session = await runtime.auth.login(
        body.username,
        body.password,
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    await _drop_previous_session(request, runtime, session)
    _apply_session_cookie(response, runtime, session)
    return UserResponse.from_user(user)


@auth_router.post("/demo-login", response_model=UserResponse)
async def demo_login(
    request: Request,
    response: Response,
    runtime: Runtime = Depends(get_runtime),
):
    user, session = await runtime.auth.demo_login(
        user_agent=request.headers.get("user-agent"),
        ip_addr=_client_ip(request),
    )
    await _drop_previous_session(request, runtime, session)
    _apply_session_cookie(response, runtime, session)
    return UserResponse.from_user(user)


@auth_router.get("/me", response_model=UserResponse)
async def me(request: Request):
    ctx = await current_auth(request)
    if ctx is None:
        raise AuthenticationError("Unauthorized")
    return UserResponse.from_user(ctx.user)


@auth_router.get("/logout")
async def logout(request: Request, runtime: Runtime = Depends(get_runtime)):
    await runtime.auth.logout(session_cookie(request))
    if wants_json(request):
        response: Response = JSONResponse(MessageResponse(message="logged out").model_dump())
    else:
        response = RedirectResponse(url=LOGIN_PAGE, status_code=302)
    _clear_session_cookie(response, runtime)
    return response


@sso_router.get("/login")
async def sso_login(request: Request, runtime: Runtime = Depends(get_runtime)):
    """Send the browser to the identity provider with our callback URL."""

    url = runtime.sso.build_login_redirect(request)
    logger.info("sso_login_redirect", target=url)
    return RedirectResponse(url=url, status_code=302, headers=SSO_LOGIN_HEADERS)


@sso_router.get("/callback")
async def sso_callback(
    request: Request,
    token: Optional[str] = Query(None),
    user_id: Optional[str] = Query(None, alias="userId"),
    runtime: Runtime = Depends(get_runtime),
):
    """Complete the provider round trip.

    Resolves claims, reconciles them onto a user row and binds a session.
    Every failure becomes a redirect to the login page with a machine-readable
    ``error`` code; the cookie is only set once the session is persisted.
    """

    try:
        claims = await runtime.sso.complete_callback(token, user_id)
        user = runtime.reconciler.reconcile(claims)
        session = await runtime.auth.bind_session(
            user,
            user_agent=request.headers.get("user-agent"),
            ip_addr=_client_ip(request),
        )
    except ServiceError as exc:
        logger.warning(
            "sso_callback_failed",
            redirect_code=exc.redirect_code,
            error_code=exc.error_code,
            message=exc.message,
        )
        return RedirectResponse(url=f"{LOGIN_PAGE}?error={exc.redirect_code}", status_code=302)
    except Exception as exc:
        logger.exception("sso_callback_error", exc_info=exc, error_type=type(exc).__name__)
        return RedirectResponse(url=f"{LOGIN_PAGE}?error=auth_failed", status_code=302)

    await _drop_previous_session(request, runtime, session)
    logger.info("sso_login_success", user_id=user.id, source=claims.source)
    response = RedirectResponse(url="/", status_code=302)
    _apply_session_cookie(response, runtime, session)
    return response


@sso_router.get("/logout")
async def sso_logout(request: Request, runtime: Runtime = Depends(get_runtime)):
    try:
        await runtime.auth.logout(session_cookie(request))
    except StoreUnavailableError as exc:
        # The provider-side logout still has to happen
        logger.error("sso_logout_local_failed", error=exc.message)
    response = RedirectResponse(url=runtime.sso.build_logout_redirect(request), status_code=302)
    _clear_session_cookie(response, runtime)
    return response
