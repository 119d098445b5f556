"""Access gates for downstream request handlers.

A gate is a plain function from the resolved auth context (or None for an
anonymous request) to a :class:`GateDecision`. Routes compose gates into an
ordered pipeline with :func:`require`; the first rejection wins. Rejections are
rendered as ``{message, code}`` JSON for API clients and as redirects for
browsers.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Sequence

from fastapi import FastAPI, Request
from fastapi.responses import RedirectResponse, Response

from portalauth.api.error_handling import error_response
from portalauth.logging import get_logger
from portalauth.service.auth import AuthContext
from portalauth.service.runtime import Runtime
from portalauth.storage.models import ROLE_ADMIN, ROLE_MANAGER

logger = get_logger(__name__)

LOGIN_PAGE = "/auth"
FORBIDDEN_PAGE = "/dashboard"


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    status_code: int = 200
    reason: str = ""
    code: str = ""

    @classmethod
    def allow(cls) -> "GateDecision":
        return cls(allowed=True)

    @classmethod
    def reject(cls, status_code: int, reason: str, code: str) -> "GateDecision":
        return cls(allowed=False, status_code=status_code, reason=reason, code=code)


Gate = Callable[[Optional[AuthContext]], GateDecision]


class GateRejected(Exception):
    def __init__(self, decision: GateDecision) -> None:
        super().__init__(decision.reason)
        self.decision = decision


def authenticated(ctx: Optional[AuthContext]) -> GateDecision:
    if ctx is None:
        return GateDecision.reject(401, "Unauthorized", "unauthorized")
    return GateDecision.allow()


def role_in(roles: Iterable[str]) -> Gate:
    allowed_roles = frozenset(roles)

    def gate(ctx: Optional[AuthContext]) -> GateDecision:
        if ctx is None:
            return GateDecision.reject(401, "Unauthorized", "unauthorized")
        if ctx.role not in allowed_roles:
            return GateDecision.reject(403, "Forbidden", "forbidden")
        return GateDecision.allow()

    gate.__name__ = f"role_in_{'_'.join(sorted(allowed_roles))}"
    return gate


def run_gates(ctx: Optional[AuthContext], gates: Sequence[Gate]) -> GateDecision:
    for gate in gates:
        decision = gate(ctx)
        if not decision.allowed:
            return decision
    return GateDecision.allow()


def get_runtime(request: Request) -> Runtime:
    return request.app.state.runtime


def session_cookie(request: Request) -> Optional[str]:
    runtime = get_runtime(request)
    return request.cookies.get(runtime.settings.session_cookie_name)


async def current_auth(request: Request) -> Optional[AuthContext]:
    """Resolve the session cookie once per request; None when anonymous."""

    if hasattr(request.state, "auth"):
        return request.state.auth
    runtime = get_runtime(request)
    ctx = await runtime.auth.resolve_session(session_cookie(request))
    request.state.auth = ctx
    return ctx


def require(*gates: Gate):
    """Build a FastAPI dependency running ``gates`` in order."""

    async def dependency(request: Request) -> AuthContext:
        ctx = await current_auth(request)
        decision = run_gates(ctx, gates)
        if not decision.allowed:
            logger.info(
                "gate_rejected",
                path=request.url.path,
                status_code=decision.status_code,
                user_id=ctx.user_id if ctx else None,
            )
            raise GateRejected(decision)
        return ctx

    return dependency


def require_role(*roles: str):
    return require(authenticated, role_in(roles))


require_authenticated = require(authenticated)
require_admin = require_role(ROLE_ADMIN)
require_admin_or_manager = require_role(ROLE_ADMIN, ROLE_MANAGER)


def wants_json(request: Request) -> bool:
    return "application/json" in request.headers.get("accept", "")


def render_rejection(request: Request, decision: GateDecision) -> Response:
    if wants_json(request):
        return error_response(decision.status_code, decision.reason, decision.code)
    target = LOGIN_PAGE if decision.status_code == 401 else FORBIDDEN_PAGE
    return RedirectResponse(url=target, status_code=302)


def register_gate_handlers(app: FastAPI) -> None:
    @app.exception_handler(GateRejected)
    async def handle_gate_rejected(request: Request, exc: GateRejected):
        return render_rejection(request, exc.decision)
