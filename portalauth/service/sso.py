from __future__ import annotations

from typing import Optional
from urllib.parse import quote, urlencode

import httpx
from starlette.requests import Request

from portalauth.logging import get_logger
from portalauth.service.claims import Claims
from portalauth.service.errors import IdentityProviderError, NoIdentityError

logger = get_logger(__name__)


def request_origin(request: Request) -> str:
    """``scheme://host`` of the incoming request, honoring reverse-proxy headers."""

    forwarded_proto = request.headers.get("x-forwarded-proto")
    scheme = forwarded_proto.split(",")[0].strip() if forwarded_proto else ""
    scheme = scheme or request.url.scheme
    forwarded_host = request.headers.get("x-forwarded-host")
    host = forwarded_host.split(",")[0].strip() if forwarded_host else ""
    host = host or request.headers.get("host") or request.url.netloc
    return f"{scheme}://{host}"


class SSOClient:
    """Client for the external single-sign-on server.

    All provider endpoints live under ``base_url`` (``<SSO_SERVER>/api/sso``).
    The user-info lookup is the only network call; every failure on it is
    soft so the callback can still fall back to a bare external user id.
    """

    CALLBACK_PATH = "/api/sso/callback"

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._transport = transport

    @property
    def auth_url(self) -> str:
        return f"{self.base_url}/auth"

    @property
    def userinfo_url(self) -> str:
        return f"{self.base_url}/userinfo"

    @property
    def logout_url(self) -> str:
        return f"{self.base_url}/logout"

    def callback_url(self, request: Request) -> str:
        return f"{request_origin(request)}{self.CALLBACK_PATH}"

    def build_login_redirect(self, request: Request) -> str:
        redirect = quote(self.callback_url(request), safe="")
        return f"{self.auth_url}?redirect={redirect}"

    def build_logout_redirect(self, request: Request) -> str:
        redirect = quote(f"{request_origin(request)}/auth", safe="")
        return f"{self.logout_url}?redirect={redirect}"

    async def fetch_userinfo(self, token: str) -> tuple[Optional[dict], bool]:
        """Ask the provider who ``token`` belongs to.

        Returns ``(data, transport_failed)``. ``data`` is the non-empty ``data``
        object of a successful response, otherwise None. ``transport_failed`` is
        True when the request itself failed (connect error, timeout, non-2xx).
        """

        url = f"{self.userinfo_url}?{urlencode({'token': token})}"
        try:
            async with httpx.AsyncClient(
                timeout=self.timeout,
                follow_redirects=False,
                transport=self._transport,
            ) as client:
                response = await client.get(url, headers={"Accept": "application/json"})
                response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            logger.warning(
                "sso_userinfo_http_error",
                status_code=exc.response.status_code,
                error=str(exc),
            )
            return None, True
        except httpx.TimeoutException as exc:
            logger.warning("sso_userinfo_timeout", timeout=self.timeout, error=str(exc))
            return None, True
        except httpx.HTTPError as exc:
            logger.warning(
                "sso_userinfo_transport_error",
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None, True

        try:
            payload = response.json()
        except ValueError as exc:
            logger.warning("sso_userinfo_parse_error", error=str(exc))
            return None, False

        if not isinstance(payload, dict):
            logger.warning("sso_userinfo_invalid_format", type=type(payload).__name__)
            return None, False
        succeeded = payload.get("code") == 200 or payload.get("status") == "success"
        data = payload.get("data")
        if not succeeded or not isinstance(data, dict) or not data:
            logger.warning(
                "sso_userinfo_rejected",
                code=payload.get("code"),
                status=payload.get("status"),
            )
            return None, False
        return data, False

    async def complete_callback(
        self, token: Optional[str], external_user_id: Optional[str]
    ) -> Claims:
        token = (token or "").strip() or None
        external_user_id = (external_user_id or "").strip() or None
        if not token and not external_user_id:
            raise NoIdentityError("no token or user id on callback", redirect_code="no_token")

        transport_failed = False
        if token:
            data, transport_failed = await self.fetch_userinfo(token)
            if data:
                claims = Claims.from_idp_payload(data)
                logger.info("sso_userinfo_ok", subject=claims.subject)
                return claims

        if external_user_id:
            logger.info("sso_fallback_claims", subject=external_user_id)
            return Claims.fallback(external_user_id)

        if transport_failed:
            raise IdentityProviderError("identity provider unavailable")
        raise NoIdentityError(
            "identity provider returned no user data",
            error_code="invalid_user_data",
            redirect_code="invalid_user_data",
        )
