"""Tests for the ``{message, code}`` error body and exception mapping."""

from fastapi.testclient import TestClient

from portalauth.api.error_handling import _STATUS_TO_CODE, _error_code_for_status, error_response
from portalauth.app import create_app
from portalauth.service.errors import ForbiddenError, RateLimitedError
from portalauth.storage.errors import ConstraintViolation, StoreUnavailable


class TestErrorResponse:
    def test_body_shape(self):
        response = error_response(401, "Unauthorized", "unauthorized")
        assert response.status_code == 401
        assert response.body == b'{"message":"Unauthorized","code":"unauthorized"}'

    def test_code_defaults_from_status(self):
        assert _error_code_for_status(404) == "not_found"
        assert _error_code_for_status(418) == "server_error"
        assert _STATUS_TO_CODE[503] == "unavailable"

    def test_headers_are_passed_through(self):
        response = error_response(429, "slow down", "rate_limited", headers={"Retry-After": "60"})
        assert response.headers["retry-after"] == "60"


def make_failing_client(runtime):
    app = create_app(runtime)

    @app.get("/boom/forbidden")
    async def forbidden():
        raise ForbiddenError("nope")

    @app.get("/boom/rate")
    async def rate():
        raise RateLimitedError("too many", detail={"retry_after": 30})

    @app.get("/boom/conflict")
    async def conflict():
        raise ConstraintViolation("username already exists", {"field": "username"})

    @app.get("/boom/store")
    async def store_down():
        raise StoreUnavailable("database unavailable")

    @app.get("/boom/crash")
    async def crash():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_service_error(self, runtime):
        response = make_failing_client(runtime).get("/boom/forbidden")
        assert response.status_code == 403
        assert response.json() == {"message": "nope", "code": "forbidden"}

    def test_retry_after_from_detail(self, runtime):
        response = make_failing_client(runtime).get("/boom/rate")
        assert response.status_code == 429
        assert response.headers["retry-after"] == "30"

    def test_constraint_violation_is_conflict(self, runtime):
        response = make_failing_client(runtime).get("/boom/conflict")
        assert response.status_code == 409
        assert response.json()["code"] == "conflict"

    def test_store_unavailable_hides_detail(self, runtime):
        response = make_failing_client(runtime).get("/boom/store")
        assert response.status_code == 503
        assert response.json() == {
            "message": "service temporarily unavailable",
            "code": "unavailable",
        }

    def test_unhandled_exception_is_server_error(self, runtime):
        response = make_failing_client(runtime).get("/boom/crash")
        assert response.status_code == 500
        assert response.json()["code"] == "server_error"
        assert "unexpected" not in response.text

    def test_unknown_route_is_not_found(self, client):
        response = client.get("/api/nope")
        assert response.status_code == 404
        assert response.json()["code"] == "not_found"


class TestSecurityHeaders:
    def test_api_responses_are_not_cached(self, client):
        response = client.get("/api/auth/me")
        assert response.headers["cache-control"] == "no-store"
        assert response.headers["x-frame-options"] == "DENY"
        assert response.headers["x-content-type-options"] == "nosniff"


class TestHealth:
    def test_degraded_store_is_503(self, runtime, client):
        def down():
            raise StoreUnavailable("database unavailable")

        runtime.store.verify_connection = down

        response = client.get("/healthz")

        assert response.status_code == 503
        assert response.json()["status"] == "degraded"
        assert response.json()["store"] == "unavailable"
