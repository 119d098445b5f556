"""End-to-end SSO flows against a stubbed identity provider."""

from urllib.parse import parse_qs, urlsplit

import httpx

from portalauth.storage.errors import StoreUnavailable


def callback(client, **params):
    return client.get("/api/sso/callback", params=params, follow_redirects=False)


class TestLoginRedirect:
    def test_redirects_to_provider_with_callback(self, client):
        response = client.get("/api/sso/login", follow_redirects=False)

        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "https://sso.test/api/sso/auth"
        )
        assert parse_qs(location.query)["redirect"] == ["http://testserver/api/sso/callback"]

    def test_redirect_is_not_cacheable_or_frameable_cross_origin(self, client):
        response = client.get("/api/sso/login", follow_redirects=False)

        assert response.headers["cache-control"] == "no-cache, no-store, must-revalidate"
        assert response.headers["pragma"] == "no-cache"
        assert response.headers["expires"] == "0"
        assert response.headers["x-frame-options"] == "SAMEORIGIN"
        assert response.headers["content-security-policy"] == "frame-ancestors 'self';"


class TestCallback:
    def test_token_creates_user_and_session(self, client, store, idp):
        response = callback(client, token="tok-1")

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert "portal.sid=" in response.headers["set-cookie"]

        me = client.get("/api/auth/me").json()
        assert me["username"] == "jdoe"
        assert me["ssoId"] == "sso-jane"
        assert me["firstName"] == "Jane"
        assert me["lastName"] == "Doe"
        assert me["email"] == "jane.doe@corp.example"
        assert me["avatarUrl"] == "https://cdn.example/jane.png"
        assert me["tenantId"] == 3
        assert me["role"] == "employee"
        assert len(store.list_users()) == 1
        assert idp.requests[0].url.params["token"] == "tok-1"

    def test_repeat_callbacks_reuse_user(self, client, store):
        callback(client, token="tok-1")
        callback(client, token="tok-2")

        assert len(store.list_users()) == 1
        assert len(store.sessions) == 1

    def test_callback_links_existing_local_account(self, client, store, make_user):
        local = make_user("jdoe", "LocalPass-123", role="manager")

        callback(client, token="tok-1")

        user = store.get_user(local.id)
        assert user.sso_id == "sso-jane"
        assert user.role == "manager"
        assert client.get("/api/auth/me").json()["id"] == local.id

    def test_user_id_fallback_without_token(self, client, idp):
        response = callback(client, userId="u42")

        assert response.headers["location"] == "/"
        me = client.get("/api/auth/me").json()
        assert me["username"] == "u42"
        assert me["email"] == "u42@example.com"
        assert idp.requests == []

    def test_admin_fallback_gets_display_name(self, client):
        callback(client, userId="admin")

        me = client.get("/api/auth/me").json()
        assert me["firstName"] == "System"
        assert me["lastName"] == "Administrator"

    def test_missing_token_and_user_id(self, client):
        response = callback(client)

        assert response.status_code == 302
        assert response.headers["location"] == "/auth?error=no_token"
        assert "set-cookie" not in response.headers

    def test_empty_provider_data_is_invalid_user_data(self, client, idp, store):
        idp.payload = {"code": 200, "data": {}}

        response = callback(client, token="tok")

        assert response.headers["location"] == "/auth?error=invalid_user_data"
        assert store.list_users() == []

    def test_provider_error_without_fallback(self, client, idp):
        idp.status_code = 500

        response = callback(client, token="tok")

        assert response.headers["location"] == "/auth?error=auth_failed"

    def test_relogin_survives_failed_revoke_of_previous_session(self, client, store):
        callback(client, userId="u1")

        def down(session_id):
            raise StoreUnavailable("database unavailable")

        store.revoke_session = down

        response = callback(client, userId="u1")

        assert response.status_code == 302
        assert response.headers["location"] == "/"
        assert "portal.sid=" in response.headers["set-cookie"]
        assert client.get("/api/auth/me").status_code == 200
        assert len(store.sessions) == 2

    def test_provider_unreachable_uses_user_id(self, client, idp):
        idp.error = httpx.ConnectError("connection refused")

        response = callback(client, token="tok", userId="u7")

        assert response.headers["location"] == "/"
        assert client.get("/api/auth/me").json()["username"] == "u7"

    def test_store_outage_is_upsert_failed(self, client, store):
        def down(*args, **kwargs):
            raise StoreUnavailable("database unavailable")

        store.get_user_by_sso_id = down

        response = callback(client, token="tok")

        assert response.headers["location"] == "/auth?error=upsert_failed"

    def test_session_persist_failure_sets_no_cookie(self, client, store):
        def down(*args, **kwargs):
            raise StoreUnavailable("disk full")

        store.create_session = down

        response = callback(client, token="tok")

        assert response.headers["location"] == "/auth?error=session_save_error"
        assert "set-cookie" not in response.headers
        assert client.get("/api/auth/me").status_code == 401

    def test_unexpected_error_is_auth_failed(self, client, runtime):
        def explode(claims):
            raise RuntimeError("boom")

        runtime.reconciler.reconcile = explode

        response = callback(client, token="tok")

        assert response.headers["location"] == "/auth?error=auth_failed"


class TestLogout:
    def test_logout_revokes_session_and_redirects_to_provider(self, client, runtime):
        callback(client, token="tok")
        session_id = runtime.auth.unsign_session_id(client.cookies.get("portal.sid"))

        response = client.get("/api/sso/logout", follow_redirects=False)

        assert response.status_code == 302
        location = urlsplit(response.headers["location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "https://sso.test/api/sso/logout"
        )
        assert parse_qs(location.query)["redirect"] == ["http://testserver/auth"]
        assert runtime.store.get_session(session_id) is None
        assert client.get("/api/auth/me").status_code == 401

    def test_logout_still_redirects_during_store_outage(self, client, store):
        callback(client, token="tok")

        def down(session_id):
            raise StoreUnavailable("database unavailable")

        store.revoke_session = down

        response = client.get("/api/sso/logout", follow_redirects=False)

        assert response.status_code == 302
        assert response.headers["location"].startswith("https://sso.test/api/sso/logout")
