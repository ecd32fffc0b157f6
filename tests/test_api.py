"""HTTP surface tests: envelopes, bearer auth, admission headers and JWKS."""

import pytest
from fastapi import Depends
from fastapi.testclient import TestClient

from conftest import DEFAULT_PASSWORD
from tenantauth.api.deps import require_role
from tenantauth.app import create_app


@pytest.fixture
def client(runtime):
    return TestClient(create_app())


@pytest.fixture
def member(make_user, public_app, runtime):
    user = make_user(apps=[public_app])
    runtime.authz.assign_role(user.id, public_app.id, "user")
    return user


def _login(client, app, password=DEFAULT_PASSWORD, email="alice@example.com"):
    return client.post(
        "/v1/auth/login",
        json={"email": email, "password": password, "client_id": app.client_id},
    )


class TestPublicEndpoints:
    def test_jwks_is_bare_document(self, client, runtime):
        response = client.get("/.well-known/jwks.json")

        assert response.status_code == 200
        body = response.json()
        assert body["keys"][0]["kid"] == runtime.keys.kid
        assert "status" not in body

    def test_healthz(self, client):
        response = client.get("/healthz")

        assert response.status_code == 200
        assert response.json()["data"] == {"status": "ok", "redis": False}

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"


class TestLogin:
    def test_login_returns_token_envelope(self, client, member, public_app):
        response = _login(client, public_app)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["token_type"] == "Bearer"
        assert body["data"]["expires_in"] == 600
        assert response.headers["X-RateLimit-Limit"] == "5"
        assert response.headers["X-RateLimit-Remaining"] == "4"

    def test_bad_credentials_envelope(self, client, member, public_app):
        response = _login(client, public_app, password="wrong-password", email="alice@example.com")

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "invalid_credentials"
        assert body["error"]["message"] == "Invalid credentials"
        assert body["request_id"]

    def test_rate_limited_login_has_retry_after(self, client, member, public_app):
        for _ in range(5):
            _login(client, public_app, password="wrong-password")

        response = _login(client, public_app)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.headers["Retry-After"] == "60"

    def test_missing_fields_are_validation_errors(self, client):
        response = client.post("/v1/auth/login", json={"email": "alice@example.com"})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_error_carries_request_id(self, client, public_app):
        response = client.post(
            "/v1/auth/login",
            json={"email": "x@example.com", "password": "pw", "client_id": "nope"},
            headers={"X-Request-ID": "trace-42"},
        )

        assert response.status_code == 401
        assert response.json()["request_id"] == "trace-42"


class TestTokensOverHttp:
    def test_userinfo_requires_bearer(self, client):
        response = client.get("/v1/userinfo")

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"
        assert response.headers["WWW-Authenticate"].startswith("Bearer")

    def test_userinfo_rejects_garbage_token(self, client):
        response = client.get("/v1/userinfo", headers={"Authorization": "Bearer not.a.jwt"})

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_invalid"

    def test_userinfo_and_me(self, client, member, public_app):
        tokens = _login(client, public_app).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        userinfo = client.get("/v1/userinfo", headers=headers).json()["data"]
        me = client.get("/v1/me", headers=headers).json()["data"]

        assert userinfo["sub"] == member.id
        assert userinfo["aud"] == public_app.client_id
        assert userinfo["roles"] == ["user"]
        assert me["email"] == "alice@example.com"
        assert me["roles"] == {public_app.id: ["user"]}

    def test_expired_access_token(self, client, member, public_app, clock):
        tokens = _login(client, public_app).json()["data"]
        clock.advance(minutes=11)

        response = client.get(
            "/v1/userinfo", headers={"Authorization": f"Bearer {tokens['access_token']}"}
        )

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "token_expired"

    def test_refresh_rotation_and_reuse(self, client, member, public_app):
        tokens = _login(client, public_app).json()["data"]
        payload = {"refresh_token": tokens["refresh_token"], "client_id": public_app.client_id}

        rotated = client.post("/v1/auth/refresh", json=payload)
        reused = client.post("/v1/auth/refresh", json=payload)

        assert rotated.status_code == 200
        assert reused.status_code == 401
        assert reused.json()["error"]["code"] == "token_revoked"

    def test_revoke(self, client, member, public_app):
        tokens = _login(client, public_app).json()["data"]

        first = client.post("/v1/auth/revoke", json={"refresh_token": tokens["refresh_token"]})
        unknown = client.post("/v1/auth/revoke", json={"refresh_token": "never-issued"})

        assert first.json()["data"] == {"revoked": True}
        assert unknown.status_code == 404
        assert unknown.json()["error"]["code"] == "not_found"


class TestPasswordResetOverHttp:
    def test_reset_round_trip(self, client, member, notifier):
        # request, confirm and replay use up the whole strict window of three
        requested = client.post(
            "/v1/auth/password-reset/request", json={"email": "alice@example.com"}
        )
        token = notifier.last()[2]["token"]

        confirmed = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "another-password"},
        )
        replayed = client.post(
            "/v1/auth/password-reset/confirm",
            json={"token": token, "new_password": "another-password"},
        )

        assert requested.status_code == 200
        assert confirmed.json()["data"] == {"reset": True}
        assert replayed.status_code == 400
        assert replayed.json()["error"]["code"] == "invalid_or_expired"


class TestAdmin:
    def test_delete_user_requires_superadmin(self, client, runtime, member, make_user, public_app):
        target = make_user(email="bob@example.com")
        tokens = _login(client, public_app).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        forbidden = client.delete(f"/v1/admin/users/{target.id}", headers=headers)
        runtime.authz.assign_role(member.id, public_app.id, "admin")
        allowed = client.delete(f"/v1/admin/users/{target.id}", headers=headers)

        assert forbidden.status_code == 403
        assert forbidden.json()["error"]["code"] == "forbidden"
        assert allowed.status_code == 200
        assert allowed.json()["data"] == {"deleted": True}
        assert runtime.store.get_user(target.id) is None

    def test_role_gate_reads_token_roles(self, runtime, member, public_app):
        app = create_app()

        @app.get("/guarded/user")
        async def guarded_user(claims=Depends(require_role("user"))):
            return {"sub": claims.sub}

        @app.get("/guarded/editor")
        async def guarded_editor(claims=Depends(require_role("editor"))):
            return {"sub": claims.sub}

        client = TestClient(app)
        tokens = _login(client, public_app).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        assert client.get("/guarded/user", headers=headers).json() == {"sub": member.id}
        denied = client.get("/guarded/editor", headers=headers)
        assert denied.status_code == 403
        assert denied.json()["error"]["message"] == "role 'editor' required"

    def test_admin_updates_auth_settings(self, client, runtime, member, public_app):
        runtime.authz.assign_role(member.id, public_app.id, "admin")
        tokens = _login(client, public_app).json()["data"]
        headers = {"Authorization": f"Bearer {tokens['access_token']}"}

        response = client.patch(
            f"/v1/admin/apps/{public_app.id}/auth-settings",
            json={"email_otp_enabled": True, "allow_registration": False},
            headers=headers,
        )
        rejected = client.patch(
            f"/v1/admin/apps/{public_app.id}/auth-settings",
            json={"email_password_enabled": False, "email_otp_enabled": False},
            headers=headers,
        )

        assert response.status_code == 200
        assert response.json()["data"]["providers"]["email_otp"] is True
        assert response.json()["data"]["allow_registration"] is False
        assert rejected.status_code == 400
        assert runtime.clients.is_auth_method_enabled(public_app.id, "email_password")


class TestAuthSettingsOverHttp:
    def test_providers_lists_enabled_methods(self, client, runtime, public_app):
        runtime.clients.update_auth_settings(public_app.id, github_auth_enabled=True)

        response = client.get("/v1/auth/providers", params={"client_id": public_app.client_id})

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["app_name"] == "Mobile"
        assert data["providers"] == {
            "email_password": True,
            "email_otp": False,
            "google": False,
            "github": True,
            "microsoft": False,
        }

    def test_providers_for_unknown_client(self, client):
        response = client.get("/v1/auth/providers", params={"client_id": "nope"})
        assert response.status_code == 404

    def test_disabled_password_login_envelope(self, client, runtime, member, public_app):
        runtime.clients.update_auth_settings(
            public_app.id, email_password_enabled=False, google_auth_enabled=True
        )

        response = _login(client, public_app)

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "auth_method_disabled"
