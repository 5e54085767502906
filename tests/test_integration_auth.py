"""Integration tests for the HTTP auth flow.

Tests the complete flow including:
- Login with password, optionally bound to a tenant
- Token refresh and replay of a rotated refresh token
- Tenant selection
- Password change
- Logout
"""

import pytest
from fastapi.testclient import TestClient

from tenantauth import app as app_module


@pytest.fixture
def client():
    """Create a test client for the API."""
    return TestClient(app_module.app)


def _login(client, seeded, **extra):
    response = client.post(
        "/v1/auth/login",
        json={"email": "alice@example.com", "password": seeded["password"], **extra},
    )
    assert response.status_code == 200, response.text
    return response.json()["data"]


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestLoginFlow:
    def test_login_returns_camel_case_pair(self, client, seeded):
        data = _login(client, seeded)

        assert data["accessToken"]
        assert data["refreshToken"]
        assert data["tokenType"] == "bearer"
        assert data["sessionId"]
        assert data["principal"]["id"] == seeded["principal"].id
        assert [t["name"] for t in data["tenants"]] == ["Acme", "Globex"]
        assert data["tenants"][1]["active"] is False
        assert data["tenant"] is None

    def test_login_accepts_snake_case_fields(self, client, seeded):
        response = client.post(
            "/v1/auth/login",
            json={
                "email": "alice@example.com",
                "password": seeded["password"],
                "tenant_id": seeded["acme"].id,
            },
        )
        assert response.status_code == 200
        assert response.json()["data"]["tenant"]["id"] == seeded["acme"].id

    @pytest.mark.parametrize(
        "email,password",
        [
            ("alice@example.com", "WrongPassword1!"),
            ("nobody@example.com", "TestPassword123!"),
        ],
    )
    def test_bad_credentials_are_generic_401(self, client, seeded, email, password):
        response = client.post("/v1/auth/login", json={"email": email, "password": password})

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"] == {
            "code": "unauthorized",
            "message": "invalid credentials",
            "details": None,
        }
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_blocked_account_looks_like_bad_password(self, client, seeded):
        from tenantauth.storage.models import PrincipalStatus

        seeded["runtime"].store.set_principal_status(seeded["principal"].id, PrincipalStatus.BLOCKED)
        response = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": seeded["password"]},
        )
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_login_into_foreign_tenant_is_403(self, client, seeded):
        response = client.post(
            "/v1/auth/login",
            json={
                "email": "alice@example.com",
                "password": seeded["password"],
                "tenantId": seeded["initech"].id,
            },
        )
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_malformed_email_is_rejected(self, client, seeded):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 422


class TestRefreshFlow:
    def test_refresh_rotates_and_replay_fails(self, client, seeded):
        login = _login(client, seeded)

        first = client.post("/v1/auth/refresh", json={"refreshToken": login["refreshToken"]})
        assert first.status_code == 200
        rotated = first.json()["data"]
        assert rotated["sessionId"] == login["sessionId"]
        assert rotated["refreshToken"] != login["refreshToken"]

        replay = client.post("/v1/auth/refresh", json={"refreshToken": login["refreshToken"]})
        assert replay.status_code == 401
        assert replay.json()["error"]["message"] == "invalid or expired session"

        second = client.post("/v1/auth/refresh", json={"refreshToken": rotated["refreshToken"]})
        assert second.status_code == 200

    def test_garbage_refresh_token(self, client, seeded):
        response = client.post("/v1/auth/refresh", json={"refreshToken": "garbage"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_refresh_into_closed_tenant_is_401(self, client, seeded):
        from tenantauth.storage.models import TenantStatus

        login = _login(client, seeded, tenantId=seeded["acme"].id)
        seeded["runtime"].store.set_tenant_status(seeded["acme"].id, TenantStatus.INACTIVE)

        response = client.post("/v1/auth/refresh", json={"refreshToken": login["refreshToken"]})

        assert response.status_code == 401
        assert response.json()["error"] == {
            "code": "unauthorized",
            "message": "invalid or expired session",
            "details": None,
        }
        assert "tenant" not in response.text


class TestTenantFlow:
    def test_select_tenant_scopes_access_token(self, client, seeded):
        login = _login(client, seeded)

        response = client.post(
            "/v1/auth/tenant",
            json={"tenantId": seeded["acme"].id},
            headers=_bearer(login["accessToken"]),
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["tenant"]["role"] == "admin"

        me = client.get("/v1/auth/me", headers=_bearer(data["accessToken"]))
        assert me.status_code == 200
        assert me.json()["data"]["tenantId"] == seeded["acme"].id
        assert me.json()["data"]["role"] == "admin"

    def test_select_inactive_or_foreign_tenant_is_403(self, client, seeded):
        login = _login(client, seeded)
        headers = _bearer(login["accessToken"])

        inactive = client.post("/v1/auth/tenant", json={"tenantId": seeded["globex"].id}, headers=headers)
        foreign = client.post("/v1/auth/tenant", json={"tenantId": seeded["initech"].id}, headers=headers)

        assert inactive.status_code == 403
        assert inactive.json()["error"]["message"] == "tenant is not active"
        assert foreign.status_code == 403
        assert foreign.json()["error"]["message"] == "tenant access denied"

    def test_select_requires_bearer(self, client, seeded):
        response = client.post("/v1/auth/tenant", json={"tenantId": seeded["acme"].id})
        assert response.status_code == 401


class TestPasswordAndLogout:
    def test_password_change_ends_all_sessions(self, client, seeded):
        first = _login(client, seeded)
        second = _login(client, seeded)

        response = client.post(
            "/v1/auth/password",
            json={"currentPassword": seeded["password"], "newPassword": "AnotherPass789#"},
            headers=_bearer(first["accessToken"]),
        )
        assert response.status_code == 200
        assert response.json()["data"]["sessionsRevoked"] == 2

        for login in (first, second):
            refreshed = client.post("/v1/auth/refresh", json={"refreshToken": login["refreshToken"]})
            assert refreshed.status_code == 401

        relogin = client.post(
            "/v1/auth/login",
            json={"email": "alice@example.com", "password": "AnotherPass789#"},
        )
        assert relogin.status_code == 200

    def test_weak_new_password_is_400(self, client, seeded):
        login = _login(client, seeded)
        response = client.post(
            "/v1/auth/password",
            json={"currentPassword": seeded["password"], "newPassword": "weak"},
            headers=_bearer(login["accessToken"]),
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"
        assert response.json()["error"]["details"]["problems"]

    def test_logout_is_idempotent(self, client, seeded):
        login = _login(client, seeded)
        payload = {"refreshToken": login["refreshToken"]}
        headers = _bearer(login["accessToken"])

        assert client.post("/v1/auth/logout", json=payload, headers=headers).status_code == 200
        assert client.post("/v1/auth/logout", json=payload, headers=headers).status_code == 200

        assert client.post("/v1/auth/refresh", json=payload).status_code == 401
        assert client.get("/v1/auth/me", headers=headers).status_code == 401


class TestRateLimits:
    def test_login_attempts_per_email_are_limited(self, client, seeded):
        seeded["runtime"].settings.login_rate_limit_per_minute = 2
        bad = {"email": "alice@example.com", "password": "WrongPassword1!"}

        assert client.post("/v1/auth/login", json=bad).status_code == 401
        assert client.post("/v1/auth/login", json=bad).status_code == 401
        limited = client.post(
            "/v1/auth/login",
            json={"email": "Alice@Example.com", "password": seeded["password"]},
        )

        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limited"
        assert int(limited.headers["Retry-After"]) >= 1

    def test_login_attempts_per_address_are_limited(self, client, seeded):
        seeded["runtime"].settings.login_ip_rate_limit_per_minute = 1

        first = client.post("/v1/auth/login", json={"email": "bob@example.com", "password": "x"})
        second = client.post("/v1/auth/login", json={"email": "carol@example.com", "password": "x"})

        assert first.status_code == 401
        assert second.status_code == 429

    def test_refresh_is_limited(self, client, seeded):
        seeded["runtime"].settings.refresh_rate_limit_per_minute = 1
        login = _login(client, seeded)

        first = client.post("/v1/auth/refresh", json={"refreshToken": login["refreshToken"]})
        second = client.post(
            "/v1/auth/refresh", json={"refreshToken": first.json()["data"]["refreshToken"]}
        )

        assert first.status_code == 200
        assert second.status_code == 429


def test_healthz_reports_memory_store(client):
    response = client.get("/healthz")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["redis"] == {"status": "not_configured"}


def test_responses_carry_request_id_and_no_store(client, seeded):
    response = client.post(
        "/v1/auth/login",
        json={"email": "alice@example.com", "password": seeded["password"]},
        headers={"X-Request-ID": "req-123"},
    )
    assert response.headers["X-Request-ID"] == "req-123"
    assert "no-store" in response.headers["Cache-Control"]
