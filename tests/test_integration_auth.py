"""Integration tests for the HTTP surface.

Tests the complete flows through FastAPI:
- Password login and account lockout
- Two-factor setup, verification and second-step login
- Refresh rotation, revocation and introspection
- Audit history and health checks
"""

import asyncio
import time

import pytest
from fastapi.testclient import TestClient

from lockbox.app import create_app
from lockbox.service import totp
from lockbox.service.runtime import Runtime

EMAIL = "testuser@example.com"
PASSWORD = "TestPassword123!"


@pytest.fixture
def api_runtime(settings, memory_store):
    """Runtime on the wall clock so generated TOTP codes line up."""
    return Runtime(settings, store=memory_store)


@pytest.fixture
def client(api_runtime):
    return TestClient(create_app(runtime=api_runtime))


@pytest.fixture
def account(api_runtime):
    return asyncio.run(api_runtime.auth.create_user(EMAIL, PASSWORD))


def _login(client, password=PASSWORD, **extra):
    return client.post("/v1/auth/login", json={"email": EMAIL, "password": password, **extra})


def _bearer(token):
    return {"Authorization": f"Bearer {token}"}


def _access_token(client):
    response = _login(client)
    assert response.status_code == 200
    return response.json()["data"]["access_token"]


def _enable_two_factor(client, token):
    setup = client.post("/v1/auth/2fa/setup", headers=_bearer(token)).json()["data"]
    code = totp.generate_code(setup["secret"], time.time())
    response = client.post("/v1/auth/2fa/verify", json={"code": code}, headers=_bearer(token))
    assert response.status_code == 200
    return setup


class TestPasswordLogin:
    def test_login_returns_token_pair(self, client, account):
        """Valid credentials yield an opaque access/refresh pair."""
        response = _login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == 3600
        assert data["refresh_token"]
        assert data["scope"] == "profile email"
        assert response.headers["Cache-Control"] == "no-store"
        assert response.headers["X-Request-ID"]

    def test_wrong_password_and_unknown_user_look_alike(self, client, account):
        """Unknown users and bad passwords return the same error."""
        bad_password = _login(client, password="nope-nope-nope")
        unknown = client.post(
            "/v1/auth/login", json={"email": "ghost@example.com", "password": PASSWORD}
        )

        assert bad_password.status_code == unknown.status_code == 401
        assert bad_password.json()["error"] == unknown.json()["error"]
        assert bad_password.json()["error"]["code"] == "INVALID_CREDENTIALS"

    def test_malformed_email_is_validation_error(self, client):
        response = client.post("/v1/auth/login", json={"email": "not-an-email", "password": "x"})
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "validation_error"

    def test_account_locks_after_five_failures(self, client, account):
        """The fifth bad password locks the account; even the right one is refused."""
        for _ in range(5):
            assert _login(client, password="wrong-password").status_code == 401

        response = _login(client)
        assert response.status_code == 423
        assert response.json()["error"]["code"] == "ACCOUNT_LOCKED"
        assert 1790 <= int(response.headers["Retry-After"]) <= 1800

    def test_request_id_is_echoed(self, client, account):
        response = client.post(
            "/v1/auth/login",
            json={"email": EMAIL, "password": "wrong"},
            headers={"X-Request-ID": "trace-42"},
        )
        assert response.headers["X-Request-ID"] == "trace-42"
        assert response.json()["request_id"] == "trace-42"

    def test_login_is_rate_limited_per_email(self, client, api_runtime, account):
        api_runtime.settings.login_rate_limit_per_minute = 2
        assert _login(client).status_code == 200
        assert _login(client).status_code == 200

        response = _login(client)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert int(response.headers["Retry-After"]) >= 1

    def test_scope_outside_client_is_rejected(self, client, account):
        response = _login(client, scope="admin")
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_SCOPE"


class TestTwoFactorFlow:
    def test_bearer_token_required(self, client):
        response = client.post("/v1/auth/2fa/setup")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_setup_verify_and_second_step_login(self, client, account):
        token = _access_token(client)
        setup = _enable_two_factor(client, token)
        assert len(setup["backup_codes"]) == 10
        assert setup["enrollment_uri"].startswith("otpauth://totp/")

        status = client.get("/v1/auth/2fa/status", headers=_bearer(token)).json()["data"]
        assert status["state"] == "enabled"
        assert status["enabled"] is True
        assert status["remaining_backup_codes"] == 10

        challenge = _login(client).json()["data"]
        assert challenge["requires_2fa"] is True
        assert "access_token" not in challenge

        code = totp.generate_code(setup["secret"], time.time())
        response = client.post(
            "/v1/auth/2fa/login", json={"temp_token": challenge["temp_token"], "code": code}
        )
        assert response.status_code == 200
        assert response.json()["data"]["access_token"]

        replay = client.post(
            "/v1/auth/2fa/login", json={"temp_token": challenge["temp_token"], "code": code}
        )
        assert replay.status_code == 401
        assert replay.json()["error"]["code"] == "INVALID_2FA_TOKEN"

    def test_backup_code_login_consumes_code(self, client, account):
        token = _access_token(client)
        setup = _enable_two_factor(client, token)
        backup = setup["backup_codes"][0]

        challenge = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/2fa/login", json={"temp_token": challenge["temp_token"], "backup_code": backup}
        )
        assert response.status_code == 200

        challenge = _login(client).json()["data"]
        response = client.post(
            "/v1/auth/2fa/login", json={"temp_token": challenge["temp_token"], "backup_code": backup}
        )
        assert response.status_code == 401

        status = client.get("/v1/auth/2fa/status", headers=_bearer(token)).json()["data"]
        assert status["remaining_backup_codes"] == 9

    def test_repeated_bad_codes_lock_second_step(self, client, account):
        token = _access_token(client)
        _enable_two_factor(client, token)
        temp_token = _login(client).json()["data"]["temp_token"]

        remaining = []
        for _ in range(5):
            response = client.post("/v1/auth/2fa/login", json={"temp_token": temp_token, "code": "00000x"})
            assert response.status_code == 401
            remaining.append(response.json()["error"]["details"]["attempts_remaining"])
        assert remaining == [4, 3, 2, 1, 0]

        response = client.post("/v1/auth/2fa/login", json={"temp_token": temp_token, "code": "000000"})
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "TWO_FACTOR_LOCKED"
        assert int(response.headers["Retry-After"]) > 0

    def test_unknown_temp_token(self, client):
        response = client.post("/v1/auth/2fa/login", json={"temp_token": "bogus", "code": "123456"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_2FA_TOKEN"

    def test_setup_twice_conflicts_and_cancel_resets(self, client, account):
        token = _access_token(client)
        assert client.post("/v1/auth/2fa/setup", headers=_bearer(token)).status_code == 200
        again = client.post("/v1/auth/2fa/setup", headers=_bearer(token))
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "CONFLICT"

        assert client.post("/v1/auth/2fa/cancel", headers=_bearer(token)).status_code == 200
        status = client.get("/v1/auth/2fa/status", headers=_bearer(token)).json()["data"]
        assert status["state"] == "disabled"

    def test_verify_wrong_code_reports_attempts(self, client, account):
        token = _access_token(client)
        client.post("/v1/auth/2fa/setup", headers=_bearer(token))
        response = client.post("/v1/auth/2fa/verify", json={"code": "abcdef"}, headers=_bearer(token))
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_CODE"
        assert response.json()["error"]["details"]["attempts_remaining"] == 4

    def test_disable_and_regenerate(self, client, account):
        token = _access_token(client)
        _enable_two_factor(client, token)

        codes = client.post("/v1/auth/2fa/backup-codes", headers=_bearer(token))
        assert codes.status_code == 200
        assert len(codes.json()["data"]["backup_codes"]) == 10

        wrong = client.post(
            "/v1/auth/2fa/disable", json={"current_password": "nope"}, headers=_bearer(token)
        )
        assert wrong.status_code == 401

        response = client.post(
            "/v1/auth/2fa/disable", json={"current_password": PASSWORD}, headers=_bearer(token)
        )
        assert response.status_code == 200
        assert "access_token" in _login(client).json()["data"]

    def test_disable_is_rate_limited(self, client, api_runtime, account):
        token = _access_token(client)
        _enable_two_factor(client, token)
        api_runtime.settings.two_factor_rate_limit_per_minute = 1

        first = client.post(
            "/v1/auth/2fa/disable", json={"current_password": "nope"}, headers=_bearer(token)
        )
        assert first.status_code == 401
        second = client.post(
            "/v1/auth/2fa/disable", json={"current_password": PASSWORD}, headers=_bearer(token)
        )
        assert second.status_code == 429
        assert second.json()["error"]["code"] == "rate_limited"


class TestTokenEndpoints:
    def test_refresh_rotates_and_detects_reuse(self, client, account):
        pair = _login(client).json()["data"]

        rotated = client.post("/v1/token/refresh", json={"refresh_token": pair["refresh_token"]})
        assert rotated.status_code == 200
        new_pair = rotated.json()["data"]
        assert new_pair["refresh_token"] != pair["refresh_token"]

        replay = client.post("/v1/token/refresh", json={"refresh_token": pair["refresh_token"]})
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "INVALID_GRANT"

        introspect = client.post("/v1/token/introspect", json={"token": new_pair["access_token"]})
        assert introspect.json()["data"]["active"] is False

    def test_revoke_makes_token_inactive(self, client, account):
        token = _access_token(client)
        active = client.post("/v1/token/introspect", json={"token": token}).json()["data"]
        assert active["active"] is True
        assert active["scope"] == "profile email"
        assert active["client_id"] == "lockbox-web"

        revoked = client.post("/v1/token/revoke", json={"token": token})
        assert revoked.json()["data"] == {"revoked": 1}

        assert client.post("/v1/token/introspect", json={"token": token}).json()["data"] == {
            "active": False,
            "client_id": None,
            "user_id": None,
            "tenant_id": None,
            "scope": "",
            "exp": None,
            "iat": None,
        }
        assert client.get("/v1/auth/2fa/status", headers=_bearer(token)).status_code == 401

    def test_revoke_unknown_token_is_not_an_error(self, client):
        response = client.post("/v1/token/revoke", json={"token": "never-issued"})
        assert response.status_code == 200
        assert response.json()["data"]["revoked"] == 0

    def test_revoke_all_sessions(self, client, account):
        first = _access_token(client)
        second = _access_token(client)
        response = client.post("/v1/token/revoke", json={"token": first, "all_sessions": True})
        assert response.json()["data"]["revoked"] == 2
        assert client.post("/v1/token/introspect", json={"token": second}).json()["data"]["active"] is False

    def test_client_credentials_grant(self, client, api_runtime):
        _client, secret = asyncio.run(
            api_runtime.tokens.register_client(
                "billing-worker", client_type="machine", allowed_scopes=["billing:read"]
            )
        )
        response = client.post(
            "/v1/token/client", json={"client_id": "billing-worker", "client_secret": secret}
        )
        assert response.status_code == 200
        data = response.json()["data"]
        assert data["refresh_token"] is None

        introspect = client.post("/v1/token/introspect", json={"token": data["access_token"]}).json()["data"]
        assert introspect["active"] is True
        assert introspect["user_id"] is None

        denied = client.post(
            "/v1/token/client", json={"client_id": "billing-worker", "client_secret": "wrong"}
        )
        assert denied.status_code == 401
        assert denied.json()["error"]["code"] == "INVALID_CLIENT"


class TestAuditAndHealth:
    def test_audit_history_for_current_user(self, client, account):
        _login(client, password="wrong-password")
        token = _access_token(client)

        response = client.get("/v1/audit/events", headers=_bearer(token))
        assert response.status_code == 200
        events = [item["event"] for item in response.json()["data"]["items"]]
        assert "LOGIN_SUCCESS" in events
        assert "LOGIN_FAILED" in events

        failed = client.get(
            "/v1/audit/events", params={"event": "LOGIN_FAILED"}, headers=_bearer(token)
        ).json()["data"]["items"]
        assert [item["severity"] for item in failed] == ["medium"]

    def test_audit_rejects_unknown_severity(self, client, account):
        token = _access_token(client)
        response = client.get("/v1/audit/events", params={"severity": "severe"}, headers=_bearer(token))
        assert response.status_code == 400

    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["redis"]["status"] == "not_configured"
        assert body["checks"]["filesystem"]["status"] == "healthy"
        assert body["checks"]["introspection_cache"]["degraded"] is True
        assert body["checks"]["audit"]["pending"] == 0
