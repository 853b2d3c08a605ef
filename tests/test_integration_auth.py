"""Integration tests for the HTTP authentication surface.

Covers client and employee login, MFA verification, session handling,
password flows, signup and the permission-gated admin routes, all through
the FastAPI app with the in-memory store and counters.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient

from gatekeeper import app as app_module
from gatekeeper.service.abuse import AbuseDetector
from gatekeeper.service.runtime import get_runtime
from gatekeeper.storage.models import PrincipalKind, ResourceType, ScopedRecord, new_id

PASSWORD = "Vt7#qLmz9!pW"
NEW_PASSWORD = "Rk4$wNzp8@Yc"
CODE = "123456"


@pytest.fixture
def runtime(monkeypatch):
    runtime = get_runtime()
    monkeypatch.setattr(runtime.mfa, "generate_code", lambda: CODE)
    return runtime


@pytest.fixture
def client(runtime):
    with TestClient(app_module.app) as test_client:
        yield test_client


def _create(runtime, kind, email, *, roles=(), mfa_enabled=False):
    store = runtime.store
    principal = store.create_principal(kind, email, email_verified=True, mfa_enabled=mfa_enabled)
    password_hash = runtime.passwords.hash(PASSWORD)
    store.save_password(principal.id, password_hash)
    runtime.passwords.record_used(principal.id, password_hash, kind)
    runtime.passwords.mark_changed(principal.id, kind)
    for role in roles:
        if role not in store.roles:
            store.create_role(role)
        store.assign_role(principal.id, role)
    return principal


def _grant(runtime, role, permission_key):
    store = runtime.store
    if role not in store.roles:
        store.create_role(role)
    if permission_key not in store.permissions:
        store.create_permission(permission_key)
    store.grant_permission(role, permission_key)


def _auth(token):
    return {"Authorization": f"Bearer {token}"}


def _client_login(client, email="c@example.com", password=PASSWORD):
    return client.post("/v1/auth/login", json={"email": email, "password": password})


def _employee_session(client, email):
    response = client.post(
        "/v1/auth/employee/login", json={"email": email, "password": PASSWORD}
    )
    assert response.json()["data"]["requiresMfa"] is True
    verified = client.post("/v1/auth/mfa/verify", json={"email": email, "code": CODE})
    assert verified.status_code == 200
    return verified.json()["data"]["session"]["token"]


class TestClientLogin:
    def test_login_sets_cookie_and_returns_session(self, client, runtime):
        principal = _create(runtime, PrincipalKind.CLIENT, "c@example.com")

        response = _client_login(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        assert body["data"]["principalId"] == principal.id
        assert body["data"]["requiresMfa"] is False
        token = body["data"]["session"]["token"]
        assert len(token) == 128
        assert response.cookies.get("session_token") == token
        assert response.headers["X-Request-ID"]
        assert response.headers["Cache-Control"].startswith("no-store")

    @pytest.mark.parametrize("cause", ["no_account", "wrong_secret", "unverified", "terminated"])
    def test_every_failure_cause_gets_the_same_reply(self, client, runtime, cause):
        principal = _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        baseline = _client_login(client, email="ghost@example.com")
        email, password = "c@example.com", PASSWORD
        if cause == "no_account":
            email = "nobody@example.com"
        elif cause == "wrong_secret":
            password = "Wrong#Pass1"
        elif cause == "unverified":
            runtime.store.update_principal(principal.id, email_verified=False)
        else:
            runtime.store.update_principal(principal.id, status="terminated")

        response = _client_login(client, email=email, password=password)

        assert response.status_code == baseline.status_code == 401
        assert response.json()["error"] == baseline.json()["error"]
        assert response.json()["error"]["code"] == "INVALID_CREDENTIALS"
        assert response.json()["error"]["message"] == "Invalid email or password"

    def test_repeated_failures_rate_limited_with_retry_after(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        for _ in range(5):
            assert _client_login(client, password="Wrong#Pass1").status_code == 401

        response = _client_login(client)

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "LOGIN_RATE_LIMIT_EXCEEDED"
        assert int(response.headers["Retry-After"]) > 0
        assert response.json()["error"]["details"]["retryAfter"] == int(
            response.headers["Retry-After"]
        )

    def test_malformed_email_is_422(self, client):
        response = client.post("/v1/auth/login", json={"email": "nope", "password": "x"})
        assert response.status_code == 422
        assert response.json()["error"]["code"] == "validation_error"


class TestEmployeeLogin:
    def test_mfa_round_trip_and_trusted_device(self, client, runtime):
        _create(runtime, PrincipalKind.EMPLOYEE, "ops@example.com")

        first = client.post(
            "/v1/auth/employee/login",
            json={"email": "ops@example.com", "password": PASSWORD, "deviceFingerprint": "fp-9"},
        )
        assert first.json()["data"]["requiresMfa"] is True
        assert first.json()["data"]["session"] is None

        verified = client.post(
            "/v1/auth/mfa/verify",
            json={
                "email": "ops@example.com",
                "code": CODE,
                "rememberDevice": True,
                "deviceFingerprint": "fp-9",
            },
        )
        assert verified.status_code == 200
        token = verified.json()["data"]["session"]["token"]

        devices = client.get("/v1/auth/trusted-devices", headers=_auth(token))
        assert len(devices.json()["data"]["devices"]) == 1

        again = client.post(
            "/v1/auth/employee/login",
            json={"email": "ops@example.com", "password": PASSWORD, "deviceFingerprint": "fp-9"},
        )
        assert again.json()["data"]["trustedDevice"] is True

    def test_reused_code_rejected(self, client, runtime):
        _create(runtime, PrincipalKind.EMPLOYEE, "ops@example.com")
        _employee_session(client, "ops@example.com")

        response = client.post(
            "/v1/auth/mfa/verify", json={"email": "ops@example.com", "code": CODE}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "INVALID_VERIFICATION_CODE"
        assert response.json()["error"]["message"] == "Invalid verification code"

    def test_code_guessing_locked_out_until_window_passes(
        self, client, runtime, clock, counters, monkeypatch
    ):
        detector = AbuseDetector(runtime.store, counters, runtime.settings, clock=clock)
        monkeypatch.setattr(runtime.auth, "abuse", detector)
        _create(runtime, PrincipalKind.EMPLOYEE, "ops@example.com")
        client.post("/v1/auth/employee/login", json={"email": "ops@example.com", "password": PASSWORD})

        for _ in range(runtime.settings.code_max_failures):
            wrong = client.post(
                "/v1/auth/mfa/verify", json={"email": "ops@example.com", "code": "000000"}
            )
            assert wrong.status_code == 400

        blocked = client.post(
            "/v1/auth/mfa/verify", json={"email": "ops@example.com", "code": "000000"}
        )
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "VERIFICATION_ATTEMPTS_EXCEEDED"
        assert blocked.json()["error"]["details"]["retryAfter"] == int(
            blocked.headers["Retry-After"]
        )

        correct = client.post("/v1/auth/mfa/verify", json={"email": "ops@example.com", "code": CODE})
        assert correct.status_code == 429

        clock.advance(runtime.settings.code_failure_window_minutes * 60 + 1)
        later = client.post("/v1/auth/mfa/verify", json={"email": "ops@example.com", "code": CODE})
        assert later.status_code == 200
        assert later.json()["data"]["session"]["token"]

    @pytest.mark.parametrize(
        "path, extra",
        [
            ("/v1/auth/verify-email", {}),
            ("/v1/auth/password/reset", {"newPassword": NEW_PASSWORD}),
        ],
    )
    def test_other_code_routes_share_the_attempt_limit(self, client, runtime, path, extra):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        body = {"email": "c@example.com", "code": "000000", **extra}
        for _ in range(runtime.settings.code_max_failures):
            assert client.post(path, json=body).status_code == 400

        blocked = client.post(path, json=body)
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "VERIFICATION_ATTEMPTS_EXCEEDED"
        assert int(blocked.headers["Retry-After"]) > 0

    def test_fourth_attempt_blocked(self, client, runtime):
        _create(runtime, PrincipalKind.EMPLOYEE, "ops@example.com")
        payload = {"email": "ops@example.com", "password": "Wrong#Pass1"}
        for _ in range(3):
            assert client.post("/v1/auth/employee/login", json=payload).status_code == 401

        response = client.post("/v1/auth/employee/login", json=payload)
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "EMPLOYEE_LOGIN_RATE_LIMIT_EXCEEDED"
        assert "Retry-After" in response.headers


class TestSessions:
    def test_session_validate_heartbeat_regenerate_logout(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        token = _client_login(client).json()["data"]["session"]["token"]

        session = client.get("/v1/auth/session", headers=_auth(token))
        assert session.status_code == 200
        assert session.json()["data"]["token"] is None

        assert client.post("/v1/auth/session/heartbeat", headers={"X-Session-Token": token}).status_code == 200

        regenerated = client.post("/v1/auth/session/regenerate", headers=_auth(token))
        new_token = regenerated.json()["data"]["token"]
        assert new_token != token
        assert client.get("/v1/auth/session", headers=_auth(token)).status_code == 401

        assert client.post("/v1/auth/logout", headers=_auth(new_token)).status_code == 200
        again = client.post("/v1/auth/logout", headers=_auth(new_token))
        assert again.status_code == 404
        assert again.json()["error"]["code"] == "SESSION_NOT_FOUND"

    def test_missing_session_is_401(self, client):
        response = client.get("/v1/auth/session")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "INVALID_SESSION"


class TestPasswords:
    def test_forgot_reset_and_login_with_new_password(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")

        forgot = client.post("/v1/auth/password/forgot", json={"email": "c@example.com"})
        unknown = client.post("/v1/auth/password/forgot", json={"email": "ghost@example.com"})
        assert forgot.json()["data"] == unknown.json()["data"]

        reset = client.post(
            "/v1/auth/password/reset",
            json={"email": "c@example.com", "code": CODE, "newPassword": NEW_PASSWORD},
        )
        assert reset.status_code == 200
        assert _client_login(client, password=NEW_PASSWORD).status_code == 200

    def test_change_password_rejects_reuse(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        token = _client_login(client).json()["data"]["session"]["token"]

        reused = client.post(
            "/v1/auth/password/change",
            json={"currentPassword": PASSWORD, "newPassword": PASSWORD},
            headers=_auth(token),
        )
        assert reused.status_code == 400
        assert reused.json()["error"]["code"] == "PASSWORD_REUSED"

        changed = client.post(
            "/v1/auth/password/change",
            json={"currentPassword": PASSWORD, "newPassword": NEW_PASSWORD},
            headers=_auth(token),
        )
        assert changed.status_code == 200
        assert changed.json()["data"]["sessionsEnded"] == 0

    def test_validate_reports_feedback(self, client):
        response = client.post("/v1/auth/password/validate", json={"password": "short"})
        data = response.json()["data"]
        assert data["isValid"] is False
        assert data["feedback"]

    def test_expiration_for_caller(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        token = _client_login(client).json()["data"]["session"]["token"]
        response = client.get("/v1/auth/password/expiration", headers=_auth(token))
        assert response.json()["data"]["daysUntilExpiration"] == 90


class TestSignup:
    def test_signup_verify_and_conflict(self, client):
        created = client.post(
            "/v1/auth/signup", json={"email": "new@example.com", "password": PASSWORD}
        )
        assert created.status_code == 201
        assert created.json()["data"]["emailVerified"] is False

        duplicate = client.post(
            "/v1/auth/signup", json={"email": "new@example.com", "password": PASSWORD}
        )
        assert duplicate.status_code == 409
        assert "already exists" in duplicate.json()["error"]["message"]

        verified = client.post(
            "/v1/auth/verify-email", json={"email": "new@example.com", "code": CODE}
        )
        assert verified.json()["data"]["emailVerified"] is True
        assert _client_login(client, email="new@example.com").status_code == 200

    def test_expired_verification_code_can_be_replaced(self, client, runtime):
        client.post("/v1/auth/signup", json={"email": "late@example.com", "password": PASSWORD})
        for challenge in runtime.store.challenges.values():
            challenge.expires_at = challenge.created_at - timedelta(seconds=1)

        stale = client.post("/v1/auth/verify-email", json={"email": "late@example.com", "code": CODE})
        assert stale.status_code == 400
        assert stale.json()["error"]["code"] == "INVALID_VERIFICATION_CODE"

        resent = client.post("/v1/auth/resend-verification", json={"email": "late@example.com"})
        unknown = client.post("/v1/auth/resend-verification", json={"email": "ghost@example.com"})
        assert resent.status_code == unknown.status_code == 200
        assert resent.json()["data"] == unknown.json()["data"]

        verified = client.post(
            "/v1/auth/verify-email", json={"email": "late@example.com", "code": CODE}
        )
        assert verified.status_code == 200
        assert verified.json()["data"]["emailVerified"] is True
        assert _client_login(client, email="late@example.com").status_code == 200

    def test_resend_verification_ignores_verified_accounts(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        before = len(runtime.store.challenges)
        response = client.post("/v1/auth/resend-verification", json={"email": "c@example.com"})
        assert response.status_code == 200
        assert "new verification code" in response.json()["data"]["message"]
        assert len(runtime.store.challenges) == before

    def test_resend_verification_is_throttled(self, client):
        client.post("/v1/auth/signup", json={"email": "new@example.com", "password": PASSWORD})
        for _ in range(3):
            response = client.post(
                "/v1/auth/resend-verification", json={"email": "new@example.com"}
            )
            assert response.status_code == 200

        blocked = client.post("/v1/auth/resend-verification", json={"email": "new@example.com"})
        assert blocked.status_code == 429
        assert blocked.json()["error"]["code"] == "MFA_RESEND_LIMIT_EXCEEDED"

    def test_weak_password_rejected(self, client):
        response = client.post(
            "/v1/auth/signup", json={"email": "weak@example.com", "password": "password"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "PASSWORD_POLICY_VIOLATION"
        assert response.json()["error"]["details"]["feedback"]


class TestAdminRoutes:
    def test_denied_permission_is_403_and_audited(self, client, runtime):
        principal = _create(runtime, PrincipalKind.EMPLOYEE, "tech@example.com", roles=["technician"])
        token = _employee_session(client, "tech@example.com")

        response = client.get("/v1/admin/sessions/stats", headers=_auth(token))

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "INSUFFICIENT_ACCESS_LEVEL"
        assert response.json()["error"]["details"]["userRoles"] == ["technician"]
        audit = runtime.store.list_permission_audit(principal.id)
        assert audit[0].result == "denied"
        assert audit[0].permission_key == "view.login_history.enable"

    def test_granted_permission_allows_stats(self, client, runtime):
        _grant(runtime, "technician", "view.login_history.enable")
        _create(runtime, PrincipalKind.EMPLOYEE, "tech@example.com", roles=["technician"])
        token = _employee_session(client, "tech@example.com")

        stats = client.get("/v1/admin/sessions/stats", headers=_auth(token))
        assert stats.status_code == 200
        assert stats.json()["data"]["active_sessions"] >= 1

    def test_clients_cannot_reach_admin_routes(self, client, runtime):
        _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        token = _client_login(client).json()["data"]["session"]["token"]
        response = client.get("/v1/admin/roles/levels", headers=_auth(token))
        assert response.status_code == 403
        assert response.json()["error"]["code"] == "forbidden"

    def test_executive_updates_password_policy(self, client, runtime):
        _create(runtime, PrincipalKind.EMPLOYEE, "exec@example.com", roles=["executive"])
        token = _employee_session(client, "exec@example.com")

        updated = client.put(
            "/v1/admin/password-policy/client",
            json={"minLength": 12},
            headers=_auth(token),
        )
        assert updated.status_code == 200
        assert updated.json()["data"]["min_length"] == 12

        rejected = client.put(
            "/v1/admin/password-policy/client",
            json={"isActive": False},
            headers=_auth(token),
        )
        assert rejected.status_code == 422

    def test_end_all_sessions_for_target(self, client, runtime):
        target = _create(runtime, PrincipalKind.CLIENT, "c@example.com")
        client_token = _client_login(client).json()["data"]["session"]["token"]
        _create(runtime, PrincipalKind.EMPLOYEE, "exec@example.com", roles=["executive"])
        token = _employee_session(client, "exec@example.com")

        response = client.post(
            "/v1/admin/security/sessions/end-all",
            json={"principalId": target.id},
            headers=_auth(token),
        )
        assert response.json()["data"]["sessionsEnded"] == 1
        assert client.get("/v1/auth/session", headers=_auth(client_token)).status_code == 401

    def test_last_record_protection(self, client, runtime):
        _create(runtime, PrincipalKind.EMPLOYEE, "mgr@example.com", roles=["manager"])
        token = _employee_session(client, "mgr@example.com")
        runtime.store.add_scoped_record(
            ScopedRecord(id=new_id(), resource_type=ResourceType.SERVICE_LOCATIONS, scope_id="biz-1")
        )

        response = client.post(
            "/v1/admin/last-record-check",
            json={"resourceType": "service_locations", "scopeId": "biz-1"},
            headers=_auth(token),
        )
        assert response.status_code == 409
        assert response.json()["error"]["code"] == "LAST_RECORD_PROTECTION"

    def test_me_permissions(self, client, runtime):
        _grant(runtime, "sales", "view.login_history.enable")
        _create(runtime, PrincipalKind.EMPLOYEE, "sales@example.com", roles=["sales"])
        token = _employee_session(client, "sales@example.com")

        data = client.get("/v1/me/permissions", headers=_auth(token)).json()["data"]
        assert data == {
            "roles": ["sales"],
            "roleLevels": {"sales": 2},
            "permissions": ["view.login_history.enable"],
        }


def test_healthz_reports_memory_backends(client):
    response = client.get("/healthz")
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["counters"]["backend"] == "memory"
