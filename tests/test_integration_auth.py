"""Integration tests for the two-step sign-in flow.

Tests the HTTP surface end to end:
- Password step issues an MFA token and mails a code
- OTP step returns a session token usable on /api/auth/me
- Error envelopes for every OTP failure mode
"""

import pytest
from fastapi.testclient import TestClient

from conftest import RecordingMailer
from collegeportal import app as app_module
from collegeportal.service.runtime import get_runtime
from collegeportal.storage.models import STATUS_INACTIVE

PASSWORD = "Portal-Pass-2024"


@pytest.fixture
def client():
    """Create a test client for the API (runs the app lifespan)."""
    with TestClient(app_module.app) as test_client:
        yield test_client


@pytest.fixture
def mailer(client):
    recording = RecordingMailer()
    get_runtime().email.mailer = recording
    return recording


@pytest.fixture
def student(client):
    runtime = get_runtime()
    return runtime.store.create_user(
        "student",
        name="Asha Rao",
        email="asha@example.edu",
        password_hash=runtime.auth.hash_password(PASSWORD),
    )


@pytest.fixture
def faculty(client):
    runtime = get_runtime()
    return runtime.store.create_user(
        "faculty",
        name="Dr. Menon",
        email="menon@example.edu",
        password_hash=runtime.auth.hash_password(PASSWORD),
    )


def _initiate(client, username="asha@example.edu", password=PASSWORD):
    return client.post("/api/mfa/initiate", json={"username": username, "password": password})


class TestInitiate:
    def test_initiate_returns_mfa_token(self, client, student, mailer):
        response = _initiate(client)

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "ok"
        data = body["data"]
        assert data["mfa_required"] is True
        assert len(data["mfa_token"]) == 48
        assert data["expires_in"] == 180
        assert data["user"] == {
            "id": student.id,
            "username": "asha@example.edu",
            "role": "student",
            "name": "Asha Rao",
        }
        assert len(mailer.sent) == 1
        assert mailer.sent[0][0] == "asha@example.edu"

    def test_faculty_login(self, client, faculty, mailer):
        response = _initiate(client, username="menon@example.edu")
        assert response.status_code == 200
        assert response.json()["data"]["user"]["role"] == "faculty"

    @pytest.mark.parametrize(
        "username,password",
        [
            ("asha@example.edu", "wrong"),
            ("nobody@example.edu", PASSWORD),
        ],
    )
    def test_invalid_credentials_are_generic(self, client, student, mailer, username, password):
        response = _initiate(client, username=username, password=password)

        assert response.status_code == 401
        body = response.json()
        assert body["status"] == "error"
        assert body["error"]["code"] == "unauthorized"
        assert body["error"]["message"] == "invalid credentials"
        assert mailer.sent == []

    def test_inactive_user_is_generic(self, client, student, mailer):
        get_runtime().store.set_user_status("student", student.id, STATUS_INACTIVE)
        response = _initiate(client)
        assert response.status_code == 401
        assert response.json()["error"]["message"] == "invalid credentials"

    def test_double_submit_reuses_token(self, client, student, mailer):
        first = _initiate(client).json()["data"]
        second = _initiate(client).json()["data"]
        assert second["mfa_token"] == first["mfa_token"]
        assert len(mailer.sent) == 1

    @pytest.mark.parametrize(
        "payload",
        [
            {},
            {"username": "asha@example.edu"},
            {"password": PASSWORD},
            {"username": "   ", "password": PASSWORD},
            {"username": "asha@example.edu", "password": ""},
        ],
    )
    def test_missing_fields(self, client, payload):
        response = client.post("/api/mfa/initiate", json=payload)
        assert response.status_code == 422


class TestVerify:
    def test_full_flow(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        response = client.post(
            "/api/mfa/verify", json={"mfa_token": token, "otp": mailer.last_code()}
        )

        assert response.status_code == 200
        data = response.json()["data"]
        assert data["ok"] is True
        assert data["user"]["id"] == student.id
        assert data["token"] != token

        me = client.get("/api/auth/me", headers={"Authorization": f"Bearer {data['token']}"})
        assert me.status_code == 200
        assert me.json()["data"]["user_id"] == student.id
        assert me.json()["data"]["role"] == "student"

    def test_numeric_otp_accepted(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        response = client.post(
            "/api/mfa/verify", json={"mfa_token": token, "otp": int(mailer.last_code())}
        )
        assert response.status_code == 200

    def test_wrong_code_reports_remaining_attempts(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        response = client.post("/api/mfa/verify", json={"mfa_token": token, "otp": "000000"})

        assert response.status_code == 401
        error = response.json()["error"]
        assert error["code"] == "otp_invalid"
        assert error["message"] == "Invalid OTP"
        assert error["details"] == {"attempts_remaining": 2}

    def test_lockout_after_three_wrong_codes(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        for _ in range(3):
            client.post("/api/mfa/verify", json={"mfa_token": token, "otp": "000000"})

        response = client.post(
            "/api/mfa/verify", json={"mfa_token": token, "otp": mailer.last_code()}
        )
        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"
        assert response.json()["error"]["message"] == "Too many attempts. Session locked."

        after = client.post(
            "/api/mfa/verify", json={"mfa_token": token, "otp": mailer.last_code()}
        )
        assert after.status_code == 400
        assert after.json()["error"]["code"] == "mfa_session_invalid"

    def test_replay_rejected(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        payload = {"mfa_token": token, "otp": mailer.last_code()}
        assert client.post("/api/mfa/verify", json=payload).status_code == 200

        replay = client.post("/api/mfa/verify", json=payload)
        assert replay.status_code == 400
        assert replay.json()["error"]["code"] == "otp_used"

    def test_unknown_token(self, client):
        response = client.post(
            "/api/mfa/verify", json={"mfa_token": "ab" * 24, "otp": "123456"}
        )
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "mfa_session_invalid"
        assert response.json()["error"]["message"] == "Invalid or expired MFA session"

    def test_missing_fields(self, client):
        assert client.post("/api/mfa/verify", json={"mfa_token": "abc"}).status_code == 422
        assert client.post("/api/mfa/verify", json={"otp": "123456"}).status_code == 422


class TestSessionEndpoint:
    def test_me_requires_token(self, client):
        response = client.get("/api/auth/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"

    def test_me_rejects_mfa_token(self, client, student, mailer):
        token = _initiate(client).json()["data"]["mfa_token"]
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401

    @pytest.mark.parametrize(
        "authorization",
        [
            b"Bearer MQ.e30.abc",
            b"Bearer WzFd.e30.abc",
            "Bearer eyJhbGciOiJIUzI1NiIsInR5cCI6IkpXVCJ9.e30.é".encode("utf-8"),
        ],
    )
    def test_me_rejects_malformed_token(self, client, authorization):
        response = client.get("/api/auth/me", headers={"Authorization": authorization})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestAppSurface:
    def test_healthz(self, client):
        response = client.get("/healthz")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["checks"]["database"]["type"] == "memory"
        assert body["checks"]["email"]["backend"] == "console"
        assert body["checks"]["email"]["smtp_configured"] is False

    def test_request_id_is_echoed(self, client):
        response = client.get("/healthz", headers={"X-Request-ID": "req-123"})
        assert response.headers["X-Request-ID"] == "req-123"

    def test_security_headers(self, client):
        response = client.post("/api/mfa/initiate", json={})
        assert response.headers["X-Content-Type-Options"] == "nosniff"
        assert "no-store" in response.headers["Cache-Control"]
