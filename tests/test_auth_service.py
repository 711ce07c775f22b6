import re
from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock, patch

import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient
from sqlalchemy.exc import IntegrityError

from auth import AuthService
from dependencies import limiter
from main import create_app

REGISTER = {
    "firstName": "Alice",
    "lastName": "Smith",
    "email": "alice@example.com",
    "password": "password123",
    "confirmPassword": "password123",
}


def register(client, **overrides):
    return client.post("/auth-service/register", json={**REGISTER, **overrides})


def bearer(token):
    return {"Authorization": f"Bearer {token}"}


class TestRegister:
    def test_register_returns_token_and_user(self, auth_client, transport):
        resp = register(auth_client)
        assert resp.status_code == 201
        body = resp.json()
        assert body["message"] == "User registered successfully"
        assert body["token"]
        assert body["user"]["email"] == "alice@example.com"
        assert body["user"]["role"] == "user"
        assert body["user"]["isActive"] is True
        assert "passwordHash" not in body["user"]
        assert re.fullmatch(r"EMP\d{6}", body["user"]["employeeId"])

        events = transport.published_to("user.registered")
        assert len(events) == 1
        assert events[0]["employeeId"] == body["user"]["employeeId"]
        assert events[0]["email"] == "alice@example.com"

    def test_employee_ids_are_unique(self, auth_client):
        first = register(auth_client).json()["user"]["employeeId"]
        second = register(auth_client, email="bob@example.com").json()["user"]["employeeId"]
        assert first != second

    def test_duplicate_email_is_conflict(self, auth_client):
        register(auth_client)
        resp = register(auth_client, email="ALICE@example.com")
        assert resp.status_code == 409
        assert resp.json()["error"] == "EMAIL_EXISTS"

    def test_password_mismatch_is_rejected(self, auth_client):
        resp = register(auth_client, confirmPassword="different123")
        assert resp.status_code == 400
        body = resp.json()
        assert body["error"] == "VALIDATION_ERROR"
        assert any("Passwords do not match" in e for e in body["errors"])

    def test_short_password_is_rejected(self, auth_client):
        resp = register(auth_client, password="short", confirmPassword="short")
        assert resp.status_code == 400
        assert resp.json()["error"] == "VALIDATION_ERROR"


class TestLogin:
    def test_login_succeeds(self, auth_client):
        register(auth_client)
        resp = auth_client.post(
            "/auth-service/login", json={"email": "Alice@Example.com", "password": "password123"}
        )
        assert resp.status_code == 200
        assert resp.json()["message"] == "Login successful"
        assert resp.json()["token"]

    def test_wrong_password_and_unknown_email_look_the_same(self, auth_client):
        register(auth_client)
        wrong = auth_client.post("/auth-service/login", json={"email": "alice@example.com", "password": "nope12345"})
        unknown = auth_client.post("/auth-service/login", json={"email": "ghost@example.com", "password": "nope12345"})
        assert wrong.status_code == unknown.status_code == 401
        assert wrong.json()["error"] == unknown.json()["error"] == "INVALID_CREDENTIALS"
        assert wrong.json()["message"] == unknown.json()["message"]

    async def test_inactive_account_is_refused(self, settings):
        service = AuthService(settings)
        user = SimpleNamespace(is_active=False, password_hash=service.get_password_hash("password123"))
        with patch("auth.crud.get_user_by_email", AsyncMock(return_value=user)):
            with pytest.raises(HTTPException) as exc_info:
                await service.authenticate_user(None, "alice@example.com", "password123")
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["error"] == "ACCOUNT_INACTIVE"


class TestTokens:
    def test_missing_token(self, auth_client):
        resp = auth_client.get("/auth-service/profile")
        assert resp.status_code == 401
        assert resp.json()["error"] == "UNAUTHORIZED"

    def test_malformed_token(self, auth_client):
        resp = auth_client.get("/auth-service/profile", headers=bearer("not-a-jwt"))
        assert resp.status_code == 401
        assert resp.json()["error"] == "INVALID_TOKEN"

    def test_expired_token(self, auth_client, settings):
        user = SimpleNamespace(**register(auth_client).json()["user"])
        token = AuthService(settings).create_access_token(
            SimpleNamespace(
                id=user.id,
                email=user.email,
                first_name=user.firstName,
                last_name=user.lastName,
                role=user.role,
                employee_id=user.employeeId,
            ),
            expires_delta=timedelta(seconds=-30),
        )
        resp = auth_client.get("/auth-service/profile", headers=bearer(token))
        assert resp.status_code == 401
        assert resp.json()["error"] == "TOKEN_EXPIRED"

    def test_token_claims(self, auth_client, settings):
        body = register(auth_client).json()
        claims = AuthService(settings).decode_access_token(body["token"])
        assert claims["id"] == body["user"]["id"]
        assert claims["email"] == "alice@example.com"
        assert claims["employeeId"] == body["user"]["employeeId"]
        assert claims["role"] == "user"
        assert claims["exp"] - claims["iat"] == 7 * 24 * 3600

    def test_verify_token(self, auth_client):
        token = register(auth_client).json()["token"]
        resp = auth_client.get("/auth-service/verify-token", headers=bearer(token))
        assert resp.status_code == 200
        assert resp.json()["message"] == "Token is valid"


class TestProfile:
    def test_get_and_update_profile(self, auth_client):
        token = register(auth_client).json()["token"]
        resp = auth_client.get("/auth-service/profile", headers=bearer(token))
        assert resp.json()["user"]["firstName"] == "Alice"

        resp = auth_client.put(
            "/auth-service/profile",
            headers=bearer(token),
            json={"firstName": "Alicia", "email": "alicia@example.com"},
        )
        assert resp.status_code == 200
        assert resp.json()["user"]["firstName"] == "Alicia"
        assert resp.json()["user"]["lastName"] == "Smith"
        assert resp.json()["user"]["email"] == "alicia@example.com"

    def test_update_to_taken_email_is_conflict(self, auth_client):
        register(auth_client, email="bob@example.com")
        token = register(auth_client).json()["token"]
        resp = auth_client.put("/auth-service/profile", headers=bearer(token), json={"email": "bob@example.com"})
        assert resp.status_code == 409
        assert resp.json()["error"] == "EMAIL_EXISTS"

    def test_change_password(self, auth_client):
        token = register(auth_client).json()["token"]
        resp = auth_client.put(
            "/auth-service/change-password",
            headers=bearer(token),
            json={"currentPassword": "password123", "newPassword": "newpassword1", "confirmNewPassword": "newpassword1"},
        )
        assert resp.status_code == 200

        old = auth_client.post("/auth-service/login", json={"email": "alice@example.com", "password": "password123"})
        new = auth_client.post("/auth-service/login", json={"email": "alice@example.com", "password": "newpassword1"})
        assert old.status_code == 401
        assert new.status_code == 200

    def test_change_password_requires_current_password(self, auth_client):
        token = register(auth_client).json()["token"]
        resp = auth_client.put(
            "/auth-service/change-password",
            headers=bearer(token),
            json={"currentPassword": "wrongpass1", "newPassword": "newpassword1", "confirmNewPassword": "newpassword1"},
        )
        assert resp.status_code == 401
        assert resp.json()["error"] == "INVALID_PASSWORD"


class TestUserDirectory:
    def test_list_users_with_search_and_pagination(self, auth_client):
        token = register(auth_client).json()["token"]
        register(auth_client, firstName="Bob", lastName="Jones", email="bob@example.com")
        register(auth_client, firstName="Carol", lastName="Bobson", email="carol@example.com")

        resp = auth_client.get("/auth-service/users", headers=bearer(token), params={"limit": 2})
        body = resp.json()
        assert resp.status_code == 200
        assert len(body["users"]) == 2
        assert body["pagination"] == {"page": 1, "limit": 2, "total": 3, "pages": 2}

        resp = auth_client.get("/auth-service/users", headers=bearer(token), params={"search": "BOB"})
        emails = {u["email"] for u in resp.json()["users"]}
        assert emails == {"bob@example.com", "carol@example.com"}

    def test_limit_is_bounded(self, auth_client):
        token = register(auth_client).json()["token"]
        resp = auth_client.get("/auth-service/users", headers=bearer(token), params={"limit": 500})
        assert resp.status_code == 400

    def test_get_user_by_id(self, auth_client):
        body = register(auth_client).json()
        resp = auth_client.get(f"/auth-service/users/{body['user']['id']}", headers=bearer(body["token"]))
        assert resp.status_code == 200
        assert resp.json()["user"]["email"] == "alice@example.com"

        resp = auth_client.get("/auth-service/users/9999", headers=bearer(body["token"]))
        assert resp.status_code == 404
        assert resp.json()["error"] == "NOT_FOUND"


def test_health(auth_client):
    resp = auth_client.get("/auth-service/health")
    assert resp.status_code == 200
    assert resp.json()["status"] == "OK"
    assert resp.json()["service"] == "auth-service"


def test_unknown_route_lists_endpoints(auth_client):
    resp = auth_client.get("/auth/login")
    assert resp.status_code == 404
    body = resp.json()
    assert "POST /auth-service/login" in body["availableEndpoints"]
    assert "/auth-service" in body["hint"]


def test_profile_email_race_is_conflict(auth_client):
    token = register(auth_client).json()["token"]
    duplicate = IntegrityError("UPDATE users", {}, Exception("UNIQUE constraint failed: users.email"))
    with patch("routers.users.crud.update_user", AsyncMock(side_effect=duplicate)):
        resp = auth_client.put("/auth-service/profile", headers=bearer(token), json={"email": "new@example.com"})
    assert resp.status_code == 409
    assert resp.json()["error"] == "EMAIL_EXISTS"


class TestRateLimits:
    @pytest.fixture
    def limited_client(self, settings, transport):
        limiter.reset()
        app = create_app("auth", settings.model_copy(update={"rate_limit_enabled": True}), transport)
        with TestClient(app) as client:
            yield client
        limiter.reset()
        limiter.enabled = False

    def test_login_limited_after_five_attempts(self, limited_client):
        codes = [
            limited_client.post(
                "/auth-service/login", json={"email": "ghost@example.com", "password": "nope12345"}
            ).status_code
            for _ in range(7)
        ]
        assert codes == [401] * 5 + [429] * 2

    def test_register_limited_after_ten_attempts(self, limited_client):
        codes = [register(limited_client, email=f"user{i}@example.com").status_code for i in range(11)]
        assert codes == [201] * 10 + [429]
