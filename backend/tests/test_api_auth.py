import pytest
from fastapi.testclient import TestClient

from app.models.user import User

class TestAuthAPI:
    """Test suite for authentication endpoints."""

    def test_register(self, client: TestClient, db_session):
        """First registered account becomes the administrator."""
        response = client.post("/api/auth/register", json={
            "email": "Dana@Mail.Local",
            "username": "dana",
            "password": "dana-password",
            "full_name": "Dana"
        })
        assert response.status_code == 201

        data = response.json()
        assert data["email"] == "dana@mail.local"
        assert data["username"] == "dana"
        assert data["is_admin"] is True
        assert "hashed_password" not in data

    def test_register_duplicate(self, client: TestClient, test_user):
        response = client.post("/api/auth/register", json={
            "email": "alice@mail.local",
            "username": "someone-else",
            "password": "long-enough"
        })
        assert response.status_code == 409
        assert "already registered" in response.json()["message"]

    def test_register_short_password(self, client: TestClient):
        response = client.post("/api/auth/register", json={
            "email": "eve@mail.local",
            "username": "eve",
            "password": "short"
        })
        assert response.status_code == 422

    def test_register_invalid_email(self, client: TestClient):
        response = client.post("/api/auth/register", json={
            "email": "not-an-address",
            "username": "eve",
            "password": "long-enough"
        })
        assert response.status_code == 422

    def test_login_with_username_and_email(self, client: TestClient, test_user, db_session):
        for login in ("alice", "alice@mail.local"):
            response = client.post("/api/auth/login", json={"username": login, "password": "alice-password"})
            assert response.status_code == 200

            data = response.json()
            assert data["token_type"] == "bearer"
            assert data["expires_in"] > 0
            assert data["access_token"]

        db_session.expire_all()
        assert db_session.get(User, test_user.id).last_login is not None

    def test_login_wrong_password(self, client: TestClient, test_user):
        response = client.post("/api/auth/login", json={"username": "alice", "password": "wrong-password"})
        assert response.status_code == 401
        assert response.json()["message"] == "Incorrect username or password"

    def test_login_disabled_account(self, client: TestClient, test_user, db_session):
        test_user.is_active = False
        db_session.commit()

        response = client.post("/api/auth/login", json={"username": "alice", "password": "alice-password"})
        assert response.status_code == 401

    def test_me(self, client: TestClient, auth_headers):
        response = client.get("/api/auth/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["username"] == "alice"

    def test_invalid_token(self, client: TestClient, test_user):
        response = client.get("/api/auth/me", headers={"Authorization": "Bearer not-a-token"})
        assert response.status_code == 401

    def test_refresh(self, client: TestClient, auth_headers):
        response = client.post("/api/auth/refresh", headers=auth_headers)
        assert response.status_code == 200

        token = response.json()["access_token"]
        response = client.get("/api/auth/me", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200

    def test_change_password(self, client: TestClient, auth_headers):
        response = client.post("/api/auth/change-password", headers=auth_headers, json={
            "current_password": "alice-password",
            "new_password": "new-alice-password"
        })
        assert response.status_code == 200
        assert response.json() == {"success": True}

        response = client.post("/api/auth/login", json={"username": "alice", "password": "new-alice-password"})
        assert response.status_code == 200

    def test_change_password_wrong_current(self, client: TestClient, auth_headers):
        response = client.post("/api/auth/change-password", headers=auth_headers, json={
            "current_password": "nope-nope",
            "new_password": "new-alice-password"
        })
        assert response.status_code == 401

    def test_register_password_over_bcrypt_limit(self, client: TestClient, db_session):
        response = client.post("/api/auth/register", json={
            "email": "eve@mail.local",
            "username": "eve",
            "password": "p" * 80
        })
        assert response.status_code == 422
        assert "72 bytes" in response.json()["message"]
        assert db_session.query(User).filter(User.username == "eve").first() is None

    def test_register_password_limit_counts_bytes(self, client: TestClient):
        # 40 two-byte characters are 80 bytes
        response = client.post("/api/auth/register", json={
            "email": "eve@mail.local",
            "username": "eve",
            "password": "ж" * 40
        })
        assert response.status_code == 422

    def test_register_password_at_limit(self, client: TestClient):
        response = client.post("/api/auth/register", json={
            "email": "eve@mail.local",
            "username": "eve",
            "password": "p" * 72
        })
        assert response.status_code == 201

    def test_change_password_over_bcrypt_limit(self, client: TestClient, auth_headers):
        response = client.post("/api/auth/change-password", headers=auth_headers, json={
            "current_password": "alice-password",
            "new_password": "p" * 100
        })
        assert response.status_code == 422

    def test_register_full_name_with_line_break(self, client: TestClient):
        response = client.post("/api/auth/register", json={
            "email": "eve@mail.local",
            "username": "eve",
            "password": "eve-password",
            "full_name": "Eve\r\nBcc: victim@example.com"
        })
        assert response.status_code == 422
