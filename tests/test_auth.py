"""
Tests for bearer-token authentication.

Admin routes reject missing or bad tokens with 401 and non-admin roles with
403; read and stream routes stay public.
"""

from datetime import timedelta

import jwt
import pytest

from api.auth import create_access_token, decode_access_token
from api.errors import UnauthenticatedError
from config import JWT_ALGORITHM, JWT_SECRET


class TestTokens:
    """Tests for token issue and verification."""

    def test_round_trip_claims(self):
        claims = decode_access_token(create_access_token(42, "admin"))
        assert claims["user_id"] == 42
        assert claims["role"] == "admin"
        assert "exp" in claims

    def test_expired(self):
        token = create_access_token(1, "admin", expires_in=timedelta(seconds=-30))
        with pytest.raises(UnauthenticatedError, match="Token expired"):
            decode_access_token(token)

    def test_wrong_secret(self):
        token = jwt.encode({"user_id": 1, "role": "admin", "exp": 9999999999}, "other-secret", algorithm=JWT_ALGORITHM)
        with pytest.raises(UnauthenticatedError, match="Invalid token"):
            decode_access_token(token)

    def test_missing_claims(self):
        token = jwt.encode({"user_id": 1, "exp": 9999999999}, JWT_SECRET, algorithm=JWT_ALGORITHM)
        with pytest.raises(UnauthenticatedError):
            decode_access_token(token)


class TestAdminRoutes:
    """401 and 403 on admin-only endpoints."""

    def test_no_header(self, client):
        response = client.post("/api/contents/create", data={"title": "X", "type": "Anime"})
        assert response.status_code == 401
        assert response.json() == {"detail": "Authorization header required"}

    def test_wrong_scheme(self, client):
        response = client.post(
            "/api/contents/create",
            data={"title": "X", "type": "Anime"},
            headers={"Authorization": "Basic dXNlcjpwYXNz"},
        )
        assert response.status_code == 401

    def test_garbage_token(self, client):
        response = client.delete("/api/contents/1", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 401
        assert response.json() == {"detail": "Invalid token"}

    def test_expired_token(self, client):
        token = create_access_token(1, "admin", expires_in=timedelta(seconds=-30))
        response = client.get("/api/media/jobs", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json() == {"detail": "Token expired"}

    def test_user_role_forbidden(self, client, user_headers):
        response = client.post("/api/contents/create", data={"title": "X", "type": "Anime"}, headers=user_headers)
        assert response.status_code == 403
        assert response.json() == {"detail": "Admin access required"}

    def test_user_cannot_delete(self, client, sample_content, user_headers):
        response = client.delete(f"/api/contents/{sample_content['content_id']}", headers=user_headers)
        assert response.status_code == 403

    def test_user_cannot_upload(self, client, sample_content, user_headers):
        response = client.post(
            f"/api/media/content/{sample_content['content_id']}/video",
            files={"video": ("clip.mp4", b"data", "video/mp4")},
            headers=user_headers,
        )
        assert response.status_code == 403

    def test_admin_allowed(self, client, admin_headers):
        response = client.get("/api/media/jobs", headers=admin_headers)
        assert response.status_code == 200
        assert response.json() == {"jobs": []}


class TestPublicRoutes:
    """Reads never need a token."""

    def test_list(self, client, sample_content):
        response = client.get("/api/contents")
        assert response.status_code == 200

    def test_detail(self, client, sample_content):
        response = client.get(f"/api/contents/{sample_content['content_id']}")
        assert response.status_code == 200
