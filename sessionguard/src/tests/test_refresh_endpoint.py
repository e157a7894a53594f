"""
Tests for the /auth/refresh endpoint.
"""

import asyncio

from sessionguard.core.security import hash_token
from sessionguard.core.settings import settings
from sessionguard.core.token_store import TokenStore


class TestRefreshWithBody:
    def test_refresh_rotates_token(self, api, login):
        client, _ = api
        token = login()

        response = client.post("/auth/refresh", json={"refresh_token": token})

        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["expires_in"] == settings.access_token_expire_minutes * 60
        assert data["refresh_token"] != token
        assert "access_token" in data
        assert "refresh_expires_at" in data
        assert "X-Request-ID" in response.headers

    def test_refresh_sets_httponly_cookie(self, api, login):
        client, _ = api
        response = client.post("/auth/refresh", json={"refresh_token": login()})

        set_cookie = response.headers["set-cookie"]
        assert f"{settings.refresh_cookie_name}={response.json()['refresh_token']}" in set_cookie
        assert "HttpOnly" in set_cookie
        assert f"Path={settings.refresh_cookie_path}" in set_cookie

    def test_new_access_token_works_for_bearer_routes(self, api, login):
        client, _ = api
        data = client.post("/auth/refresh", json={"refresh_token": login()}).json()

        response = client.get(
            "/auth/sessions", headers={"Authorization": f"Bearer {data['access_token']}"}
        )
        assert response.status_code == 200
        assert len(response.json()["sessions"]) == 1


class TestRefreshWithCookie:
    def test_refresh_reads_cookie(self, api, login):
        client, _ = api
        client.cookies.set(settings.refresh_cookie_name, login())

        response = client.post("/auth/refresh")

        assert response.status_code == 200
        assert "refresh_token" in response.json()


class TestRefreshErrors:
    def test_missing_token(self, api):
        client, _ = api
        response = client.post("/auth/refresh")

        assert response.status_code == 401
        assert response.json()["error"] == "No refresh token provided"

    def test_empty_token_rejected_by_validation(self, api):
        client, _ = api
        response = client.post("/auth/refresh", json={"refresh_token": ""})
        assert response.status_code == 422
        assert response.json()["error_code"] == "VALIDATION_ERROR"

    def test_unknown_token(self, api):
        client, _ = api
        response = client.post("/auth/refresh", json={"refresh_token": "not-a-real-token"})

        assert response.status_code == 401
        body = response.json()
        assert body["success"] is False
        assert body["error_code"] == "INVALID_REFRESH_TOKEN"
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_reuse_signs_out_family(self, api, login):
        client, coordinator = api
        t0 = login()
        t1 = client.post("/auth/refresh", json={"refresh_token": t0}).json()["refresh_token"]

        replay = client.post("/auth/refresh", json={"refresh_token": t0})
        assert replay.status_code == 401
        assert replay.json()["error_code"] == "SECURITY_VIOLATION"
        # Cookie is cleared on rejection
        assert f'{settings.refresh_cookie_name}=""' in replay.headers["set-cookie"]

        follow_up = client.post("/auth/refresh", json={"refresh_token": t1})
        assert follow_up.status_code == 401
        assert follow_up.json()["error_code"] == "SECURITY_VIOLATION"

        async def family_state():
            async with coordinator.session_factory() as session:
                record = await TokenStore(session).get_by_hash(hash_token(t1))
                return record.is_revoked

        assert asyncio.run(family_state()) is True

    def test_session_cap(self, api, login):
        client, coordinator = api
        for _ in range(coordinator.policy.max_concurrent_sessions):
            login()
        extra = login()

        response = client.post("/auth/refresh", json={"refresh_token": extra})

        assert response.status_code == 401
        assert response.json()["error_code"] == "TOO_MANY_SESSIONS"
