"""
Tests for the error envelope and detail sanitization.
"""

from unittest.mock import AsyncMock, Mock

import pytest
from fastapi.testclient import TestClient

from sessionguard.core.error_handling import sanitize_error_details
from sessionguard.core.refresh_tokens import get_refresh_coordinator
from sessionguard.core.settings import settings
from sessionguard.main import app

LEAKY_MESSAGE = "refresh failed for token=abc123 with secret: hunter2"


@pytest.fixture
def failing_client():
    """Client whose coordinator blows up with credential material in the message."""
    coordinator = Mock()
    coordinator.refresh = AsyncMock(side_effect=RuntimeError(LEAKY_MESSAGE))
    app.dependency_overrides[get_refresh_coordinator] = lambda: coordinator
    yield TestClient(app, raise_server_exceptions=False)
    app.dependency_overrides.clear()


class TestSanitizeErrorDetails:
    def test_redacts_credentials_outside_production(self):
        sanitized = sanitize_error_details(LEAKY_MESSAGE, is_production=False)
        assert "abc123" not in sanitized
        assert "hunter2" not in sanitized
        assert sanitized.count("[REDACTED]") == 2
        assert sanitized.startswith("refresh failed for ")

    def test_production_truncates_messages(self):
        sanitized = sanitize_error_details("x" * 600, is_production=True)
        assert len(sanitized) == 500

    def test_production_keeps_only_safe_keys(self):
        sanitized = sanitize_error_details(
            {"field": "refresh_token", "token_hash": "deadbeef"}, is_production=True
        )
        assert sanitized == {"field": "refresh_token"}


class TestUnhandledErrors:
    def test_internal_error_details_are_redacted(self, failing_client, monkeypatch):
        monkeypatch.setattr(settings, "environment", "development")

        response = failing_client.post("/auth/refresh", json={"refresh_token": "anything"})

        assert response.status_code == 500
        body = response.json()
        assert body["error_code"] == "INTERNAL_ERROR"
        assert "[REDACTED]" in body["details"]
        assert "abc123" not in response.text
        assert "hunter2" not in response.text

    def test_production_hides_details(self, failing_client, monkeypatch):
        monkeypatch.setattr(settings, "environment", "production")

        response = failing_client.post("/auth/refresh", json={"refresh_token": "anything"})

        assert response.status_code == 500
        assert response.json()["details"] is None
        assert "abc123" not in response.text
