"""Unit tests for FastAPI application.

Tests for tryon/main.py - root, health and error mapping.

Run with:
    pytest tests/unit/test_main.py -v
    pytest tests/unit/test_main.py -v -m fast
"""

import pytest
from fastapi.middleware.cors import CORSMiddleware

from tryon.errors import QuotaExhausted
from tryon.main import app, settings


@pytest.mark.fast
class TestRootEndpoint:
    """Tests for root endpoint."""

    async def test_root_returns_info(self, test_client):
        """Test root endpoint returns application info."""
        response = await test_client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["name"] == "Virtual Try-On"
        assert "version" in data
        assert data["docs"] == "/docs"
        assert data["health"] == "/health"


@pytest.mark.fast
class TestHealthEndpoint:
    """Tests for health endpoint."""

    async def test_health_returns_status(self, test_client):
        """Test health endpoint returns status."""
        response = await test_client.get("/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] in ("healthy", "degraded")
        assert "version" in data
        assert "database" in data

    async def test_health_includes_providers(self, test_client):
        """Test health endpoint includes provider status."""
        response = await test_client.get("/health")
        data = response.json()

        assert data["providers"]["google"] is True
        assert data["providers"]["openrouter"] is True


@pytest.mark.fast
class TestCors:
    """CORS follows the configured origins."""

    def test_middleware_uses_configured_origins(self):
        cors = next(m for m in app.user_middleware if m.cls is CORSMiddleware)
        assert cors.kwargs["allow_origins"] == settings.get_cors_origins()


@pytest.mark.fast
class TestErrorMapping:
    """Terminal errors become status code plus localized message."""

    async def test_tryon_error_handler(self, test_client):
        @app.get("/_test/quota")
        async def raise_quota():
            raise QuotaExhausted("billing disabled upstream")

        try:
            response = await test_client.get("/_test/quota")
        finally:
            app.router.routes.pop()

        assert response.status_code == 402
        data = response.json()
        assert data["code"] == "QUOTA_EXHAUSTED"
        assert data["error"] == "Quota da API excedida. Verifique a conta do provedor de IA."
        assert "billing" not in data["error"]
