"""Tests for health, readiness and version endpoints."""

from httpx import AsyncClient


class TestHealth:
    async def test_health(self, client: AsyncClient):
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    async def test_ready(self, client: AsyncClient):
        response = await client.get("/ready")
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"database": "ok", "redis": "disabled"}

    async def test_version(self, client: AsyncClient):
        response = await client.get("/version")
        assert response.status_code == 200
        assert set(response.json()) == {"version", "environment"}

    async def test_request_id_header(self, client: AsyncClient):
        response = await client.get("/health", headers={"X-Request-ID": "abc-123"})
        assert response.headers["X-Request-ID"] == "abc-123"

        response = await client.get("/health")
        assert response.headers["X-Request-ID"]


class TestErrorResponses:
    async def test_unknown_route(self, client: AsyncClient):
        response = await client.get("/api/v1/nothing-here")
        assert response.status_code == 404

    async def test_validation_errors_are_400(self, client: AsyncClient):
        response = await client.post("/api/v1/auth/login", json={"email": "learner@example.com"})
        assert response.status_code == 400
        assert response.json()["detail"] == "Validation error"
        assert response.json()["errors"]
