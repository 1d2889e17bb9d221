"""
Tests for API health and basic endpoints.
"""

import pytest
from fastapi.testclient import TestClient

from studybuddy.services.session_resolver import report_degraded


class TestHealthEndpoints:
    """Test basic health and status endpoints"""

    @pytest.mark.unit
    def test_root_endpoint(self, client: TestClient):
        """Test root endpoint returns API info"""
        response = client.get("/")
        assert response.status_code == 200
        data = response.json()
        assert data["message"] == "AI Study Buddy API"
        assert "version" in data

    @pytest.mark.unit
    @pytest.mark.parametrize("path", ["/health", "/api/health"])
    def test_health_check(self, client: TestClient, path):
        """Test health check endpoints"""
        response = client.get(path)
        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "OK"
        assert data["database"] == "connected"
        assert data["aiService"] == "closed"
        assert data["persistenceDegraded"] == 0
        assert "timestamp" in data

    @pytest.mark.unit
    def test_health_reports_degraded_writes(self, client: TestClient):
        report_degraded("quiz", "quiz-1", "user-1", "database is locked")

        data = client.get("/api/health").json()
        assert data["persistenceDegraded"] == 1

    @pytest.mark.unit
    def test_docs_available(self, client: TestClient):
        """Test OpenAPI docs are available"""
        response = client.get("/docs")
        assert response.status_code == 200

    @pytest.mark.unit
    def test_openapi_json(self, client: TestClient):
        """Test OpenAPI schema is available"""
        response = client.get("/openapi.json")
        assert response.status_code == 200
        data = response.json()
        assert "/api/chat/message" in data["paths"]
        assert "/api/quiz/generate" in data["paths"]


class TestErrorMapping:
    """Validation errors are reported as 400"""

    @pytest.mark.unit
    def test_missing_field_is_400(self, client: TestClient):
        response = client.post("/api/chat/message", json={"conversationId": "c-1"})
        assert response.status_code == 400
        assert "message" in response.json()["error"]

    @pytest.mark.unit
    def test_invalid_difficulty_is_400(self, client: TestClient):
        response = client.post("/api/quiz/generate", json={"topic": "math", "difficulty": "extreme"})
        assert response.status_code == 400
