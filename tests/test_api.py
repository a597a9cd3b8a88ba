"""
Tests for the gateway's own HTTP endpoints.

Tests cover:
- Health check
- Usage limits of the current caller
- Operation history of an authenticated user
- Admin endpoints (auth, health, stats, activity)
"""

from datetime import timedelta

from fastapi.testclient import TestClient

from pdf_gateway.configuration import make_runtime_config
from pdf_gateway.main import create_app
from pdf_gateway.models import OperationLogEntry, Subject, SubjectKind
from pdf_gateway.utils import utc_now, utc_today


class TestHealthCheck:
    """Tests for the /healthz endpoint."""

    def test_health_check_returns_ok(self, client):
        """Health check should return status ok."""
        response = client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_module_app_is_importable(self):
        """The uvicorn entry point should exist at import time."""
        from pdf_gateway.main import app

        assert app.state.gateway.supervisor.handle.state.value == "not_started"


class TestUsageLimits:
    """Tests for GET /api/auth/limits."""

    def test_anonymous_limits(self, client):
        """Anonymous callers see the anonymous quota."""
        response = client.get("/api/auth/limits")
        assert response.status_code == 200
        assert response.json() == {
            "used": 0,
            "limit": 8,
            "plan": "anonymous",
            "maxFileSizeMB": 5,
            "maxPages": 25,
        }

    def test_free_user_limits_reflect_usage(self, client, db, make_user):
        """Used count is today's counter for the user."""
        user, headers = make_user(plan="free")
        subject = Subject(kind=SubjectKind.USER, id=user.id)
        db.increment(subject, utc_today())
        db.increment(subject, utc_today())

        data = client.get("/api/auth/limits", headers=headers).json()
        assert data["plan"] == "free"
        assert data["used"] == 2
        assert data["limit"] == 15
        assert data["maxFileSizeMB"] == 10
        assert data["maxPages"] == 40

    def test_pro_limits_are_null(self, client, make_user):
        """Unlimited values are reported as null."""
        _, headers = make_user(plan="pro")
        data = client.get("/api/auth/limits", headers=headers).json()
        assert data["plan"] == "pro"
        assert data["limit"] is None
        assert data["maxFileSizeMB"] is None
        assert data["maxPages"] is None

    def test_expired_pro_reports_free(self, client, make_user):
        """A lapsed pro plan is served as free."""
        _, headers = make_user(plan="pro", plan_expires_at=utc_now() - timedelta(days=1))
        assert client.get("/api/auth/limits", headers=headers).json()["plan"] == "free"

    def test_inactive_account_reports_anonymous(self, client, make_user):
        """A disabled account falls back to the anonymous view."""
        _, headers = make_user(is_active=False)
        assert client.get("/api/auth/limits", headers=headers).json()["plan"] == "anonymous"

    def test_invalid_token_reports_anonymous(self, client):
        """Garbage tokens are treated as no token."""
        response = client.get("/api/auth/limits", headers={"Authorization": "Bearer not-a-jwt"})
        assert response.status_code == 200
        assert response.json()["plan"] == "anonymous"


class TestMyOperations:
    """Tests for GET /api/auth/my-operations."""

    def test_requires_token(self, client):
        """No bearer token should be rejected."""
        response = client.get("/api/auth/my-operations")
        assert response.status_code == 401

    def test_rejects_invalid_token(self, client):
        """Invalid bearer token should be rejected."""
        response = client.get(
            "/api/auth/my-operations",
            headers={"Authorization": "Bearer invalid"},
        )
        assert response.status_code == 401

    def test_lists_only_own_operations(self, client, engine, make_user, sample_pdf):
        """Operations performed by the user are listed, newest first."""
        _, headers = make_user()
        _, other_headers = make_user()

        client.post("/api/pdf/merge", content=sample_pdf, headers=headers)
        client.post("/api/pdf/split", content=sample_pdf, headers=headers)
        client.post("/api/pdf/compress", content=sample_pdf, headers=other_headers)

        response = client.get("/api/auth/my-operations", headers=headers)
        assert response.status_code == 200
        operations = response.json()["operations"]
        assert [op["operation"] for op in operations] == ["split", "merge"]
        assert all(op["subject_id"] == "user-1" for op in operations)


class TestAdminAuth:
    """Tests for X-API-Key protection of /api/admin routes."""

    def test_missing_key(self, client):
        """Missing header is a validation error."""
        response = client.get("/api/admin/stats")
        assert response.status_code == 422

    def test_wrong_key(self, client):
        """Wrong key should be rejected."""
        response = client.get("/api/admin/stats", headers={"X-API-Key": "invalid-key"})
        assert response.status_code == 401

    def test_unconfigured_key_rejects_everyone(self, tmp_path, engine):
        """Without a configured admin key the admin routes stay closed."""
        settings = make_runtime_config({
            "database": {"path": str(tmp_path / "noadmin.db")},
            "admin": {"api_key": None},
        })
        app = create_app(settings, backend_transport=engine.transport)
        with TestClient(app) as client:
            response = client.get("/api/admin/stats", headers={"X-API-Key": "anything"})
        assert response.status_code == 401


class TestAdminHealth:
    """Tests for GET /api/admin/health."""

    def test_degraded_without_engine(self, client, admin_headers):
        """The engine is not running in tests, so the system is degraded."""
        response = client.get("/api/admin/health", headers=admin_headers)
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "degraded"
        assert data["components"] == {
            "database": "healthy",
            "pdfBackend": "error",
            "server": "healthy",
        }
        assert data["backend"]["state"] == "not_started"
        assert data["backend"]["pid"] is None
        assert "timestamp" in data


class TestAdminStats:
    """Tests for GET /api/admin/stats and /api/admin/activity."""

    def test_stats_count_operations(self, client, admin_headers, sample_pdf):
        """Counts include every logged operation, grouped by name."""
        client.post("/api/pdf/merge", content=sample_pdf)
        client.post("/api/pdf/merge", content=sample_pdf)
        client.post("/api/pdf/rotate", content=sample_pdf)

        data = client.get("/api/admin/stats", headers=admin_headers).json()
        assert data["today"] == 3
        assert data["thisWeek"] == 3
        assert data["thisMonth"] == 3
        assert data["total"] == 3
        assert data["byOperation"] == [
            {"operation": "merge", "count": 2},
            {"operation": "rotate", "count": 1},
        ]

    def test_activity_respects_limit(self, client, db, admin_headers):
        """Activity returns the most recent entries first."""
        now = utc_now()
        for minutes, name in enumerate(["oldest", "middle", "newest"]):
            db.append_operation(
                OperationLogEntry(
                    ip_address="198.51.100.1",
                    operation=name,
                    created_at=now - timedelta(minutes=10 - minutes),
                )
            )

        response = client.get("/api/admin/activity", params={"limit": 2}, headers=admin_headers)
        assert response.status_code == 200
        assert [op["operation"] for op in response.json()["operations"]] == ["newest", "middle"]

    def test_activity_rejects_bad_limit(self, client, admin_headers):
        """Limit must be positive."""
        response = client.get("/api/admin/activity", params={"limit": 0}, headers=admin_headers)
        assert response.status_code == 422
