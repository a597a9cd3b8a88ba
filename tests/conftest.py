"""
Pytest configuration and fixtures for PDF Gateway tests.
"""

import os
import shutil
import socket
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Dict, List, Optional

import httpx
import pytest
from fastapi.testclient import TestClient


def _unused_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


# Set test environment variables before importing the app
_TEST_DATA_DIR = tempfile.mkdtemp(prefix="pdf_gateway_test_")
os.environ["PDF_GATEWAY_DATABASE_PATH"] = os.path.join(_TEST_DATA_DIR, "gateway.db")
os.environ["PDF_GATEWAY_ADMIN_KEY"] = "test-admin-key-12345"
os.environ["JWT_SECRET"] = "test-jwt-secret"
os.environ["PDF_BACKEND_AUTOSTART"] = "false"
os.environ["PDF_BACKEND_BUILD"] = "false"
# Nothing listens here, so direct health probes see an absent engine
os.environ["PDF_BACKEND_PORT"] = str(_unused_port())

from pdf_gateway.configuration import make_runtime_config  # noqa: E402
from pdf_gateway.main import Gateway, create_app  # noqa: E402
from pdf_gateway.models import UserRecord  # noqa: E402

ADMIN_KEY = "test-admin-key-12345"


class _EngineBody(httpx.AsyncByteStream):
    """Response body the proxy can stream with aiter_raw()."""

    def __init__(self, content: bytes):
        self._content = content

    async def __aiter__(self):
        if self._content:
            yield self._content


class FakeEngine:
    """In-process stand-in for the PDF engine, reached through MockTransport."""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.status_code = 200
        self.content = b"%PDF-1.4 processed"
        self.headers: Dict[str, str] = {"content-type": "application/pdf"}
        self.unreachable = False

    def handle(self, request: httpx.Request) -> httpx.Response:
        if self.unreachable:
            raise httpx.ConnectError("Connection refused", request=request)
        self.requests.append(request)
        headers = {**self.headers, "content-length": str(len(self.content))}
        return httpx.Response(self.status_code, headers=headers, stream=_EngineBody(self.content))

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle)

    @property
    def last_request(self) -> httpx.Request:
        assert self.requests, "engine was never called"
        return self.requests[-1]


@pytest.fixture(scope="session", autouse=True)
def test_data_dir():
    """Cleanup the module-level test data directory after all tests."""
    yield Path(_TEST_DATA_DIR)
    shutil.rmtree(_TEST_DATA_DIR, ignore_errors=True)


@pytest.fixture
def unused_port():
    return _unused_port()


@pytest.fixture
def settings(tmp_path):
    """Runtime config with a per-test database."""
    return make_runtime_config({"database": {"path": str(tmp_path / "gateway.db")}})


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def app(settings, engine):
    return create_app(settings, backend_transport=engine.transport)


@pytest.fixture
def client(app):
    """Create a test client for the FastAPI app (lifespan included)."""
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def gateway(app) -> Gateway:
    return app.state.gateway


@pytest.fixture
def db(gateway):
    """The synchronous database behind the app's usage store."""
    return gateway.store.db


@pytest.fixture
def admin_headers():
    return {"X-API-Key": ADMIN_KEY}


@pytest.fixture
def make_user(gateway, db):
    """Factory: store a user and return (record, auth headers)."""
    counter = {"n": 0}

    def _make_user(
        plan: str = "free",
        is_active: bool = True,
        plan_expires_at: Optional[datetime] = None,
    ):
        counter["n"] += 1
        user = UserRecord(
            id=f"user-{counter['n']}",
            email=f"user{counter['n']}@example.com",
            plan=plan,
            plan_expires_at=plan_expires_at,
            is_active=is_active,
        )
        db.upsert_user(user)
        token = gateway.verifier.issue(user)
        return user, {"Authorization": f"Bearer {token}"}

    return _make_user


@pytest.fixture
def sample_pdf():
    """A small PDF payload for upload requests."""
    return b"""%PDF-1.4
1 0 obj
<< /Type /Catalog /Pages 2 0 R >>
endobj
trailer
<< /Root 1 0 R >>
%%EOF"""
