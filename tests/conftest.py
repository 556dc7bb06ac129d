"""
Test configuration and fixtures for the CMS security pipeline.
"""
import pytest
from fastapi import APIRouter, Request, Response
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient

from cms_security.app import create_app
from cms_security.config import Settings
from cms_security.security.rate_limiting import MemoryCounterStore
from cms_security.security.routing import SanitizedRoute


ADMIN_TOKEN = "test-admin-token"
VALID_PASSWORD = "correct-horse-battery"


class FakeClock:
    """Manually advanced clock for window and retention tests."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


def build_cms_router() -> APIRouter:
    """Stand-in for the CMS business routers."""
    router = APIRouter(route_class=SanitizedRoute)

    @router.post("/api/auth/login")
    async def login(request: Request):
        payload = await request.json()
        if payload.get("password") == VALID_PASSWORD:
            return {"success": True, "data": {"email": payload.get("email")}}
        return JSONResponse({"success": False, "error": "Invalid credentials"}, status_code=401)

    @router.get("/api/posts")
    async def list_posts(search: str = ""):
        return {"success": True, "search": search}

    @router.post("/api/posts")
    async def create_post(request: Request):
        return {"success": True, "data": await request.json()}

    @router.get("/api/posts/{slug}")
    async def get_post(slug: str):
        return {"success": True, "slug": slug}

    @router.post("/api/comments")
    async def create_comment(request: Request):
        body = await request.body()
        return {"success": True, "raw": body.decode()}

    @router.get("/api/boom")
    async def boom():
        raise RuntimeError("database connection lost")

    @router.get("/api/legacy")
    async def legacy():
        return Response(content="ok", headers={"X-Powered-By": "Express", "Server": "legacy/1.0"})

    @router.get("/")
    async def home():
        return {"success": True}

    return router


@pytest.fixture
def clock() -> FakeClock:
    """Clock shared by the counter store of the test app."""
    return FakeClock()


@pytest.fixture
def make_settings():
    """Factory for test settings that ignore the environment's .env file."""
    def _make(**overrides) -> Settings:
        values = {
            "environment": "test",
            "admin_api_key": ADMIN_TOKEN,
            "json_logging": False,
        }
        values.update(overrides)
        return Settings(_env_file=None, **values)
    return _make


@pytest.fixture
def test_settings(make_settings) -> Settings:
    """Default test settings."""
    return make_settings()


@pytest.fixture
def make_client(make_settings, clock):
    """Factory for a test client around a fresh application."""
    def _make(counter_store=None, **overrides) -> TestClient:
        settings = make_settings(**overrides)
        app = create_app(
            settings,
            routers=[build_cms_router()],
            counter_store=counter_store or MemoryCounterStore(clock=clock),
        )
        return TestClient(app)
    return _make


@pytest.fixture
def client(make_client) -> TestClient:
    """Test client with default settings."""
    return make_client()


@pytest.fixture
def services(client):
    """Services of the default test application."""
    return client.app.state.security


@pytest.fixture
def admin_headers():
    """Headers accepted by the admin API."""
    return {"X-Admin-Token": ADMIN_TOKEN}
