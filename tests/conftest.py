from datetime import datetime, timedelta, timezone

import pytest
from httpx import AsyncClient, ASGITransport

from job_store import InMemoryJobStore
from main import create_app
from settings import Settings

API_KEY = "s3cret"


class FakeClock:
    """Controllable replacement for utcnow()."""

    def __init__(self, start: datetime = None):
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def make_settings(**overrides) -> Settings:
    values = {
        "render_api_key": "",
        "completion_threshold_s": 60,
        "job_store": "memory",
        "debug": False,
        "cors_origins": "*",
    }
    values.update(overrides)
    return Settings(**values)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return InMemoryJobStore()


@pytest.fixture
def app_factory(store, clock):
    def _make(**overrides):
        return create_app(make_settings(**overrides), store=store, clock=clock)

    return _make


@pytest.fixture(scope="function")
async def client(app_factory):
    transport = ASGITransport(app=app_factory())
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest.fixture(scope="function")
async def secured_client(app_factory):
    transport = ASGITransport(app=app_factory(render_api_key=API_KEY))
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
