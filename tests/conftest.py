from collections.abc import AsyncGenerator

import httpx
import pytest
import pytest_asyncio

from holopush.config import Settings, override_settings
from holopush.main import app
from holopush.notifications.push import PushDispatcher
from holopush.notifications.store import JsonFileBackend, SubscriptionStore
from holopush.notifications.vapid import VapidKeyPair, generate_vapid_keys

AUTH_KEY = "test-secret"
ALLOWED_ORIGIN = "https://site.example"


@pytest.fixture(autouse=True)
def _test_settings(tmp_path):
    """Override settings so tests use an isolated state dir."""
    override_settings(
        Settings(
            state_dir=str(tmp_path),
            auth_key=AUTH_KEY,
            allowed_origin=ALLOWED_ORIGIN,
        )
    )
    yield
    override_settings(None)


class FakePushService:
    """Stand-in push service: records requests, answers per endpoint."""

    def __init__(self) -> None:
        self.statuses: dict[str, int] = {}
        self.requests: list[httpx.Request] = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.get(str(request.url), 201)
        return httpx.Response(status, text="" if status < 400 else "rejected")

    @property
    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handler)


@pytest.fixture
def vapid_keys() -> VapidKeyPair:
    return generate_vapid_keys()


@pytest.fixture
def push_service() -> FakePushService:
    return FakePushService()


@pytest.fixture
def store(tmp_path) -> SubscriptionStore:
    return SubscriptionStore(JsonFileBackend(tmp_path / "subs.json"))


@pytest.fixture
def dispatcher(store, vapid_keys, push_service) -> PushDispatcher:
    return PushDispatcher(
        store=store,
        keys=vapid_keys,
        contact="ops@example.com",
        transport=push_service.transport,
    )


@pytest_asyncio.fixture
async def client(store, dispatcher) -> AsyncGenerator[httpx.AsyncClient]:
    """Async test client wired to a tmp store and fake push service."""
    app.state.push_store = store
    app.state.push_dispatcher = dispatcher
    async with httpx.AsyncClient(
        transport=httpx.ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
