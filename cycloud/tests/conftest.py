import asyncio

import pytest
from fastapi.testclient import TestClient

from cycloud.market_api.config import Settings
from cycloud.market_api.coordinator import AuctionCoordinator
from cycloud.market_api.database import create_db_engine, create_session_factory, init_schema
from cycloud.market_api.ledger import CreditLedger
from cycloud.market_api.main import create_app
from cycloud.market_api.registry import AuctionRegistry
from cycloud.market_api.store import Store

# Short timings so that auction windows and compute phases finish quickly
WINDOW_SECONDS = 0.3
MINUTE_SECONDS = 0.05

RESOURCE_SPEC = {
    "cpu_cores": 4,
    "memory": 16,
    "storage": 100,
    "gpu": "RTX 3080",
    "bandwidth": 100,
    "cost_per_minute": 1.0,
}


async def eventually(predicate, timeout: float = 5.0, interval: float = 0.02):
    """Poll ``predicate`` until it holds or fail after ``timeout`` seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met within %.1fs" % timeout)
        await asyncio.sleep(interval)


@pytest.fixture(scope="function")
def database_url(tmp_path):
    # A file database: the store is used from worker threads
    return f"sqlite:///{tmp_path / 'cycloud-test.db'}"


@pytest.fixture(scope="function")
def engine(database_url):
    engine = create_db_engine(database_url)
    init_schema(engine)
    try:
        yield engine
    finally:
        engine.dispose()


@pytest.fixture(scope="function")
def store(engine):
    return Store(create_session_factory(engine))


@pytest.fixture(scope="function")
def ledger(store):
    return CreditLedger(store)


@pytest.fixture
def make_user(store):
    """Factory registering a user with an optional credit balance."""

    def _make_user(name: str, credits: float = 0.0) -> int:
        uid, _ = store.register_or_authenticate(name, "secret")
        if credits:
            store.add_credits(uid, credits)
        return uid

    return _make_user


@pytest.fixture
def make_resource(store):
    """Factory creating a resource, available for bids unless told otherwise."""

    def _make_resource(owner: int, available: bool = True, **overrides) -> int:
        rid = store.create_resource(owner, {**RESOURCE_SPEC, **overrides})
        if available:
            store.flip_availability(rid)
        return rid

    return _make_resource


@pytest.fixture
async def coordinator(store, ledger):
    coordinator = AuctionCoordinator(
        store,
        ledger,
        AuctionRegistry(),
        window_seconds=WINDOW_SECONDS,
        minute_seconds=MINUTE_SECONDS,
    )
    try:
        yield coordinator
    finally:
        await coordinator.shutdown(timeout=2.0)


@pytest.fixture(scope="function")
def settings(database_url):
    return Settings(
        database_url=database_url,
        jwt_secret="test-secret",
        # Leaves HTTP tests time to bid before the window closes
        auction_window_seconds=1.0,
        minute_seconds=MINUTE_SECONDS,
        stream_keepalive_seconds=5.0,
    )


@pytest.fixture(scope="function")
def client(settings):
    app = create_app(settings)
    with TestClient(app) as client:
        yield client


def login(client, username: str, password: str = "secret") -> dict:
    """Log in through the API and return the authorization headers."""
    response = client.post("/login", json={"username": username, "password": password})
    assert response.status_code == 200
    return {"Authorization": f"Bearer {response.json()['token']}"}
