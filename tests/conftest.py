# tests/conftest.py
import pytest
from httpx import ASGITransport, AsyncClient

from fuelwatch.api.deps import get_dispatcher, get_geocoder
from fuelwatch.core.errors import DispatchError, ResolutionError
from fuelwatch.core.fuel import Coordinates
from fuelwatch.core.settings import settings
from fuelwatch.db.init_db import init_db
from fuelwatch.db.session import build_engine, build_session_factory, get_db, get_session_factory
from fuelwatch.geocoding.cache import normalize_postcode
from fuelwatch.main import app

ADMIN_SECRET = "admin-test-secret"
CRON_SECRET = "cron-test-secret"


@pytest.fixture(scope="session")
def anyio_backend():
    return "asyncio"


@pytest.fixture()
async def test_engine(tmp_path):
    # Use a real file (NOT :memory:) because every unit of work opens its own connection.
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test_fuel.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture()
def session_factory(test_engine):
    return build_session_factory(test_engine)


@pytest.fixture()
async def db_session(session_factory):
    async with session_factory() as session:
        yield session


# ---------------------------
# Fakes for external collaborators
# ---------------------------
class FakeGeocoder:
    def __init__(self, known=None):
        self.known = {normalize_postcode(k): Coordinates(*v) for k, v in (known or {}).items()}
        self.calls = []
        self.outage = False

    async def lookup(self, postcode: str) -> Coordinates:
        self.calls.append(postcode)
        if self.outage:
            raise ResolutionError(postcode, "Geocoder timed out", retryable=True)
        if postcode not in self.known:
            raise ResolutionError(postcode, f"Postcode not found: {postcode}")
        return self.known[postcode]


class FakeDispatcher:
    def __init__(self):
        self.sent = []
        self.fail = False

    async def dispatch(self, db, user_id, notification) -> int:
        if self.fail:
            raise DispatchError("Push service timed out")
        self.sent.append((user_id, notification))
        return 1


@pytest.fixture()
def fake_geocoder():
    return FakeGeocoder({"SW1A 1AA": (51.501, -0.1416), "M1 1AE": (53.4808, -2.2426)})


@pytest.fixture()
def fake_dispatcher():
    return FakeDispatcher()


@pytest.fixture()
def secrets(monkeypatch):
    monkeypatch.setattr(settings, "ADMIN_SECRET", ADMIN_SECRET)
    monkeypatch.setattr(settings, "CRON_SECRET", CRON_SECRET)


@pytest.fixture()
async def client(session_factory, fake_geocoder, fake_dispatcher, secrets):
    async def _override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = _override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_geocoder] = lambda: fake_geocoder
    app.dependency_overrides[get_dispatcher] = lambda: fake_dispatcher

    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()
