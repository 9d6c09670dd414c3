import pytest

from apps.collector.adapters import polymarket
from apps.collector.adapters.polymarket import PolymarketClient
from tests.fakes import FakeStore, FakeUpstream

GAMMA = "https://gamma.test"
CLOB = "https://clob.test"


@pytest.fixture(autouse=True)
def sleeps(monkeypatch):
    """Record every adapter sleep (ms) instead of waiting."""
    recorded = []

    async def fake_sleep(ms):
        recorded.append(ms)

    monkeypatch.setattr(polymarket, "sleep", fake_sleep)
    return recorded


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def upstream():
    return FakeUpstream()


@pytest.fixture
def client(upstream):
    return PolymarketClient(gamma_base=GAMMA, clob_base=CLOB, transport=upstream.transport())
