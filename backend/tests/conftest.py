import pytest
from fastapi.testclient import TestClient
from mongomock_motor import AsyncMongoMockClient

import core.db
from core.security import create_access_token
from ingestion.errors import ServiceUnavailable
from ingestion.store import TradeStore


HAPPY_HEADERS = ["datetime", "symbol", "side", "qty", "price", "pnl", "notes"]
HAPPY_ROWS = [
    ["2024-01-15 09:30:00", "AAPL", "BUY", "100", "150.25", "45.00", "Breakout"],
    ["2024-01-15 10:15:00", "MSFT", "SELL", "50", "390.10", "-20.50", "Fade"],
    ["2024-01-16 14:05:00", "NVDA", "BUY", "10", "545.00", "120.25", "Trend"],
]


def make_csv(headers, rows, sep=","):
    lines = [sep.join(headers)]
    lines.extend(sep.join(str(c) for c in r) for r in rows)
    return ("\n".join(lines) + "\n").encode("utf-8")


class FakeServices:
    """
    Stand-in for IngestionServices. Each answer is either a value or an
    exception instance; the default is "every service is down".
    """

    def __init__(self, *, verdict=None, mapping=None, insights=None):
        down = ServiceUnavailable("fake", "offline")
        self.verdict = down if verdict is None else verdict
        self.mapping = down if mapping is None else mapping
        self.insights = down if insights is None else insights
        self.calls = []

    def _answer(self, name, value):
        self.calls.append(name)
        if isinstance(value, Exception):
            raise value
        return value

    async def validate_content(self, headers, sample):
        return self._answer("validate", self.verdict)

    async def map_columns(self, headers, sample):
        return self._answer("map", self.mapping)

    async def generate_insights(self, trades):
        self.calls.append(("insights", len(trades)))
        if isinstance(self.insights, Exception):
            raise self.insights
        return self.insights


@pytest.fixture
def mock_db():
    return AsyncMongoMockClient()["tradejournal_test"]


@pytest.fixture
def store(mock_db):
    return TradeStore(mock_db)


@pytest.fixture
def offline_services():
    return FakeServices()


@pytest.fixture
def happy_csv():
    return make_csv(HAPPY_HEADERS, HAPPY_ROWS)


@pytest.fixture
def auth_headers():
    return {"Authorization": f"Bearer {create_access_token(sub='user-1')}"}


@pytest.fixture
def client(monkeypatch, mock_db):
    from main import app
    from routers.deps import get_services

    monkeypatch.setattr(core.db, "db", mock_db)
    app.dependency_overrides[get_services] = lambda: FakeServices()
    # no context manager: startup would try to reach a real MongoDB
    yield TestClient(app)
    app.dependency_overrides.clear()
