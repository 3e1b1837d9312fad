import pytest
import pytest_asyncio

from config import config
from models import DatabaseQueue, ItemKind


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """Push transport returning scripted tickets keyed by device token."""

    def __init__(self, tickets_by_token=None, error=None):
        self.tickets_by_token = tickets_by_token or {}
        self.error = error
        self.sent = []

    async def send(self, messages):
        self.sent.append(list(messages))
        if self.error is not None:
            raise self.error
        return [self.tickets_by_token.get(m["to"], {"status": "ok", "id": "t"}) for m in messages]


class FakeOracle:
    def __init__(self, kinds=None):
        self.kinds = kinds or {}
        self.calls = []

    async def classify(self, item_id):
        self.calls.append(item_id)
        return self.kinds.get(item_id, ItemKind.NONE)


def error_ticket(code, token=None, message=None):
    details = {"error": code}
    if token:
        details["expoPushToken"] = token
    return {"status": "error", "message": message or code, "details": details}


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def db(monkeypatch, tmp_path):
    test_db_path = tmp_path / "test.db"
    monkeypatch.setattr(config, 'DATABASE_PATH', str(test_db_path))
    queue = DatabaseQueue(str(test_db_path))
    await queue.start()
    yield queue
    await queue.stop()
