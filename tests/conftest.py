import fakeredis
import pytest

from dispatch import activity, store


@pytest.fixture(autouse=True)
def fake_redis(monkeypatch):
    """Every test gets an empty in-process Redis; webhooks stay off."""
    server = fakeredis.FakeServer()
    client = fakeredis.FakeRedis(server=server, decode_responses=True)
    monkeypatch.setattr(store, "_redis_client", client)
    monkeypatch.setattr("dispatch.config.WEBHOOK_URL", "")
    activity.clear()
    yield client
    client.flushall()
