import json
import types

from src.scaffolder.infrastructure import events
from src.scaffolder.infrastructure.event_bus import StatusEventBus


def _use_redis(monkeypatch, *, url=None, from_url=None):
    monkeypatch.delenv("REDIS_URL", raising=False)
    if url is not None:
        monkeypatch.setenv("REDIS_URL", url)
    factory = from_url or (lambda *args, **kwargs: None)
    monkeypatch.setattr(events, "redis", types.SimpleNamespace(Redis=types.SimpleNamespace(from_url=factory)))
    monkeypatch.setattr(events, "_publisher", None)


def test_publish_event_no_url_returns_quietly(monkeypatch):
    _use_redis(monkeypatch)
    assert events._get_publisher() is None
    events.publish_event("status", {"payload": "ignored"})


class FakeRedisClient:
    attempt = 0
    published = []
    publish_should_fail = False

    def ping(self):
        if FakeRedisClient.attempt == 0:
            FakeRedisClient.attempt += 1
            raise Exception("connect failed")

    def publish(self, channel, payload):
        FakeRedisClient.published.append((channel, payload))
        if FakeRedisClient.publish_should_fail:
            FakeRedisClient.publish_should_fail = False
            raise Exception("publish failed")


def _reset_fake():
    FakeRedisClient.attempt = 0
    FakeRedisClient.published = []
    FakeRedisClient.publish_should_fail = False


def test_redis_publisher_recovers_after_connection_failure(monkeypatch):
    _reset_fake()
    _use_redis(monkeypatch, url="redis://localhost", from_url=lambda url, socket_timeout=0.5: FakeRedisClient())
    publisher = events._get_publisher()
    assert publisher is not None

    events.publish_event("status", {"value": 1})
    assert FakeRedisClient.attempt == 1  # first ping failed once
    assert FakeRedisClient.published[-1] == ("scaffolder.events.status", json.dumps({"value": 1}))

    FakeRedisClient.publish_should_fail = True
    events.publish_event("status", {"value": 2})  # publish failure is swallowed
    assert events.load_event_client() is publisher


def test_event_bus_mirrors_status_events(monkeypatch):
    _reset_fake()
    FakeRedisClient.attempt = 1
    _use_redis(monkeypatch, url="redis://localhost", from_url=lambda url, socket_timeout=0.5: FakeRedisClient())
    bus = StatusEventBus(mirror=True)
    bus.publish("conv-9", {"type": "status", "message": "hi"})
    channel, payload = FakeRedisClient.published[-1]
    assert channel == "scaffolder.events.status"
    assert json.loads(payload) == {"channelId": "conv-9", "type": "status", "message": "hi"}
