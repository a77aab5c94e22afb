import pytest

from masix.config.loader import PolicyConfig, RateLimitConfig
from masix.services import event_bus as events
from masix.services.event_bus import InMemoryEventBus
from masix.services.policy import MessagePolicy


class ManualClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


def test_denylist_matches_sender_or_chat():
    policy = MessagePolicy(PolicyConfig(denylist=frozenset({"66", "-100"})))

    assert policy.check("123", "66") == "denylisted"
    assert policy.check("123", "2", chat_id="-100") == "denylisted"
    assert policy.check("123", "2", chat_id="2") is None


def test_rate_limit_window_slides():
    clock = ManualClock()
    policy = MessagePolicy(PolicyConfig(rate_limit=RateLimitConfig(messages_per_minute=2)), clock=clock)

    assert policy.check("123", "2") is None
    assert policy.check("123", "2") is None
    assert policy.check("123", "2") == "rate_limited"
    # other senders and other accounts have their own windows
    assert policy.check("123", "3") is None
    assert policy.check("456", "2") is None

    clock.now += 60
    assert policy.check("123", "2") is None


def test_expired_sender_windows_are_forgotten():
    clock = ManualClock()
    policy = MessagePolicy(PolicyConfig(rate_limit=RateLimitConfig(messages_per_minute=5)), clock=clock)
    for sender in ("2", "3", "4"):
        policy.check("123", sender)

    clock.now += 61
    policy.check("123", "5")

    assert list(policy._windows) == [("123", "5")]


def test_bus_filters_by_topic():
    bus = InMemoryEventBus()
    _, replied = bus.subscribe([events.MESSAGE_REPLIED])
    _, everything = bus.subscribe()

    assert bus.publish(events.MESSAGE_RECEIVED, {"offset": 1}) == 1
    assert bus.publish(events.MESSAGE_REPLIED, {"offset": 1}) == 2

    assert replied.qsize() == 1
    assert everything.qsize() == 2
    assert replied.get_nowait() == {"event": "message.replied", "data": {"offset": 1}}


def test_bus_drops_oldest_for_lagging_subscribers():
    bus = InMemoryEventBus(queue_size=2)
    _, queue = bus.subscribe()

    for offset in range(3):
        bus.publish(events.CRON_FIRED, {"offset": offset})

    assert [queue.get_nowait()["data"]["offset"] for _ in range(2)] == [1, 2]


def test_unsubscribe_stops_delivery():
    bus = InMemoryEventBus()
    subscription_id, queue = bus.subscribe()
    bus.unsubscribe(subscription_id)

    assert bus.publish(events.MESSAGE_DENIED, {}) == 0
    with pytest.raises(Exception):
        queue.get_nowait()
