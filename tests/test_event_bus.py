# tests/test_event_bus.py
from core.event_bus import (
    CacheEventKind,
    CacheHit,
    CacheMiss,
    EFBEventKind,
    EventBus,
    RouteCleared,
)


def test_publish_reaches_only_matching_kind(bus: EventBus):
    hits, misses = [], []
    bus.subscribe(CacheEventKind.HIT, hits.append)
    bus.subscribe(CacheEventKind.MISS, misses.append)

    event = CacheHit(key="k", response_time_ms=0.2)
    assert bus.publish(event) == 1
    assert hits == [event]
    assert misses == []


def test_handlers_run_in_subscription_order(bus: EventBus):
    calls = []
    bus.subscribe(EFBEventKind.ROUTE_CLEARED, lambda e: calls.append("first"))
    bus.subscribe(EFBEventKind.ROUTE_CLEARED, lambda e: calls.append("second"))
    bus.publish(RouteCleared())
    assert calls == ["first", "second"]


def test_failing_handler_does_not_stop_delivery(bus: EventBus):
    received = []

    def broken(event):
        raise RuntimeError("handler failure")

    bus.subscribe(CacheEventKind.MISS, broken)
    bus.subscribe(CacheEventKind.MISS, received.append)

    assert bus.publish(CacheMiss(key="k", response_time_ms=0.1)) == 1
    assert len(received) == 1


def test_unsubscribe(bus: EventBus):
    received = []
    bus.subscribe(CacheEventKind.HIT, received.append)
    assert bus.unsubscribe(CacheEventKind.HIT, received.append) is True
    assert bus.unsubscribe(CacheEventKind.HIT, received.append) is False
    assert bus.listener_count(CacheEventKind.HIT) == 0
    assert bus.publish(CacheHit(key="k", response_time_ms=0.1)) == 0
    assert received == []


def test_kinds_and_clear(bus: EventBus):
    bus.subscribe(CacheEventKind.HIT, print)
    bus.subscribe(EFBEventKind.MAP_ZOOMED, print)
    assert set(bus.kinds()) == {CacheEventKind.HIT, EFBEventKind.MAP_ZOOMED}
    bus.clear()
    assert bus.kinds() == []
