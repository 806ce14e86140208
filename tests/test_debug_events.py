"""Tests for the per-user debug event broadcaster."""

from intake.debug_events import EVENT_LOG_LIMIT, BroadcasterRegistry, DebugBroadcaster


class TestDebugBroadcaster:
    def test_emit_without_subscribers(self):
        """Emitting with no subscribers should not raise."""
        b = DebugBroadcaster("user-1")
        b.emit("transition", "admission_email", {"from": "admission_displayname"})
        assert len(b.event_log) == 1

    def test_emit_to_subscriber(self):
        b = DebugBroadcaster("user-2")
        q = b.subscribe()
        b.emit("inbound", "admission_email", {"text": "john@example.com"})

        event = q.get_nowait()
        assert event["type"] == "inbound"
        assert event["state"] == "admission_email"
        assert event["data"]["text"] == "john@example.com"
        assert event["user_id"] == "user-2"
        assert "timestamp" in event

    def test_unsubscribe(self):
        b = DebugBroadcaster("user-3")
        q = b.subscribe()
        b.unsubscribe(q)
        b.emit("outbound", "", {"text": "hi"})
        assert q.empty()
        assert b.subscriber_count == 0

    def test_full_queue_drops_oldest(self):
        b = DebugBroadcaster("user-4")
        q = b.subscribe()
        for i in range(q.maxsize + 1):
            b.emit("oracle", "", {"n": i})
        assert q.qsize() == q.maxsize
        assert q.get_nowait()["data"]["n"] == 1

    def test_event_log_is_bounded(self):
        b = DebugBroadcaster("user-5")
        for i in range(EVENT_LOG_LIMIT + 10):
            b.emit("oracle", "", {"n": i})
        assert len(b.event_log) == EVENT_LOG_LIMIT
        assert b.event_log[0]["data"]["n"] == 10


class TestBroadcasterRegistry:
    def test_get_creates_once(self):
        registry = BroadcasterRegistry()
        assert registry.find("u") is None
        b = registry.get("u")
        assert registry.get("u") is b
        assert registry.find("u") is b

    def test_remove_keeps_watched_broadcasters(self):
        registry = BroadcasterRegistry()
        b = registry.get("u")
        q = b.subscribe()
        registry.remove("u")
        assert registry.find("u") is b

        b.unsubscribe(q)
        registry.remove("u")
        assert registry.find("u") is None
