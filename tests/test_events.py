"""Tests for creatorpay.events -- the in-process event bus."""

from __future__ import annotations

from creatorpay.events import Event, EventBus, EventType


class TestPublishSubscribe:
    def test_specific_handler_receives_matching_events(self, bus):
        received = []
        bus.subscribe(EventType.CODE_READY, received.append)

        bus.publish(EventType.CODE_READY, {"transaction_id": "t1"}, source="payments")
        bus.publish(EventType.PAYMENT_EXPIRED, {"transaction_id": "t1"})

        assert len(received) == 1
        assert received[0].data == {"transaction_id": "t1"}
        assert received[0].source == "payments"

    def test_wildcard_handler_receives_everything(self, bus):
        received = []
        bus.subscribe(None, received.append)
        bus.publish(EventType.CODE_READY, {})
        bus.publish(EventType.TOPUP_CONFIRMED, {})
        assert [e.type for e in received] == [EventType.CODE_READY, EventType.TOPUP_CONFIRMED]

    def test_filter(self, bus):
        received = []
        bus.subscribe(
            EventType.PURCHASE_CONFIRMED,
            received.append,
            filter=lambda e: e.data.get("buyer_id") == 1,
        )
        bus.publish(EventType.PURCHASE_CONFIRMED, {"buyer_id": 1})
        bus.publish(EventType.PURCHASE_CONFIRMED, {"buyer_id": 2})
        assert [e.data["buyer_id"] for e in received] == [1]

    def test_duplicate_subscription_is_ignored(self, bus):
        received = []
        bus.subscribe(EventType.CODE_READY, received.append)
        bus.subscribe(EventType.CODE_READY, received.append)
        bus.publish(EventType.CODE_READY, {})
        assert len(received) == 1

    def test_failing_handler_does_not_block_others(self, bus):
        received = []

        def _broken(event: Event) -> None:
            raise RuntimeError("handler bug")

        bus.subscribe(EventType.CODE_READY, _broken)
        bus.subscribe(EventType.CODE_READY, received.append)
        bus.publish(EventType.CODE_READY, {})
        assert len(received) == 1

    def test_prebuilt_event(self, bus):
        event = Event(type=EventType.GATEWAY_ERROR, data={"code": "TIMEOUT"}, source="poll")
        assert bus.publish(event) is event
        assert event.to_dict()["type"] == "gateway.error"


class TestHistory:
    def test_newest_first_and_filtered(self, bus):
        bus.publish(EventType.CODE_READY, {"n": 1})
        bus.publish(EventType.PAYMENT_FAILED, {"n": 2})
        bus.publish(EventType.CODE_READY, {"n": 3})

        assert [e.data["n"] for e in bus.recent_events()] == [3, 2, 1]
        assert [e.data["n"] for e in bus.recent_events(EventType.CODE_READY)] == [3, 1]
        assert len(bus.recent_events(limit=1)) == 1

    def test_history_is_bounded(self):
        bus = EventBus(max_history=3)
        for n in range(5):
            bus.publish(EventType.CODE_READY, {"n": n})
        assert [e.data["n"] for e in bus.recent_events()] == [4, 3, 2]
