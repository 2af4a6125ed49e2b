"""
Realtime status channel tests — per-record fan-out and history.
"""

import queue

from agencyops.services.realtime import EventBus, get_event_bus, publish_status


class TestEventBus:
    def test_subscriber_receives_only_its_record(self):
        bus = EventBus()
        q_task = bus.subscribe("task", 1)
        q_other = bus.subscribe("task", 2)

        bus.publish("task", 1, "status_changed", {"status": "in_review"})

        assert q_task.get_nowait().data == {"status": "in_review"}
        assert q_other.empty()

    def test_unsubscribe(self):
        bus = EventBus()
        q = bus.subscribe("task", 1)
        bus.unsubscribe("task", 1, q)
        bus.publish("task", 1, "status_changed", {"status": "published"})
        assert bus.subscriber_count("task", 1) == 0
        assert q.empty()

    def test_history_is_bounded(self):
        bus = EventBus(history_size=2)
        for status in ("backlog", "in_progress", "in_review"):
            bus.publish("task", 5, "status_changed", {"status": status})
        assert [e.data["status"] for e in bus.history("task", "5")] == ["in_progress", "in_review"]

    def test_full_subscriber_is_dropped(self, monkeypatch):
        monkeypatch.setattr("agencyops.services.realtime.SUBSCRIBER_QUEUE_SIZE", 1)
        bus = EventBus()
        q = bus.subscribe("task", 1)
        bus.publish("task", 1, "status_changed", {"status": "a"})
        bus.publish("task", 1, "status_changed", {"status": "b"})
        assert bus.subscriber_count("task", 1) == 0
        assert q.get_nowait().data["status"] == "a"
        assert q.empty()

    def test_idle_channels_are_evicted_oldest_first(self):
        bus = EventBus(max_channels=2)
        for record_id in (1, 2, 3):
            bus.publish("task", record_id, "status_changed", {"status": "backlog"})

        assert bus.channel_count() == 2
        assert bus.history("task", 1) == []
        assert len(bus.history("task", 3)) == 1

    def test_republished_channel_is_kept(self):
        bus = EventBus(max_channels=2)
        bus.publish("task", 1, "status_changed", {"status": "backlog"})
        bus.publish("task", 2, "status_changed", {"status": "backlog"})
        bus.publish("task", 1, "status_changed", {"status": "in_progress"})
        bus.publish("task", 3, "status_changed", {"status": "backlog"})

        assert bus.history("task", 2) == []
        assert [e.data["status"] for e in bus.history("task", 1)] == ["backlog", "in_progress"]

    def test_watched_channel_survives_until_unsubscribed(self):
        bus = EventBus(max_channels=1)
        q = bus.subscribe("task", 1)
        bus.publish("task", 1, "status_changed", {"status": "backlog"})
        bus.publish("task", 2, "status_changed", {"status": "backlog"})

        assert len(bus.history("task", 1)) == 1
        assert bus.history("task", 2) == []

        bus.unsubscribe("task", 1, q)
        bus.publish("task", 3, "status_changed", {"status": "backlog"})
        assert bus.history("task", 1) == []
        assert bus.channel_count() == 1

    def test_sse_format(self):
        event = EventBus().publish("client_request", 3, "status_changed", {"status": "approved"})
        text = event.to_sse()
        assert text.startswith(f"id: {event.id}\nevent: status_changed\n")
        assert text.endswith('data: {"status": "approved"}\n\n')


class TestPublishStatus:
    def test_publishes_to_process_bus(self):
        q = get_event_bus().subscribe("task", 11)
        publish_status("task", 11, "in_progress", attachment_id=4)
        assert q.get(timeout=1).data == {"status": "in_progress", "attachment_id": 4}

    def test_never_raises(self, monkeypatch):
        def _broken(*args, **kwargs):
            raise queue.Full()

        monkeypatch.setattr(EventBus, "publish", _broken)
        publish_status("task", 1, "in_progress")
