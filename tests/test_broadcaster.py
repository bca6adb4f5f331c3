"""
Unit tests for the progress broadcaster, job registry and progress tracker.
"""
import queue
import threading

import pytest

from app.sales.jobs.broadcaster import ProgressBroadcaster
from app.sales.jobs.orchestrator import ProgressTracker
from app.sales.jobs.registry import JobRegistry


class TestBroadcaster:
    def test_fan_out(self):
        b = ProgressBroadcaster()
        s1, s2 = b.subscribe("j1"), b.subscribe("j1")
        b.publish("j1", 10.0)
        assert s1.get(timeout=1).progress == 10.0
        assert s2.get(timeout=1).progress == 10.0

    def test_other_jobs_not_delivered(self):
        b = ProgressBroadcaster()
        sub = b.subscribe("j1")
        b.publish("j2", 50.0)
        with pytest.raises(queue.Empty):
            sub.get(timeout=0.05)

    def test_terminal_once_and_closes(self):
        b = ProgressBroadcaster()
        sub = b.subscribe("j1")
        b.publish("j1", 40.0)
        assert b.publish_terminal("j1", "completed", {"bills_created": 1}) is True
        assert b.publish_terminal("j1", "failed") is False
        b.publish("j1", 99.0)

        events = list(sub)
        assert [e.progress for e in events] == [40.0, 100.0]
        assert events[-1].status == "completed"
        assert events[-1].stats == {"bills_created": 1}
        assert b.subscriber_count("j1") == 0

    def test_keepalive_ticks(self):
        b = ProgressBroadcaster()
        sub = b.subscribe("j1")
        stream = sub.events(keepalive=0.01)
        assert next(stream) is None
        b.publish_terminal("j1", "failed", error="boom")
        event = next(e for e in stream if e is not None)
        assert event.error == "boom"

    def test_publisher_threads(self):
        b = ProgressBroadcaster()
        sub = b.subscribe("j1")

        def worker():
            for p in range(1, 101):
                b.publish("j1", float(p))
            b.publish_terminal("j1", "completed")

        t = threading.Thread(target=worker)
        t.start()
        progress = [e.progress for e in sub]
        t.join()
        assert progress == [float(p) for p in range(1, 101)] + [100.0]

    def test_forget_closes_streams(self):
        b = ProgressBroadcaster()
        sub = b.subscribe("j1")
        b.forget("j1")
        assert list(sub) == []

    def test_sweep_evicts_finished_ids(self):
        b = ProgressBroadcaster(retention=0.0)
        for n in range(1000):
            b.publish_terminal(f"j{n}", "completed")
        assert b.sweep() == 1000
        assert b.sweep() == 0

    def test_retained_id_blocks_second_terminal(self):
        b = ProgressBroadcaster(retention=60.0)
        assert b.publish_terminal("j1", "completed") is True
        assert b.sweep() == 0
        assert b.publish_terminal("j1", "failed") is False


class TestJobRegistry:
    def test_sweep_drops_exited_workers(self):
        registry = JobRegistry()
        done = registry.register("j1")
        done.thread = threading.Thread(target=lambda: None)
        done.thread.start()
        done.thread.join()
        registry.register("j2")

        assert registry.sweep() == ["j1"]
        assert registry.get("j1") is None
        assert registry.get("j2") is not None

    def test_cancel_sets_flag(self):
        registry = JobRegistry()
        handle = registry.register("j1")
        assert registry.cancel("j1") is handle
        assert handle.cancelled
        assert registry.cancel("missing") is None


class TestProgressTracker:
    def test_non_decreasing_and_ends_at_100(self):
        emitted = []
        tracker = ProgressTracker(emitted.append, share=90.0, step=0.1)
        for done in range(1, 2001):
            tracker.parse(done, 2000)
        for done in range(1, 4):
            tracker.persist(done, 3)
        assert emitted == sorted(emitted)
        assert emitted[-1] == 100.0
        assert 90.0 in emitted

    def test_small_steps_are_coalesced(self):
        emitted = []
        tracker = ProgressTracker(emitted.append, share=90.0, step=0.1)
        for done in range(1, 10001):
            tracker.parse(done, 10000)
        assert len(emitted) <= 901
        assert all(round(b - a, 1) >= 0.1 for a, b in zip(emitted, emitted[1:]))

    def test_quantized_to_one_decimal(self):
        emitted = []
        tracker = ProgressTracker(emitted.append, share=90.0, step=0.1)
        tracker.parse(1, 3)
        assert emitted == [30.0]
