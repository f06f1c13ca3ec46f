"""
Unit tests for the periodic task runner.
"""

import threading

import pytest

from api_key_manager.core.scheduler import PeriodicTask


class TestPeriodicTask:
    """Test timer start, ticks and shutdown."""

    def test_invalid_interval(self):
        with pytest.raises(ValueError):
            PeriodicTask("bad", 0, lambda: None)

    def test_run_immediately_ticks_on_start(self):
        ticked = threading.Event()
        task = PeriodicTask("now", 3600, ticked.set, run_immediately=True)

        task.start()
        try:
            assert ticked.wait(5)
        finally:
            task.stop(timeout=5)

        assert task.ticks == 1
        assert task.running is False

    def test_ticks_repeat_on_interval(self):
        seen = []
        done = threading.Event()

        def tick():
            seen.append(1)
            if len(seen) >= 3:
                done.set()

        task = PeriodicTask("fast", 0.01, tick)
        task.start()
        try:
            assert done.wait(5)
        finally:
            task.stop(timeout=5)

        assert task.ticks >= 3

    def test_failing_tick_keeps_timer_alive(self):
        calls = []
        done = threading.Event()

        def tick():
            calls.append(1)
            if len(calls) >= 2:
                done.set()
            raise RuntimeError("boom")

        task = PeriodicTask("flaky", 0.01, tick)
        task.start()
        try:
            assert done.wait(5)
        finally:
            task.stop(timeout=5)

    def test_stop_wakes_long_wait(self):
        task = PeriodicTask("slow", 3600, lambda: None)
        task.start()

        task.stop(timeout=5)

        assert task.running is False
        assert task.ticks == 0

    def test_start_is_idempotent(self):
        task = PeriodicTask("once", 3600, lambda: None)
        task.start()
        thread = task._thread
        try:
            task.start()
            assert task._thread is thread
        finally:
            task.stop(timeout=5)
