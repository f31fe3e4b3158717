"""Tests for in-process metrics."""

import logging

from sidechat import metrics as metrics_module
from sidechat.metrics import Metrics, TimingStats, timed, timed_operation


class TestTimingStats:
    def test_empty(self):
        assert TimingStats().to_dict() == {"count": 0, "total_ms": 0.0, "avg_ms": 0.0, "min_ms": 0, "max_ms": 0.0}

    def test_record(self):
        stats = TimingStats()
        stats.record(10.0)
        stats.record(30.0)
        assert stats.count == 2
        assert stats.avg_ms == 20.0
        assert stats.min_ms == 10.0
        assert stats.max_ms == 30.0


class TestMetrics:
    def test_counters(self):
        m = Metrics()
        m.increment("mesh.retries")
        m.increment("mesh.retries", 2)
        assert m.get_counter("mesh.retries") == 3
        assert m.get_counter("unknown") == 0

    def test_reset(self):
        m = Metrics()
        m.increment("x")
        m.record_operation("op", 1.0)
        m.record_request("health", 1.0)
        m.reset()
        data = m.to_dict()
        assert data["counters"] == {}
        assert data["operations"] == {}
        assert data["requests"] == {}


class TestTimed:
    def test_decorator_records(self):
        @timed_operation("test.op")
        def work(x):
            return x * 2

        assert work(2) == 4
        assert metrics_module.metrics.to_dict()["operations"]["test.op"]["count"] == 1

    def test_decorator_records_failures(self):
        @timed_operation("test.fail")
        def fail():
            raise RuntimeError("boom")

        try:
            fail()
        except RuntimeError:
            pass
        assert metrics_module.metrics.to_dict()["operations"]["test.fail"]["count"] == 1

    def test_slow_operation_logged(self, monkeypatch, caplog):
        monkeypatch.setattr(metrics_module, "SLOW_OPERATION_MS", -1)
        with caplog.at_level(logging.WARNING, logger="sidechat.metrics"):
            with timed("test.slow"):
                pass
        assert "Slow operation: test.slow" in caplog.text
