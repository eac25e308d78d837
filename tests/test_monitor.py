"""
Unit Tests for SubmissionMonitor

Classification, rolling windows, warnings and provenance dashboards.
"""

import json
from datetime import datetime, timezone

import pytest
import redis

from database import redis_client
from database.models import ExamResult
from submission.config import PipelineSettings
from submission.monitor import InMemoryRollingWindow, RedisRollingWindow, SubmissionMonitor, classify


class FakeRedisList:
    """Minimal list-command double for RedisRollingWindow tests."""

    def __init__(self):
        self.lists = {}

    def pipeline(self):
        return self

    def lpush(self, key, value):
        self.lists.setdefault(key, []).insert(0, value)

    def ltrim(self, key, start, end):
        self.lists[key] = self.lists.get(key, [])[start:end + 1]

    def execute(self):
        return []

    def lrange(self, key, start, end):
        items = self.lists.get(key, [])
        return items[start:] if end == -1 else items[start:end + 1]

    def delete(self, key):
        self.lists.pop(key, None)


class BrokenRedis:
    def pipeline(self):
        raise redis.ConnectionError("down")

    def lrange(self, key, start, end):
        raise redis.ConnectionError("down")


class Clock:
    def __init__(self, now=1_000_000.0):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sink_events():
    return []


@pytest.fixture
def monitor(clock, sink_events):
    return SubmissionMonitor(
        window=InMemoryRollingWindow(100),
        sink=lambda event_type, entry: sink_events.append((event_type, entry)),
        settings=PipelineSettings(),
        clock=clock,
    )


class TestClassify:

    @pytest.mark.parametrize("ms,expected", [
        (0, "ULTRA_FAST"), (15, "ULTRA_FAST"), (15.1, "VERY_FAST"), (25, "VERY_FAST"),
        (50, "FAST"), (100, "GOOD"), (500, "AVERAGE"), (500.1, "SLOW"),
    ])
    def test_classify_when_boundaries_then_inclusive_upper(self, ms, expected):
        assert classify(ms) == expected


class TestWindows:

    def test_in_memory_window_when_full_then_oldest_evicted(self):
        window = InMemoryRollingWindow(3)
        for i in range(5):
            window.append({"i": i})
        assert [e["i"] for e in window.entries()] == [2, 3, 4]

    def test_redis_window_when_full_then_trimmed_oldest_first(self):
        window = RedisRollingWindow(max_size=3, client=FakeRedisList())
        for i in range(5):
            window.append({"i": i})
        assert [e["i"] for e in window.entries()] == [2, 3, 4]
        assert len(window) == 3

    def test_redis_window_when_redis_down_then_silent(self):
        window = RedisRollingWindow(max_size=3, client=BrokenRedis())
        window.append({"i": 1})
        assert window.entries() == []

    def test_redis_window_when_entry_stored_then_json_encoded(self):
        client = FakeRedisList()
        RedisRollingWindow(max_size=3, client=client).append({"total_ms": 4.2})
        assert json.loads(client.lists["submission_metrics:recent"][0]) == {"total_ms": 4.2}

    def test_get_redis_when_created_then_socket_timeouts_bounded(self, monkeypatch):
        captured = {}

        def fake_from_url(url, **kwargs):
            captured.update(kwargs)
            return FakeRedisList()

        monkeypatch.setattr(redis_client, "_redis_client", None)
        monkeypatch.setattr(redis_client.redis, "from_url", fake_from_url)
        redis_client.get_redis()

        assert captured["socket_timeout"] == redis_client.REDIS_SOCKET_TIMEOUT
        assert captured["socket_connect_timeout"] == redis_client.REDIS_CONNECT_TIMEOUT
        assert captured["socket_timeout"] <= 1


class TestRecording:

    def test_record_submission_when_called_then_window_and_sink_updated(self, monitor, sink_events):
        entry = monitor.record_submission("R1", 12.0, validation_ms=3.0, storage_ms=6.0, exam_id=1)
        assert entry["classification"] == "ULTRA_FAST"
        assert monitor.recent()["size"] == 1
        assert sink_events == [("direct_submission", entry)]

    def test_record_submission_when_sink_raises_then_swallowed(self, clock):
        def broken_sink(event_type, entry):
            raise RuntimeError("broker down")

        monitor = SubmissionMonitor(window=InMemoryRollingWindow(10), sink=broken_sink, clock=clock)
        entry = monitor.record_submission("R1", 10.0)
        assert entry["total_ms"] == 10.0

    def test_regression_when_five_recent_and_current_doubles_then_warned(self, monitor, clock):
        for _ in range(5):
            monitor.record_submission("R", 10.0)
            clock.now += 1
        entry = monitor.record_submission("R", 25.0)
        assert any("regression" in w for w in entry["warnings"])

    def test_regression_when_fewer_than_five_recent_then_silent(self, monitor, clock):
        for _ in range(4):
            monitor.record_submission("R", 10.0)
        entry = monitor.record_submission("R", 100.0)
        assert entry["warnings"] == []

    def test_regression_when_samples_older_than_window_then_ignored(self, monitor, clock):
        for _ in range(5):
            monitor.record_submission("R", 10.0)
        clock.now += 16 * 60
        entry = monitor.record_submission("R", 100.0)
        assert not any("regression" in w for w in entry["warnings"])

    def test_fallback_rate_when_above_threshold_then_warned(self, monitor):
        for _ in range(8):
            monitor.record_submission("R", 10.0)
        entry = monitor.record_fallback("F", 10.0, reason="x", origin_stage="validation", success=True)
        # 1 of 9 = 11.1% > 10%
        assert any("fallback rate" in w for w in entry["warnings"])
        assert entry["outcome"] == "fallback_stored"
        assert entry["reason"] == "x"


class TestDashboards:

    def _result(self, db, exam_id, student_id, attempt, source, ms):
        db.add(ExamResult(
            exam_id=exam_id, student_id=student_id, attempt_number=attempt,
            answers={}, score=10, total_marks=20, percentage=50, time_taken=60,
            completed_at=datetime.now(timezone.utc), computation_source=source,
            processing_time_ms=ms,
        ))
        db.commit()

    def test_dashboard_when_mixed_sources_then_counts_and_rates(self, monitor, db, seed):
        exam_id, student_id, _ = seed(questions=1, max_attempts=5)
        self._result(db, exam_id, student_id, 1, "direct", 10.0)
        self._result(db, exam_id, student_id, 2, "direct", 30.0)
        self._result(db, exam_id, student_id, 3, "fallback", None)

        dash = monitor.dashboard(db, hours=1)

        assert dash["overview"] == {"total": 3, "direct": 2, "fallback": 1, "direct_rate": 66.67}
        assert dash["performance"]["average_ms"] == 20.0
        assert dash["performance"]["ultra_fast_rate"] == 50.0
        assert dash["performance"]["fast_rate"] == 100.0
        assert dash["health"]["status"] == "Needs Attention"
        assert dash["alerts"] == []

    def test_dashboard_when_slow_average_then_critical_alert(self, monitor, db, seed):
        exam_id, student_id, _ = seed(questions=1)
        self._result(db, exam_id, student_id, 1, "direct", 800.0)
        dash = monitor.dashboard(db, hours=1)
        assert dash["alerts"][0]["level"] == "critical"

    def test_performance_analysis_when_filtered_then_per_exam_distribution(self, monitor, db, seed):
        exam_id, student_id, _ = seed(questions=1, max_attempts=5)
        for attempt, ms in enumerate([5.0, 20.0, 80.0], start=1):
            self._result(db, exam_id, student_id, attempt, "direct", ms)

        analysis = monitor.performance_analysis(db, exam_id=exam_id, hours=24)

        assert len(analysis["exams"]) == 1
        stats = analysis["exams"][0]
        assert stats["count"] == 3
        assert (stats["min_ms"], stats["max_ms"]) == (5.0, 80.0)
        assert stats["distribution"] == {"ultra_fast": 1, "fast": 1, "slow": 1}

    def test_alerts_when_between_thresholds_then_warning(self, monitor):
        assert monitor.alerts(150.0)[0]["level"] == "warning"
        assert monitor.alerts(50.0) == []
