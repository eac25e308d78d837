"""
Step 7 — Monitor

Advisory performance tracking for submissions:
- latency classification
- bounded rolling window of recent outcomes (in-process deque or Redis list)
- regression and fallback-rate warnings
- dashboards aggregated from stored ExamResult provenance

Nothing the monitor holds is authoritative; losing the window on restart is fine.
"""

import logging
import time
from collections import deque
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

import redis
from sqlalchemy.orm import Session

from database import crud, redis_client
from database.models import ComputationSource
from submission.config import PipelineSettings

log = logging.getLogger("submission.monitor")


# ─── Latency classes ───────────────────────────────────────────────────────────

LATENCY_CLASSES = (
    (15, "ULTRA_FAST"),
    (25, "VERY_FAST"),
    (50, "FAST"),
    (100, "GOOD"),
    (500, "AVERAGE"),
)


def classify(ms: float) -> str:
    for limit, name in LATENCY_CLASSES:
        if ms <= limit:
            return name
    return "SLOW"


def _avg(values: List[float]) -> float:
    return round(sum(values) / len(values), 2) if values else 0.0


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 2) if whole else 0.0


# ─── Rolling windows ───────────────────────────────────────────────────────────

class InMemoryRollingWindow:
    """Per-process window; the oldest entry is evicted first."""

    def __init__(self, max_size: int = 100):
        self.max_size = max_size
        self._entries = deque(maxlen=max_size)

    def append(self, entry: Dict[str, Any]):
        self._entries.append(entry)

    def entries(self) -> List[Dict[str, Any]]:
        return list(self._entries)

    def clear(self):
        self._entries.clear()

    def __len__(self):
        return len(self._entries)


class RedisRollingWindow:
    """Window shared across workers via LPUSH + LTRIM. Redis errors are logged, never raised."""

    def __init__(self, max_size: int = 100, name: str = "recent", client: Optional[redis.Redis] = None):
        self.max_size = max_size
        self.name = name
        self.client = client

    def append(self, entry: Dict[str, Any]):
        try:
            redis_client.push_window_entry(self.name, entry, self.max_size, client=self.client)
        except redis.RedisError as e:
            log.warning(f"[MONITOR] Redis window append failed: {e}")

    def entries(self) -> List[Dict[str, Any]]:
        try:
            return redis_client.read_window(self.name, client=self.client)
        except redis.RedisError as e:
            log.warning(f"[MONITOR] Redis window read failed: {e}")
            return []

    def clear(self):
        try:
            redis_client.clear_window(self.name, client=self.client)
        except redis.RedisError as e:
            log.warning(f"[MONITOR] Redis window clear failed: {e}")

    def __len__(self):
        return len(self.entries())


def build_window(settings: PipelineSettings):
    if settings.monitor_backend == "redis":
        return RedisRollingWindow(max_size=settings.monitor_window_size)
    return InMemoryRollingWindow(max_size=settings.monitor_window_size)


# ─── Monitor ───────────────────────────────────────────────────────────────────

class SubmissionMonitor:
    """
    `sink(event_type, entry)` receives every recorded outcome. It is expected to
    be fire-and-forget (the huey log task); sink errors are logged and dropped.
    """

    def __init__(self, window=None, sink: Optional[Callable[[str, Dict[str, Any]], Any]] = None,
                 settings: Optional[PipelineSettings] = None, clock: Callable[[], float] = time.time):
        self.settings = settings or PipelineSettings()
        self.window = window if window is not None else build_window(self.settings)
        self.sink = sink
        self.clock = clock

    classify = staticmethod(classify)

    def record_submission(self, request_id: str, total_ms: float, *,
                          validation_ms: Optional[float] = None, storage_ms: Optional[float] = None,
                          outcome: str = "stored", computation_source: str = ComputationSource.DIRECT.value,
                          exam_id: Any = None, student_id: Any = None,
                          event_type: str = "direct_submission", **extra) -> Dict[str, Any]:
        now = self.clock()
        history = self.window.entries()

        entry = {
            "request_id": request_id,
            "timestamp": now,
            "total_ms": round(total_ms, 2),
            "validation_ms": validation_ms,
            "storage_ms": storage_ms,
            "classification": classify(total_ms),
            "outcome": outcome,
            "computation_source": computation_source,
            "exam_id": exam_id,
            "student_id": student_id,
            **extra,
        }
        entry["warnings"] = self._regression_warnings(history, total_ms, now)
        self.window.append(entry)
        entry["warnings"] += self._fallback_rate_warnings(history + [entry], now)

        for warning in entry["warnings"]:
            log.warning(f"[MONITOR] {request_id} {warning}")
        log.info(
            f"[MONITOR] {request_id} {event_type} {entry['classification']} {entry['total_ms']}ms "
            f"outcome={outcome} source={computation_source}"
        )
        self._emit(event_type, entry)
        return entry

    def record_fallback(self, request_id: str, total_ms: float, *, reason: str, origin_stage: str,
                        success: bool, exam_id: Any = None, student_id: Any = None) -> Dict[str, Any]:
        return self.record_submission(
            request_id, total_ms,
            outcome="fallback_stored" if success else "fallback_failed",
            computation_source=ComputationSource.FALLBACK.value,
            exam_id=exam_id, student_id=student_id,
            event_type="fallback",
            reason=reason, origin_stage=origin_stage,
        )

    def _regression_warnings(self, history, total_ms: float, now: float) -> List[str]:
        s = self.settings
        cutoff = now - s.regression_window_minutes * 60
        recent = [e for e in history if e.get("timestamp", 0) >= cutoff]
        if len(recent) < s.regression_min_samples:
            return []
        baseline = _avg([e["total_ms"] for e in recent[-10:]])
        if baseline and total_ms > s.regression_factor * baseline:
            return [f"performance regression: {total_ms:.2f}ms vs recent average {baseline:.2f}ms"]
        return []

    def _fallback_rate_warnings(self, entries, now: float) -> List[str]:
        last_hour = [e for e in entries if e.get("timestamp", 0) >= now - 3600]
        fallbacks = sum(1 for e in last_hour if e.get("computation_source") == ComputationSource.FALLBACK.value)
        rate = _pct(fallbacks, len(last_hour))
        if rate > self.settings.fallback_rate_threshold:
            return [f"fallback rate {rate}% over the last hour exceeds {self.settings.fallback_rate_threshold}%"]
        return []

    def _emit(self, event_type: str, entry: Dict[str, Any]):
        if self.sink is None:
            return
        try:
            self.sink(event_type, entry)
        except Exception as e:
            log.warning(f"[MONITOR] Log sink rejected {event_type}: {e}")

    # ── Snapshots / dashboards ──

    def recent(self) -> Dict[str, Any]:
        entries = self.window.entries()
        fallbacks = sum(1 for e in entries if e.get("computation_source") == ComputationSource.FALLBACK.value)
        return {
            "size": len(entries),
            "max_size": getattr(self.window, "max_size", None),
            "average_ms": _avg([e["total_ms"] for e in entries]),
            "fallback_rate": _pct(fallbacks, len(entries)),
            "entries": entries,
        }

    def alerts(self, average_ms: float) -> List[Dict[str, Any]]:
        s = self.settings
        if average_ms > s.alert_critical_ms:
            return [{"level": "critical", "message": f"Average processing time {average_ms}ms exceeds {s.alert_critical_ms}ms"}]
        if average_ms > s.alert_warning_ms:
            return [{"level": "warning", "message": f"Average processing time {average_ms}ms exceeds {s.alert_warning_ms}ms"}]
        return []

    @staticmethod
    def health_status(average_ms: float, fallback_rate: float) -> str:
        if average_ms <= 15 and fallback_rate <= 5:
            return "Optimal"
        if average_ms <= 25 and fallback_rate <= 10:
            return "Good"
        if average_ms <= 50 and fallback_rate <= 20:
            return "Acceptable"
        return "Needs Attention"

    def recommendations(self, average_ms: float, ultra_fast_rate: float, fallback_rate: float) -> List[Dict[str, str]]:
        recs = []
        if average_ms > 15:
            recs.append({
                "type": "performance", "priority": "high",
                "message": f"Average processing time ({average_ms}ms) exceeds the 15ms target",
            })
        if ultra_fast_rate < 95:
            recs.append({
                "type": "target", "priority": "medium",
                "message": f"Only {ultra_fast_rate}% of submissions finish within 15ms",
            })
        if fallback_rate > self.settings.fallback_rate_threshold:
            recs.append({
                "type": "reliability", "priority": "high",
                "message": f"Fallback rate at {fallback_rate}%",
            })
        return recs

    def dashboard(self, db: Session, hours: float = 1) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        results = crud.get_results_since(db, since)

        direct = [r for r in results if r.computation_source == ComputationSource.DIRECT.value]
        fallback = [r for r in results if r.computation_source == ComputationSource.FALLBACK.value]
        timings = [r.processing_time_ms for r in direct if r.processing_time_ms is not None]

        average_ms = _avg(timings)
        ultra_fast_rate = _pct(sum(1 for t in timings if t <= 15), len(timings))
        fallback_rate = _pct(len(fallback), len(results))

        return {
            "time_range_hours": hours,
            "overview": {
                "total": len(results),
                "direct": len(direct),
                "fallback": len(fallback),
                "direct_rate": _pct(len(direct), len(results)),
            },
            "performance": {
                "average_ms": average_ms,
                "min_ms": min(timings) if timings else 0.0,
                "max_ms": max(timings) if timings else 0.0,
                "ultra_fast_rate": ultra_fast_rate,
                "fast_rate": _pct(sum(1 for t in timings if t <= 50), len(timings)),
            },
            "health": {
                "status": self.health_status(average_ms, fallback_rate),
                "fallback_rate": fallback_rate,
                "recommendations": self.recommendations(average_ms, ultra_fast_rate, fallback_rate),
            },
            "alerts": self.alerts(average_ms),
        }

    def performance_analysis(self, db: Session, exam_id: Optional[int] = None, hours: float = 24) -> Dict[str, Any]:
        since = datetime.now(timezone.utc) - timedelta(hours=hours)
        results = crud.get_results_since(db, since, exam_id=exam_id)

        by_exam: Dict[int, List[float]] = {}
        for r in results:
            if r.computation_source == ComputationSource.DIRECT.value and r.processing_time_ms is not None:
                by_exam.setdefault(r.exam_id, []).append(r.processing_time_ms)

        exams = []
        for eid, timings in sorted(by_exam.items()):
            exams.append({
                "exam_id": eid,
                "count": len(timings),
                "average_ms": _avg(timings),
                "min_ms": min(timings),
                "max_ms": max(timings),
                "distribution": {
                    "ultra_fast": sum(1 for t in timings if t <= 15),
                    "fast": sum(1 for t in timings if 15 < t <= 50),
                    "slow": sum(1 for t in timings if t > 50),
                },
            })
        return {"time_range_hours": hours, "exam_id": exam_id, "exams": exams}
