"""
Step 6 — Tracer

Follows one submission through the pipeline:
- request id
- stage fingerprints (SHA-256 over the fields that must survive every stage)
- sanitized snapshots for the logs
- corruption detection between two stages
- lifecycle state transitions

The full trace goes to the server log only. Clients get client_summary(),
which carries no fingerprints.
"""

import enum
import hashlib
import json
import logging
import math
import secrets
import time
from typing import Any, Dict, Iterable, List, Optional

from pydantic import BaseModel

from submission.errors import TransformationCorruption

log = logging.getLogger("submission.trace")


class SubmissionState(str, enum.Enum):
    RECEIVED = "RECEIVED"
    STABILIZED = "STABILIZED"
    TRANSFORMED = "TRANSFORMED"
    VALIDATING = "VALIDATING"
    VALID = "VALID"
    INVALID = "INVALID"
    STORED = "STORED"
    LINKED = "LINKED"
    FALLBACK_ROUTED = "FALLBACK_ROUTED"
    FALLBACK_STORED = "FALLBACK_STORED"
    FALLBACK_FAILED = "FALLBACK_FAILED"
    COMPLETE = "COMPLETE"
    ERROR_COMPLETE = "ERROR_COMPLETE"


# ─── Constants ─────────────────────────────────────────────────────────────────

SENSITIVE_KEY_PARTS = ("password", "token", "secret", "key", "hash", "authorization")
LIST_SAMPLE_SIZE = 3
MAX_SANITIZE_DEPTH = 6

# Where the key fields may live in a raw payload, in lookup order
_NESTED_CONTAINERS = ("clientEvaluationResult", "progressiveResults", "rawExamData")

# Recovery field → corruption type it explains
_RECOVERY_EXPLAINS = {
    "final_score": "score_changed",
    "total_marks": "total_marks_changed",
}


# ─── Helpers ───────────────────────────────────────────────────────────────────

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def _base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_request_id(prefix: str = "EXAM_SUB") -> str:
    """PREFIX_<base36 epoch ms>_<8 hex chars>"""
    return f"{prefix}_{_base36(int(time.time() * 1000))}_{secrets.token_hex(4)}"


def _raw_lookup(payload: dict, *keys: str) -> Any:
    for key in keys:
        if payload.get(key) is not None:
            return payload[key]
    for container in _NESTED_CONTAINERS:
        nested = payload.get(container)
        if isinstance(nested, dict):
            for key in keys:
                if nested.get(key) is not None:
                    return nested[key]
    return None


def _norm_id(value: Any) -> Optional[str]:
    if value is None or value == "":
        return None
    return str(value)


def _norm_number(value: Any) -> Any:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return round(float(value), 6) if math.isfinite(value) else str(value)
    if isinstance(value, str):
        try:
            return round(float(value), 6)
        except ValueError:
            return value
    return value


def key_fields(data: Any) -> Dict[str, Any]:
    """
    Extract the fields a submission must keep across stages.
    Accepts raw payload dicts (any shape), canonical models and stored result
    summaries (score as `score`, no answers: answer_count is None).
    """
    if isinstance(data, BaseModel):
        data = data.model_dump()
        exam_id, student_id = data.get("exam_id"), data.get("student_id")
        score = data["final_score"] if "final_score" in data else data.get("score")
        total = data.get("total_marks")
        if "answers" not in data:
            return {
                "exam_id": _norm_id(exam_id),
                "student_id": _norm_id(student_id),
                "final_score": _norm_number(score),
                "total_marks": _norm_number(total),
                "answer_count": None,
            }
        answers = data.get("answers")
    elif isinstance(data, dict):
        exam_id = _raw_lookup(data, "examId", "exam_id")
        student_id = _raw_lookup(data, "studentId", "student_id")
        score = _raw_lookup(data, "finalScore", "final_score")
        total = _raw_lookup(data, "totalMarks", "total_marks")
        answers = _raw_lookup(data, "answers")
    else:
        return {"exam_id": None, "student_id": None, "final_score": None, "total_marks": None, "answer_count": 0}

    return {
        "exam_id": _norm_id(exam_id),
        "student_id": _norm_id(student_id),
        "final_score": _norm_number(score),
        "total_marks": _norm_number(total),
        "answer_count": len(answers) if isinstance(answers, (dict, list)) else 0,
    }


def fingerprint(data: Any) -> str:
    """First 16 hex chars of SHA-256 over the sorted JSON of the key fields."""
    canonical = json.dumps(key_fields(data), sort_keys=True, default=str)
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()[:16]


def sanitize(data: Any, _depth: int = 0) -> Any:
    """Log-safe snapshot: sensitive keys redacted, lists summarized."""
    if _depth > MAX_SANITIZE_DEPTH:
        return "[MAX_DEPTH]"
    if isinstance(data, BaseModel):
        data = data.model_dump(mode="json")
    if isinstance(data, dict):
        clean = {}
        for key, value in data.items():
            if any(part in str(key).lower() for part in SENSITIVE_KEY_PARTS):
                clean[key] = "[REDACTED]"
            else:
                clean[key] = sanitize(value, _depth + 1)
        return clean
    if isinstance(data, (list, tuple)):
        return {
            "length": len(data),
            "sample": [sanitize(item, _depth + 1) for item in list(data)[:LIST_SAMPLE_SIZE]],
        }
    return data


def detect_corruption(before: Dict[str, Any], after: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Compare two key-field snapshots; returns one flag per corrupted field."""
    flags = []
    if before["final_score"] != after["final_score"]:
        flags.append({"type": "score_changed", "before": before["final_score"], "after": after["final_score"]})
    if before["total_marks"] != after["total_marks"]:
        flags.append({"type": "total_marks_changed", "before": before["total_marks"], "after": after["total_marks"]})
    if None not in (before["answer_count"], after["answer_count"]) and before["answer_count"] != after["answer_count"]:
        flags.append({"type": "answer_count_changed", "before": before["answer_count"], "after": after["answer_count"]})
    for id_field in ("exam_id", "student_id"):
        if before[id_field] is not None and after[id_field] is None:
            flags.append({"type": "essential_id_lost", "field": id_field, "before": before[id_field], "after": None})
    return flags


# ─── Tracer ────────────────────────────────────────────────────────────────────

class SubmissionTracer:
    """One tracer per submission; not shared between requests."""

    def __init__(self, request_id: Optional[str] = None, prefix: str = "EXAM_SUB"):
        self.request_id = request_id or generate_request_id(prefix)
        self._started = time.perf_counter()
        self.stages: List[Dict[str, Any]] = []
        self.states: List[SubmissionState] = []
        self.fingerprint_chain: List[Dict[str, str]] = []
        self.snapshots: List[Dict[str, Any]] = []
        self.corruption_flags: List[Dict[str, Any]] = []
        self.error_count = 0
        self.fallback_count = 0

    def elapsed_ms(self) -> float:
        return round((time.perf_counter() - self._started) * 1000, 2)

    def _record(self, stage: str, **details) -> Dict[str, Any]:
        entry = {"stage": stage, "at_ms": self.elapsed_ms(), **details}
        self.stages.append(entry)
        return entry

    @property
    def state(self) -> Optional[SubmissionState]:
        return self.states[-1] if self.states else None

    def transition(self, state: SubmissionState):
        previous = self.state
        self.states.append(state)
        log.debug(f"[TRACE] {self.request_id} {previous.value if previous else '-'} -> {state.value}")

    def _chain(self, stage: str, data: Any) -> str:
        fp = fingerprint(data)
        snapshot = sanitize(data)
        self.fingerprint_chain.append({"stage": stage, "fingerprint": fp})
        self.snapshots.append({"stage": stage, "fingerprint": fp, "data": snapshot})
        log.debug(f"[TRACE] {self.request_id} {stage} fp={fp} snapshot={snapshot}")
        return fp

    # ── Stage hooks ──

    def log_entry_point(self, payload: Any):
        fp = self._chain("entry", payload)
        self._record("entry", fingerprint=fp)
        log.info(f"[TRACE] {self.request_id} entry fp={fp} payload={sanitize(payload)}")

    def log_snapshot(self, stage: str, data: Any):
        """Fingerprint a stage whose output is not expected to match the previous one (fallback scoring)."""
        fp = self._chain(stage, data)
        self._record(stage, fingerprint=fp)

    def log_transformation(self, stage: str, before: Any, after: Any,
                           recoveries: Iterable[Any] = ()) -> List[Dict[str, Any]]:
        """
        Fingerprint both sides and flag corruption. A change is "explained" when a
        recovery event for the same field was logged; otherwise it is an error.
        Never raises.
        """
        before_fields, after_fields = key_fields(before), key_fields(after)
        fp_before = fingerprint(before)
        fp_after = self._chain(stage, after)

        recovered = {getattr(r, "field", None) for r in recoveries}
        explained_types = {_RECOVERY_EXPLAINS[f] for f in recovered if f in _RECOVERY_EXPLAINS}

        flags = detect_corruption(before_fields, after_fields)
        for flag in flags:
            flag["stage"] = stage
            flag["explained"] = flag["type"] in explained_types
            self.corruption_flags.append(flag)
            if flag["explained"]:
                log.warning(f"[TRACE] {self.request_id} {stage}: {flag['type']} explained by recovery {flag}")
            else:
                log.error(
                    f"[TRACE] {self.request_id} {stage}: {TransformationCorruption.code} "
                    f"{flag['type']} {flag}"
                )

        self._record(stage, fingerprint_before=fp_before, fingerprint_after=fp_after,
                     corrupted=bool(flags))
        return flags

    def log_validation(self, verdict: Any):
        failed = [layer.layer for layer in getattr(verdict, "layers", []) if not layer.passed]
        self._record("validation", is_valid=verdict.is_valid, reason=verdict.reason,
                     failed_layers=failed, duration_ms=verdict.validation_time_ms)
        if verdict.is_valid:
            log.info(f"[TRACE] {self.request_id} validation passed in {verdict.validation_time_ms}ms")
        else:
            log.warning(
                f"[TRACE] {self.request_id} validation failed reason={verdict.reason} "
                f"layers={failed} errors={verdict.errors}"
            )

    def log_database_operation(self, operation: str, success: bool,
                               duration_ms: Optional[float] = None, **details):
        self._record(f"db:{operation}", success=success, duration_ms=duration_ms, **details)
        log.info(f"[TRACE] {self.request_id} db {operation} success={success} {duration_ms}ms {details}")

    def log_error(self, stage: str, error: BaseException, context: Any = None):
        self.error_count += 1
        self._record(f"error:{stage}", error_type=type(error).__name__, message=str(error))
        log.error(
            f"[TRACE] {self.request_id} error at {stage}: {type(error).__name__}: {error} "
            f"context={sanitize(context)}"
        )

    def log_fallback(self, reason: str, origin_stage: str):
        self.fallback_count += 1
        self._record("fallback", reason=reason, origin_stage=origin_stage)
        log.warning(f"[TRACE] {self.request_id} fallback reason={reason} origin={origin_stage}")

    # ── Summaries ──

    @property
    def integrity_maintained(self) -> bool:
        return not any(not flag["explained"] for flag in self.corruption_flags)

    def summary(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "total_ms": self.elapsed_ms(),
            "stages": [entry["stage"] for entry in self.stages],
            "states": [state.value for state in self.states],
            "fingerprint_chain": list(self.fingerprint_chain),
            "snapshots": list(self.snapshots),
            "corruption_flags": list(self.corruption_flags),
            "error_count": self.error_count,
            "fallback_count": self.fallback_count,
            "integrity_maintained": self.integrity_maintained,
        }

    def client_summary(self) -> Dict[str, Any]:
        return {
            "requestId": self.request_id,
            "stages": [entry["stage"] for entry in self.stages],
            "states": [state.value for state in self.states],
            "errorCount": self.error_count,
            "fallbackCount": self.fallback_count,
            "corruptionDetected": bool(self.corruption_flags),
        }

    def log_summary(self):
        log.info(f"[TRACE] {self.request_id} summary {self.summary()}")
