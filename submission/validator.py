"""
Step 3 — Validator

Five independent layers over one CanonicalSubmission, run concurrently:
- Structural   — required fields present and typed, known source, score bounds
- Integrity    — percentage consistency, count totals, well-formed ids
- Security     — percentage range, time floors, uniform answers, suspicious perfect scores
- Temporal     — completion time within clock skew / staleness window
- Statistical  — spot-check recomputation + content hash (progressive payloads only)

A layer never raises: its own exceptions become a failed LayerResult.
"""

import asyncio
import hashlib
import json
import logging
import math
import random
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from database import crud
from engines.scoring_rules import ScoringRulesEngine
from submission.config import PipelineSettings
from submission.errors import IntegrityViolation, SecurityViolation
from submission.schemas import (
    QUESTION_STATUSES, CanonicalSubmission, EvaluationSource, LayerResult,
    PayloadVariant, ValidationVerdict,
)
from submission.storage import run_in_session

log = logging.getLogger("submission.pipeline")


LAYER_ORDER = ("structural", "integrity", "security", "temporal", "statistical")

REASON_CODES = {
    "structural": "basic_structure_invalid",
    "integrity": "data_integrity_failed",
    "security": "security_validation_failed",
    "temporal": "temporal_validation_failed",
    "statistical": "statistical_validation_failed",
}

KNOWN_SOURCES = {source.value for source in EvaluationSource}

MARKS_TOLERANCE = 0.01


# ─── Content hash ──────────────────────────────────────────────────────────────

def _hash_number(value: Any) -> Any:
    # 120.0 and 120 must hash identically whichever side serialized them
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    return value


def content_hash(canonical: CanonicalSubmission) -> str:
    """SHA-256 over the sorted compact JSON of the fields a client engine commits to."""
    body = {
        "examId": canonical.exam_id,
        "studentId": canonical.student_id,
        "finalScore": _hash_number(canonical.final_score),
        "totalMarks": _hash_number(canonical.total_marks),
        "correctAnswers": canonical.correct_answers,
        "incorrectAnswers": canonical.incorrect_answers,
        "engineVersion": canonical.engine_version,
    }
    encoded = json.dumps(body, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ─── Validator ─────────────────────────────────────────────────────────────────

class SubmissionValidator:

    def __init__(self, session_factory: Callable[[], Session],
                 settings: Optional[PipelineSettings] = None,
                 scoring_engine: Optional[ScoringRulesEngine] = None,
                 rng: Optional[random.Random] = None,
                 clock: Callable[[], datetime] = _utcnow):
        self.session_factory = session_factory
        self.settings = settings or PipelineSettings()
        self.scoring_engine = scoring_engine or ScoringRulesEngine()
        self.rng = rng or random.Random()
        self.clock = clock

    async def validate(self, canonical: CanonicalSubmission) -> ValidationVerdict:
        started = time.perf_counter()
        layers = await asyncio.gather(
            self._guard("structural", self.structural, canonical),
            self._guard("integrity", self.integrity, canonical),
            self._guard("security", self.security, canonical),
            self._guard("temporal", self.temporal, canonical),
            self._guard("statistical", self.statistical, canonical),
        )
        reason = next((REASON_CODES[layer.layer] for layer in layers if not layer.passed), None)
        try:
            validation_hash = content_hash(canonical)
        except (TypeError, ValueError):
            validation_hash = None
        return ValidationVerdict(
            is_valid=reason is None,
            reason=reason,
            layers=list(layers),
            validation_time_ms=round((time.perf_counter() - started) * 1000, 2),
            validation_hash=validation_hash,
        )

    async def _guard(self, name: str, layer_fn, canonical: CanonicalSubmission) -> LayerResult:
        try:
            return await layer_fn(canonical)
        except Exception as e:
            log.exception(f"[VALIDATE] {name} layer raised, treated as failure")
            return LayerResult(layer=name, passed=False, errors=[f"{name} layer error: {type(e).__name__}: {e}"])

    # ── Structural ──

    async def structural(self, c: CanonicalSubmission) -> LayerResult:
        errors: List[str] = []

        for field_name, type_name in c.invalid_fields.items():
            errors.append(f"Invalid {field_name} type: got {type_name}")

        if c.exam_id is None:
            errors.append("Missing examId")
        if c.student_id is None:
            errors.append("Missing studentId")
        if c.answers is None and "answers" not in c.invalid_fields:
            errors.append("Missing answers")

        if c.final_score is None:
            if "finalScore" not in c.invalid_fields:
                errors.append("Missing finalScore")
        elif not math.isfinite(c.final_score):
            errors.append("finalScore must be a finite number")

        if c.total_marks is None or not math.isfinite(c.total_marks) or c.total_marks <= 0:
            if "totalMarks" not in c.invalid_fields:
                errors.append(f"totalMarks must be > 0, got {c.total_marks}")

        if c.percentage is None and "percentage" not in c.invalid_fields:
            errors.append("Missing percentage")

        for field_name, value in (("correctAnswers", c.correct_answers),
                                  ("incorrectAnswers", c.incorrect_answers),
                                  ("unattempted", c.unattempted)):
            if field_name in c.invalid_fields:
                continue
            if value is None:
                errors.append(f"Missing {field_name}")
            elif value < 0:
                errors.append(f"{field_name} must be non-negative, got {value}")

        if c.completed_at is None and "completedAt" not in c.invalid_fields:
            errors.append("Missing completedAt")
        if c.time_taken is None:
            if "timeTaken" not in c.invalid_fields:
                errors.append("Missing timeTaken")
        elif not math.isfinite(c.time_taken) or c.time_taken < 0:
            errors.append(f"timeTaken must be a non-negative number, got {c.time_taken}")

        if c.evaluation_source not in KNOWN_SOURCES:
            errors.append(f"Unknown evaluationSource: {c.evaluation_source}")

        bad_statuses = {
            str(entry.get("status")) for entry in c.question_analysis
            if entry.get("status") not in QUESTION_STATUSES
        }
        if bad_statuses:
            errors.append(f"Invalid questionAnalysis status: {sorted(bad_statuses)}")

        if _is_number(c.final_score) and _is_number(c.total_marks) and c.total_marks > 0:
            low = self.settings.min_score_ratio * c.total_marks
            high = self.settings.max_score_ratio * c.total_marks
            if not (low <= c.final_score <= high):
                errors.append(f"finalScore {c.final_score} outside [{low}, {high}]")

        return LayerResult(layer="structural", passed=not errors, errors=errors)

    # ── Integrity ──

    async def integrity(self, c: CanonicalSubmission) -> LayerResult:
        errors: List[str] = []

        if _is_number(c.final_score) and _is_number(c.total_marks) and c.total_marks > 0 and _is_number(c.percentage):
            expected = c.final_score / c.total_marks * 100
            if abs(expected - c.percentage) > self.settings.percentage_tolerance:
                errors.append(f"percentage {c.percentage} does not match score/total ({expected:.2f})")

        if c.question_analysis:
            counts = (c.correct_answers, c.incorrect_answers, c.unattempted)
            if all(isinstance(n, int) for n in counts) and sum(counts) != len(c.question_analysis):
                errors.append(
                    f"answer counts sum to {sum(counts)} but questionAnalysis has {len(c.question_analysis)} entries"
                )

        for field_name, value in (("examId", c.exam_id), ("studentId", c.student_id)):
            if value is not None and not (isinstance(value, int) and value > 0):
                errors.append(f"Malformed {field_name}: {value!r}")

        details = {"code": IntegrityViolation.code} if errors else {}
        return LayerResult(layer="integrity", passed=not errors, errors=errors, details=details)

    # ── Security ──

    async def security(self, c: CanonicalSubmission) -> LayerResult:
        s = self.settings
        errors: List[str] = []
        warnings: List[str] = []

        if _is_number(c.percentage) and not (s.min_percentage <= c.percentage <= s.max_percentage):
            errors.append(f"percentage {c.percentage} outside [{s.min_percentage}, {s.max_percentage}]")

        if _is_number(c.time_taken):
            if c.time_taken < s.min_time_taken_seconds:
                errors.append(f"timeTaken {c.time_taken}s below minimum {s.min_time_taken_seconds}s")
            elif c.time_taken < s.warn_time_taken_seconds:
                warnings.append(f"timeTaken {c.time_taken}s is unusually fast")

        values = [json.dumps(v, sort_keys=True, default=str) for v in (c.answers or {}).values()]
        if len(values) > s.uniform_answer_threshold and len(set(values)) == 1:
            errors.append(f"All {len(values)} answers are identical")

        if _is_number(c.percentage) and c.percentage >= 100 and c.answer_count < s.perfect_score_min_answers:
            errors.append(f"Perfect score with only {c.answer_count} answers")

        details = {"code": SecurityViolation.code} if errors else {}
        return LayerResult(layer="security", passed=not errors, errors=errors, warnings=warnings, details=details)

    # ── Temporal ──

    async def temporal(self, c: CanonicalSubmission) -> LayerResult:
        errors: List[str] = []
        if c.completed_at is not None:
            now = self.clock()
            completed = c.completed_at if c.completed_at.tzinfo else c.completed_at.replace(tzinfo=timezone.utc)
            if completed > now + timedelta(seconds=self.settings.clock_skew_seconds):
                errors.append(f"completedAt {completed.isoformat()} is in the future")
            elif now - completed > timedelta(seconds=self.settings.staleness_seconds):
                errors.append(f"completedAt {completed.isoformat()} is older than the staleness window")
        return LayerResult(layer="temporal", passed=not errors, errors=errors)

    # ── Statistical / spot-check ──

    def sample_size(self, question_count: int) -> int:
        size = math.ceil(question_count * self.settings.spot_check_ratio)
        return max(1, min(self.settings.spot_check_cap, size, question_count))

    async def statistical(self, c: CanonicalSubmission) -> LayerResult:
        if c.variant != PayloadVariant.PROGRESSIVE:
            return LayerResult(layer="statistical", passed=True, skipped=True)

        errors: List[str] = []
        details: Dict[str, Any] = {}

        expected_hash = content_hash(c)
        if not c.computation_hash:
            errors.append("Missing computationHash")
        elif c.computation_hash != expected_hash:
            errors.append("computationHash does not match submission content")
        if errors:
            details["code"] = IntegrityViolation.code

        if not isinstance(c.exam_id, int):
            errors.append("Cannot spot-check without a valid examId")
            return LayerResult(layer="statistical", passed=False, errors=errors, details=details)

        exam = await run_in_session(self.session_factory, crud.get_exam, c.exam_id)
        questions = await run_in_session(self.session_factory, crud.get_exam_questions, c.exam_id)
        if exam is None or not questions:
            errors.append(f"No questions available to spot-check exam {c.exam_id}")
            return LayerResult(layer="statistical", passed=False, errors=errors, details=details)

        claimed = {str(entry.get("questionId")): entry for entry in c.question_analysis}
        answers = c.answers or {}
        sample = self.rng.sample(questions, self.sample_size(len(questions)))

        mismatches = []
        for question in sample:
            recomputed = self.scoring_engine.score_question(exam, question, answers.get(str(question.id)))
            entry = claimed.get(str(question.id))
            if entry is None:
                mismatches.append({"questionId": question.id, "issue": "missing_from_analysis"})
                continue
            try:
                claimed_marks = float(entry.get("marks", 0) or 0)
            except (TypeError, ValueError):
                claimed_marks = math.nan
            if not abs(claimed_marks - recomputed.marks) <= MARKS_TOLERANCE or entry.get("status") != recomputed.status:
                mismatches.append({
                    "questionId": question.id,
                    "claimed": {"marks": entry.get("marks"), "status": entry.get("status")},
                    "recomputed": {"marks": recomputed.marks, "status": recomputed.status},
                })

        rate = len(mismatches) / len(sample)
        details.update({"sample_size": len(sample), "mismatches": mismatches, "mismatch_rate": round(rate, 4)})
        if rate > self.settings.spot_check_mismatch_tolerance:
            errors.append(f"Spot-check mismatch rate {rate:.0%} over {len(sample)} questions")

        return LayerResult(layer="statistical", passed=not errors, errors=errors, details=details)
