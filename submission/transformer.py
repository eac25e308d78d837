"""
Step 2 — Transformer

Two payload shapes reach the pipeline, discriminated by evaluationSource:
- client evaluation (client_evaluation_engine / client_side_engine): scoring
  fields top-level or nested under clientEvaluationResult
- progressive (progressive_computation): scoring fields under
  progressiveResults, identity / answers / timing under rawExamData

Each shape has its own view function; both feed one canonical builder that
coerces types, applies defaults and recovers zero / missing scores. Every
recovery is returned as a RecoveryEvent and logged.
"""

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from submission.config import PipelineSettings
from submission.schemas import (
    CanonicalSubmission, EvaluationSource, PayloadVariant, RecoveryEvent,
)

log = logging.getLogger("submission.pipeline")


# ─── Constants ─────────────────────────────────────────────────────────────────

CLIENT_EVALUATION_SOURCES = {
    EvaluationSource.CLIENT_EVALUATION_ENGINE.value,
    EvaluationSource.CLIENT_SIDE_ENGINE.value,
}
PROGRESSIVE_SOURCES = {EvaluationSource.PROGRESSIVE_COMPUTATION.value}

ALTERNATE_SCORE_KEYS = ("score", "totalScore", "marksObtained")
ALTERNATE_TOTAL_KEYS = ("maxScore", "maxMarks", "totalPossibleMarks")


@dataclass
class TransformResult:
    canonical: CanonicalSubmission
    recoveries: List[RecoveryEvent] = field(default_factory=list)
    source_payload: Dict[str, Any] = field(default_factory=dict)


# ─── Coercion helpers ──────────────────────────────────────────────────────────

def _type_name(value: Any) -> str:
    return type(value).__name__


def coerce_id(value: Any):
    """int for well-formed numeric ids; anything else is kept as a string for the integrity layer."""
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float) and math.isfinite(value) and value.is_integer():
        return int(value)
    if isinstance(value, str) and value.strip().lstrip("-").isdigit():
        return int(value.strip())
    return str(value)


def coerce_number(value: Any) -> Tuple[Optional[float], bool]:
    """Returns (number, ok). ok is False when a value was present but not numeric."""
    if value is None:
        return None, True
    if isinstance(value, bool):
        return None, False
    if isinstance(value, (int, float)):
        return float(value), True
    if isinstance(value, str):
        try:
            return float(value.strip()), True
        except ValueError:
            return None, False
    return None, False


def coerce_count(value: Any) -> Tuple[Optional[int], bool]:
    number, ok = coerce_number(value)
    if number is None:
        return None, ok
    if not math.isfinite(number) or not number.is_integer():
        return None, False
    return int(number), True


def coerce_timestamp(value: Any) -> Tuple[Optional[datetime], bool]:
    """ISO-8601 strings, epoch milliseconds, or datetimes. Naive values are taken as UTC."""
    if value is None or value == "":
        return None, True
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value / 1000, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None, False
    elif isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return coerce_timestamp(int(text))
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None, False
    else:
        return None, False
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed, True


def _first_present(view: Dict[str, Any], *keys: str) -> Any:
    for key in keys:
        if view.get(key) is not None:
            return view[key]
    return None


# ─── Variant detection and views ───────────────────────────────────────────────

def detect_variant(payload: Dict[str, Any]) -> PayloadVariant:
    source = payload.get("evaluationSource")
    if source in PROGRESSIVE_SOURCES:
        return PayloadVariant.PROGRESSIVE
    if source in CLIENT_EVALUATION_SOURCES:
        return PayloadVariant.CLIENT_EVALUATION
    if isinstance(payload.get("progressiveResults"), dict):
        return PayloadVariant.PROGRESSIVE
    return PayloadVariant.CLIENT_EVALUATION


def _top_level(payload: Dict[str, Any], *skip: str) -> Dict[str, Any]:
    return {k: v for k, v in payload.items() if v is not None and k not in skip}


def _client_evaluation_view(payload: Dict[str, Any]) -> Dict[str, Any]:
    nested = payload.get("clientEvaluationResult")
    nested = nested if isinstance(nested, dict) else {}
    return {**nested, **_top_level(payload, "clientEvaluationResult")}


def _progressive_view(payload: Dict[str, Any]) -> Dict[str, Any]:
    raw = payload.get("rawExamData")
    raw = raw if isinstance(raw, dict) else {}
    results = payload.get("progressiveResults")
    results = results if isinstance(results, dict) else {}
    return {**raw, **results, **_top_level(payload, "rawExamData", "progressiveResults")}


_VIEWS = {
    PayloadVariant.CLIENT_EVALUATION: _client_evaluation_view,
    PayloadVariant.PROGRESSIVE: _progressive_view,
}


def payload_view(payload: Dict[str, Any]) -> Tuple[PayloadVariant, Dict[str, Any]]:
    """Flatten either payload shape into one dict of camelCase fields."""
    variant = detect_variant(payload)
    return variant, _VIEWS[variant](payload)


# ─── Recovery ──────────────────────────────────────────────────────────────────

def _analysis_marks_sum(analysis: List[Dict[str, Any]]) -> Optional[float]:
    total, seen = 0.0, False
    for entry in analysis:
        marks, ok = coerce_number(entry.get("marks"))
        if ok and marks is not None and math.isfinite(marks):
            total += marks
            seen = True
    return total if seen else None


def _recover_score(view, analysis, attempted) -> Optional[Tuple[float, str]]:
    if attempted == 0:
        return None
    for key in ALTERNATE_SCORE_KEYS:
        alt, ok = coerce_number(view.get(key))
        if ok and alt and math.isfinite(alt):
            return alt, key
    alt = _analysis_marks_sum(analysis)
    if alt:
        return alt, "questionAnalysis.marks"
    return None


def _recover_total(view, analysis, answer_count, settings) -> Optional[Tuple[float, str]]:
    for key in ALTERNATE_TOTAL_KEYS:
        alt, ok = coerce_number(view.get(key))
        if ok and alt and alt > 0 and math.isfinite(alt):
            return alt, key
    question_count = len(analysis) or answer_count
    if question_count:
        return question_count * settings.default_marks_per_question, "question_count"
    return None


def _derive_counts(analysis: List[Dict[str, Any]]) -> Dict[str, int]:
    statuses = [str(entry.get("status", "")).lower() for entry in analysis]
    return {
        "correct_answers": sum(1 for s in statuses if s in ("correct", "partially_correct")),
        "incorrect_answers": sum(1 for s in statuses if s == "incorrect"),
        "unattempted": sum(1 for s in statuses if s == "unattempted"),
    }


# ─── Canonical builder ─────────────────────────────────────────────────────────

def _as_list(value: Any) -> Optional[List[Any]]:
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return list(value)
    return None


def _build_canonical(variant: PayloadVariant, view: Dict[str, Any],
                     settings: PipelineSettings) -> TransformResult:
    invalid: Dict[str, str] = {}
    recoveries: List[RecoveryEvent] = []

    def number(key: str) -> Optional[float]:
        value, ok = coerce_number(view.get(key))
        if not ok:
            invalid[key] = _type_name(view.get(key))
        return value

    def count(key: str) -> Optional[int]:
        value, ok = coerce_count(view.get(key))
        if not ok:
            invalid[key] = _type_name(view.get(key))
        return value

    answers = view.get("answers")
    if answers is not None and not isinstance(answers, dict):
        invalid["answers"] = _type_name(answers)
        answers = None

    analysis = _as_list(view.get("questionAnalysis"))
    if analysis is None:
        invalid["questionAnalysis"] = _type_name(view.get("questionAnalysis"))
        analysis = []
    analysis = [entry for entry in analysis if isinstance(entry, dict)]

    subject_performance = _as_list(view.get("subjectPerformance")) or []
    subject_performance = [entry for entry in subject_performance if isinstance(entry, dict)]

    completed_at, ok = coerce_timestamp(view.get("completedAt"))
    if not ok:
        invalid["completedAt"] = _type_name(view.get("completedAt"))

    final_score = number("finalScore")
    total_marks = number("totalMarks")
    percentage = number("percentage")
    time_taken = number("timeTaken")

    answer_count = len(answers or {})
    attempted = sum(1 for value in (answers or {}).values() if value not in (None, "", []))

    # Zero score with attempted answers: client engine likely dropped the score
    if final_score == 0:
        recovered = _recover_score(view, analysis, attempted)
        if recovered:
            alt, source = recovered
            recoveries.append(RecoveryEvent(field="final_score", before=final_score, after=alt, source=source))
            final_score = alt

    total_recovered = False
    if "totalMarks" not in invalid and not total_marks:
        recovered = _recover_total(view, analysis, answer_count, settings)
        if recovered:
            alt, source = recovered
            recoveries.append(RecoveryEvent(field="total_marks", before=total_marks, after=alt, source=source))
            total_marks = alt
            total_recovered = True

    needs_percentage = (
        "percentage" not in invalid
        and (
            percentage is None
            or not math.isfinite(percentage)
            or (percentage == 0 and total_recovered and final_score)
        )
    )
    if needs_percentage and final_score is not None and math.isfinite(final_score) and total_marks:
        recomputed = round(final_score / total_marks * 100, 2)
        recoveries.append(RecoveryEvent(field="percentage", before=percentage, after=recomputed, source="score/total"))
        percentage = recomputed

    derived = _derive_counts(analysis)
    counts = {}
    for key, attr in (("correctAnswers", "correct_answers"),
                      ("incorrectAnswers", "incorrect_answers"),
                      ("unattempted", "unattempted")):
        value = count(key)
        counts[attr] = derived[attr] if value is None and key not in invalid else value

    warnings, ok = coerce_count(view.get("warnings"))

    source = view.get("evaluationSource")
    canonical = CanonicalSubmission(
        variant=variant,
        exam_id=coerce_id(view.get("examId")),
        student_id=coerce_id(view.get("studentId")),
        answers=answers,
        final_score=final_score,
        total_marks=total_marks,
        percentage=percentage,
        question_analysis=analysis,
        subject_performance=subject_performance,
        time_taken=time_taken,
        completed_at=completed_at,
        visited_questions=_as_list(view.get("visitedQuestions")) or [],
        marked_questions=_as_list(view.get("markedQuestions")) or [],
        warnings=warnings if ok and warnings is not None else 0,
        evaluation_source=str(source) if source is not None else None,
        computation_hash=str(view["computationHash"]) if view.get("computationHash") is not None else None,
        engine_version=str(view.get("engineVersion") or settings.default_engine_version),
        invalid_fields=invalid,
        **counts,
    )

    for event in recoveries:
        log.warning(
            f"[TRANSFORM] Recovered {event.field}: {event.before} -> {event.after} (from {event.source}) "
            f"exam={canonical.exam_id} student={canonical.student_id}"
        )
    return TransformResult(canonical=canonical, recoveries=recoveries)


def transform_client_evaluation(payload: Dict[str, Any], settings: PipelineSettings) -> TransformResult:
    return _build_canonical(PayloadVariant.CLIENT_EVALUATION, _client_evaluation_view(payload), settings)


def transform_progressive(payload: Dict[str, Any], settings: PipelineSettings) -> TransformResult:
    return _build_canonical(PayloadVariant.PROGRESSIVE, _progressive_view(payload), settings)


_TRANSFORMERS = {
    PayloadVariant.CLIENT_EVALUATION: transform_client_evaluation,
    PayloadVariant.PROGRESSIVE: transform_progressive,
}


def transform(payload: Dict[str, Any], settings: Optional[PipelineSettings] = None) -> TransformResult:
    """Normalize a stabilized payload into a CanonicalSubmission."""
    settings = settings or PipelineSettings()
    result = _TRANSFORMERS[detect_variant(payload)](payload, settings)
    result.source_payload = payload
    return result
