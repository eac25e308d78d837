"""
Traditional Computation

Authoritative server-side scoring used by the fallback path. Every answer is
scored against the stored questions through the Scoring Rules Engine; the
client's claimed score and total are never consulted.
"""

import logging
from datetime import datetime, timezone
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from database import crud
from database.models import ComputationSource
from engines.scoring_rules import ScoringRulesEngine
from submission.schemas import FallbackRequest, ResultDraft, StorageOutcome, StorageStatus
from submission.storage import StorageWriter, run_in_session

log = logging.getLogger("submission.fallback")

ENGINE_VERSION = "traditional-1.0"


@dataclass
class ScoredExam:
    score: float = 0.0
    total_marks: float = 0.0
    correct_answers: int = 0
    incorrect_answers: int = 0
    unattempted: int = 0
    question_analysis: List[Dict[str, Any]] = field(default_factory=list)
    subject_performance: List[Dict[str, Any]] = field(default_factory=list)


def score_exam(engine: ScoringRulesEngine, exam, questions, answers: Dict[str, Any]) -> ScoredExam:
    """Score every question of the exam. Answers are keyed by question id (as string)."""
    scored = ScoredExam()
    subjects: "OrderedDict[str, Dict[str, Any]]" = OrderedDict()
    positive_total = 0.0

    for question in questions:
        answer = answers.get(str(question.id))
        result = engine.score_question(exam, question, answer)
        positive_total += engine.resolve_rule(exam, question).positive_marks
        scored.score += result.marks

        if result.status in ("correct", "partially_correct"):
            scored.correct_answers += 1
        elif result.status == "incorrect":
            scored.incorrect_answers += 1
        else:
            scored.unattempted += 1

        scored.question_analysis.append({
            "questionId": question.id,
            "status": result.status,
            "marks": result.marks,
            "userAnswer": answer,
            "correctAnswer": question.correct_answer,
        })

        subject = question.subject or "General"
        perf = subjects.setdefault(subject, {
            "subject": subject, "total": 0, "correct": 0, "incorrect": 0, "unattempted": 0, "score": 0.0,
        })
        perf["total"] += 1
        perf["score"] += result.marks
        key = "correct" if result.status == "partially_correct" else result.status
        perf[key] += 1

    scored.total_marks = float(exam.total_marks) if exam.total_marks else positive_total
    scored.score = round(scored.score, 2)
    scored.subject_performance = list(subjects.values())
    return scored


def _completion_time(request: FallbackRequest) -> datetime:
    """Claimed completion time, never later than now."""
    now = datetime.now(timezone.utc)
    if request.completed_at is None:
        return now
    completed = request.completed_at
    if completed.tzinfo is None:
        completed = completed.replace(tzinfo=timezone.utc)
    return min(completed, now)


class TraditionalComputation:
    """Default AuthoritativeComputation: score on the server, store with fallback provenance."""

    def __init__(self, session_factory, storage: StorageWriter,
                 scoring_engine: Optional[ScoringRulesEngine] = None):
        self.session_factory = session_factory
        self.storage = storage
        self.scoring_engine = scoring_engine or ScoringRulesEngine()

    async def compute(self, request: FallbackRequest) -> StorageOutcome:
        if not isinstance(request.exam_id, int):
            return StorageOutcome(status=StorageStatus.NOT_FOUND, message="Exam not found", error="not_found")

        exam = await run_in_session(self.session_factory, crud.get_exam, request.exam_id)
        if exam is None:
            return StorageOutcome(status=StorageStatus.NOT_FOUND, message="Exam not found", error="not_found")
        questions = await run_in_session(self.session_factory, crud.get_exam_questions, request.exam_id)

        scored = score_exam(self.scoring_engine, exam, questions, request.answers)
        log.info(
            f"[FALLBACK] Traditional computation exam={request.exam_id} student={request.student_id} "
            f"score={scored.score}/{scored.total_marks} questions={len(questions)}"
        )

        draft = ResultDraft(
            exam_id=request.exam_id,
            student_id=request.student_id,
            answers=request.answers,
            score=scored.score,
            total_marks=scored.total_marks,
            question_analysis=scored.question_analysis,
            subject_performance=scored.subject_performance,
            correct_answers=scored.correct_answers,
            incorrect_answers=scored.incorrect_answers,
            unattempted=scored.unattempted,
            time_taken=request.time_taken,
            completed_at=_completion_time(request),
            visited_questions=request.visited_questions,
            marked_questions=request.marked_questions,
            warnings=request.warnings,
            computation_source=ComputationSource.FALLBACK.value,
            evaluation_source=request.evaluation_source,
            engine_version=ENGINE_VERSION,
            fallback_reason=request.reason,
            request_id=request.request_id,
        )
        return await self.storage.store_computed(draft)
