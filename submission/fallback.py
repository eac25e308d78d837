"""
Step 5 — Fallback Orchestrator

Anything the direct path cannot store (invalid verdict, storage failure,
unexpected exception, legacy payload) is re-scored by an authoritative
server-side computation. The claimed score and total never reach it.
"""

import logging
from typing import Any, Optional, Protocol

from submission.errors import GENERIC_FAILURE_MESSAGE, FallbackFailure
from submission.schemas import (
    CanonicalSubmission, FallbackRequest, StorageOutcome, StorageStatus, SubmissionResponse,
)
from submission.tracer import SubmissionState, SubmissionTracer, sanitize
from submission.transformer import coerce_count, coerce_id, coerce_number, coerce_timestamp, payload_view

log = logging.getLogger("submission.fallback")


class AuthoritativeComputation(Protocol):
    async def compute(self, request: FallbackRequest) -> StorageOutcome:
        ...


# ─── Request mapping ───────────────────────────────────────────────────────────

def build_fallback_request(source: Any, reason: str, origin_stage: str,
                           request_id: Optional[str] = None) -> FallbackRequest:
    """Map a canonical submission or any raw payload shape into a FallbackRequest."""
    if isinstance(source, CanonicalSubmission):
        return FallbackRequest(
            exam_id=source.exam_id,
            student_id=source.student_id,
            answers=source.answers or {},
            time_taken=source.time_taken if source.time_taken is not None else 0.0,
            completed_at=source.completed_at,
            visited_questions=source.visited_questions,
            marked_questions=source.marked_questions,
            warnings=source.warnings,
            evaluation_source=source.evaluation_source,
            reason=reason,
            origin_stage=origin_stage,
            request_id=request_id,
        )

    if not isinstance(source, dict):
        return FallbackRequest(reason=reason, origin_stage=origin_stage, request_id=request_id)

    _, view = payload_view(source)
    answers = view.get("answers")
    time_taken, _ = coerce_number(view.get("timeTaken"))
    completed_at, _ = coerce_timestamp(view.get("completedAt"))
    warnings, _ = coerce_count(view.get("warnings"))
    visited = view.get("visitedQuestions")
    marked = view.get("markedQuestions")
    source_tag = view.get("evaluationSource")
    return FallbackRequest(
        exam_id=coerce_id(view.get("examId")),
        student_id=coerce_id(view.get("studentId")),
        answers=answers if isinstance(answers, dict) else {},
        time_taken=time_taken if time_taken is not None and time_taken >= 0 else 0.0,
        completed_at=completed_at,
        visited_questions=visited if isinstance(visited, list) else [],
        marked_questions=marked if isinstance(marked, list) else [],
        warnings=warnings if warnings is not None and warnings >= 0 else 0,
        evaluation_source=str(source_tag) if source_tag is not None else None,
        reason=reason,
        origin_stage=origin_stage,
        request_id=request_id,
    )


# ─── Orchestrator ──────────────────────────────────────────────────────────────

class FallbackOrchestrator:

    def __init__(self, computation: AuthoritativeComputation):
        self.computation = computation

    async def run(self, source: Any, reason: str, origin_stage: str,
                  tracer: SubmissionTracer) -> SubmissionResponse:
        tracer.transition(SubmissionState.FALLBACK_ROUTED)
        tracer.log_fallback(reason, origin_stage)
        request = build_fallback_request(source, reason, origin_stage, tracer.request_id)
        log.info(
            f"[FALLBACK] {tracer.request_id} routing exam={request.exam_id} student={request.student_id} "
            f"reason={reason} origin={origin_stage}"
        )

        try:
            outcome = await self.computation.compute(request)
        except Exception as e:
            failure = FallbackFailure(f"Authoritative computation raised {type(e).__name__}: {e}")
            tracer.log_error("fallback", failure)
            log.exception(
                f"[FALLBACK] {tracer.request_id} {failure.code}, manual recovery needed: "
                f"request={sanitize(request)}"
            )
            return self._failed(tracer)

        tracer.log_database_operation("fallback_store", outcome.succeeded, outcome.duration_ms,
                                      status=outcome.status.value)

        if outcome.succeeded:
            tracer.log_snapshot("fallback_storage", outcome.summary)
            tracer.transition(SubmissionState.FALLBACK_STORED)
            tracer.transition(SubmissionState.COMPLETE)
            log.info(f"[FALLBACK] {tracer.request_id} {outcome.status.value} via authoritative computation")
            return SubmissionResponse(
                success=True,
                message=outcome.message or "Exam submitted successfully",
                result=outcome.summary,
                computation_source="fallback",
            )

        if outcome.status == StorageStatus.ATTEMPT_LIMIT:
            tracer.transition(SubmissionState.FALLBACK_FAILED)
            tracer.transition(SubmissionState.ERROR_COMPLETE)
            log.warning(f"[FALLBACK] {tracer.request_id} attempt limit: {outcome.message}")
            return SubmissionResponse(success=False, message=outcome.message, computation_source="fallback")

        log.error(
            f"[FALLBACK] {tracer.request_id} {FallbackFailure.code}: outcome={outcome.status.value} "
            f"error={outcome.error} message={outcome.message} request={sanitize(request)}"
        )
        tracer.log_error("fallback", FallbackFailure(outcome.message or outcome.status.value))
        return self._failed(tracer)

    @staticmethod
    def _failed(tracer: SubmissionTracer) -> SubmissionResponse:
        tracer.transition(SubmissionState.FALLBACK_FAILED)
        tracer.transition(SubmissionState.ERROR_COMPLETE)
        return SubmissionResponse(success=False, message=GENERIC_FAILURE_MESSAGE, computation_source="fallback")
