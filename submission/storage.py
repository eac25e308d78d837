"""
Step 4 — Storage Writer

Shared by the direct path (validated client results) and the traditional
computation (fallback results):

  exam + student lookup → attempt limit → invariant check → bounded write → exam linkage

Database work runs in worker threads with one session per operation. The
unique index on (exam_id, student_id, attempt_number) is the idempotency
authority across requests: a duplicate-key error means "already submitted".
Within one request, a write that timed out keeps running; any later write for
the same request_id waits for it and returns its row if it committed.
"""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Dict, Optional

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from database import crud
from database.models import ComputationSource, ExamResult
from submission.config import PipelineSettings
from submission.errors import AttemptLimitExceeded, NotFound, StorageFailure
from submission.schemas import (
    CanonicalSubmission, ResultDraft, ResultSummary, StorageOutcome, StorageStatus,
    ValidationVerdict,
)

log = logging.getLogger("submission.storage")

ALREADY_SUBMITTED_MESSAGE = "Exam already submitted"


# ─── Helpers ───────────────────────────────────────────────────────────────────

async def run_in_session(session_factory: Callable[[], Session], fn, *args):
    """Run a crud function in a worker thread with its own session."""
    def work():
        db = session_factory()
        try:
            return fn(db, *args)
        finally:
            db.close()
    return await asyncio.to_thread(work)


def derive_percentage(score: float, total_marks: float) -> float:
    return round(score / total_marks * 100, 2)


def check_record_invariants(draft: ResultDraft, settings: PipelineSettings):
    """Raise StorageFailure if the record would violate the score bound or percentage consistency."""
    total, score = draft.total_marks, draft.score
    if not total or total <= 0:
        raise StorageFailure(f"total_marks must be positive, got {total}")
    low, high = settings.min_score_ratio * total, settings.max_score_ratio * total
    if not (low <= score <= high):
        raise StorageFailure(f"score {score} outside [{low}, {high}] for total {total}")
    if draft.percentage is not None:
        derived = score / total * 100
        if abs(derived - draft.percentage) > settings.percentage_tolerance:
            raise StorageFailure(f"percentage {draft.percentage} inconsistent with {score}/{total}")
    if draft.question_analysis:
        counted = draft.correct_answers + draft.incorrect_answers + draft.unattempted
        if counted != len(draft.question_analysis):
            raise StorageFailure(
                f"answer counts {counted} do not match question analysis length {len(draft.question_analysis)}"
            )


def build_record(draft: ResultDraft, attempt_number: int) -> ExamResult:
    attempted = draft.correct_answers + draft.incorrect_answers
    return ExamResult(
        exam_id=int(draft.exam_id),
        student_id=int(draft.student_id),
        attempt_number=attempt_number,
        answers=draft.answers,
        score=draft.score,
        total_marks=draft.total_marks,
        percentage=derive_percentage(draft.score, draft.total_marks),
        time_taken=draft.time_taken,
        completed_at=draft.completed_at or datetime.now(timezone.utc),
        question_analysis=draft.question_analysis,
        subject_performance=draft.subject_performance,
        correct_answers=draft.correct_answers,
        incorrect_answers=draft.incorrect_answers,
        unattempted=draft.unattempted,
        accuracy=round(draft.correct_answers / attempted * 100, 2) if attempted else 0.0,
        visited_questions=draft.visited_questions,
        marked_questions=draft.marked_questions,
        warnings=draft.warnings,
        computation_source=draft.computation_source,
        evaluation_source=draft.evaluation_source,
        processing_time_ms=draft.processing_time_ms,
        validation_hash=draft.validation_hash,
        engine_version=draft.engine_version,
        fallback_reason=draft.fallback_reason,
        request_id=draft.request_id,
    )


def summary_from_record(record: ExamResult) -> ResultSummary:
    return ResultSummary(
        exam_id=record.exam_id,
        student_id=record.student_id,
        score=record.score,
        total_marks=record.total_marks,
        percentage=record.percentage,
        correct_answers=record.correct_answers,
        incorrect_answers=record.incorrect_answers,
        unattempted=record.unattempted,
        time_taken=record.time_taken,
        completed_at=record.completed_at,
        result_id=record.id,
        attempt_number=record.attempt_number,
    )


def draft_from_canonical(canonical: CanonicalSubmission, verdict: Optional[ValidationVerdict],
                         request_id: Optional[str] = None,
                         processing_ms: Optional[float] = None) -> ResultDraft:
    return ResultDraft(
        exam_id=canonical.exam_id,
        student_id=canonical.student_id,
        answers=canonical.answers or {},
        score=canonical.final_score,
        total_marks=canonical.total_marks,
        percentage=canonical.percentage,
        question_analysis=canonical.question_analysis,
        subject_performance=canonical.subject_performance,
        correct_answers=canonical.correct_answers or 0,
        incorrect_answers=canonical.incorrect_answers or 0,
        unattempted=canonical.unattempted or 0,
        time_taken=canonical.time_taken or 0.0,
        completed_at=canonical.completed_at,
        visited_questions=canonical.visited_questions,
        marked_questions=canonical.marked_questions,
        warnings=canonical.warnings,
        computation_source=ComputationSource.DIRECT.value,
        evaluation_source=canonical.evaluation_source,
        validation_hash=verdict.validation_hash if verdict else None,
        engine_version=canonical.engine_version,
        request_id=request_id,
        processing_time_ms=processing_ms,
    )


# ─── Writer ────────────────────────────────────────────────────────────────────

class StorageWriter:

    def __init__(self, session_factory: Callable[[], Session], settings: Optional[PipelineSettings] = None):
        self.session_factory = session_factory
        self.settings = settings or PipelineSettings()
        # request_id → write that outlived its timeout
        self._pending_writes: Dict[str, asyncio.Future] = {}

    async def _run(self, fn, *args):
        return await run_in_session(self.session_factory, fn, *args)

    async def store_direct(self, canonical: CanonicalSubmission, verdict: Optional[ValidationVerdict],
                           request_id: Optional[str] = None,
                           processing_ms: Optional[float] = None) -> StorageOutcome:
        draft = draft_from_canonical(canonical, verdict, request_id, processing_ms)
        return await self._store(draft)

    async def store_computed(self, draft: ResultDraft) -> StorageOutcome:
        """Entry point for server-side computations (fallback provenance set by the caller)."""
        return await self._store(draft)

    async def _store(self, draft: ResultDraft) -> StorageOutcome:
        started = time.perf_counter()

        def done(status: StorageStatus, **kwargs) -> StorageOutcome:
            return StorageOutcome(status=status, duration_ms=round((time.perf_counter() - started) * 1000, 2), **kwargs)

        tag = f"exam={draft.exam_id} student={draft.student_id} source={draft.computation_source}"

        if not isinstance(draft.exam_id, int) or not isinstance(draft.student_id, int):
            log.warning(f"[STORAGE] {NotFound.code}: malformed ids {tag}")
            return done(StorageStatus.NOT_FOUND, message="Exam or student not found", error=NotFound.code)

        # (a) exam + student in parallel
        try:
            exam, student = await asyncio.gather(
                self._run(crud.get_exam, draft.exam_id),
                self._run(crud.get_student, draft.student_id),
            )
        except SQLAlchemyError as e:
            log.error(f"[STORAGE] Lookup failed {tag}: {e}")
            return done(StorageStatus.FAILED, message="Lookup failed", error=StorageFailure.code)

        if exam is None or student is None:
            missing = "exam" if exam is None else "student"
            log.warning(f"[STORAGE] {NotFound.code}: {missing} missing {tag}")
            return done(StorageStatus.NOT_FOUND, message=f"{missing.capitalize()} not found", error=NotFound.code)

        # (b) same request already written (late commit of a timed-out write)
        if draft.request_id:
            try:
                existing = await self._written_for_request(draft.request_id)
            except SQLAlchemyError as e:
                log.error(f"[STORAGE] Request lookup failed {tag}: {e}")
                return done(StorageStatus.FAILED, message="Lookup failed", error=StorageFailure.code)
            if existing is not None:
                log.warning(
                    f"[STORAGE] Request {draft.request_id} already stored as result {existing.id} "
                    f"({existing.computation_source}) {tag}"
                )
                linked = await self._link(existing.exam_id, existing.id)
                return done(StorageStatus.DUPLICATE, summary=summary_from_record(existing),
                            message=ALREADY_SUBMITTED_MESSAGE, linked=linked)

        # (c) attempt limit
        try:
            previous = await self._run(crud.count_attempts, draft.exam_id, draft.student_id)
        except SQLAlchemyError as e:
            log.error(f"[STORAGE] Attempt count failed {tag}: {e}")
            return done(StorageStatus.FAILED, message="Attempt count failed", error=StorageFailure.code)

        max_attempts = exam.max_attempts or 1
        if previous >= max_attempts:
            limit = AttemptLimitExceeded(max_attempts)
            log.warning(f"[STORAGE] {limit.code}: {previous} prior attempts {tag}")
            return done(StorageStatus.ATTEMPT_LIMIT, message=str(limit), error=limit.code,
                        max_attempts=max_attempts)

        # (d) build
        try:
            check_record_invariants(draft, self.settings)
        except StorageFailure as e:
            log.error(f"[STORAGE] Refusing invariant-violating record {tag}: {e}")
            return done(StorageStatus.FAILED, message=str(e), error=e.code)

        attempt_number = previous + 1
        record = build_record(draft, attempt_number)

        # (e) bounded write; the shielded write keeps running after a timeout
        write = asyncio.ensure_future(self._run(crud.create_exam_result, record))
        try:
            stored = await asyncio.wait_for(asyncio.shield(write), timeout=self.settings.write_timeout_seconds)
        except asyncio.TimeoutError:
            log.error(f"[STORAGE] Write timed out after {self.settings.write_timeout_seconds}s {tag}")
            self._track_pending(draft.request_id, write)
            return done(StorageStatus.FAILED, message="Write timed out", error=StorageFailure.code)
        except IntegrityError as e:
            existing = await self._existing_attempt(draft, attempt_number)
            if existing is None:
                log.error(f"[STORAGE] Integrity error without existing attempt {tag}: {e.orig}")
                return done(StorageStatus.FAILED, message="Write rejected", error=StorageFailure.code)
            log.info(f"[STORAGE] Duplicate attempt {attempt_number} {tag}, returning existing result {existing.id}")
            return done(StorageStatus.DUPLICATE, summary=summary_from_record(existing),
                        message=ALREADY_SUBMITTED_MESSAGE, linked=True)
        except SQLAlchemyError as e:
            log.error(f"[STORAGE] Write failed {tag}: {e}")
            return done(StorageStatus.FAILED, message="Write failed", error=StorageFailure.code)

        log.info(f"[STORAGE] Stored result {stored.id} attempt={attempt_number} score={stored.score}/{stored.total_marks} {tag}")

        # (f) best-effort linkage
        linked = await self._link(draft.exam_id, stored.id)
        return done(StorageStatus.STORED, summary=summary_from_record(stored), linked=linked,
                    message="Exam submitted successfully")

    def _track_pending(self, request_id: Optional[str], write: asyncio.Future):
        if not request_id:
            # nobody can wait for it; retrieve the outcome so it is not reported as unhandled
            write.add_done_callback(lambda f: f.cancelled() or f.exception())
            return
        self._pending_writes[request_id] = write

    async def _written_for_request(self, request_id: str) -> Optional[ExamResult]:
        """Settle any timed-out write for this request, then look for its row."""
        pending = self._pending_writes.pop(request_id, None)
        if pending is not None:
            log.info(f"[STORAGE] Waiting for timed-out write of request {request_id}")
            try:
                await pending
            except Exception as e:
                log.warning(f"[STORAGE] Timed-out write of request {request_id} did not commit: {e}")
        return await self._run(crud.get_result_by_request_id, request_id)

    async def _existing_attempt(self, draft: ResultDraft, attempt_number: int) -> Optional[ExamResult]:
        try:
            return await self._run(crud.get_result_by_attempt, draft.exam_id, draft.student_id, attempt_number)
        except SQLAlchemyError as e:
            log.error(f"[STORAGE] Duplicate lookup failed exam={draft.exam_id} student={draft.student_id}: {e}")
            return None

    async def _link(self, exam_id: int, result_id: int) -> bool:
        try:
            await self._run(crud.link_result_to_exam, exam_id, result_id)
            return True
        except SQLAlchemyError as e:
            log.warning(
                f"[STORAGE] Exam linkage failed exam={exam_id} result={result_id}, left for reconciliation: {e}"
            )
            return False
