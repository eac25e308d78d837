"""
Step 8 — Router

Entry point for one submission.

Fast path (pre-computed payloads):
  stabilize → transform → validate → store → link
Legacy path (raw answers only) and every rejection / error:
  Fallback Orchestrator → authoritative computation

An unexpected exception anywhere on the fast path triggers the emergency
fallback exactly once. An exception inside the fallback is terminal.
"""

import asyncio
import logging
from typing import Any, Optional

from submission.config import PipelineSettings
from submission.errors import GENERIC_FAILURE_MESSAGE
from submission.fallback import FallbackOrchestrator
from submission.monitor import SubmissionMonitor
from submission.schemas import StorageStatus, SubmissionResponse
from submission.stabilizer import stabilize
from submission.storage import StorageWriter
from submission.tracer import SubmissionState, SubmissionTracer, key_fields
from submission.transformer import transform
from submission.validator import SubmissionValidator

log = logging.getLogger("submission.pipeline")

PRECOMPUTED_MARKERS = ("clientEvaluationResult", "progressiveResults", "isPreComputed")


def is_precomputed(payload: Any) -> bool:
    if not isinstance(payload, dict):
        return False
    if any(payload.get(marker) for marker in PRECOMPUTED_MARKERS):
        return True
    return payload.get("evaluationSource") is not None and payload.get("finalScore") is not None


class SubmissionRouter:

    def __init__(self, validator: SubmissionValidator, storage: StorageWriter,
                 fallback: FallbackOrchestrator, monitor: SubmissionMonitor,
                 settings: Optional[PipelineSettings] = None):
        self.validator = validator
        self.storage = storage
        self.fallback = fallback
        self.monitor = monitor
        self.settings = settings or PipelineSettings()

    async def submit(self, payload: Any) -> SubmissionResponse:
        tracer = SubmissionTracer()
        tracer.transition(SubmissionState.RECEIVED)
        tracer.log_entry_point(payload)

        if not (self.settings.fast_path_enabled and is_precomputed(payload)):
            log.info(f"[ROUTER] {tracer.request_id} legacy path")
            return await self._fallback(payload, "no_precomputed_results", "router", tracer)

        try:
            return await self._fast_path(payload, tracer)
        except Exception as e:
            origin_stage = tracer.stages[-1]["stage"] if tracer.stages else "router"
            tracer.log_error("fast_path", e, context=payload)
            if tracer.fallback_count:
                # fallback already ran for this submission; its failure is terminal
                log.exception(f"[ROUTER] {tracer.request_id} error after fallback, not retrying")
                tracer.transition(SubmissionState.ERROR_COMPLETE)
                response = SubmissionResponse(success=False, message=GENERIC_FAILURE_MESSAGE)
                return self._decorate(response, tracer, tracer.elapsed_ms())
            log.exception(f"[ROUTER] {tracer.request_id} unexpected error, emergency fallback")
            return await self._fallback(payload, "emergency_fallback", origin_stage, tracer)

    async def _fast_path(self, payload: Any, tracer: SubmissionTracer) -> SubmissionResponse:
        stable = stabilize(payload)
        tracer.log_transformation("stabilization", payload, stable)
        tracer.transition(SubmissionState.STABILIZED)

        transformed = transform(stable, self.settings)
        tracer.log_transformation("transformation", stable, transformed.canonical, transformed.recoveries)
        tracer.transition(SubmissionState.TRANSFORMED)
        canonical = transformed.canonical

        tracer.transition(SubmissionState.VALIDATING)
        verdict = await self.validator.validate(canonical)
        tracer.log_validation(verdict)
        if not verdict.is_valid:
            tracer.transition(SubmissionState.INVALID)
            return await self._fallback(stable, verdict.reason, "validation", tracer,
                                        validation_ms=verdict.validation_time_ms)
        tracer.transition(SubmissionState.VALID)

        outcome = await self.storage.store_direct(canonical, verdict, tracer.request_id, tracer.elapsed_ms())
        tracer.log_database_operation("store_direct", outcome.succeeded, outcome.duration_ms,
                                      status=outcome.status.value)

        if outcome.status == StorageStatus.FAILED:
            return await self._fallback(canonical, outcome.error or "storage_failed", "storage", tracer,
                                        validation_ms=verdict.validation_time_ms)

        if not outcome.succeeded:
            # attempt limit / not found: business rejection, no fallback
            tracer.transition(SubmissionState.ERROR_COMPLETE)
            message = outcome.message if outcome.status == StorageStatus.ATTEMPT_LIMIT else GENERIC_FAILURE_MESSAGE
            response = SubmissionResponse(success=False, message=message, computation_source="direct")
            return await self._finish(response, tracer, canonical, verdict.validation_time_ms, outcome.duration_ms,
                                  outcome.status.value)

        tracer.transition(SubmissionState.STORED)
        if outcome.status == StorageStatus.STORED:
            # the persisted row must carry the validated numbers unchanged
            tracer.log_transformation("storage", canonical, outcome.summary)
        else:
            tracer.log_snapshot("storage", outcome.summary)
        if outcome.linked:
            tracer.transition(SubmissionState.LINKED)
        tracer.transition(SubmissionState.COMPLETE)
        response = SubmissionResponse(
            success=True,
            message=outcome.message,
            result=outcome.summary,
            computation_source="direct",
        )
        return await self._finish(response, tracer, canonical, verdict.validation_time_ms, outcome.duration_ms,
                                  outcome.status.value)

    async def _fallback(self, source: Any, reason: str, origin_stage: str, tracer: SubmissionTracer,
                        validation_ms: Optional[float] = None) -> SubmissionResponse:
        response = await self.fallback.run(source, reason, origin_stage, tracer)
        total_ms = tracer.elapsed_ms()
        ids = _ids(source)
        # window and log sink may talk to Redis; keep them off the event loop
        await asyncio.to_thread(
            self.monitor.record_fallback,
            tracer.request_id, total_ms, reason=reason, origin_stage=origin_stage,
            success=response.success, **ids,
        )
        return self._decorate(response, tracer, total_ms, validation_ms=validation_ms)

    async def _finish(self, response: SubmissionResponse, tracer: SubmissionTracer, canonical,
                      validation_ms: Optional[float], storage_ms: Optional[float],
                      outcome: str) -> SubmissionResponse:
        total_ms = tracer.elapsed_ms()
        await asyncio.to_thread(
            self.monitor.record_submission,
            tracer.request_id, total_ms,
            validation_ms=validation_ms, storage_ms=storage_ms, outcome=outcome,
            exam_id=canonical.exam_id, student_id=canonical.student_id,
        )
        return self._decorate(response, tracer, total_ms, validation_ms=validation_ms, storage_ms=storage_ms)

    def _decorate(self, response: SubmissionResponse, tracer: SubmissionTracer, total_ms: float,
                  validation_ms: Optional[float] = None, storage_ms: Optional[float] = None) -> SubmissionResponse:
        tracer.log_summary()
        return response.model_copy(update={
            "processing_time_ms": total_ms,
            "performance_metrics": {
                "classification": self.monitor.classify(total_ms),
                "validationMs": validation_ms,
                "storageMs": storage_ms,
            },
            "trace_summary": tracer.client_summary(),
        })


def _ids(source: Any) -> dict:
    if isinstance(source, dict):
        fields = key_fields(source)
        return {"exam_id": fields["exam_id"], "student_id": fields["student_id"]}
    return {"exam_id": getattr(source, "exam_id", None), "student_id": getattr(source, "student_id", None)}
