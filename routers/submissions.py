"""
Submission router.
Accepts pre-computed (or legacy) exam results from students and exposes the
monitoring views built from stored provenance.
"""

from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Query
from sqlalchemy.orm import Session

from database.database import SessionLocal, get_db
from engines.scoring_rules import ScoringRulesEngine
from engines.traditional import TraditionalComputation
from services.tasks import enqueue_submission_event
from submission.config import PipelineSettings
from submission.fallback import FallbackOrchestrator
from submission.monitor import SubmissionMonitor
from submission.router import SubmissionRouter
from submission.storage import StorageWriter
from submission.validator import SubmissionValidator

router = APIRouter(prefix="/submissions", tags=["submissions"])


# ─── Pipeline wiring ───────────────────────────────────────────────────────────

def build_pipeline(session_factory=SessionLocal, settings: Optional[PipelineSettings] = None,
                   sink=enqueue_submission_event, window=None) -> SubmissionRouter:
    """Wire every stage. One scoring engine is shared so its rule cache is reused."""
    settings = settings or PipelineSettings.from_env()
    engine = ScoringRulesEngine()
    storage = StorageWriter(session_factory, settings)
    return SubmissionRouter(
        validator=SubmissionValidator(session_factory, settings, scoring_engine=engine),
        storage=storage,
        fallback=FallbackOrchestrator(TraditionalComputation(session_factory, storage, scoring_engine=engine)),
        monitor=SubmissionMonitor(window=window, sink=sink, settings=settings),
        settings=settings,
    )


_pipeline: Optional[SubmissionRouter] = None


def get_pipeline() -> SubmissionRouter:
    global _pipeline
    if _pipeline is None:
        _pipeline = build_pipeline()
    return _pipeline


def get_monitor(pipeline: SubmissionRouter = Depends(get_pipeline)) -> SubmissionMonitor:
    return pipeline.monitor


# ─── Routes ────────────────────────────────────────────────────────────────────

@router.post("")
async def submit_exam(payload: Any = Body(...), pipeline: SubmissionRouter = Depends(get_pipeline)):
    """
    Submit an exam result. Always 200: failures come back as success=false with
    a generic message; details stay in the server log.
    """
    response = await pipeline.submit(payload)
    return response.model_dump(by_alias=True, mode="json")


@router.get("/metrics/dashboard")
def metrics_dashboard(
    hours: float = Query(1, gt=0, le=24 * 30),
    db: Session = Depends(get_db),
    monitor: SubmissionMonitor = Depends(get_monitor),
):
    """Direct vs fallback counts, latency, health and alerts for the last `hours`."""
    return monitor.dashboard(db, hours=hours)


@router.get("/metrics/analysis")
def metrics_analysis(
    exam_id: Optional[int] = None,
    hours: float = Query(24, gt=0, le=24 * 30),
    db: Session = Depends(get_db),
    monitor: SubmissionMonitor = Depends(get_monitor),
):
    return monitor.performance_analysis(db, exam_id=exam_id, hours=hours)


@router.get("/metrics/recent")
def metrics_recent(monitor: SubmissionMonitor = Depends(get_monitor)):
    """Snapshot of the rolling window (approximate, per worker unless Redis-backed)."""
    return monitor.recent()
