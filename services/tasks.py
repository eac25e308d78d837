"""
Background tasks for the submission pipeline.
Run a worker with: huey_consumer services.tasks.huey_queue
"""

import logging
from typing import Any, Dict, Optional

from huey import crontab

from database import crud
from database.database import SessionLocal
from services.queue import huey_queue

log = logging.getLogger("submission.tasks")


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None


# This decorator turns the function into a background task
@huey_queue.task()
def record_submission_event(event_type: str, details: Dict[str, Any]):
    """Executed by the Huey worker: persist one monitoring entry as a SubmissionLog row."""
    db = SessionLocal()
    try:
        crud.create_submission_log(
            db,
            event_type=event_type,
            exam_id=_as_int(details.get("exam_id")),
            student_id=_as_int(details.get("student_id")),
            request_id=details.get("request_id"),
            details=details,
        )
    except Exception as e:
        db.rollback()
        log.error(f"[TASKS] Error saving {event_type} event to database: {e}")
    finally:
        db.close()


def enqueue_submission_event(event_type: str, details: Dict[str, Any]):
    """Monitor sink: hand the entry to huey; a broker outage only costs the log entry."""
    try:
        record_submission_event(event_type, details)
    except Exception as e:
        log.warning(f"[TASKS] Could not enqueue {event_type} event: {e}")


def reconcile_links(session_factory=SessionLocal, limit: int = 100) -> int:
    """Write exam linkage for results whose synchronous link step failed. Returns rows repaired."""
    db = session_factory()
    repaired = 0
    try:
        for result in crud.get_unlinked_results(db, limit=limit):
            crud.link_result_to_exam(db, result.exam_id, result.id)
            repaired += 1
    except Exception as e:
        db.rollback()
        log.error(f"[TASKS] Link reconciliation stopped after {repaired} rows: {e}")
    finally:
        db.close()
    if repaired:
        log.info(f"[TASKS] Reconciled {repaired} exam result links")
    return repaired


@huey_queue.periodic_task(crontab(minute="*/5"))
def reconcile_exam_links():
    reconcile_links()
