"""
Tests for the huey submission-event tasks (immediate mode)
"""

from database.models import SubmissionLog
from services import queue, tasks


class TestRecordSubmissionEvent:

    def test_record_event_when_immediate_then_log_row_written(self, session_factory, monkeypatch, db):
        monkeypatch.setattr(tasks, "SessionLocal", session_factory)

        tasks.record_submission_event("fallback", {"request_id": "EXAM_SUB_x_1", "exam_id": "7",
                                                   "student_id": 3, "total_ms": 12.5})

        row = db.query(SubmissionLog).one()
        assert (row.event_type, row.exam_id, row.student_id, row.request_id) == ("fallback", 7, 3, "EXAM_SUB_x_1")
        assert row.details["total_ms"] == 12.5

    def test_record_event_when_ids_malformed_then_stored_as_null(self, session_factory, monkeypatch, db):
        monkeypatch.setattr(tasks, "SessionLocal", session_factory)

        tasks.record_submission_event("direct_submission", {"exam_id": "abc", "student_id": None})

        row = db.query(SubmissionLog).one()
        assert row.exam_id is None and row.student_id is None


class TestEnqueue:

    def test_enqueue_when_queue_raises_then_swallowed(self, monkeypatch):
        def broken(event_type, details):
            raise ConnectionError("redis down")

        monkeypatch.setattr(tasks, "record_submission_event", broken)
        tasks.enqueue_submission_event("direct_submission", {"request_id": "R"})

    def test_enqueue_when_called_then_task_receives_event(self, monkeypatch):
        received = []
        monkeypatch.setattr(tasks, "record_submission_event", lambda t, d: received.append((t, d)))
        tasks.enqueue_submission_event("fallback", {"request_id": "R"})
        assert received == [("fallback", {"request_id": "R"})]

    def test_queue_when_configured_then_redis_connect_bounded(self):
        kwargs = queue.huey_queue.storage_kwargs
        assert kwargs["socket_connect_timeout"] == queue.HUEY_CONNECT_TIMEOUT
        assert kwargs["socket_timeout"] == queue.HUEY_SOCKET_TIMEOUT
