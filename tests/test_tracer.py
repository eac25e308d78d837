"""
Unit Tests for SubmissionTracer

Request ids, fingerprints, sanitization and corruption detection.
"""

import re

from submission.schemas import RecoveryEvent
from submission.tracer import (
    SubmissionState, SubmissionTracer, fingerprint, generate_request_id, key_fields, sanitize,
)
from submission.transformer import transform


PAYLOAD = {
    "examId": "12",
    "studentId": 5,
    "answers": {"1": "A", "2": "C"},
    "finalScore": 7,
    "totalMarks": 8,
    "percentage": 87.5,
    "evaluationSource": "client_side_engine",
    "completedAt": "2026-10-19T10:00:00Z",
    "timeTaken": 300,
}


class TestIdentifiers:

    def test_request_id_when_generated_then_prefix_base36_hex(self):
        rid = generate_request_id("EXAM_SUB")
        assert re.fullmatch(r"EXAM_SUB_[0-9a-z]+_[0-9a-f]{8}", rid)

    def test_request_id_when_generated_twice_then_distinct(self):
        assert generate_request_id() != generate_request_id()


class TestFingerprint:

    def test_fingerprint_when_raw_and_canonical_equivalent_then_equal(self):
        canonical = transform(PAYLOAD).canonical
        assert fingerprint(PAYLOAD) == fingerprint(canonical)
        assert len(fingerprint(PAYLOAD)) == 16

    def test_fingerprint_when_timestamp_changes_then_unchanged(self):
        moved = dict(PAYLOAD, completedAt="2026-10-19T11:00:00Z")
        assert fingerprint(moved) == fingerprint(PAYLOAD)

    def test_fingerprint_when_score_changes_then_differs(self):
        assert fingerprint(dict(PAYLOAD, finalScore=8)) != fingerprint(PAYLOAD)

    def test_key_fields_when_progressive_shape_then_nested_values_found(self):
        payload = {"progressiveResults": {"finalScore": 4, "totalMarks": 8},
                   "rawExamData": {"examId": 1, "studentId": 2, "answers": {"1": "A"}}}
        assert key_fields(payload) == {
            "exam_id": "1", "student_id": "2", "final_score": 4.0, "total_marks": 8.0, "answer_count": 1,
        }


class TestSanitize:

    def test_sanitize_when_sensitive_keys_then_redacted(self):
        clean = sanitize({"authToken": "abc", "password": "x", "computationHash": "h", "name": "ok"})
        assert clean == {"authToken": "[REDACTED]", "password": "[REDACTED]",
                         "computationHash": "[REDACTED]", "name": "ok"}

    def test_sanitize_when_list_then_summarized(self):
        clean = sanitize({"visited": [1, 2, 3, 4, 5]})
        assert clean == {"visited": {"length": 5, "sample": [1, 2, 3]}}

    def test_sanitize_when_nested_then_recursive(self):
        clean = sanitize({"outer": {"apiKey": "k", "inner": {"secretValue": 1, "v": 2}}})
        assert clean == {"outer": {"apiKey": "[REDACTED]", "inner": {"secretValue": "[REDACTED]", "v": 2}}}


class TestCorruption:

    def test_log_transformation_when_nothing_changes_then_no_flags(self):
        tracer = SubmissionTracer()
        flags = tracer.log_transformation("transformation", PAYLOAD, transform(PAYLOAD).canonical)
        assert flags == []
        assert tracer.integrity_maintained

    def test_log_transformation_when_recovery_explains_change_then_flag_explained(self):
        tracer = SubmissionTracer()
        result = transform(dict(PAYLOAD, finalScore=0, score=7))
        flags = tracer.log_transformation("transformation", dict(PAYLOAD, finalScore=0), result.canonical,
                                          result.recoveries)
        assert [f["type"] for f in flags] == ["score_changed"]
        assert flags[0]["explained"] is True
        assert tracer.integrity_maintained

    def test_log_transformation_when_unexplained_change_then_integrity_lost(self):
        tracer = SubmissionTracer()
        after = dict(PAYLOAD, finalScore=8, answers={"1": "A"}, examId=None)
        flags = tracer.log_transformation("stabilization", PAYLOAD, after)
        assert {f["type"] for f in flags} == {"score_changed", "answer_count_changed", "essential_id_lost"}
        assert not tracer.integrity_maintained
        assert tracer.client_summary()["corruptionDetected"] is True

    def test_log_transformation_when_total_recovered_then_only_score_unexplained(self):
        tracer = SubmissionTracer()
        recoveries = [RecoveryEvent(field="total_marks", before=0, after=8, source="maxMarks")]
        flags = tracer.log_transformation("t", dict(PAYLOAD, totalMarks=0, finalScore=1),
                                          PAYLOAD, recoveries)
        explained = {f["type"]: f["explained"] for f in flags}
        assert explained == {"total_marks_changed": True, "score_changed": False}


class TestSummaries:

    def test_summary_when_stages_logged_then_full_chain_server_side_only(self):
        tracer = SubmissionTracer(request_id="EXAM_SUB_test_00000000")
        tracer.transition(SubmissionState.RECEIVED)
        tracer.log_entry_point(PAYLOAD)
        tracer.log_fallback("security_validation_failed", "validation")
        tracer.log_error("fallback", RuntimeError("x"))

        full = tracer.summary()
        client = tracer.client_summary()

        assert full["request_id"] == "EXAM_SUB_test_00000000"
        assert full["fingerprint_chain"][0]["stage"] == "entry"
        assert full["fallback_count"] == 1 and full["error_count"] == 1
        assert client == {
            "requestId": "EXAM_SUB_test_00000000",
            "stages": ["entry", "fallback", "error:fallback"],
            "states": ["RECEIVED"],
            "errorCount": 1,
            "fallbackCount": 1,
            "corruptionDetected": False,
        }
