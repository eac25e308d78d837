"""
API tests for the submission and metrics endpoints
"""

import pytest
from fastapi.testclient import TestClient

from database.database import get_db
from routers.submissions import get_pipeline
from submission.errors import GENERIC_FAILURE_MESSAGE
from submission_api import app


@pytest.fixture
def client(pipeline, session_factory):
    def override_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_pipeline] = lambda: pipeline
    app.dependency_overrides[get_db] = override_db
    yield TestClient(app)
    app.dependency_overrides.clear()


class TestSubmitEndpoint:

    def test_submit_when_valid_then_camel_case_response(self, client, seed, client_payload):
        exam_id, student_id, qids = seed(questions=30)
        response = client.post("/submissions", json=client_payload(exam_id, student_id, qids, correct=20, incorrect=5))

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["computationSource"] == "direct"
        assert body["result"]["score"] == 75
        assert body["result"]["attemptNumber"] == 1
        assert "processingTimeMs" in body
        assert body["traceSummary"]["requestId"].startswith("EXAM_SUB_")

    def test_submit_when_body_not_json_then_422(self, client):
        response = client.post("/submissions", content=b"{not json", headers={"Content-Type": "application/json"})
        assert response.status_code == 422

    def test_submit_when_body_is_list_then_generic_failure(self, client):
        response = client.post("/submissions", json=[1, 2, 3])
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == GENERIC_FAILURE_MESSAGE


class TestMetricsEndpoints:

    def test_recent_when_submission_recorded_then_window_size_grows(self, client, seed, client_payload):
        exam_id, student_id, qids = seed(questions=30)
        client.post("/submissions", json=client_payload(exam_id, student_id, qids, correct=20, incorrect=5))

        recent = client.get("/submissions/metrics/recent").json()
        assert recent["size"] == 1

    def test_dashboard_when_direct_result_stored_then_counted(self, client, seed, client_payload):
        exam_id, student_id, qids = seed(questions=30)
        client.post("/submissions", json=client_payload(exam_id, student_id, qids, correct=20, incorrect=5))

        dash = client.get("/submissions/metrics/dashboard", params={"hours": 1}).json()
        assert dash["overview"]["total"] == 1
        assert dash["overview"]["direct"] == 1

    def test_dashboard_when_hours_out_of_range_then_422(self, client):
        assert client.get("/submissions/metrics/dashboard", params={"hours": 0}).status_code == 422

    def test_analysis_when_exam_filtered_then_single_exam(self, client, seed, client_payload):
        exam_id, student_id, qids = seed(questions=30)
        client.post("/submissions", json=client_payload(exam_id, student_id, qids, correct=20, incorrect=5))

        analysis = client.get("/submissions/metrics/analysis", params={"exam_id": exam_id}).json()
        assert [e["exam_id"] for e in analysis["exams"]] == [exam_id]


def test_root_when_called_then_online(client):
    body = client.get("/").json()
    assert body["status"] == "Online"
    assert body["endpoints"]["submit"] == "/submissions"
