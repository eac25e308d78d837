import os

# Must be set before database.database / services.queue are imported
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ["HUEY_IMMEDIATE"] = "true"

import itertools
from datetime import datetime, timedelta, timezone

import pytest

from database.database import Base, build_engine, build_session_factory
from database.models import Exam, ExamQuestion, Student
from routers.submissions import build_pipeline
from submission.config import PipelineSettings
from submission.monitor import InMemoryRollingWindow


_student_ids = itertools.count(1)


# Common test fixtures
@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so worker threads share one database."""
    eng = build_engine(f"sqlite:///{tmp_path / 'submissions.db'}")
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return PipelineSettings()


@pytest.fixture
def seed(session_factory):
    """Create an exam with `questions` single-answer questions (correct answer "A") and one student."""
    def _seed(questions: int = 50, max_attempts: int = 1, total_marks=None, **exam_fields):
        session = session_factory()
        try:
            exam = Exam(title="Mock Test", max_attempts=max_attempts, total_marks=total_marks, **exam_fields)
            for i in range(questions):
                exam.questions.append(ExamQuestion(
                    question_order=i,
                    subject="Physics" if i % 2 == 0 else "Chemistry",
                    correct_answer="A",
                ))
            student = Student(email=f"student{next(_student_ids)}@example.com", full_name="Test Student")
            session.add_all([exam, student])
            session.commit()
            return exam.id, student.id, [q.id for q in exam.questions]
        finally:
            session.close()
    return _seed


@pytest.fixture
def events():
    return []


@pytest.fixture
def pipeline(session_factory, settings, events):
    return build_pipeline(
        session_factory=session_factory,
        settings=settings,
        sink=lambda event_type, entry: events.append((event_type, entry)),
        window=InMemoryRollingWindow(100),
    )


def _iso(dt: datetime) -> str:
    return dt.isoformat().replace("+00:00", "Z")


def build_client_payload(exam_id, student_id, question_ids, correct: int, incorrect: int,
                         time_taken: float = 3600, completed_at: datetime = None, **overrides):
    """
    Client-evaluation payload: first `correct` questions answered "A" (right),
    next `incorrect` answered "B" (wrong), rest unanswered. Scored +4 / -1.
    """
    answers, analysis = {}, []
    for i, qid in enumerate(question_ids):
        if i < correct:
            answers[str(qid)] = "A"
            analysis.append({"questionId": qid, "status": "correct", "marks": 4, "userAnswer": "A", "correctAnswer": "A"})
        elif i < correct + incorrect:
            answers[str(qid)] = "B"
            analysis.append({"questionId": qid, "status": "incorrect", "marks": -1, "userAnswer": "B", "correctAnswer": "A"})
        else:
            analysis.append({"questionId": qid, "status": "unattempted", "marks": 0, "userAnswer": None, "correctAnswer": "A"})

    score = correct * 4 - incorrect
    total = len(question_ids) * 4
    payload = {
        "examId": exam_id,
        "studentId": student_id,
        "answers": answers,
        "finalScore": score,
        "totalMarks": total,
        "percentage": round(score / total * 100, 2),
        "correctAnswers": correct,
        "incorrectAnswers": incorrect,
        "unattempted": len(question_ids) - correct - incorrect,
        "questionAnalysis": analysis,
        "subjectPerformance": [],
        "timeTaken": time_taken,
        "completedAt": _iso(completed_at or datetime.now(timezone.utc) - timedelta(minutes=5)),
        "visitedQuestions": list(question_ids),
        "markedQuestions": [],
        "warnings": 0,
        "evaluationSource": "client_evaluation_engine",
        "engineVersion": "1.3.0",
    }
    payload.update(overrides)
    return payload


@pytest.fixture
def client_payload():
    return build_client_payload
