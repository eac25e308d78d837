"""
SQLAlchemy models for exam result storage
Exam → ExamQuestion, Student, ExamResult (+ linkage and monitoring log)

ExamResult rows are the durable outcome of a submission. They are written once
and never updated; a correction is a new attempt.
"""

from datetime import datetime, timezone

from sqlalchemy import (
    Column, Integer, String, Boolean, ForeignKey, DateTime, Float, JSON,
    UniqueConstraint, Index, event, inspect,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
import enum

from database.database import Base
from submission.errors import ImmutableResultError


def _utcnow():
    return datetime.now(timezone.utc)


class ComputationSource(str, enum.Enum):
    """How the stored score was produced"""
    DIRECT = "direct"
    FALLBACK = "fallback"


# ==========================================
# STUDENTS
# ==========================================

class Student(Base):
    """Student account (read-only for the submission pipeline)."""
    __tablename__ = "students"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255), nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    def __repr__(self):
        return f"<Student(id={self.id}, email='{self.email}')>"


# ==========================================
# EXAMS AND QUESTIONS
# ==========================================

class Exam(Base):
    """
    An exam students submit results for.
    max_attempts bounds how many ExamResult rows one student may own for it.
    positive_marks / negative_marks are the exam-wide scoring defaults.
    """
    __tablename__ = "exams"

    id = Column(Integer, primary_key=True, index=True)
    title = Column(String(255), nullable=False)
    total_marks = Column(Float, nullable=True)  # null = sum of question marks
    max_attempts = Column(Integer, default=1, nullable=False)
    positive_marks = Column(Float, nullable=True)
    negative_marks = Column(Float, nullable=True)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    questions = relationship(
        "ExamQuestion",
        back_populates="exam",
        cascade="all, delete-orphan",
        order_by="ExamQuestion.question_order",
    )
    result_links = relationship("ExamResultLink", back_populates="exam", cascade="all, delete-orphan")

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', max_attempts={self.max_attempts})>"


class ExamQuestion(Base):
    """
    One question inside an exam.
    correct_answer holds a single value ("B", "42") or a list for multi-answer questions.
    marks / negative_marks override the exam defaults when set.
    """
    __tablename__ = "exam_questions"

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    question_order = Column(Integer, default=0, nullable=False)
    subject = Column(String(100), nullable=True)
    question_type = Column(String(20), default="MCQ", nullable=False)  # MCQ, MCMA, NUMERICAL
    correct_answer = Column(JSON, nullable=False)
    is_multiple_answer = Column(Boolean, default=False, nullable=False)
    marks = Column(Float, nullable=True)
    negative_marks = Column(Float, nullable=True)
    partial_marking = Column(Boolean, default=False, nullable=False)

    exam = relationship("Exam", back_populates="questions")

    def __repr__(self):
        return f"<ExamQuestion(id={self.id}, exam_id={self.exam_id}, type='{self.question_type}')>"


# ==========================================
# RESULTS
# ==========================================

class ExamResult(Base):
    """
    Durable result of one attempt.

    (exam_id, student_id, attempt_number) is unique: the database rejects a second
    write of the same attempt, which the pipeline reports as "already submitted".
    Provenance columns record whether the score came from the client (direct) or
    from server-side computation (fallback).
    """
    __tablename__ = "exam_results"
    __table_args__ = (
        UniqueConstraint("exam_id", "student_id", "attempt_number", name="uq_exam_results_attempt"),
        Index("ix_exam_results_student_completed", "student_id", "completed_at"),
        Index("ix_exam_results_exam_completed", "exam_id", "completed_at"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    student_id = Column(Integer, ForeignKey("students.id", ondelete="CASCADE"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)

    answers = Column(JSON, default=dict, nullable=False)
    score = Column(Float, nullable=False)
    total_marks = Column(Float, nullable=False)
    percentage = Column(Float, nullable=False)
    time_taken = Column(Float, nullable=False)  # seconds
    completed_at = Column(DateTime(timezone=True), nullable=False)

    question_analysis = Column(JSON, default=list, nullable=False)
    subject_performance = Column(JSON, default=list, nullable=False)
    correct_answers = Column(Integer, default=0, nullable=False)
    incorrect_answers = Column(Integer, default=0, nullable=False)
    unattempted = Column(Integer, default=0, nullable=False)
    accuracy = Column(Float, default=0.0, nullable=False)

    visited_questions = Column(JSON, default=list, nullable=False)
    marked_questions = Column(JSON, default=list, nullable=False)
    warnings = Column(Integer, default=0, nullable=False)

    # Provenance
    computation_source = Column(String(20), nullable=False, index=True)  # ComputationSource
    evaluation_source = Column(String(50), nullable=True)
    processing_time_ms = Column(Float, nullable=True)
    validation_hash = Column(String(64), nullable=True)
    engine_version = Column(String(20), nullable=True)
    fallback_reason = Column(String(100), nullable=True)
    request_id = Column(String(64), nullable=True, index=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False, index=True)

    exam = relationship("Exam")
    student = relationship("Student")

    def __repr__(self):
        return (
            f"<ExamResult(exam_id={self.exam_id}, student_id={self.student_id}, "
            f"attempt={self.attempt_number}, score={self.score}/{self.total_marks})>"
        )


# Columns that define the outcome of an attempt; never rewritten after insert
IMMUTABLE_RESULT_FIELDS = (
    "exam_id", "student_id", "attempt_number", "answers", "score", "total_marks",
    "percentage", "question_analysis", "correct_answers", "incorrect_answers",
    "unattempted", "computation_source",
)


@event.listens_for(ExamResult, "before_update")
def _reject_result_update(mapper, connection, target):
    state = inspect(target)
    changed = [
        name for name in IMMUTABLE_RESULT_FIELDS
        if state.attrs[name].history.has_changes()
    ]
    if changed:
        raise ImmutableResultError(
            f"ExamResult {target.id} is immutable; attempted to change {', '.join(changed)}"
        )


class ExamResultLink(Base):
    """
    The exam's result list. Written after the ExamResult is durable; a missing
    link is repaired by reconciliation, never by rewriting the result.
    """
    __tablename__ = "exam_result_links"
    __table_args__ = (
        UniqueConstraint("exam_id", "result_id", name="uq_exam_result_links"),
    )

    id = Column(Integer, primary_key=True, index=True)
    exam_id = Column(Integer, ForeignKey("exams.id", ondelete="CASCADE"), nullable=False, index=True)
    result_id = Column(Integer, ForeignKey("exam_results.id", ondelete="CASCADE"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now(), nullable=False)

    exam = relationship("Exam", back_populates="result_links")

    def __repr__(self):
        return f"<ExamResultLink(exam_id={self.exam_id}, result_id={self.result_id})>"


# ==========================================
# MONITORING
# ==========================================

class SubmissionLog(Base):
    """Structured monitoring entry written by the background log sink."""
    __tablename__ = "submission_logs"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    event_type = Column(String(50), nullable=False, index=True)  # e.g. "direct_submission", "fallback"
    exam_id = Column(Integer, nullable=True, index=True)
    student_id = Column(Integer, nullable=True, index=True)
    request_id = Column(String(64), nullable=True, index=True)
    details = Column(JSON, nullable=True)
    timestamp = Column(DateTime(timezone=True), default=_utcnow, server_default=func.now())

    def __repr__(self):
        return f"<SubmissionLog(event_type='{self.event_type}', request_id='{self.request_id}')>"
