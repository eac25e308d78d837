"""
CRUD operations for exam result storage
All database access from the submission pipeline goes through these functions

Results are insert-only; there is deliberately no update or delete for ExamResult.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from database import models


# ==========================================
# EXAM / STUDENT LOOKUPS
# ==========================================

def get_exam(db: Session, exam_id: int) -> Optional[models.Exam]:
    """Get exam by ID"""
    return db.query(models.Exam).filter(models.Exam.id == exam_id).first()


def get_student(db: Session, student_id: int) -> Optional[models.Student]:
    """Get student by ID"""
    return db.query(models.Student).filter(models.Student.id == student_id).first()


def get_exam_questions(db: Session, exam_id: int) -> List[models.ExamQuestion]:
    """Get all questions of an exam in paper order"""
    return (
        db.query(models.ExamQuestion)
        .filter(models.ExamQuestion.exam_id == exam_id)
        .order_by(models.ExamQuestion.question_order, models.ExamQuestion.id)
        .all()
    )


# ==========================================
# EXAM RESULTS
# ==========================================

def count_attempts(db: Session, exam_id: int, student_id: int) -> int:
    """Number of stored attempts for this (exam, student)"""
    return (
        db.query(func.count(models.ExamResult.id))
        .filter(models.ExamResult.exam_id == exam_id, models.ExamResult.student_id == student_id)
        .scalar()
    ) or 0


def get_result_by_attempt(db: Session, exam_id: int, student_id: int,
                          attempt_number: int) -> Optional[models.ExamResult]:
    return (
        db.query(models.ExamResult)
        .filter(
            models.ExamResult.exam_id == exam_id,
            models.ExamResult.student_id == student_id,
            models.ExamResult.attempt_number == attempt_number,
        )
        .first()
    )


def get_result_by_request_id(db: Session, request_id: str) -> Optional[models.ExamResult]:
    """Result already written for this submission request, on either path"""
    return (
        db.query(models.ExamResult)
        .filter(models.ExamResult.request_id == request_id)
        .order_by(models.ExamResult.id)
        .first()
    )


def create_exam_result(db: Session, result: models.ExamResult) -> models.ExamResult:
    """Insert a result. IntegrityError on the attempt unique index propagates to the caller."""
    db.add(result)
    db.commit()
    db.refresh(result)
    return result


def get_results_since(db: Session, since: datetime, exam_id: Optional[int] = None) -> List[models.ExamResult]:
    """Results created after `since`, optionally for one exam (monitoring dashboards)"""
    query = db.query(models.ExamResult).filter(models.ExamResult.created_at >= since)
    if exam_id is not None:
        query = query.filter(models.ExamResult.exam_id == exam_id)
    return query.order_by(models.ExamResult.created_at).all()


# ==========================================
# EXAM LINKAGE
# ==========================================

def link_result_to_exam(db: Session, exam_id: int, result_id: int) -> models.ExamResultLink:
    """Add the result to the exam's result list (no-op if already linked)"""
    existing = (
        db.query(models.ExamResultLink)
        .filter(models.ExamResultLink.exam_id == exam_id, models.ExamResultLink.result_id == result_id)
        .first()
    )
    if existing:
        return existing
    link = models.ExamResultLink(exam_id=exam_id, result_id=result_id)
    db.add(link)
    db.commit()
    db.refresh(link)
    return link


def get_unlinked_results(db: Session, limit: int = 100) -> List[models.ExamResult]:
    """Results whose exam linkage was never written (reconciliation input)"""
    return (
        db.query(models.ExamResult)
        .outerjoin(
            models.ExamResultLink,
            (models.ExamResultLink.result_id == models.ExamResult.id)
            & (models.ExamResultLink.exam_id == models.ExamResult.exam_id),
        )
        .filter(models.ExamResultLink.id.is_(None))
        .order_by(models.ExamResult.id)
        .limit(limit)
        .all()
    )


# ==========================================
# SUBMISSION LOGS
# ==========================================

def create_submission_log(db: Session, event_type: str, exam_id: Optional[int] = None,
                          student_id: Optional[int] = None, request_id: Optional[str] = None,
                          details: Optional[dict] = None) -> models.SubmissionLog:
    entry = models.SubmissionLog(
        event_type=event_type,
        exam_id=exam_id,
        student_id=student_id,
        request_id=request_id,
        details=details,
    )
    db.add(entry)
    db.commit()
    return entry
