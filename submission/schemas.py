"""
Pydantic schemas for the submission pipeline.

Inbound payloads stay plain dicts until the transformer has normalized them;
everything after that point is one of the models below.
"""

import enum
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class EvaluationSource(str, enum.Enum):
    CLIENT_EVALUATION_ENGINE = "client_evaluation_engine"
    CLIENT_SIDE_ENGINE = "client_side_engine"
    PROGRESSIVE_COMPUTATION = "progressive_computation"


class PayloadVariant(str, enum.Enum):
    """Shape of the inbound payload, discriminated by evaluationSource."""
    CLIENT_EVALUATION = "client_evaluation"
    PROGRESSIVE = "progressive"


QUESTION_STATUSES = ("correct", "incorrect", "unattempted", "partially_correct")


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─── Canonical submission ──────────────────────────────────────────────────────

class RecoveryEvent(BaseModel):
    """A field the transformer replaced because the client value looked corrupt."""
    field: str
    before: Any = None
    after: Any = None
    source: str


class CanonicalSubmission(BaseModel):
    """
    Normalized, typed submission. Values that could not be coerced are None and
    listed in invalid_fields so the structural layer can report them.
    """
    model_config = ConfigDict(frozen=True)

    variant: PayloadVariant
    exam_id: Union[int, str, None] = None
    student_id: Union[int, str, None] = None
    answers: Optional[Dict[str, Any]] = None
    final_score: Optional[float] = None
    total_marks: Optional[float] = None
    percentage: Optional[float] = None
    correct_answers: Optional[int] = None
    incorrect_answers: Optional[int] = None
    unattempted: Optional[int] = None
    question_analysis: List[Dict[str, Any]] = Field(default_factory=list)
    subject_performance: List[Dict[str, Any]] = Field(default_factory=list)
    time_taken: Optional[float] = None
    completed_at: Optional[datetime] = None
    visited_questions: List[Any] = Field(default_factory=list)
    marked_questions: List[Any] = Field(default_factory=list)
    warnings: int = 0
    evaluation_source: Optional[str] = None
    computation_hash: Optional[str] = None
    engine_version: str = ""
    invalid_fields: Dict[str, str] = Field(default_factory=dict)

    @property
    def answer_count(self) -> int:
        return len(self.answers or {})

    @property
    def attempted_count(self) -> int:
        return sum(1 for value in (self.answers or {}).values() if value not in (None, "", []))


# ─── Validation ────────────────────────────────────────────────────────────────

class LayerResult(BaseModel):
    layer: str
    passed: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    skipped: bool = False
    details: Dict[str, Any] = Field(default_factory=dict)


class ValidationVerdict(BaseModel):
    """Aggregated outcome of all layers. reason is the first failing layer's code."""
    is_valid: bool
    reason: Optional[str] = None
    layers: List[LayerResult] = Field(default_factory=list)
    validation_time_ms: float = 0.0
    validation_hash: Optional[str] = None

    @property
    def failed_layers(self) -> List[LayerResult]:
        return [layer for layer in self.layers if not layer.passed]

    @property
    def errors(self) -> List[str]:
        return [error for layer in self.layers for error in layer.errors]


# ─── Fallback ──────────────────────────────────────────────────────────────────

class FallbackRequest(BaseModel):
    """
    What the authoritative computation receives. Claimed score and total are
    deliberately absent.
    """
    exam_id: Union[int, str, None] = None
    student_id: Union[int, str, None] = None
    answers: Dict[str, Any] = Field(default_factory=dict)
    time_taken: float = 0.0
    completed_at: Optional[datetime] = None
    visited_questions: List[Any] = Field(default_factory=list)
    marked_questions: List[Any] = Field(default_factory=list)
    warnings: int = 0
    evaluation_source: Optional[str] = None
    reason: str
    origin_stage: str
    request_id: Optional[str] = None


# ─── Output contract ───────────────────────────────────────────────────────────

class ResultSummary(CamelModel):
    exam_id: Optional[int] = None
    student_id: Optional[int] = None
    score: float
    total_marks: float
    percentage: float
    correct_answers: int = 0
    incorrect_answers: int = 0
    unattempted: int = 0
    time_taken: float = 0.0
    completed_at: Optional[datetime] = None
    result_id: Optional[int] = None
    attempt_number: Optional[int] = None


class SubmissionResponse(CamelModel):
    success: bool
    message: str
    result: Optional[ResultSummary] = None
    processing_time_ms: float = 0.0
    performance_metrics: Dict[str, Any] = Field(default_factory=dict)
    trace_summary: Dict[str, Any] = Field(default_factory=dict)
    computation_source: Optional[str] = None


# ─── Storage ───────────────────────────────────────────────────────────────────

class StorageStatus(str, enum.Enum):
    STORED = "stored"
    DUPLICATE = "duplicate"
    ATTEMPT_LIMIT = "attempt_limit"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class ResultDraft(BaseModel):
    """Everything needed to insert one ExamResult, before the attempt number is known."""
    exam_id: Union[int, str, None] = None
    student_id: Union[int, str, None] = None
    answers: Dict[str, Any] = Field(default_factory=dict)
    score: float
    total_marks: float
    percentage: Optional[float] = None  # claimed; the stored value is always derived
    question_analysis: List[Dict[str, Any]] = Field(default_factory=list)
    subject_performance: List[Dict[str, Any]] = Field(default_factory=list)
    correct_answers: int = 0
    incorrect_answers: int = 0
    unattempted: int = 0
    time_taken: float = 0.0
    completed_at: Optional[datetime] = None
    visited_questions: List[Any] = Field(default_factory=list)
    marked_questions: List[Any] = Field(default_factory=list)
    warnings: int = 0
    computation_source: str = "direct"
    evaluation_source: Optional[str] = None
    validation_hash: Optional[str] = None
    engine_version: Optional[str] = None
    fallback_reason: Optional[str] = None
    request_id: Optional[str] = None
    processing_time_ms: Optional[float] = None


class StorageOutcome(BaseModel):
    status: StorageStatus
    summary: Optional[ResultSummary] = None
    linked: bool = False
    message: str = ""
    error: Optional[str] = None
    max_attempts: Optional[int] = None
    duration_ms: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status in (StorageStatus.STORED, StorageStatus.DUPLICATE)
