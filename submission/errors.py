"""
Error taxonomy for the submission pipeline.

Validation, integrity and security outcomes travel as verdicts; these classes
name them and are raised only inside a stage (storage, fallback) or for
genuinely unexpected conditions.
"""

from typing import Optional


GENERIC_FAILURE_MESSAGE = "Error processing your submission. Please try again or contact support."


class SubmissionError(Exception):
    """Base class for pipeline errors. `code` is the reason string used in logs and metrics."""

    code = "submission_error"

    def __init__(self, message: str = "", *, code: Optional[str] = None):
        super().__init__(message or self.__class__.__name__)
        if code:
            self.code = code


class ValidationFailure(SubmissionError):
    code = "validation_failed"


class IntegrityViolation(ValidationFailure):
    code = "integrity_violation"


class SecurityViolation(ValidationFailure):
    code = "security_violation"


class NotFound(SubmissionError):
    code = "not_found"


class AttemptLimitExceeded(SubmissionError):
    code = "attempt_limit_exceeded"

    def __init__(self, max_attempts: int):
        super().__init__(f"Maximum attempts ({max_attempts}) exceeded")
        self.max_attempts = max_attempts


class StorageFailure(SubmissionError):
    code = "storage_failed"


class FallbackFailure(SubmissionError):
    code = "fallback_failed"


class TransformationCorruption(SubmissionError):
    code = "transformation_corruption"


class ImmutableResultError(SubmissionError):
    code = "immutable_result"
