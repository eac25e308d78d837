"""
Pipeline thresholds.

Every number the validator, storage writer and monitor compare against lives
here, read from SUBMISSION_* environment variables with the defaults below.
"""

import os
from typing import Optional

from pydantic import BaseModel, Field


ENV_PREFIX = "SUBMISSION_"


class PipelineSettings(BaseModel):
    # Router
    fast_path_enabled: bool = True

    # Storage
    write_timeout_seconds: float = Field(3.0, gt=0)

    # Structural / integrity
    min_score_ratio: float = -0.5
    max_score_ratio: float = 1.1
    percentage_tolerance: float = 0.1

    # Security
    min_percentage: float = -50.0
    max_percentage: float = 100.0
    min_time_taken_seconds: float = 10.0
    warn_time_taken_seconds: float = 30.0
    uniform_answer_threshold: int = 20
    perfect_score_min_answers: int = 5

    # Temporal
    clock_skew_seconds: float = 60.0
    staleness_seconds: float = 24 * 60 * 60

    # Statistical / spot-check
    spot_check_ratio: float = 0.1
    spot_check_cap: int = 10
    spot_check_mismatch_tolerance: float = 0.05

    # Transformer
    default_marks_per_question: float = 4.0
    default_engine_version: str = "1.3.0"

    # Monitor
    monitor_backend: str = "memory"  # memory | redis
    monitor_window_size: int = Field(100, gt=0)
    regression_factor: float = 2.0
    regression_window_minutes: int = 15
    regression_min_samples: int = 5
    fallback_rate_threshold: float = 10.0
    alert_warning_ms: float = 100.0
    alert_critical_ms: float = 500.0

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "PipelineSettings":
        """Build settings from SUBMISSION_<FIELD> variables; unset fields keep defaults."""
        environ = os.environ if environ is None else environ
        overrides = {}
        for name in cls.model_fields:
            raw = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is not None:
                overrides[name] = raw
        return cls.model_validate(overrides)
