"""Core contracts for the shaderloop process engine.

Step payloads are a tagged union keyed by ``kind``: every step kind has its
own input and output model and the ``kind`` literal lets pydantic pick the
right one when a row is read back from storage.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .constants import (
    DEFAULT_CAPTURE_HEIGHT,
    DEFAULT_CAPTURE_WIDTH,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_TARGET_SCORE,
    DEFAULT_TIME_VALUES,
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProcessStatus(str, Enum):
    CREATED = "created"
    GENERATING = "generating"
    CAPTURING = "capturing"
    EVALUATING = "evaluating"
    IMPROVING = "improving"
    FIXING = "fixing"
    COMPLETED = "completed"
    FAILED = "failed"
    PAUSED = "paused"


class StepKind(str, Enum):
    GENERATION = "generation"
    CAPTURE = "capture"
    EVALUATION = "evaluation"
    IMPROVEMENT = "improvement"
    FIX = "fix"
    COMPLETION = "completion"


class StepStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Statuses in which the runner must not start new work.
HALTED_STATUSES = frozenset(
    {ProcessStatus.PAUSED, ProcessStatus.COMPLETED, ProcessStatus.FAILED}
)

# Kinds whose output is the current shader code.
CODE_KINDS = frozenset({StepKind.GENERATION, StepKind.IMPROVEMENT, StepKind.FIX})

# Kinds that drive the state machine; at most one of each may be running.
DRIVING_KINDS = frozenset(
    {
        StepKind.GENERATION,
        StepKind.CAPTURE,
        StepKind.EVALUATION,
        StepKind.IMPROVEMENT,
        StepKind.FIX,
    }
)

STATUS_FOR_KIND = {
    StepKind.GENERATION: ProcessStatus.GENERATING,
    StepKind.CAPTURE: ProcessStatus.CAPTURING,
    StepKind.EVALUATION: ProcessStatus.EVALUATING,
    StepKind.IMPROVEMENT: ProcessStatus.IMPROVING,
    StepKind.FIX: ProcessStatus.FIXING,
    StepKind.COMPLETION: ProcessStatus.COMPLETED,
}


def clamp_score(value: float, upper: float = 100.0) -> float:
    """Clamp an evaluator score into ``[0, upper]``."""
    return max(0.0, min(upper, float(value)))


class ProcessConfig(BaseModel):
    """Per-run configuration; fixed once the process is created."""

    model_config = ConfigDict(frozen=True)

    max_iterations: int = Field(default=DEFAULT_MAX_ITERATIONS, ge=0)
    target_score: float = Field(default=DEFAULT_TARGET_SCORE, ge=0, le=100)
    auto_mode: bool = True
    server_capture: bool = True


class ProcessResult(BaseModel):
    final_code: str
    final_score: float
    best_code: str
    best_score: float
    total_iterations: int
    total_duration: float = Field(description="Seconds from creation to completion")


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AIInteraction(BaseModel):
    """What was sent to and received from a text/vision model."""

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    role: Literal["generation", "evaluation", "improvement", "fix"]
    model: str
    prompt: str
    response: str
    timestamp: datetime = Field(default_factory=utcnow)
    duration: Optional[float] = None
    token_usage: Optional[TokenUsage] = None


class CompilationError(BaseModel):
    message: str
    detail: Optional[str] = None


class EvaluationCriteria(BaseModel):
    """Breakdown of an evaluation score, each criterion worth 25 points."""

    visual_appeal: float = 0
    technical_quality: float = 0
    prompt_alignment: float = 0
    creativity: float = 0

    @field_validator("*")
    @classmethod
    def _clamp(cls, v: float) -> float:
        return clamp_score(v, upper=25.0)


# ----------------------------------------------------------------------
# Step payloads


class GenerationInput(BaseModel):
    kind: Literal["generation"] = "generation"
    prompt: str


class GenerationOutput(BaseModel):
    kind: Literal["generation"] = "generation"
    code: str


class CaptureInput(BaseModel):
    kind: Literal["capture"] = "capture"
    code: Optional[str] = None
    source: Literal["server", "client"] = "server"
    time_values: list[float] = Field(default_factory=lambda: list(DEFAULT_TIME_VALUES))
    width: int = DEFAULT_CAPTURE_WIDTH
    height: int = DEFAULT_CAPTURE_HEIGHT


class CaptureOutput(BaseModel):
    kind: Literal["capture"] = "capture"
    screenshots: list[str] = Field(default_factory=list)
    compilation_error: Optional[CompilationError] = None


class EvaluationInput(BaseModel):
    kind: Literal["evaluation"] = "evaluation"
    prompt: str
    code: str
    screenshots: list[str] = Field(default_factory=list)


class EvaluationOutput(BaseModel):
    kind: Literal["evaluation"] = "evaluation"
    score: float
    feedback: str
    criteria: Optional[EvaluationCriteria] = None
    suggestions: list[str] = Field(default_factory=list)

    @field_validator("score")
    @classmethod
    def _clamp_score(cls, v: float) -> float:
        return clamp_score(v)


class ImprovementInput(BaseModel):
    kind: Literal["improvement"] = "improvement"
    prompt: str
    code: str
    feedback: str
    screenshots: list[str] = Field(default_factory=list)


class ImprovementOutput(BaseModel):
    kind: Literal["improvement"] = "improvement"
    code: str


class FixInput(BaseModel):
    kind: Literal["fix"] = "fix"
    prompt: str
    code: str
    error_message: str
    error_detail: Optional[str] = None


class FixOutput(BaseModel):
    kind: Literal["fix"] = "fix"
    code: str


class CompletionInput(BaseModel):
    kind: Literal["completion"] = "completion"
    reason: Literal["target_score", "max_iterations", "fix_attempts"]


class CompletionOutput(BaseModel):
    kind: Literal["completion"] = "completion"
    result: ProcessResult


StepInput = Annotated[
    Union[
        GenerationInput,
        CaptureInput,
        EvaluationInput,
        ImprovementInput,
        FixInput,
        CompletionInput,
    ],
    Field(discriminator="kind"),
]

StepOutput = Annotated[
    Union[
        GenerationOutput,
        CaptureOutput,
        EvaluationOutput,
        ImprovementOutput,
        FixOutput,
        CompletionOutput,
    ],
    Field(discriminator="kind"),
]


class StepProgress(BaseModel):
    message: str
    progress: int = Field(default=0, ge=0, le=100)


def as_utc(value: datetime) -> datetime:
    """Normalise to UTC; naive datetimes are taken to be UTC already."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
