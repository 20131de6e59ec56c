"""Data models for persisted process state."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Optional

from pydantic import BaseModel, Field, TypeAdapter, model_validator

from ..contracts import (
    AIInteraction,
    ProcessConfig,
    ProcessResult,
    ProcessStatus,
    StepInput,
    StepKind,
    StepOutput,
    StepProgress,
    StepStatus,
    utcnow,
)
from ..errors import StepStateError

_input_adapter: TypeAdapter[Any] = TypeAdapter(StepInput)
_output_adapter: TypeAdapter[Any] = TypeAdapter(StepOutput)


def parse_step_input(kind: StepKind, data: Any) -> Any:
    """Validate ``data`` as the input payload of a ``kind`` step."""
    if isinstance(data, dict):
        data = {"kind": kind.value, **data}
    payload = _input_adapter.validate_python(data)
    if payload.kind != kind.value:
        raise StepStateError(f"{payload.kind} input given to a {kind.value} step")
    return payload


def parse_step_output(kind: StepKind, data: Any) -> Any:
    """Validate ``data`` as the output payload of a ``kind`` step."""
    if isinstance(data, dict):
        data = {"kind": kind.value, **data}
    payload = _output_adapter.validate_python(data)
    if payload.kind != kind.value:
        raise StepStateError(f"{payload.kind} output given to a {kind.value} step")
    return payload


class Step(BaseModel):
    """One executed unit of work belonging to a process."""

    id: str
    process_id: str
    kind: StepKind
    status: StepStatus = StepStatus.RUNNING
    input: Optional[StepInput] = None
    output: Optional[StepOutput] = None
    error: Optional[str] = None
    ai_interaction: Optional[AIInteraction] = None
    started_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None
    duration: Optional[float] = None

    @model_validator(mode="after")
    def _payloads_match_kind(self) -> "Step":
        for payload in (self.input, self.output):
            if payload is not None and payload.kind != self.kind.value:
                raise ValueError(
                    f"{payload.kind} payload attached to a {self.kind.value} step"
                )
        return self

    @property
    def finished(self) -> bool:
        return self.status != StepStatus.RUNNING


def check_step_update(
    step: Step,
    status: Optional[StepStatus],
    output: Any = None,
    error: Optional[str] = None,
) -> None:
    """Enforce the step lifecycle before a store applies an update.

    A step leaves ``running`` exactly once; ``output`` accompanies
    ``completed`` and ``error`` accompanies ``failed``.
    """
    if step.finished:
        raise StepStateError(f"Step {step.id} is already {step.status.value}")
    if status == StepStatus.COMPLETED and (output is None or error is not None):
        raise StepStateError(f"Completed step {step.id} needs an output and no error")
    if status == StepStatus.FAILED and (not error or output is not None):
        raise StepStateError(f"Failed step {step.id} needs an error and no output")
    if status in (None, StepStatus.RUNNING) and (output is not None or error):
        raise StepStateError(
            f"Output or error for step {step.id} requires a terminal status"
        )


class Process(BaseModel):
    """One end-to-end run for a single prompt.

    ``steps`` is ``None`` when the process was listed without its steps.
    """

    id: str
    prompt: str
    status: ProcessStatus = ProcessStatus.CREATED
    current_step: Optional[StepKind] = None
    config: ProcessConfig = Field(default_factory=ProcessConfig)
    result: Optional[ProcessResult] = None
    steps: Optional[list[Step]] = Field(default_factory=list)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    completed_at: Optional[datetime] = None

    # Listing extras, only filled when steps are included.
    steps_count: Optional[int] = None
    captures_count: Optional[int] = None
    preview_screenshots: Optional[list[str]] = None

    def steps_of(self, *kinds: StepKind) -> list[Step]:
        return [s for s in self.steps or [] if s.kind in kinds]

    def running_step(self, kind: StepKind) -> Optional[Step]:
        for step in self.steps or []:
            if step.kind == kind and step.status == StepStatus.RUNNING:
                return step
        return None

    def find_step(self, step_id: str) -> Optional[Step]:
        for step in self.steps or []:
            if step.id == step_id:
                return step
        return None


class ProcessUpdate(BaseModel):
    """Append-only notification mirroring a process state change."""

    id: Optional[int] = None
    process_id: str
    status: ProcessStatus
    current_step: Optional[StepKind] = None
    step_progress: Optional[StepProgress] = None
    new_step_id: Optional[str] = None
    result: Optional[ProcessResult] = None
    error: Optional[str] = None
    timestamp: datetime = Field(default_factory=utcnow)


class ProcessPage(BaseModel):
    items: list[Process] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 20

    @property
    def total_pages(self) -> int:
        return -(-self.total // self.limit) if self.limit else 0


def summarize_steps(process: Process, preview_limit: int = 2) -> Process:
    """Fill the listing extras from ``process.steps``."""
    steps = process.steps or []
    captures = [
        s
        for s in steps
        if s.kind == StepKind.CAPTURE
        and s.status == StepStatus.COMPLETED
        and s.output is not None
    ]
    previews: list[str] = []
    for step in reversed(captures):
        for shot in step.output.screenshots:
            if len(previews) >= preview_limit:
                break
            if shot.startswith("data:image/"):
                previews.append(shot)
        if len(previews) >= preview_limit:
            break
    process.steps_count = len(steps)
    process.captures_count = len(captures)
    process.preview_screenshots = previews or None
    return process


def next_event_time(previous: Optional[datetime]) -> datetime:
    """Timestamp for a new update, strictly after ``previous``.

    Pollers ask for events after the last timestamp they saw, so two events
    of one process must never share a timestamp.
    """
    now = utcnow()
    if previous is not None and now <= previous:
        now = previous + timedelta(microseconds=1)
    return now


class HistoryEvaluation(BaseModel):
    score: float = Field(ge=0, le=100)
    feedback: str
    evaluated_at: datetime = Field(default_factory=utcnow)


class PromptHistoryEntry(BaseModel):
    """A saved prompt with the shader it produced.

    Entries are independent of processes and survive their deletion.
    """

    id: str
    prompt: str
    code: str
    screenshots: list[str] = Field(default_factory=list)
    evaluation: Optional[HistoryEvaluation] = None
    created_at: datetime = Field(default_factory=utcnow)
