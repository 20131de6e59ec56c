"""Pure transition logic of the process state machine.

:func:`plan_next` looks only at the persisted steps of a process and says
what has to happen next. It never touches storage; the runner executes the
returned plan.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal, Optional, Union

from .constants import MAX_FIX_ATTEMPTS
from .contracts import (
    CODE_KINDS,
    DRIVING_KINDS,
    STATUS_FOR_KIND,
    EvaluationInput,
    FixInput,
    GenerationInput,
    ImprovementInput,
    ProcessStatus,
    StepKind,
    StepStatus,
)
from .errors import NoCodeFoundError
from .persistence import Process, Step


@dataclass(frozen=True)
class Run:
    """Create and execute a step of ``kind`` with ``input``."""

    kind: StepKind
    input: object


@dataclass(frozen=True)
class Wait:
    """A step is in flight; nothing to start until it finishes."""

    step: Step

    @property
    def status(self) -> ProcessStatus:
        return STATUS_FOR_KIND[self.step.kind]


@dataclass(frozen=True)
class AwaitCapture:
    """The latest code needs screenshots."""

    code: str


@dataclass(frozen=True)
class Complete:
    reason: Literal["target_score", "max_iterations", "fix_attempts"]
    final_code: str
    final_score: float
    best_code: str
    best_score: float
    iterations: int


@dataclass(frozen=True)
class Abandon:
    """Nothing can be salvaged; the process fails with ``error``."""

    error: str


Plan = Union[Run, Wait, AwaitCapture, Complete, Abandon]


def latest_code_step(process: Process) -> Optional[Step]:
    """Most recently *started* step that produces code."""
    steps = process.steps_of(*CODE_KINDS)
    return steps[-1] if steps else None


def latest_code(process: Process) -> Optional[str]:
    step = latest_code_step(process)
    if step is None or step.output is None:
        return None
    return step.output.code


def iteration_count(process: Process) -> int:
    """Number of completed improvement steps."""
    return sum(
        1
        for s in process.steps_of(StepKind.IMPROVEMENT)
        if s.status == StepStatus.COMPLETED
    )


def fixes_since_evaluation(process: Process) -> int:
    """Completed fix steps after the latest completed evaluation."""
    count = 0
    for step in process.steps_of(StepKind.EVALUATION, StepKind.FIX):
        if step.status != StepStatus.COMPLETED:
            continue
        count = count + 1 if step.kind == StepKind.FIX else 0
    return count


def best_evaluation(process: Process) -> Optional[Step]:
    best = None
    for step in process.steps_of(StepKind.EVALUATION):
        if step.status != StepStatus.COMPLETED:
            continue
        if best is None or step.output.score >= best.output.score:
            best = step
    return best


def status_for(plan: Plan) -> ProcessStatus:
    """Working status a process holds while ``plan`` is carried out."""
    if isinstance(plan, Run):
        return STATUS_FOR_KIND[plan.kind]
    if isinstance(plan, Wait):
        return plan.status
    if isinstance(plan, AwaitCapture):
        return ProcessStatus.CAPTURING
    if isinstance(plan, Abandon):
        return ProcessStatus.FAILED
    return ProcessStatus.EVALUATING


def _require_code(process: Process) -> str:
    code = latest_code(process)
    if code is None:
        step = latest_code_step(process)
        found = f"{step.kind.value}/{step.status.value}" if step else "none"
        raise NoCodeFoundError(
            f"No code found for process {process.id} (latest code step: {found})"
        )
    return code


def plan_next(process: Process, max_fix_attempts: int = MAX_FIX_ATTEMPTS) -> Plan:
    if not process.steps_of(*CODE_KINDS):
        # A client capture may be opened before generation was ever started.
        return Run(StepKind.GENERATION, GenerationInput(prompt=process.prompt))
    driving = process.steps_of(*DRIVING_KINDS)

    running = [s for s in driving if s.status == StepStatus.RUNNING]
    if running:
        return Wait(running[-1])

    last = driving[-1]
    if last.status == StepStatus.FAILED:
        if last.kind == StepKind.CAPTURE or last.input is None:
            return AwaitCapture(_require_code(process))
        return Run(last.kind, last.input)

    if last.kind in CODE_KINDS:
        return AwaitCapture(last.output.code)

    if last.kind == StepKind.CAPTURE:
        code = _require_code(process)
        error = last.output.compilation_error
        if error is not None:
            if fixes_since_evaluation(process) >= max_fix_attempts:
                return _give_up_fixing(process, max_fix_attempts, error.message)
            return Run(
                StepKind.FIX,
                FixInput(
                    prompt=process.prompt,
                    code=code,
                    error_message=error.message,
                    error_detail=error.detail,
                ),
            )
        return Run(
            StepKind.EVALUATION,
            EvaluationInput(
                prompt=process.prompt,
                code=code,
                screenshots=last.output.screenshots,
            ),
        )

    # Last step is a completed evaluation.
    score = last.output.score
    iterations = iteration_count(process)
    config = process.config
    if score >= config.target_score or iterations >= config.max_iterations:
        best = best_evaluation(process) or last
        return Complete(
            reason="target_score" if score >= config.target_score else "max_iterations",
            final_code=last.input.code,
            final_score=score,
            best_code=best.input.code,
            best_score=best.output.score,
            iterations=iterations,
        )
    return Run(
        StepKind.IMPROVEMENT,
        ImprovementInput(
            prompt=process.prompt,
            code=last.input.code,
            feedback=last.output.feedback,
            screenshots=last.input.screenshots,
        ),
    )


def _give_up_fixing(process: Process, attempts: int, error: str) -> Plan:
    """Stop after ``attempts`` fixes that did not compile.

    The best earlier evaluation becomes the result; without one there is
    nothing to return and the process fails.
    """
    best = best_evaluation(process)
    if best is None:
        return Abandon(
            f"Shader still fails to compile after {attempts} fix attempts: {error}"
        )
    return Complete(
        reason="fix_attempts",
        final_code=best.input.code,
        final_score=best.output.score,
        best_code=best.input.code,
        best_score=best.output.score,
        iterations=iteration_count(process),
    )
