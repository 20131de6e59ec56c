"""Step executors: one per step kind, selected through :data:`EXECUTOR_TYPES`."""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from typing import Any, ClassVar, Dict, Optional, Tuple, Type

from .collaborators.base import (
    CaptureService,
    ShaderEvaluator,
    ShaderFixer,
    ShaderGenerator,
    ShaderImprover,
)
from .contracts import (
    AIInteraction,
    CaptureInput,
    CaptureOutput,
    EvaluationInput,
    EvaluationOutput,
    FixInput,
    FixOutput,
    GenerationInput,
    GenerationOutput,
    ImprovementInput,
    ImprovementOutput,
    StepKind,
    StepStatus,
    as_utc,
    utcnow,
)
from .errors import (
    CollaboratorTimeoutError,
    ProcessNotFoundError,
    StepAlreadyRunningError,
)
from .persistence import ProcessRepository, Step
from .updates import ProcessUpdateLog

logger = logging.getLogger(__name__)

StepResult = Tuple[Any, Optional[AIInteraction]]


async def complete_step(
    repository: ProcessRepository,
    step: Step,
    output: Any,
    ai_interaction: Optional[AIInteraction] = None,
) -> Step:
    """Mark ``step`` completed with ``output`` and its duration in seconds."""
    completed_at = utcnow()
    duration = (completed_at - as_utc(step.started_at)).total_seconds()
    await repository.update_step(
        step.id,
        status=StepStatus.COMPLETED,
        output=output,
        ai_interaction=ai_interaction,
        completed_at=completed_at,
        duration=duration,
    )
    return step.model_copy(
        update={
            "status": StepStatus.COMPLETED,
            "output": output,
            "ai_interaction": ai_interaction,
            "completed_at": completed_at,
            "duration": duration,
        }
    )


def capture_message(output: CaptureOutput) -> str:
    if output.compilation_error is not None:
        return f"Compilation error: {output.compilation_error.message}"
    return f"Captured {len(output.screenshots)} screenshots"


async def fail_step(repository: ProcessRepository, step: Step, error: str) -> None:
    completed_at = utcnow()
    await repository.update_step(
        step.id,
        status=StepStatus.FAILED,
        error=error or "Unknown error",
        completed_at=completed_at,
        duration=(completed_at - as_utc(step.started_at)).total_seconds(),
    )


class StepExecutor(ABC):
    """Run one step kind against its collaborator.

    ``execute`` creates the running step, reports progress, calls
    :meth:`perform` under a timeout and persists the outcome. A failure marks
    the step failed and is re-raised for the runner to decide on.
    """

    kind: ClassVar[StepKind]
    start_message: ClassVar[str]
    start_progress: ClassVar[int] = 20
    done_message: ClassVar[str]

    def __init__(
        self,
        repository: ProcessRepository,
        updates: ProcessUpdateLog,
        timeout: Optional[float] = None,
    ) -> None:
        self._repository = repository
        self._updates = updates
        self.timeout = timeout

    @abstractmethod
    async def perform(self, step_input: Any) -> StepResult:
        """Call the collaborator and return ``(output, ai_interaction)``."""

    def describe(self, output: Any) -> str:
        return self.done_message

    async def execute(self, process_id: str, step_input: Any) -> Step:
        step = await self.begin(process_id, step_input)
        return await self.run(process_id, step)

    async def begin(self, process_id: str, step_input: Any) -> Step:
        """Create the running step, refusing a second one of the same kind."""
        running = await self._repository.find_running_step(process_id, self.kind)
        if running is not None:
            raise StepAlreadyRunningError(process_id, self.kind.value, running.id)

        step = await self._repository.create_step(
            str(uuid.uuid4()), process_id, self.kind, StepStatus.RUNNING, step_input
        )
        if step is None:
            raise ProcessNotFoundError(process_id)
        logger.info(f"Started {self.kind.value} step {step.id} for process {process_id}")
        await self._updates.step_progress(
            process_id,
            self.kind,
            self.start_message,
            self.start_progress,
            new_step_id=step.id,
        )
        return step

    async def run(self, process_id: str, step: Step) -> Step:
        try:
            output, interaction = await asyncio.wait_for(
                self.perform(step.input), timeout=self.timeout
            )
        except asyncio.TimeoutError as exc:
            error = CollaboratorTimeoutError(self.kind.value, self.timeout or 0)
            await self._record_failure(process_id, step, str(error))
            raise error from exc
        except Exception as exc:
            await self._record_failure(process_id, step, str(exc))
            raise

        step = await complete_step(self._repository, step, output, interaction)
        logger.info(
            f"Completed {self.kind.value} step {step.id} for process {process_id} "
            f"in {step.duration:.2f}s"
        )
        await self._updates.step_progress(
            process_id, self.kind, self.describe(output), 100
        )
        return step

    async def _record_failure(self, process_id: str, step: Step, error: str) -> None:
        logger.error(
            f"{self.kind.value} step {step.id} failed for process {process_id}: {error}"
        )
        await fail_step(self._repository, step, error)


class GenerationExecutor(StepExecutor):
    kind = StepKind.GENERATION
    start_message = "Generating shader code..."
    start_progress = 30
    done_message = "Shader generated. Ready for capture."

    def __init__(self, generator: ShaderGenerator, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._generator = generator

    async def perform(self, step_input: GenerationInput) -> StepResult:
        result = await self._generator.generate(step_input.prompt)
        return GenerationOutput(code=result.code), result.interaction


class CaptureExecutor(StepExecutor):
    kind = StepKind.CAPTURE
    start_message = "Capturing screenshots on server..."
    done_message = "Capture finished"

    def __init__(self, service: CaptureService, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._service = service

    def describe(self, output: CaptureOutput) -> str:
        return capture_message(output)

    async def perform(self, step_input: CaptureInput) -> StepResult:
        result = await self._service.capture(
            step_input.code or "",
            step_input.time_values,
            step_input.width,
            step_input.height,
        )
        return (
            CaptureOutput(
                screenshots=result.screenshots,
                compilation_error=result.compilation_error,
            ),
            None,
        )


class EvaluationExecutor(StepExecutor):
    kind = StepKind.EVALUATION
    start_message = "Evaluating shader..."
    start_progress = 10

    def __init__(self, evaluator: ShaderEvaluator, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._evaluator = evaluator

    def describe(self, output: EvaluationOutput) -> str:
        return f"Evaluation complete: {output.score:g}/100"

    async def perform(self, step_input: EvaluationInput) -> StepResult:
        result = await self._evaluator.evaluate(
            step_input.prompt, step_input.code, step_input.screenshots
        )
        # EvaluationOutput clamps the score into [0, 100].
        output = EvaluationOutput(
            score=result.score,
            feedback=result.feedback,
            criteria=result.criteria,
            suggestions=result.suggestions,
        )
        return output, result.interaction


class ImprovementExecutor(StepExecutor):
    kind = StepKind.IMPROVEMENT
    start_message = "Improving shader based on feedback..."
    done_message = "Shader improved. Ready for capture."

    def __init__(self, improver: ShaderImprover, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._improver = improver

    async def perform(self, step_input: ImprovementInput) -> StepResult:
        result = await self._improver.improve(
            step_input.prompt,
            step_input.code,
            step_input.feedback,
            step_input.screenshots,
        )
        return ImprovementOutput(code=result.code), result.interaction


class FixExecutor(StepExecutor):
    kind = StepKind.FIX
    start_message = "Fixing compilation error..."
    done_message = "Shader fixed. Ready for capture."

    def __init__(self, fixer: ShaderFixer, *args: Any, **kwargs: Any) -> None:
        super().__init__(*args, **kwargs)
        self._fixer = fixer

    async def perform(self, step_input: FixInput) -> StepResult:
        result = await self._fixer.fix(
            step_input.prompt,
            step_input.code,
            step_input.error_message,
            step_input.error_detail,
        )
        return FixOutput(code=result.code), result.interaction


EXECUTOR_TYPES: Dict[StepKind, Type[StepExecutor]] = {
    cls.kind: cls
    for cls in (
        GenerationExecutor,
        CaptureExecutor,
        EvaluationExecutor,
        ImprovementExecutor,
        FixExecutor,
    )
}
