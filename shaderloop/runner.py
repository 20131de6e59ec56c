"""Process runner: drives the shader state machine from persisted state."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Sequence, Union

from pydantic import BaseModel, Field

from .collaborators import AgentStudio, HttpCaptureService
from .collaborators.base import CaptureService, ShaderStudio
from .config import ShaderLoopConfig, load_config
from .contracts import (
    CODE_KINDS,
    HALTED_STATUSES,
    CaptureInput,
    CaptureOutput,
    CompilationError,
    CompletionInput,
    CompletionOutput,
    GenerationInput,
    ProcessConfig,
    ProcessResult,
    ProcessStatus,
    StepKind,
    StepStatus,
    as_utc,
    utcnow,
)
from .errors import (
    InvalidRequestError,
    InvalidTransitionError,
    NoCodeFoundError,
    ProcessNotFoundError,
    StepAlreadyRunningError,
    StepNotFoundError,
    StepStateError,
)
from .executors import (
    EXECUTOR_TYPES,
    StepExecutor,
    capture_message,
    complete_step,
    fail_step,
)
from .persistence import (
    Process,
    ProcessPage,
    ProcessRepository,
    ProcessUpdate,
    PromptHistoryEntry,
    Step,
    get_repository,
)
from .scheduler import ContinuationRegistry
from .transitions import (
    Abandon,
    AwaitCapture,
    Complete,
    Plan,
    Run,
    Wait,
    best_evaluation,
    latest_code,
    plan_next,
    status_for,
)
from .updates import ProcessUpdateLog
from .utils.retry import poll_until

logger = logging.getLogger(__name__)

# Statuses in which screenshots and server captures are refused.
_NOT_ACCEPTING = HALTED_STATUSES


class ControlAction(str, Enum):
    PAUSE = "pause"
    RESUME = "resume"
    STOP = "stop"
    RETRY = "retry"


class ControlResult(BaseModel):
    ok: bool
    message: str
    process: Optional[Process] = None


class ProcessSnapshot(BaseModel):
    process: Process
    updates: list[ProcessUpdate] = Field(default_factory=list)


class ProcessRunner:
    """Start, drive and control shader processes.

    Every decision is re-derived from the repository through
    :func:`~shaderloop.transitions.plan_next`, so a runner can be recreated at
    any time. Each process advances one step per continuation; continuations
    are scheduled on a :class:`ContinuationRegistry` and serialised by its
    per-process ``steps`` lock. Status writes skip halted processes so a late
    step result never revives a paused, stopped or failed process.
    """

    def __init__(
        self,
        repository: ProcessRepository,
        studio: ShaderStudio,
        capture_service: Optional[CaptureService] = None,
        config: Optional[ShaderLoopConfig] = None,
        registry: Optional[ContinuationRegistry] = None,
    ) -> None:
        self.repository = repository
        self.config = config or ShaderLoopConfig()
        self.capture_service = capture_service
        self.updates = ProcessUpdateLog(repository)
        self.registry = registry or ContinuationRegistry()
        # Steps persisted as running whose collaborator call has not started yet.
        self._begun: Dict[str, Step] = {}

        timeouts = self.config.runner
        self.executors: Dict[StepKind, StepExecutor] = {}
        for kind, executor_type in EXECUTOR_TYPES.items():
            if kind == StepKind.CAPTURE:
                if capture_service is None:
                    continue
                collaborator: Any = capture_service
                timeout = timeouts.capture_timeout
            else:
                collaborator = studio
                timeout = timeouts.collaborator_timeout
            self.executors[kind] = executor_type(
                collaborator, repository, self.updates, timeout=timeout
            )

    @classmethod
    def from_config(
        cls,
        config: Optional[ShaderLoopConfig] = None,
        repository: Optional[ProcessRepository] = None,
    ) -> "ProcessRunner":
        """Build a runner with pydantic-ai agents and the HTTP capture client."""
        config = config or load_config()
        if repository is None:
            repository = get_repository(config=config)
        studio = AgentStudio(config.llm, time_values=config.capture.time_values)
        capture = None
        if config.capture.url:
            capture = HttpCaptureService(
                config.capture.url, timeout=config.runner.capture_timeout
            )
        return cls(repository, studio, capture, config=config)

    # ------------------------------------------------------------------
    # Lifecycle

    async def start(
        self,
        prompt: str,
        config: Union[ProcessConfig, Mapping[str, Any], None] = None,
    ) -> str:
        """Create a process for ``prompt`` and schedule its first step."""
        if not prompt or not prompt.strip():
            raise InvalidRequestError("Prompt is required")
        if config is None:
            config = self.config.defaults.build()
        elif not isinstance(config, ProcessConfig):
            config = self.config.defaults.build(**dict(config))

        process_id = str(uuid.uuid4())
        await self.repository.create_process(
            process_id, prompt, ProcessStatus.CREATED, config
        )
        logger.info(
            f"Created process {process_id} (max_iterations={config.max_iterations}, "
            f"target_score={config.target_score:g}, auto_mode={config.auto_mode})"
        )
        await self.updates.emit(
            process_id, ProcessStatus.CREATED, message="Process created", progress=0
        )

        # The generation step exists before the caller sees the id, so a
        # capture opened right away always finds the code step it waits for.
        process = await self.repository.get_process(process_id)
        await self._enter(process, ProcessStatus.GENERATING, StepKind.GENERATION)
        step = await self.executors[StepKind.GENERATION].begin(
            process_id, GenerationInput(prompt=prompt)
        )
        self._begun[process_id] = step
        self._schedule(process_id)
        return process_id

    async def step_once(self, process_id: str) -> bool:
        """Advance ``process_id`` by one step; True when more work follows."""
        async with self.registry.lock(process_id):
            return await self._step(process_id)

    async def wait_idle(self, process_id: Optional[str] = None) -> None:
        await self.registry.wait_idle(process_id)

    async def shutdown(self) -> None:
        await self.registry.shutdown()

    def _schedule(self, process_id: str, delay: float = 0.0) -> None:
        self.registry.schedule(process_id, lambda: self._drive(process_id), delay)

    async def _drive(self, process_id: str) -> None:
        async with self.registry.lock(process_id):
            try:
                more = await self._step(process_id)
            except Exception:
                # Already logged and recorded as a process failure by _step.
                return
        if more:
            self._schedule(process_id)

    async def _step(self, process_id: str) -> bool:
        try:
            return await self._advance(process_id)
        except StepAlreadyRunningError as exc:
            logger.warning(f"Process {process_id}: {exc}")
            return False
        except Exception as exc:
            if await self.repository.get_process(process_id) is None:
                logger.warning(f"Process {process_id} was deleted during a step: {exc}")
                return False
            await self._fail(process_id, exc)
            raise

    def _plan(self, process: Process) -> Plan:
        return plan_next(process, self.config.runner.max_fix_attempts)

    async def _advance(self, process_id: str) -> bool:
        process = await self.repository.get_process(process_id)
        if process is None:
            self._begun.pop(process_id, None)
            logger.warning(f"Process {process_id} disappeared; stopping")
            return False
        if process.status in HALTED_STATUSES:
            logger.info(f"Process {process_id} is {process.status.value}; not advancing")
            return False

        begun = self._begun.pop(process_id, None)
        if begun is not None:
            await self.executors[begun.kind].run(process_id, begun)
            return True

        plan = self._plan(process)
        if isinstance(plan, Wait):
            await self._enter(process, plan.status, plan.step.kind)
            return False
        if isinstance(plan, Complete):
            await self._complete(process, plan)
            return False
        if isinstance(plan, Abandon):
            await self._fail(process_id, plan.error)
            return False
        if isinstance(plan, AwaitCapture):
            return await self._await_capture(process, plan)

        if not await self._enter(process, status_for(plan), plan.kind):
            return False
        await self.executors[plan.kind].execute(process_id, plan.input)
        return True

    async def _await_capture(self, process: Process, plan: AwaitCapture) -> bool:
        previous = process.status
        if not await self._enter(process, ProcessStatus.CAPTURING, StepKind.CAPTURE):
            return False
        if self._server_capture_enabled(process):
            await self._run_capture(process, plan.code)
            return True
        if previous != ProcessStatus.CAPTURING:
            logger.info(f"Process {process.id} waiting for screenshots")
            await self.updates.emit(
                process.id,
                ProcessStatus.CAPTURING,
                current_step=StepKind.CAPTURE,
                message="Waiting for screenshots",
                progress=0,
            )
        return False

    def _server_capture_enabled(self, process: Process) -> bool:
        return (
            process.config.auto_mode
            and process.config.server_capture
            and StepKind.CAPTURE in self.executors
        )

    async def _run_capture(self, process: Process, code: str) -> Step:
        executor = self.executors[StepKind.CAPTURE]
        async with self.registry.lock(process.id, "capture"):
            step = await executor.begin(process.id, self._capture_input(code, "server"))
        return await executor.run(process.id, step)

    def _capture_input(self, code: Optional[str], source: str) -> CaptureInput:
        capture = self.config.capture
        return CaptureInput(
            code=code,
            source=source,
            time_values=capture.time_values,
            width=capture.width,
            height=capture.height,
        )

    async def _enter(
        self, process: Process, status: ProcessStatus, kind: Optional[StepKind]
    ) -> bool:
        """Move ``process`` to ``status``; False if it was halted meanwhile."""
        if process.status == status and process.current_step == kind:
            return True
        applied = await self.repository.update_process(
            process.id,
            status=status,
            current_step=kind,
            unless_status=HALTED_STATUSES,
        )
        if not applied:
            logger.info(f"Process {process.id} was halted; not entering {status.value}")
            return False
        logger.info(f"Process {process.id}: {process.status.value} -> {status.value}")
        process.status = status
        process.current_step = kind
        return True

    async def _complete(self, process: Process, plan: Complete) -> None:
        completed_at = utcnow()
        result = ProcessResult(
            final_code=plan.final_code,
            final_score=plan.final_score,
            best_code=plan.best_code,
            best_score=plan.best_score,
            total_iterations=plan.iterations,
            total_duration=(completed_at - as_utc(process.created_at)).total_seconds(),
        )
        applied = await self.repository.update_process(
            process.id,
            status=ProcessStatus.COMPLETED,
            current_step=StepKind.COMPLETION,
            result=result,
            completed_at=completed_at,
            unless_status=HALTED_STATUSES,
        )
        if not applied:
            logger.info(f"Process {process.id} was halted before completion")
            return

        step = await self.repository.create_step(
            str(uuid.uuid4()),
            process.id,
            StepKind.COMPLETION,
            StepStatus.RUNNING,
            CompletionInput(reason=plan.reason),
        )
        if step is None:
            logger.warning(f"Process {process.id} was deleted while completing")
            return
        await complete_step(self.repository, step, CompletionOutput(result=result))
        logger.info(
            f"Process {process.id} completed ({plan.reason}) with score "
            f"{plan.final_score:g}/100 after {plan.iterations} iterations"
        )
        await self.updates.emit(
            process.id,
            ProcessStatus.COMPLETED,
            current_step=StepKind.COMPLETION,
            message=f"Process completed with score {plan.final_score:g}/100",
            progress=100,
            result=result,
        )
        if self.config.runner.record_history:
            try:
                await self.save_to_history(process.id)
            except ProcessNotFoundError:
                logger.warning(f"Process {process.id} was deleted before it was recorded")

    async def _fail(self, process_id: str, exc: Union[BaseException, str]) -> None:
        message = exc if isinstance(exc, str) else str(exc) or type(exc).__name__
        logger.error(f"Process {process_id} failed: {message}")
        applied = await self.repository.update_process(
            process_id, status=ProcessStatus.FAILED, unless_status=HALTED_STATUSES
        )
        if applied:
            await self.updates.emit(
                process_id, ProcessStatus.FAILED, message="Process failed", error=message
            )

    # ------------------------------------------------------------------
    # Queries

    async def get(
        self, process_id: str, since: Optional[datetime] = None
    ) -> Optional[ProcessSnapshot]:
        """Process with its steps plus the updates newer than ``since``."""
        process = await self.repository.get_process(process_id)
        if process is None:
            return None
        updates = await self.updates.since(process_id, since)
        return ProcessSnapshot(process=process, updates=updates)

    async def list(
        self, page: int = 1, limit: int = 20, include_steps: bool = False
    ) -> ProcessPage:
        if page < 1 or limit < 1:
            raise InvalidRequestError("page and limit must be positive")
        return await self.repository.list_processes(
            page=page, limit=limit, include_steps=include_steps
        )

    async def delete(self, process_id: str) -> bool:
        self.registry.cancel(process_id)
        self._begun.pop(process_id, None)
        deleted = await self.repository.delete_process(process_id)
        if deleted:
            logger.info(f"Deleted process {process_id}")
        return deleted

    # ------------------------------------------------------------------
    # Prompt history

    async def save_to_history(self, process_id: str) -> PromptHistoryEntry:
        """Record the best shader of a process in the prompt history.

        The entry takes the process id, so saving again replaces it. When the
        process has been evaluated the best evaluation is attached; otherwise
        the latest code is saved without one.
        """
        process = await self.repository.get_process(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)
        best = best_evaluation(process)
        if best is not None:
            code, screenshots = best.input.code, best.input.screenshots
        else:
            code, screenshots = latest_code(process), []
            if code is None:
                raise NoCodeFoundError(f"No code found for process {process_id}")

        entry = await self.repository.save_prompt(
            PromptHistoryEntry(
                id=process.id,
                prompt=process.prompt,
                code=code,
                screenshots=screenshots,
            )
        )
        if best is not None:
            await self.repository.save_prompt_evaluation(
                entry.id, best.output.score, best.output.feedback
            )
            entry = await self.repository.get_prompt(entry.id) or entry
        logger.info(f"Saved process {process_id} to prompt history")
        return entry

    # ------------------------------------------------------------------
    # Control surface

    async def control(
        self, process_id: str, action: Union[ControlAction, str]
    ) -> ControlResult:
        try:
            action = ControlAction(action)
        except ValueError as exc:
            raise InvalidRequestError(f"Unknown control action: {action}") from exc
        handler = {
            ControlAction.PAUSE: self.pause,
            ControlAction.RESUME: self.resume,
            ControlAction.STOP: self.stop,
            ControlAction.RETRY: self.retry,
        }[action]
        return await handler(process_id)

    async def pause(self, process_id: str) -> ControlResult:
        process = await self.repository.get_process(process_id)
        if process is None:
            return ControlResult(ok=False, message="Process not found")
        if process.status in (ProcessStatus.COMPLETED, ProcessStatus.FAILED):
            return ControlResult(
                ok=False,
                message=f"Cannot pause a {process.status.value} process",
                process=process,
            )
        self.registry.cancel(process_id)
        if process.status != ProcessStatus.PAUSED:
            applied = await self.repository.update_process(
                process_id,
                status=ProcessStatus.PAUSED,
                unless_status={ProcessStatus.COMPLETED, ProcessStatus.FAILED},
            )
            if not applied:
                return ControlResult(
                    ok=False,
                    message="Process finished before it could be paused",
                    process=await self.repository.get_process(process_id),
                )
            logger.info(f"Paused process {process_id} ({process.status.value})")
            await self.updates.emit(
                process_id,
                ProcessStatus.PAUSED,
                current_step=process.current_step,
                message="Process paused",
            )
        return ControlResult(
            ok=True,
            message="Process paused",
            process=await self.repository.get_process(process_id),
        )

    async def resume(self, process_id: str) -> ControlResult:
        process = await self.repository.get_process(process_id)
        if process is None:
            return ControlResult(ok=False, message="Process not found")
        if process.status != ProcessStatus.PAUSED:
            return ControlResult(
                ok=False, message="Process is not paused", process=process
            )
        return await self._redrive(process, "resumed")

    async def retry(self, process_id: str) -> ControlResult:
        """Re-drive a failed (or paused) process from its persisted steps."""
        process = await self.repository.get_process(process_id)
        if process is None:
            return ControlResult(ok=False, message="Process not found")
        if process.status not in (ProcessStatus.FAILED, ProcessStatus.PAUSED):
            return ControlResult(
                ok=False,
                message=f"Cannot retry a {process.status.value} process",
                process=process,
            )
        return await self._redrive(process, "retried")

    async def _redrive(self, process: Process, verb: str) -> ControlResult:
        try:
            plan = self._plan(process)
        except NoCodeFoundError as exc:
            return ControlResult(ok=False, message=str(exc), process=process)
        if isinstance(plan, Abandon):
            return ControlResult(ok=False, message=plan.error, process=process)
        status = status_for(plan)
        applied = await self.repository.update_process(
            process.id,
            status=status,
            current_step=_kind_of(plan),
            unless_status={ProcessStatus.COMPLETED},
        )
        if not applied:
            return ControlResult(
                ok=False,
                message="Process completed meanwhile",
                process=await self.repository.get_process(process.id),
            )
        logger.info(f"Process {process.id} {verb} into {status.value}")
        await self.updates.emit(
            process.id,
            status,
            current_step=_kind_of(plan),
            message=f"Process {verb}",
        )
        self._schedule(process.id)
        return ControlResult(
            ok=True,
            message=f"Process {verb}",
            process=await self.repository.get_process(process.id),
        )

    async def stop(self, process_id: str) -> ControlResult:
        process = await self.repository.get_process(process_id)
        if process is None:
            return ControlResult(ok=False, message="Process not found")
        self.registry.cancel(process_id)
        if process.status == ProcessStatus.COMPLETED:
            return ControlResult(
                ok=True, message="Process already completed", process=process
            )
        begun = self._begun.pop(process_id, None)
        if begun is not None:
            await fail_step(self.repository, begun, "Process stopped")
        await self.repository.update_process(
            process_id,
            status=ProcessStatus.COMPLETED,
            completed_at=utcnow(),
            unless_status={ProcessStatus.COMPLETED},
        )
        logger.info(f"Stopped process {process_id} ({process.status.value})")
        await self.updates.emit(
            process_id, ProcessStatus.COMPLETED, message="Process stopped", progress=100
        )
        return ControlResult(
            ok=True,
            message="Process stopped",
            process=await self.repository.get_process(process_id),
        )

    # ------------------------------------------------------------------
    # Capture hand-off

    async def create_capture_step(self, process_id: str) -> str:
        """Open a client capture step, or return the one already running."""
        process = await self.repository.get_process(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)
        if process.status in (ProcessStatus.COMPLETED, ProcessStatus.FAILED):
            raise InvalidTransitionError(
                f"Process {process_id} is {process.status.value}"
            )
        async with self.registry.lock(process_id, "capture"):
            existing = await self.repository.find_running_step(
                process_id, StepKind.CAPTURE
            )
            if existing is not None:
                logger.info(
                    f"Capture step {existing.id} already running for process {process_id}"
                )
                return existing.id
            step = await self.repository.create_step(
                str(uuid.uuid4()),
                process_id,
                StepKind.CAPTURE,
                StepStatus.RUNNING,
                self._capture_input(latest_code(process), "client"),
            )
            if step is None:
                raise ProcessNotFoundError(process_id)
        logger.info(f"Created capture step {step.id} for process {process_id}")
        await self.updates.emit(
            process_id,
            process.status,
            current_step=StepKind.CAPTURE,
            message="Waiting for client screenshots",
            new_step_id=step.id,
        )
        return step.id

    async def submit_screenshots(
        self,
        process_id: str,
        step_id: str,
        screenshots: Sequence[str],
        compilation_error: Union[CompilationError, Mapping[str, Any], None] = None,
    ) -> None:
        """Complete a client capture step and continue the process.

        When the code step the capture belongs to is still running, the call
        waits for it using the configured bounded retry and raises
        :class:`NoCodeFoundError` if no code shows up.
        """
        if not step_id:
            raise InvalidRequestError("Step id is required")
        if compilation_error is not None and not isinstance(
            compilation_error, CompilationError
        ):
            compilation_error = CompilationError(**dict(compilation_error))
        if compilation_error is None and not screenshots:
            raise InvalidRequestError(
                "Screenshots are required when there is no compilation error"
            )

        process = await self._accepting_process(process_id)
        self._capture_step(process, step_id)
        await self._wait_for_code(process_id)

        async with self.registry.lock(process_id):
            process = await self._accepting_process(process_id)
            step = self._capture_step(process, step_id)
            output = CaptureOutput(
                screenshots=list(screenshots), compilation_error=compilation_error
            )
            await complete_step(self.repository, step, output)
            logger.info(
                f"Capture step {step_id} of process {process_id} completed by client "
                f"({len(output.screenshots)} screenshots"
                f"{', compilation error' if compilation_error else ''})"
            )
            await self.updates.step_progress(
                process_id,
                StepKind.CAPTURE,
                capture_message(output),
                100,
            )
            more = await self._step(process_id)
        if more:
            self._schedule(process_id)

    async def trigger_server_capture(self, process_id: str) -> int:
        """Capture the latest code on the server; returns the screenshot count."""
        if StepKind.CAPTURE not in self.executors:
            raise InvalidRequestError("No capture service is configured")
        await self._accepting_process(process_id)

        async with self.registry.lock(process_id):
            process = await self._accepting_process(process_id)
            plan = self._plan(process)
            if isinstance(plan, Wait):
                raise InvalidTransitionError(
                    f"A {plan.step.kind.value} step is still running for process "
                    f"{process_id}"
                )
            if not isinstance(plan, AwaitCapture):
                raise InvalidTransitionError(
                    f"Process {process_id} is not waiting for a capture"
                )
            if not await self._enter(process, ProcessStatus.CAPTURING, StepKind.CAPTURE):
                raise InvalidTransitionError(f"Process {process_id} was halted")
            try:
                step = await self._run_capture(process, plan.code)
            except StepAlreadyRunningError:
                raise
            except Exception as exc:
                await self._fail(process_id, exc)
                raise
        self._schedule(process_id)
        return len(step.output.screenshots)

    async def _accepting_process(self, process_id: str) -> Process:
        process = await self.repository.get_process(process_id)
        if process is None:
            raise ProcessNotFoundError(process_id)
        if process.status in _NOT_ACCEPTING:
            raise InvalidTransitionError(
                f"Process {process_id} is {process.status.value}"
            )
        return process

    @staticmethod
    def _capture_step(process: Process, step_id: str) -> Step:
        step = process.find_step(step_id)
        if step is None:
            raise StepNotFoundError(step_id)
        if step.kind != StepKind.CAPTURE:
            raise InvalidRequestError(f"Step {step_id} is not a capture step")
        if step.finished:
            raise StepStateError(f"Capture step {step_id} is already {step.status.value}")
        return step

    async def _wait_for_code(self, process_id: str) -> Process:
        runner_config = self.config.runner

        async def check() -> Optional[Process]:
            process = await self.repository.get_process(process_id)
            if process is None:
                raise ProcessNotFoundError(process_id)
            if any(s.status == StepStatus.RUNNING for s in process.steps_of(*CODE_KINDS)):
                logger.debug(f"Process {process_id}: waiting for code step to finish")
                return None
            if latest_code(process) is None:
                raise NoCodeFoundError(f"No code found for process {process_id}")
            return process

        process = await poll_until(
            check, runner_config.code_wait_attempts, runner_config.code_wait_delay
        )
        if process is None:
            logger.error(
                f"Process {process_id}: code step still running after "
                f"{runner_config.code_wait_attempts} attempts"
            )
            raise NoCodeFoundError(
                f"No code found for process {process_id}: code step did not finish"
            )
        return process

    # ------------------------------------------------------------------
    # Restart recovery

    async def recover(self) -> Dict[str, str]:
        """Reconcile processes left unfinished by a previous run.

        Server-side steps that were in flight are marked failed. Client
        capture steps keep waiting and paused processes stay paused. Other
        interrupted processes are failed or re-driven depending on
        ``runner.recovery_policy``. Returns the action taken per process id.
        """
        policy = self.config.runner.recovery_policy
        unfinished = [s for s in ProcessStatus if s not in HALTED_STATUSES]
        candidates = await self.repository.list_processes_by_status(
            unfinished + [ProcessStatus.PAUSED]
        )
        actions: Dict[str, str] = {}
        for process in candidates:
            interrupted = [
                s
                for s in process.steps or []
                if s.status == StepStatus.RUNNING
                and not (s.kind == StepKind.CAPTURE and s.input is not None
                         and s.input.source == "client")
            ]
            for step in interrupted:
                await fail_step(self.repository, step, "Interrupted by restart")
                logger.warning(
                    f"Marked interrupted {step.kind.value} step {step.id} of process "
                    f"{process.id} as failed"
                )

            if process.status == ProcessStatus.PAUSED:
                actions[process.id] = "paused"
                continue

            refreshed = await self.repository.get_process(process.id)
            try:
                plan = self._plan(refreshed)
            except NoCodeFoundError as exc:
                await self._fail(process.id, exc)
                actions[process.id] = "failed"
                continue
            waiting = isinstance(plan, Wait) or (
                isinstance(plan, AwaitCapture)
                and not self._server_capture_enabled(refreshed)
            )
            if waiting and not interrupted:
                actions[process.id] = "waiting"
            elif policy == "resume":
                self._schedule(process.id)
                actions[process.id] = "resumed"
            else:
                await self._fail(
                    process.id, RuntimeError("Interrupted by restart")
                )
                actions[process.id] = "failed"
            logger.info(f"Recovery: process {process.id} {actions[process.id]}")
        return actions


def _kind_of(plan: Plan) -> Optional[StepKind]:
    if isinstance(plan, Run):
        return plan.kind
    if isinstance(plan, Wait):
        return plan.step.kind
    if isinstance(plan, AwaitCapture):
        return StepKind.CAPTURE
    return None

