"""In-memory implementation of the process repository."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Dict, List, Optional

from ..contracts import (
    AIInteraction,
    ProcessConfig,
    ProcessResult,
    ProcessStatus,
    StepKind,
    StepStatus,
    as_utc,
    utcnow,
)
from ..errors import DuplicateIdError
from .models import (
    HistoryEvaluation,
    Process,
    ProcessPage,
    ProcessUpdate,
    PromptHistoryEntry,
    Step,
    check_step_update,
    next_event_time,
    parse_step_input,
    parse_step_output,
    summarize_steps,
)
from .repository import ProcessRepository


class InMemoryProcessRepository(ProcessRepository):
    """Store process state in local memory.

    Useful for tests or when no database is configured. Data is not
    persisted across process restarts. Every read hands out copies so that
    callers cannot change stored state without going through the API.
    """

    def __init__(self) -> None:
        self._processes: Dict[str, Process] = {}
        self._steps: Dict[str, Step] = {}
        self._step_order: Dict[str, List[str]] = {}
        self._updates: Dict[str, List[ProcessUpdate]] = {}
        self._update_id = 0
        self._history: Dict[str, PromptHistoryEntry] = {}

    # ------------------------------------------------------------------
    async def create_process(
        self,
        process_id: str,
        prompt: str,
        status: ProcessStatus,
        config: ProcessConfig,
    ) -> Process:
        if process_id in self._processes:
            raise DuplicateIdError("Process", process_id)
        now = utcnow()
        process = Process(
            id=process_id,
            prompt=prompt,
            status=status,
            config=config,
            steps=[],
            created_at=now,
            updated_at=now,
        )
        self._processes[process_id] = process
        self._step_order[process_id] = []
        self._updates[process_id] = []
        return process.model_copy(deep=True)

    async def update_process(
        self,
        process_id: str,
        *,
        status: Optional[ProcessStatus] = None,
        current_step: Optional[StepKind] = None,
        result: Optional[ProcessResult] = None,
        completed_at: Optional[datetime] = None,
        unless_status: Optional[Collection[ProcessStatus]] = None,
    ) -> bool:
        process = self._processes.get(process_id)
        if process is None:
            return False
        if unless_status and process.status in unless_status:
            return False
        process.updated_at = utcnow()
        if status is not None:
            process.status = status
        if current_step is not None:
            process.current_step = current_step
        if result is not None:
            process.result = result
        if completed_at is not None:
            process.completed_at = completed_at
        return True

    async def get_process(self, process_id: str) -> Process | None:
        process = self._processes.get(process_id)
        if process is None:
            return None
        return self._with_steps(process)

    async def list_processes(
        self, page: int = 1, limit: int = 20, include_steps: bool = False
    ) -> ProcessPage:
        # Insertion order breaks created_at ties, newest first.
        ordered = [
            p
            for _, p in sorted(
                enumerate(self._processes.values()),
                key=lambda item: (item[1].created_at, item[0]),
                reverse=True,
            )
        ]
        offset = (max(page, 1) - 1) * limit
        window = ordered[offset : offset + limit]
        items = []
        for process in window:
            if include_steps:
                items.append(summarize_steps(self._with_steps(process)))
            else:
                items.append(process.model_copy(update={"steps": None}, deep=True))
        return ProcessPage(items=items, total=len(ordered), page=page, limit=limit)

    async def list_processes_by_status(
        self, statuses: Collection[ProcessStatus]
    ) -> list[Process]:
        return [
            self._with_steps(p)
            for p in self._processes.values()
            if p.status in statuses
        ]

    async def delete_process(self, process_id: str) -> bool:
        if self._processes.pop(process_id, None) is None:
            return False
        for step_id in self._step_order.pop(process_id, []):
            self._steps.pop(step_id, None)
        self._updates.pop(process_id, None)
        return True

    # ------------------------------------------------------------------
    async def create_step(
        self,
        step_id: str,
        process_id: str,
        kind: StepKind,
        status: StepStatus,
        input: Any,
    ) -> Step | None:
        if step_id in self._steps:
            raise DuplicateIdError("Step", step_id)
        if process_id not in self._processes:
            return None
        step = Step(
            id=step_id,
            process_id=process_id,
            kind=kind,
            status=status,
            input=parse_step_input(kind, input) if input is not None else None,
            started_at=utcnow(),
        )
        self._steps[step_id] = step
        self._step_order[process_id].append(step_id)
        return step.model_copy(deep=True)

    async def update_step(
        self,
        step_id: str,
        *,
        status: Optional[StepStatus] = None,
        output: Any = None,
        error: Optional[str] = None,
        ai_interaction: Optional[AIInteraction] = None,
        completed_at: Optional[datetime] = None,
        duration: Optional[float] = None,
    ) -> bool:
        step = self._steps.get(step_id)
        if step is None:
            return False
        check_step_update(step, status, output, error)
        parsed = parse_step_output(step.kind, output) if output is not None else None
        if status is not None:
            step.status = status
        if parsed is not None:
            step.output = parsed
        if error is not None:
            step.error = error
        if ai_interaction is not None:
            step.ai_interaction = ai_interaction
        if completed_at is not None:
            step.completed_at = completed_at
        if duration is not None:
            step.duration = duration
        return True

    async def get_step(self, step_id: str) -> Step | None:
        step = self._steps.get(step_id)
        return step.model_copy(deep=True) if step else None

    async def find_running_step(
        self, process_id: str, kind: StepKind
    ) -> Step | None:
        for step_id in self._step_order.get(process_id, []):
            step = self._steps[step_id]
            if step.kind == kind and step.status == StepStatus.RUNNING:
                return step.model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    async def append_update(self, update: ProcessUpdate) -> ProcessUpdate | None:
        log = self._updates.get(update.process_id)
        if log is None:
            return None
        self._update_id += 1
        previous = log[-1].timestamp if log else None
        stored = update.model_copy(
            update={"id": self._update_id, "timestamp": next_event_time(previous)},
            deep=True,
        )
        log.append(stored)
        return stored.model_copy(deep=True)

    async def list_updates(
        self, process_id: str, since: Optional[datetime] = None
    ) -> list[ProcessUpdate]:
        return [
            u.model_copy(deep=True)
            for u in self._updates.get(process_id, [])
            if since is None or u.timestamp > as_utc(since)
        ]

    # ------------------------------------------------------------------
    async def save_prompt(self, entry: PromptHistoryEntry) -> PromptHistoryEntry:
        stored = entry.model_copy(
            update={"evaluation": None, "created_at": utcnow()}, deep=True
        )
        # Re-inserting keeps the dict in creation order.
        self._history.pop(entry.id, None)
        self._history[entry.id] = stored
        return stored.model_copy(deep=True)

    async def list_prompt_history(self, limit: int = 150) -> list[PromptHistoryEntry]:
        entries = sorted(
            enumerate(self._history.values()),
            key=lambda pair: (pair[1].created_at, pair[0]),
            reverse=True,
        )
        return [e.model_copy(deep=True) for _, e in entries[:limit]]

    async def get_prompt(self, entry_id: str) -> PromptHistoryEntry | None:
        entry = self._history.get(entry_id)
        return entry.model_copy(deep=True) if entry else None

    async def save_prompt_evaluation(
        self, entry_id: str, score: float, feedback: str
    ) -> bool:
        entry = self._history.get(entry_id)
        if entry is None:
            return False
        entry.evaluation = HistoryEvaluation(score=score, feedback=feedback)
        return True

    async def delete_prompt(self, entry_id: str) -> bool:
        return self._history.pop(entry_id, None) is not None

    # ------------------------------------------------------------------
    def _with_steps(self, process: Process) -> Process:
        steps = [
            self._steps[step_id].model_copy(deep=True)
            for step_id in self._step_order.get(process.id, [])
        ]
        return process.model_copy(update={"steps": steps}, deep=True)
