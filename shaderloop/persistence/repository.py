"""Repository abstraction for process state persistence."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Collection, Optional, Protocol

from ..contracts import (
    AIInteraction,
    ProcessConfig,
    ProcessResult,
    ProcessStatus,
    StepKind,
    StepStatus,
)
from .models import (
    Process,
    ProcessPage,
    ProcessUpdate,
    PromptHistoryEntry,
    Step,
)


class ProcessRepository(Protocol):
    """Protocol for process state persistence backends.

    Operations that reference a missing id return ``None``/``False``;
    structural problems (bad payloads, broken step lifecycle, storage
    failures) raise.
    """

    async def create_process(
        self,
        process_id: str,
        prompt: str,
        status: ProcessStatus,
        config: ProcessConfig,
    ) -> Process:
        """Insert a new process. Raises ``DuplicateIdError``."""

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
        """Apply a partial update and bump ``updated_at``.

        When ``unless_status`` is given the update is skipped if the process
        currently holds one of those statuses.
        """

    async def get_process(self, process_id: str) -> Process | None:
        """Return the process with its steps in start order."""

    async def list_processes(
        self, page: int = 1, limit: int = 20, include_steps: bool = False
    ) -> ProcessPage:
        """Newest-first page of processes."""

    async def list_processes_by_status(
        self, statuses: Collection[ProcessStatus]
    ) -> list[Process]:
        """All processes in one of ``statuses``, steps included."""

    async def delete_process(self, process_id: str) -> bool:
        """Delete a process together with its steps and updates."""

    async def create_step(
        self,
        step_id: str,
        process_id: str,
        kind: StepKind,
        status: StepStatus,
        input: Any,
    ) -> Step | None:
        """Insert a step; ``None`` when the process does not exist.

        Raises ``DuplicateIdError``.
        """

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
        """Apply a partial step update. Raises ``StepStateError``."""

    async def get_step(self, step_id: str) -> Step | None:
        """Return a single step."""

    async def find_running_step(
        self, process_id: str, kind: StepKind
    ) -> Step | None:
        """Return the running step of ``kind`` for the process, if any."""

    async def append_update(self, update: ProcessUpdate) -> ProcessUpdate | None:
        """Append to the update log, returning the stored event.

        Returns ``None`` without writing when the process does not exist.
        """

    async def list_updates(
        self, process_id: str, since: Optional[datetime] = None
    ) -> list[ProcessUpdate]:
        """Updates in ascending time order, strictly after ``since``."""

    async def save_prompt(self, entry: PromptHistoryEntry) -> PromptHistoryEntry:
        """Insert or replace a prompt history entry.

        Replacing an entry drops its evaluation and resets ``created_at``.
        """

    async def list_prompt_history(self, limit: int = 150) -> list[PromptHistoryEntry]:
        """Newest-first prompt history entries."""

    async def get_prompt(self, entry_id: str) -> PromptHistoryEntry | None:
        """Return a single prompt history entry."""

    async def save_prompt_evaluation(
        self, entry_id: str, score: float, feedback: str
    ) -> bool:
        """Attach an evaluation to an entry, stamping ``evaluated_at``."""

    async def delete_prompt(self, entry_id: str) -> bool:
        """Delete a prompt history entry."""
