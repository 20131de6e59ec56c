"""Append-only feed of process state changes for polling clients."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from .contracts import (
    HALTED_STATUSES,
    STATUS_FOR_KIND,
    ProcessResult,
    ProcessStatus,
    StepKind,
    StepProgress,
)
from .persistence import ProcessRepository, ProcessUpdate


class ProcessUpdateLog:
    """Write and read :class:`ProcessUpdate` events through the repository."""

    def __init__(self, repository: ProcessRepository) -> None:
        self._repository = repository

    async def emit(
        self,
        process_id: str,
        status: ProcessStatus,
        *,
        current_step: Optional[StepKind] = None,
        message: Optional[str] = None,
        progress: int = 0,
        new_step_id: Optional[str] = None,
        result: Optional[ProcessResult] = None,
        error: Optional[str] = None,
    ) -> Optional[ProcessUpdate]:
        """Append an event; ``None`` when the process no longer exists."""
        step_progress = (
            StepProgress(message=message, progress=progress) if message else None
        )
        return await self._repository.append_update(
            ProcessUpdate(
                process_id=process_id,
                status=status,
                current_step=current_step,
                step_progress=step_progress,
                new_step_id=new_step_id,
                result=result,
                error=error,
            )
        )

    async def step_progress(
        self,
        process_id: str,
        kind: StepKind,
        message: str,
        progress: int,
        new_step_id: Optional[str] = None,
    ) -> Optional[ProcessUpdate]:
        """Report progress of a step.

        A step that finishes after its process was paused or stopped reports
        the halted status instead of the step's working status.
        """
        status = STATUS_FOR_KIND[kind]
        process = await self._repository.get_process(process_id)
        if process is not None and process.status in HALTED_STATUSES:
            status = process.status
        return await self.emit(
            process_id,
            status,
            current_step=kind,
            message=message,
            progress=progress,
            new_step_id=new_step_id,
        )

    async def since(
        self, process_id: str, since: Optional[datetime] = None
    ) -> list[ProcessUpdate]:
        return await self._repository.list_updates(process_id, since)
