"""Exception hierarchy for shaderloop."""

from __future__ import annotations


class ShaderLoopError(Exception):
    """Base class for all shaderloop errors."""


class InvalidRequestError(ShaderLoopError):
    """Request rejected before any state was touched."""


class NotFoundError(ShaderLoopError):
    """Referenced entity does not exist."""


class ProcessNotFoundError(NotFoundError):
    def __init__(self, process_id: str) -> None:
        super().__init__(f"Process not found: {process_id}")
        self.process_id = process_id


class StepNotFoundError(NotFoundError):
    def __init__(self, step_id: str) -> None:
        super().__init__(f"Step not found: {step_id}")
        self.step_id = step_id


class DuplicateIdError(ShaderLoopError):
    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(f"{entity} already exists: {entity_id}")
        self.entity_id = entity_id


class InvalidTransitionError(ShaderLoopError):
    """Operation not allowed in the process's current status."""


class StepAlreadyRunningError(ShaderLoopError):
    def __init__(self, process_id: str, kind: str, step_id: str) -> None:
        super().__init__(
            f"A {kind} step ({step_id}) is already running for process {process_id}"
        )
        self.process_id = process_id
        self.kind = kind
        self.step_id = step_id


class StepStateError(ShaderLoopError):
    """Step mutation would break the output/error/status invariant."""


class CollaboratorError(ShaderLoopError):
    """External collaborator call failed."""


class EmptyOutputError(CollaboratorError):
    """Collaborator returned blank content."""


class CollaboratorTimeoutError(CollaboratorError):
    def __init__(self, kind: str, timeout: float) -> None:
        super().__init__(f"{kind} call timed out after {timeout:g}s")
        self.timeout = timeout


class NoCodeFoundError(ShaderLoopError):
    """No completed code step could be located for a capture."""
