"""shaderloop: durable generate-capture-evaluate-improve loops for AI shaders."""

from .config import ShaderLoopConfig, load_config
from .contracts import ProcessConfig, ProcessResult, ProcessStatus, StepKind, StepStatus
from .persistence import get_repository
from .presets import get_preset, list_presets
from .runner import ControlAction, ControlResult, ProcessRunner, ProcessSnapshot
from .transitions import plan_next

__version__ = "0.1.0"
__all__ = [
    "ControlAction",
    "ControlResult",
    "ProcessConfig",
    "ProcessResult",
    "ProcessRunner",
    "ProcessSnapshot",
    "ProcessStatus",
    "ShaderLoopConfig",
    "StepKind",
    "StepStatus",
    "get_preset",
    "get_repository",
    "list_presets",
    "load_config",
    "plan_next",
]
