"""External collaborators used by process steps."""

from .agents import AgentStudio, EvaluationReport, clean_shader_code
from .base import (
    CaptureResult,
    CaptureService,
    EvaluationResult,
    GeneratedCode,
    ShaderEvaluator,
    ShaderFixer,
    ShaderGenerator,
    ShaderImprover,
    ShaderStudio,
)
from .capture import HttpCaptureService

__all__ = [
    "AgentStudio",
    "CaptureResult",
    "CaptureService",
    "EvaluationReport",
    "EvaluationResult",
    "GeneratedCode",
    "HttpCaptureService",
    "ShaderEvaluator",
    "ShaderFixer",
    "ShaderGenerator",
    "ShaderImprover",
    "ShaderStudio",
    "clean_shader_code",
]
