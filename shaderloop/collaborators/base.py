"""Contracts of the external services a process depends on."""

from __future__ import annotations

from typing import Optional, Protocol, Sequence

from pydantic import BaseModel, Field

from ..contracts import AIInteraction, CompilationError, EvaluationCriteria


class GeneratedCode(BaseModel):
    code: str
    interaction: Optional[AIInteraction] = None


class EvaluationResult(BaseModel):
    score: float
    feedback: str
    criteria: Optional[EvaluationCriteria] = None
    suggestions: list[str] = Field(default_factory=list)
    interaction: Optional[AIInteraction] = None


class CaptureResult(BaseModel):
    screenshots: list[str] = Field(default_factory=list)
    compilation_error: Optional[CompilationError] = None


class ShaderGenerator(Protocol):
    async def generate(self, prompt: str) -> GeneratedCode: ...


class ShaderEvaluator(Protocol):
    async def evaluate(
        self, prompt: str, code: str, images: Sequence[str]
    ) -> EvaluationResult: ...


class ShaderImprover(Protocol):
    async def improve(
        self, prompt: str, code: str, feedback: str, images: Sequence[str]
    ) -> GeneratedCode: ...


class ShaderFixer(Protocol):
    async def fix(
        self,
        prompt: str,
        code: str,
        error_message: str,
        error_detail: Optional[str] = None,
    ) -> GeneratedCode: ...


class CaptureService(Protocol):
    """Renders code at the given animation times.

    A shader that fails to compile is reported through
    ``CaptureResult.compilation_error`` rather than raised.
    """

    async def capture(
        self,
        code: str,
        time_values: Sequence[float],
        width: int,
        height: int,
    ) -> CaptureResult: ...


class ShaderStudio(
    ShaderGenerator, ShaderEvaluator, ShaderImprover, ShaderFixer, Protocol
):
    """Plays all four AI roles."""
