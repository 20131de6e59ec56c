"""pydantic-ai backed shader generator, evaluator, improver and fixer."""

from __future__ import annotations

import base64
import logging
import re
import time
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field
from pydantic_ai import Agent, BinaryContent, RunContext
from pydantic_ai.models import Model

from ..config import LLMConfig
from ..constants import DEFAULT_TIME_VALUES
from ..contracts import AIInteraction, EvaluationCriteria, TokenUsage, clamp_score
from ..errors import EmptyOutputError
from . import prompts
from .base import EvaluationResult, GeneratedCode

logger = logging.getLogger(__name__)

_FENCE = re.compile(r"^\s*```[\w+-]*\s*$", re.MULTILINE)


def clean_shader_code(text: str) -> str:
    """Strip markdown code fences the model may wrap the source in."""
    return _FENCE.sub("", text).strip()


def image_content(screenshot: str) -> BinaryContent:
    """Decode a data URL (or bare base64 PNG) into binary image content."""
    if screenshot.startswith("data:"):
        header, _, data = screenshot.partition(",")
        media_type = header[5:].split(";")[0] or "image/png"
    else:
        media_type, data = "image/png", screenshot
    return BinaryContent(data=base64.b64decode(data), media_type=media_type)


class EvaluationReport(BaseModel):
    """Structured evaluator answer."""

    criteria: EvaluationCriteria = Field(default_factory=EvaluationCriteria)
    feedback: str
    suggestions: list[str] = Field(default_factory=list)
    score: Optional[float] = Field(
        default=None, description="Overall 0-100 score; defaults to the criteria sum"
    )

    def overall(self) -> float:
        if self.score is not None:
            return clamp_score(self.score)
        c = self.criteria
        return clamp_score(
            c.visual_appeal + c.technical_quality + c.prompt_alignment + c.creativity
        )


def _token_usage(result: Any) -> TokenUsage | None:
    usage = result.usage()
    if usage is None:
        return None
    return TokenUsage(
        prompt_tokens=usage.input_tokens or 0,
        completion_tokens=usage.output_tokens or 0,
        total_tokens=usage.total_tokens or 0,
    )


class AgentStudio:
    """Implements the four AI roles on top of pydantic-ai agents.

    ``model`` may be a pydantic-ai model string such as ``"openai:gpt-4.1"``
    or a :class:`~pydantic_ai.models.Model` instance; it defaults to the
    configured model.
    """

    def __init__(
        self,
        config: Optional[LLMConfig] = None,
        model: Model | str | None = None,
        time_values: Optional[Sequence[float]] = None,
    ) -> None:
        self._config = config or LLMConfig()
        self._model = model or self._config.model
        self._time_values = list(time_values or DEFAULT_TIME_VALUES)
        if isinstance(self._model, str):
            self.model_name = self._model
        else:
            self.model_name = getattr(self._model, "model_name", type(self._model).__name__)

        self.generator: Agent[str, str] = Agent(
            self._model,
            deps_type=str,
            output_type=str,
            model_settings={"temperature": self._config.generation_temperature},
            defer_model_check=True,
        )

        @self.generator.system_prompt
        def _generation_system(ctx: RunContext[str]) -> str:
            return prompts.generation_system_prompt(ctx.deps)

        self.evaluator: Agent[None, EvaluationReport] = Agent(
            self._model,
            output_type=EvaluationReport,
            system_prompt=prompts.EVALUATION_SYSTEM_PROMPT,
            model_settings={"temperature": self._config.evaluation_temperature},
            defer_model_check=True,
        )
        self.improver: Agent[None, str] = Agent(
            self._model,
            output_type=str,
            system_prompt=prompts.IMPROVEMENT_SYSTEM_PROMPT,
            model_settings={"temperature": self._config.improvement_temperature},
            defer_model_check=True,
        )
        self.fixer: Agent[None, str] = Agent(
            self._model,
            output_type=str,
            system_prompt=prompts.FIX_SYSTEM_PROMPT,
            model_settings={"temperature": self._config.fix_temperature},
            defer_model_check=True,
        )

    # ------------------------------------------------------------------
    def _interaction(
        self,
        role: str,
        system_prompt: str,
        user_prompt: str,
        response: str,
        started: float,
        result: Any,
        image_count: int = 0,
    ) -> AIInteraction:
        prompt = f"System: {system_prompt}\n\nUser: {user_prompt}"
        if image_count:
            prompt += f"\n\nScreenshots: {image_count} images attached"
        return AIInteraction(
            role=role,
            model=self.model_name,
            prompt=prompt,
            response=response,
            duration=time.monotonic() - started,
            token_usage=_token_usage(result),
        )

    def _code_from(self, role: str, raw: str) -> str:
        code = clean_shader_code(raw)
        if not code:
            raise EmptyOutputError(f"Model returned empty {role} shader code")
        return code

    # ------------------------------------------------------------------
    async def generate(self, prompt: str) -> GeneratedCode:
        started = time.monotonic()
        user_prompt = prompts.generation_user_prompt(prompt)
        result = await self.generator.run(user_prompt, deps=prompt)
        code = self._code_from("generated", result.output)
        logger.debug(f"Generated {len(code)} characters of shader code")
        return GeneratedCode(
            code=code,
            interaction=self._interaction(
                "generation",
                prompts.generation_system_prompt(prompt),
                user_prompt,
                result.output,
                started,
                result,
            ),
        )

    async def evaluate(
        self, prompt: str, code: str, images: Sequence[str]
    ) -> EvaluationResult:
        started = time.monotonic()
        shots = list(images)[: self._config.max_evaluation_images]
        user_prompt = prompts.evaluation_user_prompt(
            prompt, code, len(shots), self._time_values
        )
        result = await self.evaluator.run(
            [user_prompt, *(image_content(s) for s in shots)]
        )
        report: EvaluationReport = result.output
        return EvaluationResult(
            score=report.overall(),
            feedback=report.feedback,
            criteria=report.criteria,
            suggestions=report.suggestions,
            interaction=self._interaction(
                "evaluation",
                prompts.EVALUATION_SYSTEM_PROMPT,
                user_prompt,
                report.model_dump_json(),
                started,
                result,
                image_count=len(shots),
            ),
        )

    async def improve(
        self, prompt: str, code: str, feedback: str, images: Sequence[str]
    ) -> GeneratedCode:
        started = time.monotonic()
        shots = list(images)[: self._config.max_improvement_images]
        user_prompt = prompts.improvement_user_prompt(
            prompt, code, feedback, len(shots), self._time_values
        )
        result = await self.improver.run(
            [user_prompt, *(image_content(s) for s in shots)]
        )
        return GeneratedCode(
            code=self._code_from("improved", result.output),
            interaction=self._interaction(
                "improvement",
                prompts.IMPROVEMENT_SYSTEM_PROMPT,
                user_prompt,
                result.output,
                started,
                result,
                image_count=len(shots),
            ),
        )

    async def fix(
        self,
        prompt: str,
        code: str,
        error_message: str,
        error_detail: Optional[str] = None,
    ) -> GeneratedCode:
        started = time.monotonic()
        user_prompt = prompts.fix_user_prompt(prompt, code, error_message, error_detail)
        result = await self.fixer.run(user_prompt)
        return GeneratedCode(
            code=self._code_from("fixed", result.output),
            interaction=self._interaction(
                "fix",
                prompts.FIX_SYSTEM_PROMPT,
                user_prompt,
                result.output,
                started,
                result,
            ),
        )
