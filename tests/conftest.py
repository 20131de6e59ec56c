"""Shared fakes for the AI collaborators and the capture service."""

import asyncio
from typing import Dict, List, Optional

import pytest
import pytest_asyncio

from shaderloop.collaborators import CaptureResult, EvaluationResult, GeneratedCode
from shaderloop.config import RunnerConfig, ShaderLoopConfig
from shaderloop.persistence import InMemoryProcessRepository
from shaderloop.runner import ProcessRunner

# 1x1 transparent PNG
SCREENSHOT = (
    "data:image/png;base64,iVBORw0KGgoAAAANSUhEUgAAAAEAAAABCAQAAAC1HAwCAAAAC0lEQVR4"
    "nGNgYAAAAAMAASsJTYQAAAAASUVORK5CYII="
)

BASE_CODE = "void mainImage(out vec4 fragColor, in vec2 fragCoord) { fragColor = vec4(1.0); }"


class FakeStudio:
    """Scripted generator, evaluator, improver and fixer.

    ``scores`` are handed out in order, falling back to ``default_score``.
    A role listed in ``gates`` blocks until its event is set, and an
    exception in ``failures`` is raised once by that role.
    """

    def __init__(self) -> None:
        self.scores: List[float] = []
        self.default_score = 85.0
        self.gates: Dict[str, asyncio.Event] = {}
        self.failures: Dict[str, Exception] = {}
        self.calls: List[tuple] = []
        self.improvements = 0

    async def _enter(self, role: str, *args) -> None:
        self.calls.append((role, *args))
        gate = self.gates.get(role)
        if gate is not None:
            await gate.wait()
        failure = self.failures.pop(role, None)
        if failure is not None:
            raise failure

    async def generate(self, prompt: str) -> GeneratedCode:
        await self._enter("generate", prompt)
        return GeneratedCode(code=BASE_CODE)

    async def evaluate(self, prompt, code, images) -> EvaluationResult:
        await self._enter("evaluate", code, list(images))
        score = self.scores.pop(0) if self.scores else self.default_score
        return EvaluationResult(
            score=score, feedback=f"scored {score:g}", suggestions=["more contrast"]
        )

    async def improve(self, prompt, code, feedback, images) -> GeneratedCode:
        await self._enter("improve", code, feedback, list(images))
        self.improvements += 1
        return GeneratedCode(code=f"{code}\n// improved {self.improvements}")

    async def fix(self, prompt, code, error_message, error_detail=None) -> GeneratedCode:
        await self._enter("fix", code, error_message, error_detail)
        return GeneratedCode(code=f"{code}\n// fixed")


class FakeCaptureService:
    """Returns queued results, then one screenshot per time value."""

    def __init__(self) -> None:
        self.results: List[CaptureResult] = []
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None

    async def capture(self, code, time_values, width, height) -> CaptureResult:
        self.calls.append(code)
        if self.gate is not None:
            await self.gate.wait()
        if self.results:
            return self.results.pop(0)
        return CaptureResult(screenshots=[SCREENSHOT for _ in time_values])


@pytest.fixture
def studio():
    return FakeStudio()


@pytest.fixture
def capture_service():
    return FakeCaptureService()


@pytest.fixture
def repository():
    return InMemoryProcessRepository()


@pytest.fixture
def runner_config():
    return ShaderLoopConfig(
        runner=RunnerConfig(
            collaborator_timeout=5,
            capture_timeout=5,
            code_wait_attempts=20,
            code_wait_delay=0.01,
        )
    )


@pytest_asyncio.fixture
async def runner(repository, studio, capture_service, runner_config):
    runner = ProcessRunner(repository, studio, capture_service, config=runner_config)
    yield runner
    await runner.shutdown()
