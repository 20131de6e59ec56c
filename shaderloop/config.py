from __future__ import annotations

import os
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field

from .constants import (
    CODE_WAIT_ATTEMPTS,
    CODE_WAIT_DELAY,
    DEFAULT_CAPTURE_HEIGHT,
    DEFAULT_CAPTURE_TIMEOUT,
    DEFAULT_CAPTURE_WIDTH,
    DEFAULT_COLLABORATOR_TIMEOUT,
    DEFAULT_MAX_ITERATIONS,
    DEFAULT_MODEL,
    DEFAULT_TARGET_SCORE,
    DEFAULT_TIME_VALUES,
    MAX_FIX_ATTEMPTS,
)
from .contracts import ProcessConfig


class ProcessDefaults(BaseModel):
    """Process settings used when a run does not specify its own."""

    max_iterations: int = DEFAULT_MAX_ITERATIONS
    target_score: float = DEFAULT_TARGET_SCORE
    auto_mode: bool = True
    server_capture: bool = True

    def build(self, **overrides) -> ProcessConfig:
        values = self.model_dump()
        values.update({k: v for k, v in overrides.items() if v is not None})
        return ProcessConfig(**values)


class LLMConfig(BaseModel):
    """Model settings for the AI collaborators."""

    model: str = DEFAULT_MODEL
    generation_temperature: float = 0.7
    evaluation_temperature: float = 0.3
    improvement_temperature: float = 0.5
    fix_temperature: float = 0.3
    max_evaluation_images: int = 5
    max_improvement_images: int = 3


class CaptureConfig(BaseModel):
    """Render service settings."""

    url: Optional[str] = None
    width: int = DEFAULT_CAPTURE_WIDTH
    height: int = DEFAULT_CAPTURE_HEIGHT
    time_values: list[float] = Field(default_factory=lambda: list(DEFAULT_TIME_VALUES))


class RunnerConfig(BaseModel):
    """Timeouts and recovery behaviour of the process runner."""

    collaborator_timeout: float = DEFAULT_COLLABORATOR_TIMEOUT
    capture_timeout: float = DEFAULT_CAPTURE_TIMEOUT
    code_wait_attempts: int = CODE_WAIT_ATTEMPTS
    code_wait_delay: float = CODE_WAIT_DELAY
    max_fix_attempts: int = Field(default=MAX_FIX_ATTEMPTS, ge=1)
    # Save every completed process to the prompt history.
    record_history: bool = False
    recovery_policy: Literal["fail", "resume"] = "fail"


class ShaderLoopConfig(BaseModel):
    """Top-level configuration model."""

    database_url: Optional[str] = None
    defaults: ProcessDefaults = Field(default_factory=ProcessDefaults)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    capture: CaptureConfig = Field(default_factory=CaptureConfig)
    runner: RunnerConfig = Field(default_factory=RunnerConfig)
    log_level: str = "INFO"


def load_config(path: Optional[str] = None) -> ShaderLoopConfig:
    """Load configuration from YAML file.

    Args:
        path: Optional path to config file. Falls back to SHADERLOOP_CONFIG
            env variable or 'shaderloop.yaml' in the current directory.
    """

    config_path = path or os.getenv("SHADERLOOP_CONFIG", "shaderloop.yaml")
    if os.path.exists(config_path):
        with open(config_path) as f:
            data = yaml.safe_load(f) or {}
        config = ShaderLoopConfig(**data)
    else:
        config = ShaderLoopConfig()

    env_db_url = os.getenv("SHADERLOOP_DATABASE_URL") or os.getenv("DATABASE_URL")
    if env_db_url:
        config.database_url = env_db_url
    env_capture_url = os.getenv("SHADERLOOP_CAPTURE_URL")
    if env_capture_url:
        config.capture.url = env_capture_url
    env_model = os.getenv("SHADERLOOP_MODEL")
    if env_model:
        config.llm.model = env_model
    return config
