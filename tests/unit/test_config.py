"""Tests for configuration loading."""

import pytest

import shaderloop.persistence as persistence
from shaderloop.config import ProcessDefaults, load_config
from shaderloop.persistence import (
    InMemoryProcessRepository,
    SQLiteProcessRepository,
    get_repository,
)


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for name in (
        "SHADERLOOP_CONFIG",
        "SHADERLOOP_DATABASE_URL",
        "DATABASE_URL",
        "SHADERLOOP_CAPTURE_URL",
        "SHADERLOOP_MODEL",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr(persistence, "_repository_instance", None)


def test_load_config_from_env(tmp_path, monkeypatch):
    config_path = tmp_path / "config.yaml"
    config_path.write_text(
        """
defaults:
  max_iterations: 5
  target_score: 90
llm:
  model: "anthropic:claude-sonnet-4-0"
  evaluation_temperature: 0.1
capture:
  url: http://localhost:3001/capture
  time_values: [0.5, 1.0]
runner:
  code_wait_attempts: 4
  recovery_policy: resume
"""
    )
    monkeypatch.setenv("SHADERLOOP_CONFIG", str(config_path))

    config = load_config()
    assert config.defaults.max_iterations == 5
    assert config.defaults.target_score == 90
    assert config.llm.model == "anthropic:claude-sonnet-4-0"
    assert config.llm.evaluation_temperature == 0.1
    assert config.llm.generation_temperature == 0.7
    assert config.capture.url == "http://localhost:3001/capture"
    assert config.capture.time_values == [0.5, 1.0]
    assert config.runner.code_wait_attempts == 4
    assert config.runner.recovery_policy == "resume"


def test_load_config_defaults_and_env_overrides(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("SHADERLOOP_CAPTURE_URL", "http://render:3001/capture")
    monkeypatch.setenv("SHADERLOOP_MODEL", "test")
    monkeypatch.setenv("DATABASE_URL", "sqlite://shader.db")

    config = load_config()
    assert config.defaults.max_iterations == 3
    assert config.runner.code_wait_attempts == 10
    assert config.runner.code_wait_delay == 0.5
    assert config.capture.url == "http://render:3001/capture"
    assert config.llm.model == "test"
    assert config.database_url == "sqlite://shader.db"


def test_defaults_build_ignores_unset_overrides():
    defaults = ProcessDefaults(max_iterations=4)
    config = defaults.build(max_iterations=None, target_score=70, auto_mode=False)
    assert config.max_iterations == 4
    assert config.target_score == 70
    assert config.auto_mode is False
    assert config.server_capture is True


def test_get_repository_uses_config(tmp_path, monkeypatch):
    monkeypatch.chdir(tmp_path)
    assert isinstance(get_repository(), InMemoryProcessRepository)
    # Cached until explicitly reconfigured.
    assert get_repository() is get_repository()

    repo = get_repository(f"sqlite://{tmp_path / 'wf.db'}")
    assert isinstance(repo, SQLiteProcessRepository)
    repo.close()

    with pytest.raises(ValueError):
        get_repository("mysql://localhost/db")
