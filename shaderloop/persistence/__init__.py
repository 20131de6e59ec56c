"""Persistence layer for shaderloop processes."""

from __future__ import annotations

import os
from typing import Optional

from ..config import ShaderLoopConfig, load_config
from .inmemory import InMemoryProcessRepository
from .models import (
    HistoryEvaluation,
    Process,
    ProcessPage,
    ProcessUpdate,
    PromptHistoryEntry,
    Step,
)
from .postgres import PostgresProcessRepository
from .repository import ProcessRepository
from .sqlite import SQLiteProcessRepository

_repository_instance: ProcessRepository | None = None


def get_repository(
    database_url: Optional[str] = None, config: Optional[ShaderLoopConfig] = None
) -> ProcessRepository:
    """Factory function to obtain a process repository.

    The repository backend is selected based on ``database_url`` which can be
    provided explicitly, via environment variable ``SHADERLOOP_DATABASE_URL``
    or ``DATABASE_URL``, or from loaded configuration. When no database is
    configured, an in-memory repository is returned.
    """

    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    config = config or load_config()
    database_url = (
        database_url
        or os.getenv("SHADERLOOP_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or config.database_url
    )

    if not database_url:
        _repository_instance = InMemoryProcessRepository()
        return _repository_instance

    if database_url.startswith("sqlite://"):
        path = database_url.replace("sqlite://", "", 1)
        _repository_instance = SQLiteProcessRepository(path)
    elif database_url.startswith("postgres://") or database_url.startswith(
        "postgresql://"
    ):
        _repository_instance = PostgresProcessRepository(database_url)
    else:
        raise ValueError(f"Unsupported database backend: {database_url}")

    return _repository_instance


__all__ = [
    "HistoryEvaluation",
    "Process",
    "ProcessPage",
    "ProcessUpdate",
    "PromptHistoryEntry",
    "Step",
    "ProcessRepository",
    "SQLiteProcessRepository",
    "PostgresProcessRepository",
    "InMemoryProcessRepository",
    "get_repository",
]
