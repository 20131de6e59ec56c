"""PostgreSQL implementation of the process repository."""

from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Collection, Optional

import asyncpg

from ..contracts import (
    AIInteraction,
    ProcessConfig,
    ProcessResult,
    ProcessStatus,
    StepKind,
    StepStatus,
    as_utc,
    utcnow,
)
from ..errors import DuplicateIdError
from .models import (
    HistoryEvaluation,
    Process,
    ProcessPage,
    ProcessUpdate,
    PromptHistoryEntry,
    Step,
    check_step_update,
    next_event_time,
    parse_step_input,
    parse_step_output,
    summarize_steps,
)
from .repository import ProcessRepository


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json()
    return json.dumps(value)


def _loads(value: Any) -> Any:
    if value is None:
        return None
    return json.loads(value) if isinstance(value, str) else value


class PostgresProcessRepository(ProcessRepository):
    """Persist process state using PostgreSQL."""

    def __init__(self, dsn: str):
        self._dsn = dsn
        self._initialized = False

    async def _connect(self) -> asyncpg.Connection:
        conn = await asyncpg.connect(self._dsn)
        if not self._initialized:
            await self._ensure_schema(conn)
            self._initialized = True
        return conn

    async def _ensure_schema(self, conn: asyncpg.Connection) -> None:
        await conn.execute(
            """
            CREATE TABLE IF NOT EXISTS processes (
                id TEXT PRIMARY KEY,
                prompt TEXT NOT NULL,
                status TEXT NOT NULL,
                current_step TEXT,
                config JSONB NOT NULL,
                result JSONB,
                created_at TIMESTAMPTZ NOT NULL,
                updated_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ
            );
            CREATE TABLE IF NOT EXISTS process_steps (
                seq BIGSERIAL PRIMARY KEY,
                id TEXT NOT NULL UNIQUE,
                process_id TEXT NOT NULL REFERENCES processes (id) ON DELETE CASCADE,
                kind TEXT NOT NULL,
                status TEXT NOT NULL,
                input JSONB,
                output JSONB,
                error TEXT,
                ai_interaction JSONB,
                started_at TIMESTAMPTZ NOT NULL,
                completed_at TIMESTAMPTZ,
                duration DOUBLE PRECISION
            );
            CREATE TABLE IF NOT EXISTS process_updates (
                id BIGSERIAL PRIMARY KEY,
                process_id TEXT NOT NULL REFERENCES processes (id) ON DELETE CASCADE,
                status TEXT NOT NULL,
                current_step TEXT,
                step_progress JSONB,
                new_step_id TEXT,
                result JSONB,
                error TEXT,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE TABLE IF NOT EXISTS prompt_history (
                seq BIGSERIAL,
                id TEXT PRIMARY KEY,
                prompt TEXT NOT NULL,
                code TEXT NOT NULL,
                screenshots JSONB NOT NULL,
                score DOUBLE PRECISION,
                feedback TEXT,
                evaluated_at TIMESTAMPTZ,
                created_at TIMESTAMPTZ NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_processes_created_at
                ON processes (created_at);
            CREATE INDEX IF NOT EXISTS idx_process_steps_pid
                ON process_steps (process_id, started_at);
            CREATE INDEX IF NOT EXISTS idx_process_steps_pid_kind_status
                ON process_steps (process_id, kind, status);
            CREATE INDEX IF NOT EXISTS idx_process_updates_pid_created
                ON process_updates (process_id, created_at);
            CREATE INDEX IF NOT EXISTS idx_prompt_history_created_at
                ON prompt_history (created_at);
            """
        )

    # ------------------------------------------------------------------
    @staticmethod
    def _record_to_process(row: asyncpg.Record, steps: list[Step] | None) -> Process:
        return Process(
            id=row["id"],
            prompt=row["prompt"],
            status=row["status"],
            current_step=row["current_step"],
            config=_loads(row["config"]),
            result=_loads(row["result"]),
            steps=steps,
            created_at=row["created_at"],
            updated_at=row["updated_at"],
            completed_at=row["completed_at"],
        )

    @staticmethod
    def _record_to_step(row: asyncpg.Record) -> Step:
        return Step(
            id=row["id"],
            process_id=row["process_id"],
            kind=row["kind"],
            status=row["status"],
            input=_loads(row["input"]),
            output=_loads(row["output"]),
            error=row["error"],
            ai_interaction=_loads(row["ai_interaction"]),
            started_at=row["started_at"],
            completed_at=row["completed_at"],
            duration=row["duration"],
        )

    @staticmethod
    def _record_to_history(row: asyncpg.Record) -> PromptHistoryEntry:
        evaluation = None
        if row["evaluated_at"] is not None:
            evaluation = HistoryEvaluation(
                score=row["score"],
                feedback=row["feedback"],
                evaluated_at=row["evaluated_at"],
            )
        return PromptHistoryEntry(
            id=row["id"],
            prompt=row["prompt"],
            code=row["code"],
            screenshots=_loads(row["screenshots"]),
            evaluation=evaluation,
            created_at=row["created_at"],
        )

    async def _fetch_steps(self, conn: asyncpg.Connection, process_id: str) -> list[Step]:
        rows = await conn.fetch(
            "SELECT * FROM process_steps WHERE process_id = $1 ORDER BY started_at, seq",
            process_id,
        )
        return [self._record_to_step(r) for r in rows]

    # ------------------------------------------------------------------
    async def create_process(
        self,
        process_id: str,
        prompt: str,
        status: ProcessStatus,
        config: ProcessConfig,
    ) -> Process:
        now = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO processes (id, prompt, status, config, created_at, updated_at)
                VALUES ($1, $2, $3, $4, $5, $5)
                """,
                process_id,
                prompt,
                ProcessStatus(status).value,
                config.model_dump_json(),
                now,
            )
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateIdError("Process", process_id) from exc
        finally:
            await conn.close()
        return Process(
            id=process_id,
            prompt=prompt,
            status=status,
            config=config,
            steps=[],
            created_at=now,
            updated_at=now,
        )

    async def update_process(
        self,
        process_id: str,
        *,
        status: Optional[ProcessStatus] = None,
        current_step: Optional[StepKind] = None,
        result: Optional[ProcessResult] = None,
        completed_at: Optional[datetime] = None,
        unless_status: Optional[Collection[ProcessStatus]] = None,
    ) -> bool:
        values: list[Any] = [utcnow()]
        set_parts = ["updated_at = $1"]

        def add(column: str, value: Any) -> None:
            values.append(value)
            set_parts.append(f"{column} = ${len(values)}")

        if status is not None:
            add("status", ProcessStatus(status).value)
        if current_step is not None:
            add("current_step", StepKind(current_step).value)
        if result is not None:
            add("result", result.model_dump_json())
        if completed_at is not None:
            add("completed_at", completed_at)

        values.append(process_id)
        where = f"id = ${len(values)}"
        if unless_status:
            values.append([ProcessStatus(s).value for s in unless_status])
            where += f" AND NOT (status = ANY(${len(values)}::text[]))"

        conn = await self._connect()
        try:
            outcome = await conn.execute(
                f"UPDATE processes SET {', '.join(set_parts)} WHERE {where}", *values
            )
        finally:
            await conn.close()
        return outcome != "UPDATE 0"

    async def get_process(self, process_id: str) -> Process | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM processes WHERE id = $1", process_id)
            if not row:
                return None
            steps = await self._fetch_steps(conn, process_id)
        finally:
            await conn.close()
        return self._record_to_process(row, steps)

    async def list_processes(
        self, page: int = 1, limit: int = 20, include_steps: bool = False
    ) -> ProcessPage:
        offset = (max(page, 1) - 1) * limit
        conn = await self._connect()
        try:
            total = await conn.fetchval("SELECT COUNT(*) FROM processes")
            rows = await conn.fetch(
                "SELECT * FROM processes ORDER BY created_at DESC LIMIT $1 OFFSET $2",
                limit,
                offset,
            )
            items: list[Process] = []
            for row in rows:
                if include_steps:
                    steps = await self._fetch_steps(conn, row["id"])
                    items.append(summarize_steps(self._record_to_process(row, steps)))
                else:
                    items.append(self._record_to_process(row, None))
        finally:
            await conn.close()
        return ProcessPage(items=items, total=total or 0, page=page, limit=limit)

    async def list_processes_by_status(
        self, statuses: Collection[ProcessStatus]
    ) -> list[Process]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM processes WHERE status = ANY($1::text[]) ORDER BY created_at",
                [ProcessStatus(s).value for s in statuses],
            )
            return [
                self._record_to_process(row, await self._fetch_steps(conn, row["id"]))
                for row in rows
            ]
        finally:
            await conn.close()

    async def delete_process(self, process_id: str) -> bool:
        conn = await self._connect()
        try:
            outcome = await conn.execute("DELETE FROM processes WHERE id = $1", process_id)
        finally:
            await conn.close()
        return outcome != "DELETE 0"

    # ------------------------------------------------------------------
    async def create_step(
        self,
        step_id: str,
        process_id: str,
        kind: StepKind,
        status: StepStatus,
        input: Any,
    ) -> Step | None:
        payload = parse_step_input(kind, input) if input is not None else None
        started_at = utcnow()
        conn = await self._connect()
        try:
            await conn.execute(
                """
                INSERT INTO process_steps (id, process_id, kind, status, input, started_at)
                VALUES ($1, $2, $3, $4, $5, $6)
                """,
                step_id,
                process_id,
                StepKind(kind).value,
                StepStatus(status).value,
                _json(payload),
                started_at,
            )
        except asyncpg.ForeignKeyViolationError:
            return None
        except asyncpg.UniqueViolationError as exc:
            raise DuplicateIdError("Step", step_id) from exc
        finally:
            await conn.close()
        return Step(
            id=step_id,
            process_id=process_id,
            kind=kind,
            status=status,
            input=payload,
            started_at=started_at,
        )

    async def update_step(
        self,
        step_id: str,
        *,
        status: Optional[StepStatus] = None,
        output: Any = None,
        error: Optional[str] = None,
        ai_interaction: Optional[AIInteraction] = None,
        completed_at: Optional[datetime] = None,
        duration: Optional[float] = None,
    ) -> bool:
        step = await self.get_step(step_id)
        if step is None:
            return False
        check_step_update(step, status, output, error)

        values: list[Any] = []
        set_parts: list[str] = []

        def add(column: str, value: Any) -> None:
            values.append(value)
            set_parts.append(f"{column} = ${len(values)}")

        if status is not None:
            add("status", StepStatus(status).value)
        if output is not None:
            add("output", _json(parse_step_output(step.kind, output)))
        if error is not None:
            add("error", error)
        if ai_interaction is not None:
            add("ai_interaction", _json(ai_interaction))
        if completed_at is not None:
            add("completed_at", completed_at)
        if duration is not None:
            add("duration", duration)
        if not set_parts:
            return False

        values.extend([step_id, StepStatus.RUNNING.value])
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                f"UPDATE process_steps SET {', '.join(set_parts)} "
                f"WHERE id = ${len(values) - 1} AND status = ${len(values)}",
                *values,
            )
        finally:
            await conn.close()
        return outcome != "UPDATE 0"

    async def get_step(self, step_id: str) -> Step | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow("SELECT * FROM process_steps WHERE id = $1", step_id)
        finally:
            await conn.close()
        return self._record_to_step(row) if row else None

    async def find_running_step(
        self, process_id: str, kind: StepKind
    ) -> Step | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                """
                SELECT * FROM process_steps
                WHERE process_id = $1 AND kind = $2 AND status = $3
                ORDER BY started_at, seq LIMIT 1
                """,
                process_id,
                StepKind(kind).value,
                StepStatus.RUNNING.value,
            )
        finally:
            await conn.close()
        return self._record_to_step(row) if row else None

    # ------------------------------------------------------------------
    async def append_update(self, update: ProcessUpdate) -> ProcessUpdate | None:
        conn = await self._connect()
        try:
            async with conn.transaction():
                # Row lock serialises writers of one process's update log.
                exists = await conn.fetchval(
                    "SELECT 1 FROM processes WHERE id = $1 FOR UPDATE", update.process_id
                )
                if not exists:
                    return None
                last = await conn.fetchval(
                    "SELECT MAX(created_at) FROM process_updates WHERE process_id = $1",
                    update.process_id,
                )
                timestamp = next_event_time(last)
                update_id = await conn.fetchval(
                    """
                    INSERT INTO process_updates
                        (process_id, status, current_step, step_progress, new_step_id,
                         result, error, created_at)
                    VALUES ($1, $2, $3, $4, $5, $6, $7, $8)
                    RETURNING id
                    """,
                    update.process_id,
                    ProcessStatus(update.status).value,
                    StepKind(update.current_step).value if update.current_step else None,
                    _json(update.step_progress),
                    update.new_step_id,
                    _json(update.result),
                    update.error,
                    timestamp,
                )
        finally:
            await conn.close()
        return update.model_copy(update={"id": update_id, "timestamp": timestamp})

    async def list_updates(
        self, process_id: str, since: Optional[datetime] = None
    ) -> list[ProcessUpdate]:
        query = "SELECT * FROM process_updates WHERE process_id = $1"
        params: list[Any] = [process_id]
        if since is not None:
            query += " AND created_at > $2"
            params.append(as_utc(since))
        query += " ORDER BY created_at, id"
        conn = await self._connect()
        try:
            rows = await conn.fetch(query, *params)
        finally:
            await conn.close()
        return [
            ProcessUpdate(
                id=r["id"],
                process_id=r["process_id"],
                status=r["status"],
                current_step=r["current_step"],
                step_progress=_loads(r["step_progress"]),
                new_step_id=r["new_step_id"],
                result=_loads(r["result"]),
                error=r["error"],
                timestamp=r["created_at"],
            )
            for r in rows
        ]

    # ------------------------------------------------------------------
    async def save_prompt(self, entry: PromptHistoryEntry) -> PromptHistoryEntry:
        now = utcnow()
        conn = await self._connect()
        try:
            # A new seq on replace keeps newest-first ordering stable.
            await conn.execute(
                """
                INSERT INTO prompt_history
                    (id, prompt, code, screenshots, created_at)
                VALUES ($1, $2, $3, $4, $5)
                ON CONFLICT (id) DO UPDATE SET
                    seq = nextval(pg_get_serial_sequence('prompt_history', 'seq')),
                    prompt = EXCLUDED.prompt,
                    code = EXCLUDED.code,
                    screenshots = EXCLUDED.screenshots,
                    score = NULL,
                    feedback = NULL,
                    evaluated_at = NULL,
                    created_at = EXCLUDED.created_at
                """,
                entry.id,
                entry.prompt,
                entry.code,
                json.dumps(entry.screenshots),
                now,
            )
        finally:
            await conn.close()
        return entry.model_copy(update={"evaluation": None, "created_at": now})

    async def list_prompt_history(self, limit: int = 150) -> list[PromptHistoryEntry]:
        conn = await self._connect()
        try:
            rows = await conn.fetch(
                "SELECT * FROM prompt_history ORDER BY created_at DESC, seq DESC LIMIT $1",
                limit,
            )
        finally:
            await conn.close()
        return [self._record_to_history(r) for r in rows]

    async def get_prompt(self, entry_id: str) -> PromptHistoryEntry | None:
        conn = await self._connect()
        try:
            row = await conn.fetchrow(
                "SELECT * FROM prompt_history WHERE id = $1", entry_id
            )
        finally:
            await conn.close()
        return self._record_to_history(row) if row else None

    async def save_prompt_evaluation(
        self, entry_id: str, score: float, feedback: str
    ) -> bool:
        evaluation = HistoryEvaluation(score=score, feedback=feedback)
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                """
                UPDATE prompt_history
                SET score = $2, feedback = $3, evaluated_at = $4
                WHERE id = $1
                """,
                entry_id,
                evaluation.score,
                evaluation.feedback,
                evaluation.evaluated_at,
            )
        finally:
            await conn.close()
        return outcome != "UPDATE 0"

    async def delete_prompt(self, entry_id: str) -> bool:
        conn = await self._connect()
        try:
            outcome = await conn.execute(
                "DELETE FROM prompt_history WHERE id = $1", entry_id
            )
        finally:
            await conn.close()
        return outcome != "DELETE 0"
