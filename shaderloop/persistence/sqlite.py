"""SQLite implementation of the process repository."""

from __future__ import annotations

import asyncio
import json
import sqlite3
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Collection, Optional

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


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return as_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _json(value: Any) -> Optional[str]:
    if value is None:
        return None
    if hasattr(value, "model_dump_json"):
        return value.model_dump_json()
    return json.dumps(value)


class SQLiteProcessRepository(ProcessRepository):
    """Persist process state using SQLite."""

    def __init__(self, db_path: str | Path):
        self.db_path = str(db_path)
        self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        self._ensure_schema()

    def close(self) -> None:
        self._conn.close()

    # ------------------------------------------------------------------
    # Schema management
    def _ensure_schema(self) -> None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("PRAGMA journal_mode = WAL")
            cur.execute("PRAGMA foreign_keys = ON")
            cur.executescript(
                """
                CREATE TABLE IF NOT EXISTS processes (
                    id TEXT PRIMARY KEY,
                    prompt TEXT NOT NULL,
                    status TEXT NOT NULL,
                    current_step TEXT,
                    config TEXT NOT NULL,
                    result TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    completed_at TEXT
                );
                CREATE TABLE IF NOT EXISTS process_steps (
                    seq INTEGER PRIMARY KEY AUTOINCREMENT,
                    id TEXT NOT NULL UNIQUE,
                    process_id TEXT NOT NULL
                        REFERENCES processes (id) ON DELETE CASCADE,
                    kind TEXT NOT NULL,
                    status TEXT NOT NULL,
                    input TEXT,
                    output TEXT,
                    error TEXT,
                    ai_interaction TEXT,
                    started_at TEXT NOT NULL,
                    completed_at TEXT,
                    duration REAL
                );
                CREATE TABLE IF NOT EXISTS process_updates (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    process_id TEXT NOT NULL
                        REFERENCES processes (id) ON DELETE CASCADE,
                    status TEXT NOT NULL,
                    current_step TEXT,
                    step_progress TEXT,
                    new_step_id TEXT,
                    result TEXT,
                    error TEXT,
                    created_at TEXT NOT NULL
                );
                CREATE TABLE IF NOT EXISTS prompt_history (
                    id TEXT PRIMARY KEY,
                    prompt TEXT NOT NULL,
                    code TEXT NOT NULL,
                    screenshots TEXT NOT NULL,
                    score REAL,
                    feedback TEXT,
                    evaluated_at TEXT,
                    created_at TEXT NOT NULL
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
            self._conn.commit()

    # ------------------------------------------------------------------
    # Helper methods
    def _execute(self, query: str, *params: Any) -> int:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            self._conn.commit()
            return cur.rowcount

    def _fetchone(self, query: str, *params: Any) -> sqlite3.Row | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchone()

    def _fetchall(self, query: str, *params: Any) -> list[sqlite3.Row]:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute(query, params)
            return cur.fetchall()

    def _row_to_process(self, row: sqlite3.Row, steps: list[Step] | None) -> Process:
        return Process(
            id=row["id"],
            prompt=row["prompt"],
            status=row["status"],
            current_step=row["current_step"],
            config=ProcessConfig.model_validate_json(row["config"]),
            result=(
                ProcessResult.model_validate_json(row["result"])
                if row["result"]
                else None
            ),
            steps=steps,
            created_at=_parse_ts(row["created_at"]),
            updated_at=_parse_ts(row["updated_at"]),
            completed_at=_parse_ts(row["completed_at"]),
        )

    def _row_to_step(self, row: sqlite3.Row) -> Step:
        return Step(
            id=row["id"],
            process_id=row["process_id"],
            kind=row["kind"],
            status=row["status"],
            input=json.loads(row["input"]) if row["input"] else None,
            output=json.loads(row["output"]) if row["output"] else None,
            error=row["error"],
            ai_interaction=(
                json.loads(row["ai_interaction"]) if row["ai_interaction"] else None
            ),
            started_at=_parse_ts(row["started_at"]),
            completed_at=_parse_ts(row["completed_at"]),
            duration=row["duration"],
        )

    def _row_to_update(self, row: sqlite3.Row) -> ProcessUpdate:
        return ProcessUpdate(
            id=row["id"],
            process_id=row["process_id"],
            status=row["status"],
            current_step=row["current_step"],
            step_progress=(
                json.loads(row["step_progress"]) if row["step_progress"] else None
            ),
            new_step_id=row["new_step_id"],
            result=json.loads(row["result"]) if row["result"] else None,
            error=row["error"],
            timestamp=_parse_ts(row["created_at"]),
        )

    def _row_to_history(self, row: sqlite3.Row) -> PromptHistoryEntry:
        evaluation = None
        if row["evaluated_at"]:
            evaluation = HistoryEvaluation(
                score=row["score"],
                feedback=row["feedback"],
                evaluated_at=_parse_ts(row["evaluated_at"]),
            )
        return PromptHistoryEntry(
            id=row["id"],
            prompt=row["prompt"],
            code=row["code"],
            screenshots=json.loads(row["screenshots"]),
            evaluation=evaluation,
            created_at=_parse_ts(row["created_at"]),
        )

    def _load_steps(self, process_id: str) -> list[Step]:
        rows = self._fetchall(
            "SELECT * FROM process_steps WHERE process_id = ? ORDER BY started_at, seq",
            process_id,
        )
        return [self._row_to_step(r) for r in rows]

    def _load_process(self, process_id: str) -> Process | None:
        row = self._fetchone("SELECT * FROM processes WHERE id = ?", process_id)
        if not row:
            return None
        return self._row_to_process(row, self._load_steps(process_id))

    # ------------------------------------------------------------------
    # Repository API
    async def create_process(
        self,
        process_id: str,
        prompt: str,
        status: ProcessStatus,
        config: ProcessConfig,
    ) -> Process:
        now = utcnow()
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO processes
                    (id, prompt, status, config, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                process_id,
                prompt,
                ProcessStatus(status).value,
                config.model_dump_json(),
                _ts(now),
                _ts(now),
            )
        except sqlite3.IntegrityError as exc:
            raise DuplicateIdError("Process", process_id) from exc
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
        set_parts = ["updated_at = ?"]
        values: list[Any] = [_ts(utcnow())]
        if status is not None:
            set_parts.append("status = ?")
            values.append(ProcessStatus(status).value)
        if current_step is not None:
            set_parts.append("current_step = ?")
            values.append(StepKind(current_step).value)
        if result is not None:
            set_parts.append("result = ?")
            values.append(result.model_dump_json())
        if completed_at is not None:
            set_parts.append("completed_at = ?")
            values.append(_ts(completed_at))

        where = "id = ?"
        values.append(process_id)
        if unless_status:
            excluded = [ProcessStatus(s).value for s in unless_status]
            where += f" AND status NOT IN ({', '.join('?' for _ in excluded)})"
            values.extend(excluded)

        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE processes SET {', '.join(set_parts)} WHERE {where}",
            *values,
        )
        return changed > 0

    async def get_process(self, process_id: str) -> Process | None:
        return await asyncio.to_thread(self._load_process, process_id)

    async def list_processes(
        self, page: int = 1, limit: int = 20, include_steps: bool = False
    ) -> ProcessPage:
        count_row = await asyncio.to_thread(
            self._fetchone, "SELECT COUNT(*) AS count FROM processes"
        )
        total = count_row["count"] if count_row else 0
        offset = (max(page, 1) - 1) * limit
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM processes ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
            limit,
            offset,
        )
        items: list[Process] = []
        for row in rows:
            if include_steps:
                steps = await asyncio.to_thread(self._load_steps, row["id"])
                items.append(summarize_steps(self._row_to_process(row, steps)))
            else:
                items.append(self._row_to_process(row, None))
        return ProcessPage(items=items, total=total, page=page, limit=limit)

    async def list_processes_by_status(
        self, statuses: Collection[ProcessStatus]
    ) -> list[Process]:
        values = [ProcessStatus(s).value for s in statuses]
        if not values:
            return []
        rows = await asyncio.to_thread(
            self._fetchall,
            f"SELECT id FROM processes WHERE status IN ({', '.join('?' for _ in values)})"
            " ORDER BY created_at",
            *values,
        )
        processes = []
        for row in rows:
            process = await asyncio.to_thread(self._load_process, row["id"])
            if process is not None:
                processes.append(process)
        return processes

    async def delete_process(self, process_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM processes WHERE id = ?", process_id
        )
        return deleted > 0

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
        try:
            await asyncio.to_thread(
                self._execute,
                """
                INSERT INTO process_steps
                    (id, process_id, kind, status, input, started_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                step_id,
                process_id,
                StepKind(kind).value,
                StepStatus(status).value,
                _json(payload),
                _ts(started_at),
            )
        except sqlite3.IntegrityError as exc:
            if "FOREIGN KEY" in str(exc):
                return None
            raise DuplicateIdError("Step", step_id) from exc
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

        set_parts: list[str] = []
        values: list[Any] = []
        if status is not None:
            set_parts.append("status = ?")
            values.append(StepStatus(status).value)
        if output is not None:
            set_parts.append("output = ?")
            values.append(_json(parse_step_output(step.kind, output)))
        if error is not None:
            set_parts.append("error = ?")
            values.append(error)
        if ai_interaction is not None:
            set_parts.append("ai_interaction = ?")
            values.append(_json(ai_interaction))
        if completed_at is not None:
            set_parts.append("completed_at = ?")
            values.append(_ts(completed_at))
        if duration is not None:
            set_parts.append("duration = ?")
            values.append(duration)
        if not set_parts:
            return False

        values.append(step_id)
        # Guard on status so a concurrent writer cannot finish the step twice.
        changed = await asyncio.to_thread(
            self._execute,
            f"UPDATE process_steps SET {', '.join(set_parts)} WHERE id = ? AND status = ?",
            *values,
            StepStatus.RUNNING.value,
        )
        return changed > 0

    async def get_step(self, step_id: str) -> Step | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM process_steps WHERE id = ?", step_id
        )
        return self._row_to_step(row) if row else None

    async def find_running_step(
        self, process_id: str, kind: StepKind
    ) -> Step | None:
        row = await asyncio.to_thread(
            self._fetchone,
            """
            SELECT * FROM process_steps
            WHERE process_id = ? AND kind = ? AND status = ?
            ORDER BY started_at, seq LIMIT 1
            """,
            process_id,
            StepKind(kind).value,
            StepStatus.RUNNING.value,
        )
        return self._row_to_step(row) if row else None

    def _insert_update(self, update: ProcessUpdate) -> ProcessUpdate | None:
        with self._lock:
            cur = self._conn.cursor()
            cur.execute("SELECT 1 FROM processes WHERE id = ?", (update.process_id,))
            if cur.fetchone() is None:
                return None
            cur.execute(
                "SELECT MAX(created_at) AS last FROM process_updates WHERE process_id = ?",
                (update.process_id,),
            )
            last = cur.fetchone()["last"]
            timestamp = next_event_time(_parse_ts(last))
            cur.execute(
                """
                INSERT INTO process_updates
                    (process_id, status, current_step, step_progress, new_step_id,
                     result, error, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    update.process_id,
                    ProcessStatus(update.status).value,
                    StepKind(update.current_step).value if update.current_step else None,
                    _json(update.step_progress),
                    update.new_step_id,
                    _json(update.result),
                    update.error,
                    _ts(timestamp),
                ),
            )
            self._conn.commit()
            return update.model_copy(
                update={"id": cur.lastrowid, "timestamp": timestamp}
            )

    async def append_update(self, update: ProcessUpdate) -> ProcessUpdate | None:
        return await asyncio.to_thread(self._insert_update, update)

    async def list_updates(
        self, process_id: str, since: Optional[datetime] = None
    ) -> list[ProcessUpdate]:
        query = "SELECT * FROM process_updates WHERE process_id = ?"
        params: list[Any] = [process_id]
        if since is not None:
            query += " AND created_at > ?"
            params.append(_ts(since))
        query += " ORDER BY created_at, id"
        rows = await asyncio.to_thread(self._fetchall, query, *params)
        return [self._row_to_update(r) for r in rows]

    # ------------------------------------------------------------------
    # Prompt history
    async def save_prompt(self, entry: PromptHistoryEntry) -> PromptHistoryEntry:
        now = utcnow()
        await asyncio.to_thread(
            self._execute,
            """
            INSERT OR REPLACE INTO prompt_history
                (id, prompt, code, screenshots, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            entry.id,
            entry.prompt,
            entry.code,
            json.dumps(entry.screenshots),
            _ts(now),
        )
        return entry.model_copy(update={"evaluation": None, "created_at": now})

    async def list_prompt_history(self, limit: int = 150) -> list[PromptHistoryEntry]:
        rows = await asyncio.to_thread(
            self._fetchall,
            "SELECT * FROM prompt_history ORDER BY created_at DESC, rowid DESC LIMIT ?",
            limit,
        )
        return [self._row_to_history(r) for r in rows]

    async def get_prompt(self, entry_id: str) -> PromptHistoryEntry | None:
        row = await asyncio.to_thread(
            self._fetchone, "SELECT * FROM prompt_history WHERE id = ?", entry_id
        )
        return self._row_to_history(row) if row else None

    async def save_prompt_evaluation(
        self, entry_id: str, score: float, feedback: str
    ) -> bool:
        evaluation = HistoryEvaluation(score=score, feedback=feedback)
        changed = await asyncio.to_thread(
            self._execute,
            """
            UPDATE prompt_history
            SET score = ?, feedback = ?, evaluated_at = ?
            WHERE id = ?
            """,
            evaluation.score,
            evaluation.feedback,
            _ts(evaluation.evaluated_at),
            entry_id,
        )
        return changed > 0

    async def delete_prompt(self, entry_id: str) -> bool:
        deleted = await asyncio.to_thread(
            self._execute, "DELETE FROM prompt_history WHERE id = ?", entry_id
        )
        return deleted > 0
