"""RunStore SQLite 实现

runs 表保存每个 run 的最新快照；run_events 表 append-only，
每次快照写入都在同一事务内追加一条事件。
"""

import asyncio
import json
from datetime import UTC, datetime
from typing import Any

import aiosqlite
import structlog
from ulid import ULID

from ..exceptions import DuplicateEventError, InvalidTransitionError, StateStoreError
from ..models.enums import ACTIVE_STATES, RunEventType, RunStatus, validate_transition
from ..models.run import FileEvent, PipelineRun, RunEvent, RunFilter, StepResult
from .transaction import run_in_transaction

log = structlog.get_logger()

INTERRUPTED_MESSAGE = "interrupted: process stopped while run was in progress"


class SqliteRunStore:
    """RunStore 的 SQLite 实现"""

    def __init__(
        self,
        conn: aiosqlite.Connection,
        write_lock: asyncio.Lock | None = None,
    ) -> None:
        self._conn = conn
        self._write_lock = write_lock or asyncio.Lock()

    async def create_run(self, run: PipelineRun) -> None:
        """插入新 run 并追加 RUN_ADMITTED 事件

        Raises:
            DuplicateEventError: 同一 (task_id, source_path) 已有活跃 run
            StateStoreError: 其他数据库错误
        """

        async def _work() -> None:
            await self._conn.execute(
                """
                INSERT INTO runs (run_id, task_id, source_path, detected_at, stable_at,
                                  started_at, completed_at, status, step_results,
                                  error_message, failed_step_index, skipped,
                                  current_path, dead_letter_path)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (run.run_id, run.task_id, run.source_path, *self._run_values(run)),
            )
            await self._append_event(
                run.run_id,
                RunEventType.RUN_ADMITTED,
                {"source_path": run.source_path, "status": run.status.value},
            )

        try:
            await run_in_transaction(self._conn, self._write_lock, _work)
        except aiosqlite.IntegrityError as e:
            raise DuplicateEventError(run.task_id, run.source_path) from e
        except aiosqlite.Error as e:
            raise StateStoreError("create_run", e) from e

    async def save_run(
        self,
        run: PipelineRun,
        event_type: RunEventType = RunEventType.STATE_TRANSITION,
        payload: dict[str, Any] | None = None,
    ) -> None:
        """写回 run 快照并追加一条事件（同一事务）

        状态只允许单调前进，同状态重复写入视为步骤进度更新。

        Raises:
            InvalidTransitionError: 目标状态不是合法的前进流转
            StateStoreError: 数据库错误
        """

        async def _work() -> None:
            cursor = await self._conn.execute(
                "SELECT status FROM runs WHERE run_id = ?",
                (run.run_id,),
            )
            row = await cursor.fetchone()
            if row is None:
                raise StateStoreError("save_run", LookupError(f"run not found: {run.run_id}"))
            stored = RunStatus(row[0])
            if stored != run.status and not validate_transition(stored, run.status):
                raise InvalidTransitionError(run.run_id, stored.value, run.status.value)

            await self._conn.execute(
                """
                UPDATE runs
                SET detected_at = ?, stable_at = ?, started_at = ?, completed_at = ?,
                    status = ?, step_results = ?, error_message = ?,
                    failed_step_index = ?, skipped = ?, current_path = ?,
                    dead_letter_path = ?
                WHERE run_id = ?
                """,
                (*self._run_values(run), run.run_id),
            )
            event_payload = {"status": run.status.value}
            if stored != run.status:
                event_payload["from_status"] = stored.value
            event_payload.update(payload or {})
            await self._append_event(run.run_id, event_type, event_payload)

        try:
            await run_in_transaction(self._conn, self._write_lock, _work)
        except aiosqlite.Error as e:
            raise StateStoreError("save_run", e) from e

    async def get_run(self, run_id: str) -> PipelineRun | None:
        """根据 run_id 查询 run"""
        cursor = await self._conn.execute(
            "SELECT * FROM runs WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_run(row)

    async def list_runs(self, run_filter: RunFilter | None = None) -> list[PipelineRun]:
        """按条件查询 run 列表，按 started_at 倒序"""
        run_filter = run_filter or RunFilter()
        clauses: list[str] = []
        params: list[Any] = []
        if run_filter.task_id is not None:
            clauses.append("task_id = ?")
            params.append(run_filter.task_id)
        if run_filter.status is not None:
            clauses.append("status = ?")
            params.append(run_filter.status.value)
        if run_filter.source_path is not None:
            clauses.append("source_path = ?")
            params.append(run_filter.source_path)
        if run_filter.started_after is not None:
            clauses.append("started_at > ?")
            params.append(run_filter.started_after.isoformat())

        sql = "SELECT * FROM runs"
        if clauses:
            sql += " WHERE " + " AND ".join(clauses)
        sql += " ORDER BY started_at DESC, run_id DESC"
        if run_filter.limit is not None:
            sql += " LIMIT ?"
            params.append(run_filter.limit)

        cursor = await self._conn.execute(sql, params)
        rows = await cursor.fetchall()
        return [self._row_to_run(row) for row in rows]

    async def exists_active_run(self, task_id: str, source_path: str) -> bool:
        """检查 (task_id, source_path) 是否存在非终态 run"""
        placeholders = ", ".join("?" for _ in ACTIVE_STATES)
        cursor = await self._conn.execute(
            f"""
            SELECT 1 FROM runs
            WHERE task_id = ? AND source_path = ? AND status IN ({placeholders})
            LIMIT 1
            """,
            (task_id, source_path, *sorted(s.value for s in ACTIVE_STATES)),
        )
        row = await cursor.fetchone()
        return row is not None

    async def reconcile_interrupted_runs(self) -> list[PipelineRun]:
        """启动时将上一进程遗留的活跃 run 标记为 failed（interrupted）

        不做断点续跑，避免重复处理的歧义；后续由死信流程接手。

        Returns:
            被标记为 failed 的 run 列表
        """
        now = datetime.now(UTC)
        placeholders = ", ".join("?" for _ in ACTIVE_STATES)

        async def _work() -> list[PipelineRun]:
            cursor = await self._conn.execute(
                f"SELECT * FROM runs WHERE status IN ({placeholders}) ORDER BY started_at",
                tuple(sorted(s.value for s in ACTIVE_STATES)),
            )
            rows = await cursor.fetchall()
            reconciled: list[PipelineRun] = []
            for row in rows:
                run = self._row_to_run(row)
                previous = run.status
                run.status = RunStatus.FAILED
                run.completed_at = now
                run.error_message = INTERRUPTED_MESSAGE
                await self._conn.execute(
                    """
                    UPDATE runs SET status = ?, completed_at = ?, error_message = ?
                    WHERE run_id = ?
                    """,
                    (run.status.value, now.isoformat(), run.error_message, run.run_id),
                )
                await self._append_event(
                    run.run_id,
                    RunEventType.RUN_INTERRUPTED,
                    {"from_status": previous.value, "status": run.status.value},
                )
                reconciled.append(run)
            return reconciled

        try:
            reconciled = await run_in_transaction(self._conn, self._write_lock, _work)
        except aiosqlite.Error as e:
            raise StateStoreError("reconcile_interrupted_runs", e) from e

        for run in reconciled:
            log.warning(
                "interrupted_run_reconciled",
                run_id=run.run_id,
                task_id=run.task_id,
                path=run.source_path,
            )
        return reconciled

    async def list_events(self, run_id: str) -> list[RunEvent]:
        """查询指定 run 的所有事件，按 run_seq 正序"""
        cursor = await self._conn.execute(
            "SELECT * FROM run_events WHERE run_id = ? ORDER BY run_seq ASC",
            (run_id,),
        )
        rows = await cursor.fetchall()
        return [
            RunEvent(
                event_id=row[0],
                run_id=row[1],
                run_seq=row[2],
                ts=datetime.fromisoformat(row[3]),
                type=RunEventType(row[4]),
                payload=json.loads(row[5]) if row[5] else {},
            )
            for row in rows
        ]

    async def _append_event(
        self,
        run_id: str,
        event_type: RunEventType,
        payload: dict[str, Any],
    ) -> None:
        """追加事件（append-only），须在事务内调用"""
        cursor = await self._conn.execute(
            "SELECT COALESCE(MAX(run_seq), 0) FROM run_events WHERE run_id = ?",
            (run_id,),
        )
        row = await cursor.fetchone()
        next_seq = (row[0] if row else 0) + 1
        await self._conn.execute(
            """
            INSERT INTO run_events (event_id, run_id, run_seq, ts, type, payload)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                str(ULID()),
                run_id,
                next_seq,
                datetime.now(UTC).isoformat(),
                event_type.value,
                json.dumps(payload, ensure_ascii=False),
            ),
        )

    @staticmethod
    def _run_values(run: PipelineRun) -> tuple:
        """runs 表中除主键/task_id/source_path 外的列值"""
        return (
            run.file_event.detected_at.isoformat(),
            run.file_event.stable_at.isoformat() if run.file_event.stable_at else None,
            run.started_at.isoformat(),
            run.completed_at.isoformat() if run.completed_at else None,
            run.status.value,
            json.dumps(
                [result.model_dump(mode="json") for result in run.step_results],
                ensure_ascii=False,
            ),
            run.error_message,
            run.failed_step_index,
            int(run.skipped),
            run.current_path,
            run.dead_letter_path,
        )

    @staticmethod
    def _row_to_run(row: aiosqlite.Row) -> PipelineRun:
        """将数据库行转换为 PipelineRun 模型"""
        return PipelineRun(
            run_id=row[0],
            task_id=row[1],
            file_event=FileEvent(
                task_id=row[1],
                source_path=row[2],
                detected_at=datetime.fromisoformat(row[3]),
                stable_at=datetime.fromisoformat(row[4]) if row[4] else None,
            ),
            started_at=datetime.fromisoformat(row[5]),
            completed_at=datetime.fromisoformat(row[6]) if row[6] else None,
            status=RunStatus(row[7]),
            step_results=[StepResult(**item) for item in json.loads(row[8] or "[]")],
            error_message=row[9],
            failed_step_index=row[10],
            skipped=bool(row[11]),
            current_path=row[12],
            dead_letter_path=row[13],
        )
