"""死信处理

把永久失败的输入文件移入死信目录，并写一份 sidecar 记录（run id、失败步骤、
错误、时间戳），最后将 run 终结为 deadlettered。同一个 run 重复调用是幂等的。
文件已不存在时仍写 sidecar 并标记 content_missing，从不静默丢弃。
"""

import asyncio
import json
import os
import shutil
import tempfile
from datetime import UTC, datetime
from pathlib import Path

import structlog

from ..config import DEAD_LETTER_SIDECAR_SUFFIX, TEMP_FILE_PREFIX
from ..models.enums import ConflictStrategy, DeadLetterLayout, RunEventType, RunStatus
from ..models.run import PipelineRun
from ..models.task import RetryPolicy
from ..store.protocols import RunStore
from ..store.transaction import persist_with_retry
from .conflict import resolve_conflict

log = structlog.get_logger()


class DeadLetterHandler:
    """死信处理器"""

    def __init__(
        self,
        run_store: RunStore,
        dead_letter_dir: str | Path,
        layout: DeadLetterLayout = DeadLetterLayout.RUN,
        store_retry: RetryPolicy | None = None,
    ) -> None:
        self._run_store = run_store
        self._root = Path(dead_letter_dir)
        self._layout = layout
        self._store_retry = store_retry or RetryPolicy(max=3, backoff_ms=100)

    def target_dir(self, run: PipelineRun) -> Path:
        """按布局计算 run 的死信目录"""
        match self._layout:
            case DeadLetterLayout.FLAT:
                return self._root
            case DeadLetterLayout.TASK:
                return self._root / run.task_id
            case _:
                return self._root / run.task_id / run.run_id

    async def handle(
        self,
        run: PipelineRun,
        current_path: Path | None,
        step_index: int | None,
        step_type: str | None,
        error: BaseException | str,
    ) -> Path:
        """移动文件 + 写 sidecar + 终结 run

        Args:
            run: 已处于 failed 的 run
            current_path: 文件当前位置（None 或不存在时记为 content_missing）
            step_index: 失败步骤序号（interrupted 时为 None）
            step_type: 失败步骤类型
            error: 失败原因

        Returns:
            sidecar 文件路径
        """
        if run.status == RunStatus.DEADLETTERED and run.dead_letter_path:
            return Path(run.dead_letter_path)

        target_dir = self.target_dir(run)
        now = datetime.now(UTC)
        error_type = type(error).__name__ if isinstance(error, BaseException) else None
        relocated, sidecar = await asyncio.to_thread(
            self._relocate_and_record,
            run,
            current_path,
            target_dir,
            {
                "run_id": run.run_id,
                "task_id": run.task_id,
                "source_path": run.source_path,
                "failed_step_index": step_index,
                "failed_step_type": step_type,
                "error": str(error),
                "error_type": error_type,
                "started_at": run.started_at.isoformat(),
                "deadlettered_at": now.isoformat(),
            },
        )

        run.status = RunStatus.DEADLETTERED
        run.completed_at = now
        run.dead_letter_path = str(sidecar)
        if relocated is not None:
            run.current_path = str(relocated)
        await persist_with_retry(
            lambda: self._run_store.save_run(
                run,
                RunEventType.DEADLETTERED,
                {
                    "sidecar": str(sidecar),
                    "file": str(relocated) if relocated else None,
                    "content_missing": relocated is None,
                },
            ),
            self._store_retry,
        )
        log.error(
            "run_deadlettered",
            run_id=run.run_id,
            task_id=run.task_id,
            path=run.source_path,
            sidecar=str(sidecar),
            content_missing=relocated is None,
        )
        return sidecar

    @staticmethod
    def _relocate_and_record(
        run: PipelineRun,
        current_path: Path | None,
        target_dir: Path,
        record: dict,
    ) -> tuple[Path | None, Path]:
        target_dir.mkdir(parents=True, exist_ok=True)

        relocated: Path | None = None
        if current_path is not None and current_path.is_file():
            destination = resolve_conflict(
                target_dir / current_path.name, ConflictStrategy.RENAME
            ).path
            shutil.move(current_path, destination)
            relocated = destination

        file_name = relocated.name if relocated else Path(run.source_path).name
        sidecar = resolve_conflict(
            target_dir / f"{file_name}{DEAD_LETTER_SIDECAR_SUFFIX}", ConflictStrategy.RENAME
        ).path

        record = {
            **record,
            "original_path": str(current_path) if current_path else None,
            "dead_letter_file": str(relocated) if relocated else None,
            "content_missing": relocated is None,
        }
        fd, tmp_name = tempfile.mkstemp(prefix=TEMP_FILE_PREFIX, dir=target_dir)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as out:
                json.dump(record, out, ensure_ascii=False, indent=2)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_name, sidecar)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        return relocated, sidecar
