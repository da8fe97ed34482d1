"""PipelineRunner -- 单个文件事件的流水线执行

步骤严格顺序执行，跟踪文件当前位置（copy/move/archive 之后更新）。
每次状态变化先写库再继续；任一步骤最终失败即 fail-fast，
run 标记为 failed 后交给死信处理。
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime
from pathlib import Path

import structlog
from ulid import ULID

from ..exceptions import RetryExhaustedError
from ..models.enums import RunEventType, RunStatus, StepOutcome, StepType
from ..models.run import FileEvent, PipelineRun, StepResult
from ..models.task import RetryPolicy, StepDefinition, TaskDefinition
from ..observability.metrics import MetricsSink, NullMetricsSink
from ..store.protocols import RunStore
from ..store.transaction import persist_with_retry
from .deadletter import DeadLetterHandler
from .retry import RetryController
from .steps import StepExecutor, StepOutput

log = structlog.get_logger()


class PipelineRunner:
    """流水线执行器"""

    def __init__(
        self,
        run_store: RunStore,
        executor: StepExecutor,
        dead_letter: DeadLetterHandler,
        metrics: MetricsSink | None = None,
        store_retry: RetryPolicy | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._run_store = run_store
        self._executor = executor
        self._dead_letter = dead_letter
        self._metrics = metrics or NullMetricsSink()
        self._store_retry = store_retry or RetryPolicy(max=3, backoff_ms=100)
        self._sleep = sleep

    async def _persist(self, operation: Callable[[], Awaitable[None]]) -> None:
        await persist_with_retry(operation, self._store_retry, self._sleep)

    async def create_run(self, task: TaskDefinition, event: FileEvent) -> PipelineRun:
        """创建并立即以 running 状态落库

        Raises:
            DuplicateEventError: 同一路径已有活跃 run
            StateStoreError: 持久化重试耗尽
        """
        run = PipelineRun(
            run_id=str(ULID()),
            task_id=task.id,
            file_event=event,
            started_at=datetime.now(UTC),
            status=RunStatus.RUNNING,
            current_path=event.source_path,
        )
        await self._persist(lambda: self._run_store.create_run(run))
        self._metrics.run_started(task.id)
        log.info("run_admitted", task_id=task.id, run_id=run.run_id, path=event.source_path)
        return run

    async def execute(self, task: TaskDefinition, run: PipelineRun) -> PipelineRun:
        """执行 run 的全部步骤，返回终态 run"""
        with structlog.contextvars.bound_contextvars(task_id=run.task_id, run_id=run.run_id):
            current = Path(run.current_path or run.source_path)
            for index, step in enumerate(task.pipeline):
                attempts = 0
                committed: dict[Path, Path] = {}

                async def _attempt(
                    step: StepDefinition = step,
                    current: Path = current,
                    committed: dict[Path, Path] = committed,
                ) -> StepOutput:
                    nonlocal attempts
                    attempts += 1
                    return await self._executor.execute(step, run, current, committed)

                try:
                    output, _ = await RetryController(step.retry, sleep=self._sleep).run(_attempt)
                except Exception as e:
                    error = e.last_error if isinstance(e, RetryExhaustedError) else e
                    return await self._fail(run, index, step, current, attempts, error)

                result = StepResult(
                    step_index=index,
                    type=StepType(step.type),
                    attempts=attempts,
                    outcome=output.outcome,
                    resulting_path=str(output.resulting_path) if output.resulting_path else None,
                )
                run.step_results.append(result)
                current = output.current_path
                run.current_path = str(current)

                if output.outcome == StepOutcome.HALTED:
                    run.skipped = True
                    return await self._finish(
                        run, RunStatus.SUCCEEDED, "run_skipped_by_decision"
                    )

                await self._persist(
                    lambda: self._run_store.save_run(
                        run,
                        RunEventType.STEP_COMPLETED,
                        {"step_index": index, "outcome": result.outcome.value},
                    )
                )

            return await self._finish(run, RunStatus.SUCCEEDED, "run_succeeded")

    async def _finish(self, run: PipelineRun, status: RunStatus, event: str) -> PipelineRun:
        run.status = status
        run.completed_at = datetime.now(UTC)
        await self._persist(lambda: self._run_store.save_run(run))
        self._metrics.run_finished(run.task_id, status.value)
        log.info(event, path=run.source_path, steps=len(run.step_results))
        return run

    async def _fail(
        self,
        run: PipelineRun,
        index: int,
        step: StepDefinition,
        current: Path,
        attempts: int,
        error: BaseException,
    ) -> PipelineRun:
        """记录失败步骤，标记 failed，再交给死信处理"""
        message = f"{type(error).__name__}: {error}"
        run.step_results.append(
            StepResult(
                step_index=index,
                type=StepType(step.type),
                attempts=attempts,
                outcome=StepOutcome.FAILED,
                error_message=message,
            )
        )
        run.status = RunStatus.FAILED
        run.failed_step_index = index
        run.error_message = message
        run.completed_at = datetime.now(UTC)
        await self._persist(
            lambda: self._run_store.save_run(
                run,
                RunEventType.STEP_FAILED,
                {"step_index": index, "attempts": attempts, "error": message},
            )
        )
        log.error(
            "run_failed",
            path=run.source_path,
            step_index=index,
            step_type=step.type,
            attempts=attempts,
            error=message,
        )

        await self._dead_letter.handle(run, current, index, step.type, error)
        self._metrics.run_finished(run.task_id, run.status.value)
        return run
