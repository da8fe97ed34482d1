"""任务监管 + 引擎

TaskSupervisor 持有一个任务的 Watcher 与 Dispatcher；
CronplusEngine 按配置增删/重启 TaskSupervisor，并在启动时
对上一进程遗留的 run 做恢复（interrupted -> failed -> 死信）。
"""

import asyncio
from collections.abc import Awaitable, Callable
from pathlib import Path

import structlog

from ..models.config import RuntimeSettings
from ..models.enums import RunStatus
from ..models.run import RunFilter
from ..models.task import TaskDefinition
from ..observability.metrics import MetricsSink, NullMetricsSink
from ..store.protocols import RunStore, TaskDefinitionStore, WatcherStateStore
from ..store.transaction import persist_with_retry
from .conflict import ConflictResolver
from .deadletter import DeadLetterHandler
from .devices import DeviceRegistry
from .dispatcher import TaskDispatcher
from .runner import PipelineRunner
from .steps import StepExecutor
from .watcher import DirectoryWatcher

log = structlog.get_logger()

# Watcher 意外退出后的重启间隔（秒）
WATCHER_RESTART_DELAY: float = 1.0


class TaskSupervisor:
    """单任务的 Watcher + Dispatcher 生命周期"""

    def __init__(
        self,
        task: TaskDefinition,
        watcher: DirectoryWatcher,
        dispatcher: TaskDispatcher,
    ) -> None:
        self.task = task
        self.watcher = watcher
        self.dispatcher = dispatcher
        self._watcher_task: asyncio.Task[None] | None = None

    async def start(self) -> None:
        await self.watcher.load_state()
        self.dispatcher.start()
        self._watcher_task = asyncio.create_task(self._watch(), name=f"watch:{self.task.id}")
        log.info("task_started", task_id=self.task.id, limit=self.dispatcher.limit)

    async def _watch(self) -> None:
        while True:
            try:
                await self.watcher.run()
                return
            except Exception:
                # Watcher 故障只影响本任务
                log.exception("watcher_crashed", task_id=self.task.id)
                await asyncio.sleep(WATCHER_RESTART_DELAY)

    async def stop(self) -> None:
        """停止准入 -> 等待在途 run 完成 -> 拆除 Watcher"""
        await self.dispatcher.stop_admissions()
        await self.dispatcher.drain()
        self.watcher.stop()
        if self._watcher_task is not None:
            await self._watcher_task
            self._watcher_task = None
        log.info("task_stopped", task_id=self.task.id)


class CronplusEngine:
    """引擎：持有所有 TaskSupervisor，负责启动恢复、重载与停止"""

    def __init__(
        self,
        run_store: RunStore,
        watcher_store: WatcherStateStore,
        task_store: TaskDefinitionStore,
        runtime: RuntimeSettings,
        metrics: MetricsSink | None = None,
        devices: DeviceRegistry | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._run_store = run_store
        self._watcher_store = watcher_store
        self._task_store = task_store
        self._runtime = runtime
        self._metrics = metrics or NullMetricsSink()
        self._devices = devices or DeviceRegistry(runtime.devices)
        self._sleep = sleep
        self._dead_letter = DeadLetterHandler(
            run_store,
            runtime.dead_letter_dir,
            runtime.dead_letter_layout,
            runtime.state_store_retry,
        )
        self._supervisors: dict[str, TaskSupervisor] = {}

    @property
    def supervisors(self) -> dict[str, TaskSupervisor]:
        return dict(self._supervisors)

    def effective_limit(self, task: TaskDefinition) -> int:
        return min(task.concurrency_limit, self._runtime.max_concurrent_per_task)

    async def start(self, tasks: list[TaskDefinition]) -> None:
        """启动恢复后按配置启动任务"""
        await self.recover()
        await self.apply_config(tasks)

    async def recover(self) -> int:
        """恢复上一进程遗留的 run

        running/pending 标记为 failed（interrupted），随后与所有尚未
        进入死信的 failed run 一起交给死信处理。

        Returns:
            进入死信的 run 数量
        """
        await persist_with_retry(
            self._run_store.reconcile_interrupted_runs,
            self._runtime.state_store_retry,
            self._sleep,
        )
        failed = await self._run_store.list_runs(RunFilter(status=RunStatus.FAILED, limit=None))
        for run in failed:
            step_type = None
            if run.failed_step_index is not None:
                for result in run.step_results:
                    if result.step_index == run.failed_step_index:
                        step_type = result.type.value
            current = Path(run.current_path) if run.current_path else None
            await self._dead_letter.handle(
                run,
                current,
                run.failed_step_index,
                step_type,
                run.error_message or "failed",
            )
        if failed:
            log.warning("failed_runs_recovered", count=len(failed))
        return len(failed)

    def _build_supervisor(self, task: TaskDefinition) -> TaskSupervisor:
        executor = StepExecutor(ConflictResolver(), self._devices)
        runner = PipelineRunner(
            self._run_store,
            executor,
            self._dead_letter,
            self._metrics,
            self._runtime.state_store_retry,
            self._sleep,
        )
        dispatcher = TaskDispatcher(
            task,
            runner,
            self._run_store,
            self.effective_limit(task),
            self._metrics,
        )
        watcher = DirectoryWatcher(
            task,
            dispatcher.submit,
            self._watcher_store,
            poll_interval=self._runtime.poll_interval_ms / 1000,
            store_retry=self._runtime.state_store_retry,
        )
        dispatcher.on_admitted = watcher.acknowledge
        return TaskSupervisor(task, watcher, dispatcher)

    async def apply_config(self, tasks: list[TaskDefinition]) -> None:
        """按新配置增删/重启任务；未变化的任务不受影响"""
        await persist_with_retry(
            lambda: self._task_store.save_task_definitions(tasks),
            self._runtime.state_store_retry,
            self._sleep,
        )
        wanted = {task.id: task for task in tasks if task.enabled}

        for task_id, supervisor in list(self._supervisors.items()):
            task = wanted.get(task_id)
            if task is None or task != supervisor.task:
                await self.disable(task_id)

        for task_id, task in wanted.items():
            if task_id not in self._supervisors:
                supervisor = self._build_supervisor(task)
                self._supervisors[task_id] = supervisor
                await supervisor.start()

    async def disable(self, task_id: str) -> None:
        """停用任务：立即停止准入，在途 run 完成后拆除 Watcher"""
        supervisor = self._supervisors.pop(task_id, None)
        if supervisor is not None:
            await supervisor.stop()

    async def stop(self) -> None:
        """优雅停止所有任务"""
        supervisors = list(self._supervisors)
        await asyncio.gather(*(self.disable(task_id) for task_id in supervisors))
        log.info("engine_stopped", tasks=len(supervisors))
