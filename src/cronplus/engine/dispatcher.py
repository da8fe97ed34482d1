"""TaskDispatcher -- 单任务的准入、去重与并发上限

Watcher 通过 submit() 把就绪事件放入队列；唯一的消费协程按到达顺序
逐个准入（FIFO），并发已满时在信号量上协作等待。
准入前后各查询一次活跃 run，重复事件直接丢弃。
事件被接收（建立 run 或被已有活跃 run 覆盖）后回调 on_admitted。
各任务的 Dispatcher 互不共享锁或信号量。
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from ..exceptions import DuplicateEventError, StateStoreError
from ..models.run import FileEvent, PipelineRun
from ..models.task import TaskDefinition
from ..observability.metrics import MetricsSink, NullMetricsSink
from ..store.protocols import RunStore
from .runner import PipelineRunner

log = structlog.get_logger()

AdmissionHook = Callable[[FileEvent], Awaitable[None]]


class TaskDispatcher:
    """单任务调度器"""

    def __init__(
        self,
        task: TaskDefinition,
        runner: PipelineRunner,
        run_store: RunStore,
        limit: int,
        metrics: MetricsSink | None = None,
        on_admitted: AdmissionHook | None = None,
    ) -> None:
        self.task = task
        self.limit = limit
        self.on_admitted = on_admitted
        self._runner = runner
        self._run_store = run_store
        self._metrics = metrics or NullMetricsSink()
        self._queue: asyncio.Queue[FileEvent | None] = asyncio.Queue()
        self._semaphore = asyncio.Semaphore(limit)
        self._in_flight: set[asyncio.Task[PipelineRun | None]] = set()
        self._accepting = True
        self._consumer: asyncio.Task[None] | None = None

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    @property
    def accepting(self) -> bool:
        return self._accepting

    def start(self) -> None:
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume(), name=f"dispatch:{self.task.id}")

    async def submit(self, event: FileEvent) -> None:
        """Watcher -> Dispatcher 的消息入口"""
        if not self._accepting:
            log.debug("event_dropped_not_accepting", task_id=self.task.id, path=event.source_path)
            return
        self._queue.put_nowait(event)

    async def _consume(self) -> None:
        """按到达顺序准入；收到哨兵 None 后退出，停止准入后的事件只丢弃"""
        while True:
            event = await self._queue.get()
            try:
                if event is None:
                    return
                if not self._accepting:
                    log.info("pending_event_dropped", task_id=self.task.id, path=event.source_path)
                    continue
                if await self.admit(event) is not None:
                    await self._acknowledge(event)
            except DuplicateEventError:
                log.debug("duplicate_event_dropped", task_id=self.task.id, path=event.source_path)
                await self._acknowledge(event)
            except StateStoreError as e:
                log.error(
                    "run_admission_failed",
                    task_id=self.task.id,
                    path=event.source_path,
                    error=str(e),
                )
            finally:
                self._queue.task_done()

    async def _acknowledge(self, event: FileEvent) -> None:
        if self.on_admitted is not None:
            await self.on_admitted(event)

    async def admit(self, event: FileEvent) -> asyncio.Task[PipelineRun | None] | None:
        """准入事件：去重 -> 等待并发名额 -> 以 running 落库 -> 启动 run

        Returns:
            run 的 asyncio.Task；已停止准入时返回 None

        Raises:
            DuplicateEventError: 同一路径已有活跃 run
            StateStoreError: 持久化重试耗尽
        """
        if await self._run_store.exists_active_run(self.task.id, event.source_path):
            raise DuplicateEventError(self.task.id, event.source_path)

        await self._semaphore.acquire()
        try:
            if not self._accepting:
                self._semaphore.release()
                return None
            # 等待名额期间可能已有同路径 run 被准入
            if await self._run_store.exists_active_run(self.task.id, event.source_path):
                raise DuplicateEventError(self.task.id, event.source_path)
            run = await self._runner.create_run(self.task, event)
        except BaseException:
            self._semaphore.release()
            raise

        task = asyncio.create_task(self._execute(run), name=f"run:{run.run_id}")
        self._in_flight.add(task)
        task.add_done_callback(self._on_done)
        self._metrics.set_in_flight(self.task.id, len(self._in_flight))
        return task

    async def _execute(self, run: PipelineRun) -> PipelineRun | None:
        try:
            return await self._runner.execute(self.task, run)
        except Exception:
            log.exception("run_crashed", task_id=self.task.id, run_id=run.run_id)
            return None
        finally:
            self._semaphore.release()

    def _on_done(self, task: asyncio.Task[PipelineRun | None]) -> None:
        self._in_flight.discard(task)
        self._metrics.set_in_flight(self.task.id, len(self._in_flight))

    async def stop_admissions(self) -> None:
        """立即停止准入：队列中尚未准入的事件被丢弃

        消费协程收到哨兵后自行退出，进行中的准入会完整落库并启动；
        drain() 等待其结束。
        """
        self._accepting = False
        self._queue.put_nowait(None)

    async def join(self) -> None:
        """等待已提交的事件全部完成准入或被丢弃"""
        await self._queue.join()

    async def drain(self) -> None:
        """等待消费协程退出与所有在途 run 执行完毕（步骤不会被中途打断）"""
        if not self._accepting and self._consumer is not None:
            await self._consumer
            self._consumer = None
        while self._in_flight:
            await asyncio.wait(set(self._in_flight))
