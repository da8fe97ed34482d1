"""CLI 入口模块 -- python -m cronplus <command> [config]

支持的命令：
  run        启动引擎，直到收到 SIGINT/SIGTERM；SIGHUP 重新加载配置
  reconcile  仅恢复上一进程遗留的 run（标记 failed 并进入死信）后退出
  validate   校验配置文档，存在被排除的任务时退出码为 1
"""

import asyncio
import signal
import sys

import structlog

from .config import (
    LoadedConfig,
    get_config_path,
    load_config,
    settings_requiring_restart,
)
from .exceptions import ConfigurationError
from .models.config import ConfigDocument
from .observability.logging_config import setup_logging
from .observability.metrics import MetricsSink, NullMetricsSink, PrometheusMetricsSink

log = structlog.get_logger()

_USAGE = """用法: python -m cronplus <command> [config]
命令:
  run        启动引擎
  reconcile  恢复遗留 run 后退出
  validate   校验配置文档"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]
    config_path = sys.argv[2] if len(sys.argv) > 2 else get_config_path()

    setup_logging()
    try:
        loaded = load_config(config_path)
    except ConfigurationError as e:
        print(f"配置无效: {config_path}")
        for reason in e.reasons:
            print(f"  {reason}")
        sys.exit(2)

    setup_logging(loaded.document.logging.level)

    if command == "run":
        asyncio.run(run_engine(config_path, loaded))
    elif command == "reconcile":
        asyncio.run(reconcile(loaded))
    elif command == "validate":
        sys.exit(validate(loaded))
    else:
        print(f"未知命令: {command}")
        print("可用命令: run, reconcile, validate")
        sys.exit(1)


def validate(loaded: LoadedConfig) -> int:
    """打印校验结果，返回退出码"""
    print(f"有效任务: {len(loaded.tasks)}")
    for error in loaded.rejected:
        print(f"排除任务 {error.task_id}:")
        for reason in error.reasons:
            print(f"  {reason}")
    return 1 if loaded.rejected else 0


async def reconcile(loaded: LoadedConfig) -> None:
    """只执行启动恢复"""
    from .engine import CronplusEngine
    from .store import create_store_group

    runtime = loaded.document.runtime
    store_group = await create_store_group(runtime.state_db_path)
    try:
        engine = CronplusEngine(
            store_group.run_store,
            store_group.watcher_store,
            store_group.task_store,
            runtime,
        )
        count = await engine.recover()
        print(f"恢复完成，{count} 个 run 进入死信")
    finally:
        await store_group.close()


async def run_engine(config_path: str, loaded: LoadedConfig) -> None:
    """运行引擎直到收到停止信号"""
    from .engine import CronplusEngine
    from .store import create_store_group

    runtime = loaded.document.runtime
    metrics: MetricsSink = NullMetricsSink()
    if loaded.document.metrics.enable_prometheus:
        prometheus = PrometheusMetricsSink()
        prometheus.serve(loaded.document.metrics.listen)
        metrics = prometheus

    store_group = await create_store_group(runtime.state_db_path)
    engine = CronplusEngine(
        store_group.run_store,
        store_group.watcher_store,
        store_group.task_store,
        runtime,
        metrics=metrics,
    )

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    reload_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop_event.set)
    if hasattr(signal, "SIGHUP"):
        loop.add_signal_handler(signal.SIGHUP, reload_event.set)

    try:
        await engine.start(loaded.tasks)
        log.info("engine_started", tasks=len(loaded.tasks), config=config_path)
        while not stop_event.is_set():
            waiters = {
                asyncio.create_task(stop_event.wait()),
                asyncio.create_task(reload_event.wait()),
            }
            _, pending = await asyncio.wait(waiters, return_when=asyncio.FIRST_COMPLETED)
            for waiter in pending:
                waiter.cancel()
            if reload_event.is_set() and not stop_event.is_set():
                reload_event.clear()
                await _reload(engine, config_path, loaded.document)
    finally:
        await engine.stop()
        await store_group.close()


async def _reload(engine, config_path: str, running: ConfigDocument) -> None:
    """重新加载配置：任务增删/重启，日志级别即时生效

    runtime/metrics 以启动时的文档为准，与其不同的设置项记录为需要重启。
    """
    try:
        reloaded = load_config(config_path)
    except ConfigurationError as e:
        # 保持当前配置继续运行
        log.error("config_reload_failed", path=config_path, reasons=e.reasons)
        return

    setup_logging(reloaded.document.logging.level)
    pending = settings_requiring_restart(running, reloaded.document)
    if pending:
        log.warning("config_restart_required", path=config_path, settings=pending)

    await engine.apply_config(reloaded.tasks)
    log.info("config_reloaded", path=config_path, tasks=len(reloaded.tasks))


if __name__ == "__main__":
    main()
