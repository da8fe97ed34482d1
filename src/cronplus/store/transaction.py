"""事务封装 + 持久化重试

所有写操作共享同一个连接，由 write_lock 串行化，
避免不同协程的语句落入同一个隐式事务。
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import aiosqlite
import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import StateStoreError
from ..models.task import RetryPolicy

log = structlog.get_logger()

T = TypeVar("T")


async def run_in_transaction(
    conn: aiosqlite.Connection,
    write_lock: asyncio.Lock,
    work: Callable[[], Awaitable[T]],
) -> T:
    """在单个事务内执行 work，成功提交、失败回滚

    Args:
        conn: 数据库连接
        write_lock: 串行化写事务的锁
        work: 事务体（只执行语句，不提交）

    Raises:
        Exception: work 或提交失败时回滚后原样抛出
    """
    async with write_lock:
        try:
            result = await work()
            await conn.commit()
            return result
        except Exception:
            await conn.rollback()
            raise


def _log_store_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "state_store_retry",
        attempt=retry_state.attempt_number,
        wait_s=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )


async def persist_with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: RetryPolicy,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> T:
    """对持久化调用做带退避的重试

    仅 StateStoreError 触发重试；至少重试一次，保证事件不会在
    一次持久化失败后被静默丢弃。

    Raises:
        StateStoreError: 重试耗尽后抛出最后一次错误
    """
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(policy.max, 1) + 1),
        wait=wait_exponential(multiplier=policy.backoff_ms / 1000),
        retry=retry_if_exception_type(StateStoreError),
        before_sleep=_log_store_retry,
        sleep=sleep,
        reraise=True,
    )
    async for attempt in retrying:
        with attempt:
            return await operation()
    raise AssertionError("unreachable")
