"""步骤重试控制

只有 TransientIOError 会被重试；第 k 次重试前等待 backoffMs * 2^(k-1)。
永久错误原样抛出，不消耗重试次数。
"""

import asyncio
from collections.abc import Awaitable, Callable
from typing import TypeVar

import structlog
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from ..exceptions import RetryExhaustedError, TransientIOError
from ..models.task import RetryPolicy

log = structlog.get_logger()

T = TypeVar("T")


def _log_step_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    log.warning(
        "step_retry_scheduled",
        attempt=retry_state.attempt_number,
        wait_s=retry_state.next_action.sleep if retry_state.next_action else None,
        error=str(error),
    )


class RetryController:
    """基于 tenacity 的有界指数退避"""

    def __init__(
        self,
        policy: RetryPolicy,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._policy = policy
        self._sleep = sleep

    async def run(self, operation: Callable[[], Awaitable[T]]) -> tuple[T, int]:
        """执行 operation，必要时重试

        Returns:
            (结果, 实际执行次数)

        Raises:
            RetryExhaustedError: 临时错误在 policy.max 次重试后仍未恢复
            PermanentStepError: 永久错误，立即抛出
        """
        attempts = 0
        retrying = AsyncRetrying(
            stop=stop_after_attempt(self._policy.max + 1),
            wait=wait_exponential(multiplier=self._policy.backoff_ms / 1000),
            retry=retry_if_exception_type(TransientIOError),
            before_sleep=_log_step_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            async for attempt in retrying:
                with attempt:
                    attempts += 1
                    result = await operation()
                    return result, attempts
        except TransientIOError as e:
            raise RetryExhaustedError(attempts, e) from e
        raise AssertionError("unreachable")
