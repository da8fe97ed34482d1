"""CronPlus 异常体系

recoverable 标记决定 RetryController 是否对该错误重试。
"""


class CronplusError(Exception):
    """CronPlus 基础异常"""

    def __init__(self, message: str, recoverable: bool = False) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class ConfigurationError(CronplusError):
    """配置校验失败

    task_id 为 None 时表示文档级错误（整份配置不可用）；
    否则仅该任务被排除。
    """

    def __init__(self, task_id: str | None, reasons: list[str]) -> None:
        target = task_id if task_id is not None else "<document>"
        super().__init__(f"配置无效: {target} -- {'; '.join(reasons)}", recoverable=False)
        self.task_id = task_id
        self.reasons = reasons


class TransientIOError(CronplusError):
    """临时 I/O 错误（目标不可写、文件被锁等），按步骤重试策略重试"""

    def __init__(self, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message, recoverable=True)
        self.cause = cause


class PermanentStepError(CronplusError):
    """永久性步骤错误（未知设备、非法路径模式、目标冲突等），不重试"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class RetryExhaustedError(CronplusError):
    """重试次数耗尽"""

    def __init__(self, attempts: int, last_error: BaseException) -> None:
        super().__init__(
            f"重试 {attempts} 次后仍失败: {last_error}",
            recoverable=False,
        )
        self.attempts = attempts
        self.last_error = last_error


class DuplicateEventError(CronplusError):
    """同一 (task_id, path) 已存在活跃 run，事件被丢弃"""

    def __init__(self, task_id: str, path: str) -> None:
        super().__init__(f"重复事件: {task_id} {path}", recoverable=False)
        self.task_id = task_id
        self.path = path


class StateStoreError(CronplusError):
    """持久化操作失败，调用方应带退避重试"""

    def __init__(self, operation: str, cause: BaseException | None = None) -> None:
        super().__init__(f"状态存储操作失败: {operation} -- {cause}", recoverable=True)
        self.operation = operation
        self.cause = cause


class InvalidTransitionError(CronplusError):
    """非法的 run 状态流转（只允许单调前进）"""

    def __init__(self, run_id: str, from_status: str, to_status: str) -> None:
        super().__init__(
            f"非法状态流转: {run_id} {from_status} -> {to_status}",
            recoverable=False,
        )
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
