"""枚举定义

包含 RunStatus 状态机、StepType、ConflictStrategy 等枚举，
以及 VALID_TRANSITIONS 合法流转映射和 TERMINAL_STATES 终态集合。
"""

from enum import StrEnum


class RunStatus(StrEnum):
    """PipelineRun 状态机"""

    PENDING = "pending"
    RUNNING = "running"

    # 终态
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    DEADLETTERED = "deadlettered"


# 状态只允许单调前进；failed 仅可继续进入 deadlettered
VALID_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
    RunStatus.PENDING: {RunStatus.RUNNING, RunStatus.FAILED},
    RunStatus.RUNNING: {
        RunStatus.SUCCEEDED,
        RunStatus.FAILED,
        RunStatus.DEADLETTERED,
    },
    RunStatus.SUCCEEDED: set(),
    RunStatus.FAILED: {RunStatus.DEADLETTERED},
    RunStatus.DEADLETTERED: set(),
}

TERMINAL_STATES: set[RunStatus] = {
    RunStatus.SUCCEEDED,
    RunStatus.FAILED,
    RunStatus.DEADLETTERED,
}

# 活跃状态：去重判定依据
ACTIVE_STATES: set[RunStatus] = {RunStatus.PENDING, RunStatus.RUNNING}


class StepType(StrEnum):
    """流水线步骤类型"""

    COPY = "copy"
    MOVE = "move"
    PRINT = "print"
    ARCHIVE = "archive"
    DELETE = "delete"
    DECISION = "decision"


class ConflictStrategy(StrEnum):
    """目标路径冲突策略"""

    OVERWRITE = "overwrite"
    RENAME = "rename"
    SKIP = "skip"
    FAIL = "fail"


class StepOutcome(StrEnum):
    """单个步骤的执行结果"""

    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    HALTED = "halted"
    FAILED = "failed"


class RunEventType(StrEnum):
    """run_events 事件类型"""

    RUN_ADMITTED = "RUN_ADMITTED"
    STATE_TRANSITION = "STATE_TRANSITION"
    STEP_COMPLETED = "STEP_COMPLETED"
    STEP_FAILED = "STEP_FAILED"
    DEADLETTERED = "DEADLETTERED"
    RUN_INTERRUPTED = "RUN_INTERRUPTED"


class WatcherStatus(StrEnum):
    """Watcher 运行状态"""

    ACTIVE = "active"
    DEGRADED = "degraded"


class ConditionOperator(StrEnum):
    """decision 条件运算符"""

    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    MATCHES = "matches"
    IN = "in"
    NOT_IN = "not_in"
    EXISTS = "exists"


class ConditionField(StrEnum):
    """decision 条件可引用的文件元数据字段"""

    NAME = "name"
    STEM = "stem"
    EXTENSION = "extension"
    SIZE = "size"
    PATH = "path"
    DIRECTORY = "directory"
    AGE_SECONDS = "age_seconds"


class DeadLetterLayout(StrEnum):
    """死信目录布局"""

    FLAT = "flat"
    TASK = "task"
    RUN = "run"


def validate_transition(from_status: RunStatus, to_status: RunStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
