"""CronPlus Domain Models"""

from .config import (
    ConfigDocument,
    DeviceSettings,
    LoggingSettings,
    MetricsSettings,
    RuntimeSettings,
)
from .enums import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ConditionField,
    ConditionOperator,
    ConflictStrategy,
    DeadLetterLayout,
    RunEventType,
    RunStatus,
    StepOutcome,
    StepType,
    WatcherStatus,
    validate_transition,
)
from .run import FileEvent, PipelineRun, RunEvent, RunFilter, StepResult
from .task import (
    ArchiveStep,
    Condition,
    CopyStep,
    DecisionStep,
    DeleteStep,
    MoveStep,
    PrintStep,
    RetryPolicy,
    StepDefinition,
    TaskDefinition,
    TransferStepBase,
    WatchSpec,
)
from .watcher import FileSignature, WatcherState

__all__ = [
    # Enums
    "RunStatus",
    "StepType",
    "ConflictStrategy",
    "StepOutcome",
    "RunEventType",
    "WatcherStatus",
    "ConditionField",
    "ConditionOperator",
    "DeadLetterLayout",
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "validate_transition",
    # Task
    "TaskDefinition",
    "WatchSpec",
    "RetryPolicy",
    "StepDefinition",
    "TransferStepBase",
    "CopyStep",
    "MoveStep",
    "ArchiveStep",
    "PrintStep",
    "DeleteStep",
    "DecisionStep",
    "Condition",
    # Run
    "FileEvent",
    "PipelineRun",
    "StepResult",
    "RunEvent",
    "RunFilter",
    # Watcher
    "WatcherState",
    "FileSignature",
    # Config
    "ConfigDocument",
    "LoggingSettings",
    "MetricsSettings",
    "RuntimeSettings",
    "DeviceSettings",
]
