"""CronPlus Engine -- 监听、调度、流水线执行与死信处理"""

from .conditions import evaluate_condition, evaluate_decision
from .conflict import ConflictResolver, Resolution, resolve_conflict
from .deadletter import DeadLetterHandler
from .devices import DeviceRegistry, LpDevice, OutputDevice, SpoolDirectoryDevice
from .dispatcher import TaskDispatcher
from .retry import RetryController
from .runner import PipelineRunner
from .steps import StepExecutor, StepOutput
from .supervisor import CronplusEngine, TaskSupervisor
from .translator import translate, translate_path
from .watcher import DirectoryWatcher

__all__ = [
    "translate",
    "translate_path",
    "ConflictResolver",
    "Resolution",
    "resolve_conflict",
    "RetryController",
    "evaluate_condition",
    "evaluate_decision",
    "OutputDevice",
    "LpDevice",
    "SpoolDirectoryDevice",
    "DeviceRegistry",
    "StepExecutor",
    "StepOutput",
    "PipelineRunner",
    "DeadLetterHandler",
    "DirectoryWatcher",
    "TaskDispatcher",
    "TaskSupervisor",
    "CronplusEngine",
]
