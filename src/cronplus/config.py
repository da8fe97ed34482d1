"""配置模块 -- 环境变量 getter + 配置文档加载

环境变量优先于配置文档中的同名设置。
单个任务校验失败只排除该任务（逐字段记录原因），不影响其他任务。
"""

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import structlog
import yaml
from pydantic import ValidationError

from .exceptions import ConfigurationError
from .models.config import ConfigDocument
from .models.task import TaskDefinition

log = structlog.get_logger()


def get_config_path() -> str:
    """获取配置文档路径"""
    return os.environ.get("CRONPLUS_CONFIG_PATH", "cronplus.yaml")


def get_db_path(default: str) -> str:
    """获取 SQLite 数据库路径（CRONPLUS_DB_PATH 覆盖配置值）"""
    return os.environ.get("CRONPLUS_DB_PATH", default)


def get_dead_letter_dir(default: str) -> Path:
    """获取死信目录（CRONPLUS_DEAD_LETTER_DIR 覆盖配置值）"""
    return Path(os.environ.get("CRONPLUS_DEAD_LETTER_DIR", default))


# 运行时写入的临时文件前缀（Watcher 会忽略这类文件）
TEMP_FILE_PREFIX: str = ".cronplus-tmp-"

# 死信 sidecar 文件后缀
DEAD_LETTER_SIDECAR_SUFFIX: str = ".deadletter.json"

# 文件复制块大小
COPY_CHUNK_SIZE: int = 1024 * 1024


@dataclass
class LoadedConfig:
    """load_config 结果：文档 + 通过校验的任务 + 被排除任务的原因"""

    document: ConfigDocument
    tasks: list[TaskDefinition] = field(default_factory=list)
    rejected: list[ConfigurationError] = field(default_factory=list)


def _format_loc(loc: tuple[Any, ...]) -> str:
    return ".".join(str(part) for part in loc)


def _parse_document(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as e:
        raise ConfigurationError(None, [f"cannot read {path}: {e}"]) from e

    try:
        if path.suffix.lower() in {".yaml", ".yml"}:
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (yaml.YAMLError, json.JSONDecodeError) as e:
        raise ConfigurationError(None, [f"cannot parse {path}: {e}"]) from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ConfigurationError(None, ["config document must be a mapping"])
    return data


def validate_tasks(
    raw_tasks: list[Any],
) -> tuple[list[TaskDefinition], list[ConfigurationError]]:
    """逐个校验任务定义

    Returns:
        (有效任务列表, 被排除任务的 ConfigurationError 列表)
    """
    tasks: list[TaskDefinition] = []
    rejected: list[ConfigurationError] = []
    enabled_ids: set[str] = set()

    for index, raw in enumerate(raw_tasks):
        task_id = raw.get("id") if isinstance(raw, dict) else None
        label = str(task_id) if task_id else f"tasks[{index}]"
        try:
            task = TaskDefinition.model_validate(raw)
        except ValidationError as e:
            reasons = []
            for err in e.errors():
                loc = _format_loc(err["loc"])
                reasons.append(f"{loc}: {err['msg']}")
                log.error("task_config_invalid", task_id=label, field=loc, reason=err["msg"])
            rejected.append(ConfigurationError(label, reasons))
            continue

        if task.enabled:
            if task.id in enabled_ids:
                reason = "id: duplicate id among enabled tasks"
                log.error("task_config_invalid", task_id=task.id, field="id", reason=reason)
                rejected.append(ConfigurationError(task.id, [reason]))
                continue
            enabled_ids.add(task.id)
        tasks.append(task)

    return tasks, rejected


def load_config(path: str | Path) -> LoadedConfig:
    """加载并校验配置文档

    Args:
        path: YAML（.yaml/.yml）或 JSON 配置文件路径

    Returns:
        LoadedConfig

    Raises:
        ConfigurationError: 文档级错误（不可读、版本不支持、运行时配置无效）
    """
    path = Path(path)
    data = _parse_document(path)

    try:
        document = ConfigDocument.model_validate(data)
    except ValidationError as e:
        reasons = [f"{_format_loc(err['loc'])}: {err['msg']}" for err in e.errors()]
        raise ConfigurationError(None, reasons) from e

    runtime = document.runtime
    runtime.state_db_path = get_db_path(runtime.state_db_path)
    runtime.dead_letter_dir = str(get_dead_letter_dir(runtime.dead_letter_dir))

    tasks, rejected = validate_tasks(document.tasks)
    log.info(
        "config_loaded",
        path=str(path),
        tasks=len(tasks),
        rejected=len(rejected),
    )
    return LoadedConfig(document=document, tasks=tasks, rejected=rejected)


def settings_requiring_restart(current: ConfigDocument, reloaded: ConfigDocument) -> list[str]:
    """重载时发生变化、但只在重启后生效的设置项（runtime / metrics，camelCase 路径）"""
    changed: list[str] = []
    for section in ("runtime", "metrics"):
        old = getattr(current, section).model_dump(by_alias=True, mode="json")
        new = getattr(reloaded, section).model_dump(by_alias=True, mode="json")
        for key in sorted(old.keys() | new.keys()):
            if old.get(key) != new.get(key):
                changed.append(f"{section}.{key}")
    return changed
