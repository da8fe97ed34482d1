"""decision 步骤的条件求值

字段取自当前文件的元数据；字符串比较不区分大小写（matches 除外），
数值字段与数值参数按数值比较。
"""

import os
import re
import time
from pathlib import Path
from typing import Any

from ..exceptions import PermanentStepError
from ..models.enums import ConditionField, ConditionOperator
from ..models.task import Condition, DecisionStep


def file_facts(path: Path) -> dict[ConditionField, Any]:
    """收集文件元数据；文件不存在时 size/age 为 None"""
    try:
        stat = path.stat()
    except FileNotFoundError:
        stat = None
    return {
        ConditionField.NAME: path.name,
        ConditionField.STEM: path.stem,
        ConditionField.EXTENSION: path.suffix[1:].lower(),
        ConditionField.SIZE: stat.st_size if stat else None,
        ConditionField.PATH: str(path),
        ConditionField.DIRECTORY: str(path.parent),
        ConditionField.AGE_SECONDS: (time.time() - stat.st_mtime) if stat else None,
    }


def _fold(value: Any) -> Any:
    return value.casefold() if isinstance(value, str) else value


def _number_or_none(value: Any) -> float | None:
    if isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _equals(actual: Any, expected: Any) -> bool:
    """一侧为数值且另一侧可解析为数值时按数值比较，否则按字符串（不区分大小写）"""
    if any(isinstance(v, int | float) and not isinstance(v, bool) for v in (actual, expected)):
        left, right = _number_or_none(actual), _number_or_none(expected)
        if left is not None and right is not None:
            return left == right
    return _fold(str(actual)) == _fold(str(expected))


def _as_number(value: Any, condition: Condition) -> float:
    try:
        return float(value)
    except (TypeError, ValueError) as e:
        raise PermanentStepError(
            f"condition {condition.field}/{condition.operator} needs a number, got {value!r}"
        ) from e


def evaluate_condition(condition: Condition, facts: dict[ConditionField, Any]) -> bool:
    """对单条条件求值

    Raises:
        PermanentStepError: 条件参数类型不匹配（如对非数字做大小比较）
    """
    actual = facts.get(condition.field)
    expected = condition.value
    op = condition.operator

    if op == ConditionOperator.EXISTS:
        present = actual is not None and actual != ""
        return present if expected is None else present == bool(expected)
    if actual is None:
        return False

    match op:
        case ConditionOperator.EQ:
            return _equals(actual, expected)
        case ConditionOperator.NE:
            return not _equals(actual, expected)
        case ConditionOperator.GT:
            return _as_number(actual, condition) > _as_number(expected, condition)
        case ConditionOperator.GTE:
            return _as_number(actual, condition) >= _as_number(expected, condition)
        case ConditionOperator.LT:
            return _as_number(actual, condition) < _as_number(expected, condition)
        case ConditionOperator.LTE:
            return _as_number(actual, condition) <= _as_number(expected, condition)
        case ConditionOperator.CONTAINS:
            return _fold(str(expected)) in _fold(str(actual))
        case ConditionOperator.STARTS_WITH:
            return _fold(str(actual)).startswith(_fold(str(expected)))
        case ConditionOperator.ENDS_WITH:
            return _fold(str(actual)).endswith(_fold(str(expected)))
        case ConditionOperator.MATCHES:
            try:
                return re.search(str(expected), str(actual)) is not None
            except re.error as e:
                raise PermanentStepError(f"invalid regex {expected!r}: {e}") from e
        case ConditionOperator.IN | ConditionOperator.NOT_IN:
            if not isinstance(expected, list):
                raise PermanentStepError(f"operator {op} needs a list value")
            found = any(_equals(actual, item) for item in expected)
            return found if op == ConditionOperator.IN else not found
    raise PermanentStepError(f"unsupported operator: {op}")


def evaluate_decision(step: DecisionStep, path: str | os.PathLike[str]) -> bool:
    """对 decision 步骤求值；无条件时为真"""
    if not step.conditions:
        return True
    facts = file_facts(Path(path))
    results = (evaluate_condition(condition, facts) for condition in step.conditions)
    return all(results) if step.logic == "all" else any(results)
