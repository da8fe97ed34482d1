"""Run 状态机流转单元测试

测试内容：
1. 合法流转通过
2. 非法流转被拒绝
3. 终态不可再流转（failed 仅可进入 deadlettered）
"""

import pytest
from cronplus.models import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    RunStatus,
    validate_transition,
)


class TestRunStateMachine:
    """状态机流转验证"""

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (RunStatus.PENDING, RunStatus.RUNNING),
            (RunStatus.PENDING, RunStatus.FAILED),
            (RunStatus.RUNNING, RunStatus.SUCCEEDED),
            (RunStatus.RUNNING, RunStatus.FAILED),
            (RunStatus.RUNNING, RunStatus.DEADLETTERED),
            (RunStatus.FAILED, RunStatus.DEADLETTERED),
        ],
    )
    def test_valid_transition(self, from_status: RunStatus, to_status: RunStatus):
        """合法流转应通过验证"""
        assert validate_transition(from_status, to_status) is True

    @pytest.mark.parametrize(
        "from_status,to_status",
        [
            (RunStatus.RUNNING, RunStatus.PENDING),
            (RunStatus.RUNNING, RunStatus.RUNNING),
            (RunStatus.SUCCEEDED, RunStatus.RUNNING),
            (RunStatus.FAILED, RunStatus.RUNNING),
            (RunStatus.FAILED, RunStatus.SUCCEEDED),
            (RunStatus.DEADLETTERED, RunStatus.FAILED),
        ],
    )
    def test_backward_transition_rejected(self, from_status: RunStatus, to_status: RunStatus):
        """后退流转应被拒绝"""
        assert validate_transition(from_status, to_status) is False

    def test_succeeded_and_deadlettered_are_final(self):
        for status in (RunStatus.SUCCEEDED, RunStatus.DEADLETTERED):
            assert VALID_TRANSITIONS[status] == set()

    def test_every_status_has_transition_entry(self):
        for status in RunStatus:
            assert status in VALID_TRANSITIONS

    def test_terminal_states(self):
        assert TERMINAL_STATES == {
            RunStatus.SUCCEEDED,
            RunStatus.FAILED,
            RunStatus.DEADLETTERED,
        }
