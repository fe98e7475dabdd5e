from enum import Enum


class RunState(Enum):
    """运行状态"""
    IDLE = "idle"
    RUNNING = "running"
    STOPPING = "stopping"  # 不再启动新用户，等待在途迭代结束
    COMPLETED = "completed"
    ABORTED = "aborted"  # abort_on_fail 阈值触发
    FAILED = "failed"


class StateMachine:
    """简单的状态机，管理运行状态"""

    def __init__(self, initial_state: RunState = RunState.IDLE):
        self.state = initial_state
        self.transitions = {
            RunState.IDLE: {RunState.RUNNING, RunState.FAILED},
            RunState.RUNNING: {RunState.STOPPING, RunState.FAILED},
            RunState.STOPPING: {RunState.COMPLETED, RunState.ABORTED, RunState.FAILED},
            RunState.COMPLETED: set(),
            RunState.ABORTED: set(),
            RunState.FAILED: set(),
        }

    def can_transition(self, new_state: RunState) -> bool:
        """检查是否可以转移到新状态"""
        return new_state in self.transitions.get(self.state, set())

    def transition(self, new_state: RunState) -> bool:
        """尝试转移到新状态"""
        if self.can_transition(new_state):
            self.state = new_state
            return True
        return False
