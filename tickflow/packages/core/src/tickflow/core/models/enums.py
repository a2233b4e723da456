"""枚举定义 -- 任务生命周期状态机

包含 TaskStatus 状态机、TaskPriority、EventType、ActorType 枚举，
以及 VALID_TRANSITIONS 合法流转映射、TERMINAL_STATES 终态集合和
ACTIVE_STATES 活跃状态集合。
"""

from enum import StrEnum


class TaskStatus(StrEnum):
    """Task 状态机

    CREATED -> SCHEDULED -> DELIVERED -> RUNNING -> COMPLETED，
    活跃状态失败且仍有重试预算时进入 RETRYING，预算耗尽进入 FAILED。
    """

    CREATED = "CREATED"
    SCHEDULED = "SCHEDULED"
    DELIVERED = "DELIVERED"
    RUNNING = "RUNNING"
    RETRYING = "RETRYING"

    # 终态
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


class TaskPriority(StrEnum):
    """任务优先级"""

    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"


VALID_TRANSITIONS: dict[TaskStatus, set[TaskStatus]] = {
    TaskStatus.CREATED: {TaskStatus.SCHEDULED, TaskStatus.CANCELLED},
    TaskStatus.SCHEDULED: {
        TaskStatus.DELIVERED,
        TaskStatus.RETRYING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.DELIVERED: {
        TaskStatus.RUNNING,
        TaskStatus.COMPLETED,
        TaskStatus.RETRYING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RUNNING: {
        TaskStatus.COMPLETED,
        TaskStatus.RETRYING,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    TaskStatus.RETRYING: {
        TaskStatus.SCHEDULED,
        TaskStatus.FAILED,
        TaskStatus.CANCELLED,
    },
    # 终态不可再流转
    TaskStatus.COMPLETED: set(),
    TaskStatus.FAILED: set(),
    TaskStatus.CANCELLED: set(),
}

TERMINAL_STATES: set[TaskStatus] = {
    TaskStatus.COMPLETED,
    TaskStatus.FAILED,
    TaskStatus.CANCELLED,
}

# 可上报失败（进入重试或终态失败）的状态
ACTIVE_STATES: set[TaskStatus] = {
    TaskStatus.SCHEDULED,
    TaskStatus.DELIVERED,
    TaskStatus.RUNNING,
}


class EventType(StrEnum):
    """事件类型"""

    TASK_CREATED = "TASK_CREATED"
    STATE_TRANSITION = "STATE_TRANSITION"
    TASK_FAILED = "TASK_FAILED"


class ActorType(StrEnum):
    """操作者类型"""

    USER = "user"
    INTAKE = "intake"
    SCANNER = "scanner"
    ENGINE = "engine"
    DELIVERY = "delivery"
    SYSTEM = "system"


def validate_transition(from_status: TaskStatus, to_status: TaskStatus) -> bool:
    """验证状态流转是否合法

    Args:
        from_status: 当前状态
        to_status: 目标状态

    Returns:
        True 如果流转合法，否则 False
    """
    allowed = VALID_TRANSITIONS.get(from_status, set())
    return to_status in allowed
