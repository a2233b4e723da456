"""Tickflow Core Domain Models -- 公共类型导出

所有公共模型类型从此入口导入。
"""

from .enums import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    ActorType,
    EventType,
    TaskPriority,
    TaskStatus,
    validate_transition,
)
from .event import Event
from .payloads import StateTransitionPayload, TaskCreatedPayload, TaskFailedPayload
from .reports import DeliveryReport, ScanSummary
from .submission import TaskSubmission
from .task import Task, TaskMetadata

__all__ = [
    # 枚举
    "TaskStatus",
    "TaskPriority",
    "EventType",
    "ActorType",
    # 状态机
    "VALID_TRANSITIONS",
    "TERMINAL_STATES",
    "ACTIVE_STATES",
    "validate_transition",
    # Task
    "Task",
    "TaskMetadata",
    "TaskSubmission",
    # Event
    "Event",
    # Payloads
    "TaskCreatedPayload",
    "StateTransitionPayload",
    "TaskFailedPayload",
    # 运行报告
    "ScanSummary",
    "DeliveryReport",
]
