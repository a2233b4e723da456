"""Event Payload 子类型

所有事件的结构化 payload 定义。
"""

from typing import Literal

from pydantic import BaseModel, Field

from .enums import TaskStatus


class TaskCreatedPayload(BaseModel):
    """TASK_CREATED 事件 payload"""

    tenant: str
    scheduled_at: int
    priority: str
    route: Literal["dispatch", "bucket"] = Field(
        description="dispatch: 近期任务直接进入调度通道；bucket: 写入未来日桶",
    )
    bucket_id: int | None = Field(default=None)


class StateTransitionPayload(BaseModel):
    """STATE_TRANSITION 事件 payload"""

    from_status: TaskStatus
    to_status: TaskStatus
    reason: str = Field(default="")
    current_retries: int | None = Field(default=None)


class TaskFailedPayload(BaseModel):
    """TASK_FAILED 事件 payload（同时作为通知通道消息体）"""

    task_id: str
    tenant: str
    error_message: str
    retry_count: int
    max_retries: int
    recoverable: bool = Field(default=False)
