"""Task / TaskMetadata Domain Model

tasks 表保存完整任务记录（权威数据）；
TaskMetadata 是在总线和日桶中流转的轻量投影，路由时无需回读完整 Task。
"""

from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .enums import TaskPriority, TaskStatus


class Task(BaseModel):
    """Task 数据模型

    不变量：current_retries <= max_retries；
    status 只沿 VALID_TRANSITIONS 流转，取消是状态而非删除。
    """

    task_id: str = Field(description="全局唯一标识（调用方或系统分配）")
    tenant: str = Field(description="租户")
    payload: str = Field(default="", description="不透明负载")
    scheduled_at: int = Field(description="期望触发时间（epoch 毫秒）")
    status: TaskStatus = Field(default=TaskStatus.CREATED, description="当前状态")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="优先级")
    created_by: str = Field(default="", description="创建者")
    assigned_to: str = Field(default="", description="负责人")
    parameters: dict[str, str] = Field(default_factory=dict, description="附加参数")
    created_at: datetime = Field(description="创建时间")
    updated_at: datetime = Field(description="更新时间")
    retry_count: int = Field(default=0, ge=0, description="累计失败上报次数")
    current_retries: int = Field(default=0, ge=0, description="已消耗的重试次数")
    max_retries: int = Field(default=3, ge=0, description="最大重试次数")
    retry_delay_ms: int = Field(default=5000, ge=0, description="重试间隔（毫秒）")
    execution_result: str | None = Field(default=None, description="执行结果")
    error_message: str | None = Field(default=None, description="最近一次错误信息")

    @model_validator(mode="after")
    def _check_retry_budget(self) -> "Task":
        if self.current_retries > self.max_retries:
            raise ValueError(
                f"current_retries ({self.current_retries}) exceeds "
                f"max_retries ({self.max_retries})"
            )
        return self


class TaskMetadata(BaseModel):
    """TaskMetadata -- 总线消息与日桶记录的轻量投影

    存入日桶时 bucket_id 等于 scheduled_at 所在 UTC 日零点的 epoch 毫秒。
    线上格式字段名为 id（与 Task.task_id 对应）。
    """

    model_config = ConfigDict(populate_by_name=True)

    task_id: str = Field(alias="id", description="任务 ID")
    tenant: str = Field(default="", description="租户")
    scheduled_at: int | None = Field(default=None, description="期望触发时间（epoch 毫秒）")
    status: TaskStatus = Field(default=TaskStatus.CREATED, description="状态快照")
    bucket_id: int | None = Field(default=None, description="日桶 ID，仅日桶记录携带")

    @classmethod
    def from_task(cls, task: Task, bucket_id: int | None = None) -> "TaskMetadata":
        """从完整 Task 派生元数据投影"""
        return cls(
            task_id=task.task_id,
            tenant=task.tenant,
            scheduled_at=task.scheduled_at,
            status=task.status,
            bucket_id=bucket_id,
        )

    def to_message(self) -> dict:
        """序列化为总线消息体"""
        return self.model_dump(mode="json", by_alias=True)
