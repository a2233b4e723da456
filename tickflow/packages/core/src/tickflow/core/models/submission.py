"""TaskSubmission Domain Model -- 任务入站的统一格式

HTTP 请求体等入口在进入流水线前都转换为 TaskSubmission。
"""

from pydantic import BaseModel, Field

from .enums import TaskPriority


class TaskSubmission(BaseModel):
    """TaskSubmission -- 新任务提交内容

    task_id 为空时由系统分配 ULID。
    """

    task_id: str | None = Field(default=None, description="调用方指定的任务 ID")
    tenant: str = Field(min_length=1, description="租户，必填")
    payload: str = Field(default="", description="不透明负载")
    scheduled_at: int = Field(ge=0, description="期望触发时间（epoch 毫秒）")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM, description="优先级")
    created_by: str = Field(default="", description="创建者")
    assigned_to: str = Field(default="", description="负责人")
    parameters: dict[str, str] = Field(default_factory=dict, description="附加参数")
    max_retries: int = Field(default=3, ge=0, le=10, description="最大重试次数")
    retry_delay_ms: int = Field(
        default=5000, ge=1000, le=300_000, description="重试间隔（毫秒）"
    )
