"""任务路由 -- 创建、列表、检索、详情

POST /api/tasks: 提交新任务（201 + Location）。
GET /api/tasks: 任务列表，按 scheduled_at 倒序，支持 status 筛选。
GET /api/tasks/search: 按 created_at 区间检索，可选 priority / tenant。
GET /api/tasks/{task_id}: 任务详情，含状态流转事件。
"""

from datetime import datetime

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from starlette.responses import JSONResponse
from tickflow.core.exceptions import TickflowError
from tickflow.core.models import Task, TaskPriority, TaskStatus, TaskSubmission

from ..deps import get_task_service
from ..errors import error_from_exception
from ..services.task_service import TaskService

router = APIRouter()


class CreateTaskRequest(BaseModel):
    """任务提交请求体"""

    id: str | None = Field(default=None, description="调用方指定的任务 ID，缺省由系统分配")
    tenant: str = Field(min_length=1, description="租户")
    payload: str = Field(default="", description="不透明负载")
    scheduled_at: int = Field(ge=0, description="期望触发时间（epoch 毫秒）")
    priority: TaskPriority = Field(default=TaskPriority.MEDIUM)
    created_by: str = Field(default="")
    assigned_to: str = Field(default="")
    parameters: dict[str, str] = Field(default_factory=dict)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=5000, ge=1000, le=300_000)


class TaskSummary(BaseModel):
    """任务摘要（列表项）"""

    task_id: str
    tenant: str
    status: TaskStatus
    priority: TaskPriority
    scheduled_at: int
    created_at: str
    updated_at: str
    current_retries: int
    max_retries: int


class TaskListResponse(BaseModel):
    """任务列表响应"""

    tasks: list[TaskSummary]


def _summary(task: Task) -> TaskSummary:
    return TaskSummary(
        task_id=task.task_id,
        tenant=task.tenant,
        status=task.status,
        priority=task.priority,
        scheduled_at=task.scheduled_at,
        created_at=task.created_at.isoformat(),
        updated_at=task.updated_at.isoformat(),
        current_retries=task.current_retries,
        max_retries=task.max_retries,
    )


@router.post("/api/tasks", status_code=201)
async def create_task(
    body: CreateTaskRequest,
    service: TaskService = Depends(get_task_service),
):
    """提交新任务

    - 201 Created，Location 指向任务详情
    - 409 调用方指定的 id 已存在
    - 422 提交内容非法
    """
    submission = TaskSubmission(
        task_id=body.id,
        tenant=body.tenant,
        payload=body.payload,
        scheduled_at=body.scheduled_at,
        priority=body.priority,
        created_by=body.created_by,
        assigned_to=body.assigned_to,
        parameters=body.parameters,
        max_retries=body.max_retries,
        retry_delay_ms=body.retry_delay_ms,
    )
    try:
        task = await service.create_task(submission)
    except TickflowError as e:
        return error_from_exception(e)

    return JSONResponse(
        status_code=201,
        content=task.model_dump(mode="json"),
        headers={"Location": f"/api/tasks/{task.task_id}"},
    )


@router.get("/api/tasks", response_model=TaskListResponse)
async def list_tasks(
    status: TaskStatus | None = Query(default=None, description="按状态筛选"),
    service: TaskService = Depends(get_task_service),
):
    """查询任务列表，按 scheduled_at 倒序"""
    tasks = await service.list_tasks(status.value if status else None)
    return TaskListResponse(tasks=[_summary(t) for t in tasks])


@router.get("/api/tasks/search", response_model=TaskListResponse)
async def search_tasks(
    start: datetime = Query(description="created_at 下界（ISO-8601）"),
    end: datetime = Query(description="created_at 上界（ISO-8601）"),
    priority: TaskPriority | None = Query(default=None),
    tenant: str | None = Query(default=None),
    service: TaskService = Depends(get_task_service),
):
    """按创建时间区间检索任务"""
    try:
        tasks = await service.search_tasks(
            start,
            end,
            priority.value if priority else None,
            tenant,
        )
    except TickflowError as e:
        return error_from_exception(e)
    return TaskListResponse(tasks=[_summary(t) for t in tasks])


@router.get("/api/tasks/{task_id}")
async def get_task_detail(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    """查询任务详情，包含状态流转事件"""
    try:
        task = await service.get_task(task_id)
    except TickflowError as e:
        return error_from_exception(e)

    events = await service.get_task_events(task_id)
    events_data = [
        {
            "event_id": e.event_id,
            "task_seq": e.task_seq,
            "ts": e.ts.isoformat(),
            "type": e.type.value,
            "actor": e.actor.value,
            "payload": e.payload,
        }
        for e in events
    ]

    return {
        "task": task.model_dump(mode="json"),
        "events": events_data,
    }
