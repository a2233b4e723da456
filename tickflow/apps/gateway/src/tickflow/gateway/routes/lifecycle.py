"""执行结果上报路由 -- 供投递通道的下游消费者调用

POST /api/tasks/{task_id}/start: DELIVERED -> RUNNING
POST /api/tasks/{task_id}/complete: -> COMPLETED（可携带执行结果）
POST /api/tasks/{task_id}/fail: 有重试预算 -> RETRYING 并重新入队；否则 -> FAILED
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from tickflow.core.exceptions import TickflowError
from tickflow.core.models import Task

from ..deps import get_task_service
from ..errors import error_from_exception
from ..services.task_service import TaskService

router = APIRouter()


class CompleteRequest(BaseModel):
    result: str | None = Field(default=None, description="执行结果")


class FailRequest(BaseModel):
    error_message: str = Field(min_length=1, description="错误信息")


class LifecycleResponse(BaseModel):
    task_id: str
    status: str
    current_retries: int
    max_retries: int


def _response(task: Task) -> LifecycleResponse:
    return LifecycleResponse(
        task_id=task.task_id,
        status=task.status.value,
        current_retries=task.current_retries,
        max_retries=task.max_retries,
    )


@router.post("/api/tasks/{task_id}/start", response_model=LifecycleResponse)
async def report_start(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    try:
        task = await service.report_start(task_id)
    except TickflowError as e:
        return error_from_exception(e)
    return _response(task)


@router.post("/api/tasks/{task_id}/complete", response_model=LifecycleResponse)
async def report_complete(
    task_id: str,
    body: CompleteRequest,
    service: TaskService = Depends(get_task_service),
):
    try:
        task = await service.report_complete(task_id, body.result)
    except TickflowError as e:
        return error_from_exception(e)
    return _response(task)


@router.post("/api/tasks/{task_id}/fail", response_model=LifecycleResponse)
async def report_failure(
    task_id: str,
    body: FailRequest,
    service: TaskService = Depends(get_task_service),
):
    """上报执行失败，按重试预算决定重新入队或进入终态"""
    try:
        task = await service.report_failure(task_id, body.error_message)
    except TickflowError as e:
        return error_from_exception(e)
    return _response(task)
