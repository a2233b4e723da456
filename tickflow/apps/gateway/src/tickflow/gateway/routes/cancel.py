"""任务取消路由

POST /api/tasks/{task_id}/cancel: 取消非终态的任务。
- 200: 取消成功
- 404: 任务不存在
- 409: 任务已在终态
"""

from fastapi import APIRouter, Depends
from pydantic import BaseModel
from tickflow.core.exceptions import TaskStatusConflictError, TickflowError

from ..deps import get_task_service
from ..errors import error_from_exception, error_response
from ..services.task_service import TaskService

router = APIRouter()


class CancelResponse(BaseModel):
    """取消成功响应"""

    task_id: str
    status: str


@router.post("/api/tasks/{task_id}/cancel", response_model=CancelResponse)
async def cancel_task(
    task_id: str,
    service: TaskService = Depends(get_task_service),
):
    """取消非终态的任务，同时撤销调度引擎中的定时器"""
    try:
        task = await service.cancel_task(task_id)
    except TaskStatusConflictError as e:
        return error_response(409, "TASK_ALREADY_TERMINAL", str(e))
    except TickflowError as e:
        return error_from_exception(e)

    return CancelResponse(task_id=task.task_id, status=task.status.value)
