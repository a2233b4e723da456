"""依赖注入模块 -- 通过 FastAPI Depends 注入 Store / 流水线 / 服务实例

实例通过 app.state 管理，在 lifespan 中初始化/清理。
"""

from fastapi import Request
from tickflow.core.pipeline import SchedulerPipeline
from tickflow.core.store import StoreGroup

from .services.task_service import TaskService


def get_store_group(request: Request) -> StoreGroup:
    """从 app.state 获取 StoreGroup 实例"""
    return request.app.state.store_group


def get_pipeline(request: Request) -> SchedulerPipeline:
    """从 app.state 获取 SchedulerPipeline 实例"""
    return request.app.state.pipeline


def get_task_service(request: Request) -> TaskService:
    """按请求构造 TaskService"""
    return TaskService(request.app.state.store_group, request.app.state.pipeline)
