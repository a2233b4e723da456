"""TraceMiddleware -- 为任务相关请求绑定 trace_id

trace_id 由路径中的 task_id 生成（trace-{task_id}），
与流水线各阶段写入事件时使用的 trace_id 一致，便于串联整个生命周期的日志。
"""

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from tickflow.core.transitions import trace_id_for

# /api/tasks 下不是 task_id 的一级路径
_RESERVED_SEGMENTS = {"search"}


def extract_task_id(path: str) -> str | None:
    """从 /api/tasks/{task_id}[/...] 或 /api/stream/task/{task_id} 提取 task_id"""
    parts = [p for p in path.split("/") if p]
    for i, part in enumerate(parts[:-1]):
        if part in ("tasks", "task"):
            candidate = parts[i + 1]
            if candidate not in _RESERVED_SEGMENTS:
                return candidate
    return None


class TraceMiddleware(BaseHTTPMiddleware):
    """任务级追踪中间件"""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        task_id = extract_task_id(request.url.path)
        if task_id:
            structlog.contextvars.bind_contextvars(trace_id=trace_id_for(task_id))

        return await call_next(request)
