"""统一错误响应

错误体格式：{"error": {"code": ..., "message": ...}}
"""

from starlette.responses import JSONResponse
from tickflow.core.exceptions import (
    TaskAlreadyExistsError,
    TaskNotFoundError,
    TaskStatusConflictError,
    TaskValidationError,
    TickflowError,
)


def error_response(status_code: int, code: str, message: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"error": {"code": code, "message": message}},
    )


def error_from_exception(exc: TickflowError) -> JSONResponse:
    """领域异常 -> HTTP 错误响应"""
    if isinstance(exc, TaskNotFoundError):
        return error_response(404, "TASK_NOT_FOUND", str(exc))
    if isinstance(exc, TaskAlreadyExistsError):
        return error_response(409, "TASK_ALREADY_EXISTS", str(exc))
    if isinstance(exc, TaskStatusConflictError):
        return error_response(409, "TASK_STATUS_CONFLICT", str(exc))
    if isinstance(exc, TaskValidationError):
        return error_response(422, "TASK_VALIDATION_FAILED", str(exc))
    if exc.recoverable:
        return error_response(503, "SERVICE_UNAVAILABLE", str(exc))
    return error_response(500, "INTERNAL_ERROR", str(exc))
