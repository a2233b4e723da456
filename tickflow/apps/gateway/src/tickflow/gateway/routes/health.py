"""健康检查路由

GET /health: Liveness 检查，永远返回 200。
GET /ready: Readiness 检查，包含 SQLite 连通性、流水线 worker 存活、磁盘空间。
"""

import shutil

import structlog
from fastapi import APIRouter, Request
from starlette.responses import JSONResponse

log = structlog.get_logger()

router = APIRouter()


@router.get("/health")
async def health():
    """Liveness 检查 -- 永远返回 200"""
    return {"status": "ok"}


@router.get("/ready")
async def ready(request: Request):
    """Readiness 检查 -- 验证核心依赖可用性

    检查项：
    1. sqlite: 数据库连通性
    2. pipeline: 后台 worker 是否全部存活（未启用时为 disabled）
    3. disk_space_mb: 磁盘剩余空间
    """
    checks = {}
    all_ok = True

    try:
        store_group = request.app.state.store_group
        cursor = await store_group.conn.execute("SELECT 1")
        await cursor.fetchone()
        checks["sqlite"] = "ok"
    except Exception as e:
        log.warning("readiness_sqlite_error", error=str(e))
        checks["sqlite"] = f"error: {str(e)}"
        all_ok = False

    pipeline = getattr(request.app.state, "pipeline", None)
    if pipeline is None:
        checks["pipeline"] = "error: not initialized"
        all_ok = False
    else:
        workers = pipeline.worker_status()
        if not workers:
            checks["pipeline"] = "disabled"
        elif all(workers.values()):
            checks["pipeline"] = "ok"
        else:
            dead = sorted(name for name, alive in workers.items() if not alive)
            checks["pipeline"] = f"error: workers stopped: {', '.join(dead)}"
            all_ok = False

    try:
        disk_usage = shutil.disk_usage("/")
        checks["disk_space_mb"] = disk_usage.free // (1024 * 1024)
    except Exception:
        checks["disk_space_mb"] = 0
        all_ok = False

    return JSONResponse(
        status_code=200 if all_ok else 503,
        content={
            "status": "ready" if all_ok else "not_ready",
            "checks": checks,
        },
    )
