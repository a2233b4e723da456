"""FastAPI 应用主文件

app 创建 + lifespan 管理：DB 初始化/关闭 + 流水线装配与后台 worker 启停 + 路由注册。
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI
from tickflow.core.config import get_db_path, load_pipeline_config
from tickflow.core.pipeline import SchedulerPipeline
from tickflow.core.store import create_store_group

from .middleware.logging_config import setup_logfire, setup_logging
from .middleware.logging_mw import LoggingMiddleware
from .middleware.trace_mw import TraceMiddleware
from .routes import cancel, health, lifecycle, scheduler, stream, tasks

log = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """应用生命周期管理：启动时初始化 DB 和流水线，关闭时停止 worker 并清理连接"""
    store_group = await create_store_group(get_db_path())
    app.state.store_group = store_group

    config = load_pipeline_config()
    pipeline = SchedulerPipeline(store_group, config=config)
    app.state.pipeline = pipeline

    if config.pipeline_enabled:
        await pipeline.start()
    else:
        log.info("pipeline_disabled")

    yield

    await pipeline.stop()
    await store_group.conn.close()


def create_app() -> FastAPI:
    """创建 FastAPI 应用实例"""
    app = FastAPI(
        title="Tickflow Gateway",
        version="0.1.0",
        description="Tickflow 任务调度流水线 API",
        lifespan=lifespan,
    )

    # 注册中间件（顺序：先 Trace 后 Logging）
    app.add_middleware(TraceMiddleware)
    app.add_middleware(LoggingMiddleware)

    setup_logging()
    setup_logfire(app)

    app.include_router(tasks.router, tags=["tasks"])
    app.include_router(cancel.router, tags=["cancel"])
    app.include_router(lifecycle.router, tags=["lifecycle"])
    app.include_router(scheduler.router, tags=["scheduler"])
    app.include_router(stream.router, tags=["stream"])
    app.include_router(health.router, tags=["health"])

    return app


# 默认 app 实例（uvicorn 入口）
app = create_app()
