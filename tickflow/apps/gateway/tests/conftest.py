"""apps/gateway 测试配置 -- FastAPI app（绕过 lifespan）+ httpx AsyncClient"""

from collections.abc import AsyncGenerator
from pathlib import Path

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient


@pytest.fixture
def gateway_env(tmp_path: Path, monkeypatch) -> Path:
    """Gateway 测试环境变量，返回数据库路径"""
    db_path = tmp_path / "sqlite" / "test.db"
    monkeypatch.setenv("TICKFLOW_DB_PATH", str(db_path))
    monkeypatch.setenv("TICKFLOW_PIPELINE_ENABLED", "false")
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")
    return db_path


@pytest_asyncio.fixture
async def test_app(gateway_env: Path, manual_clock):
    """创建测试用 FastAPI app，手动初始化 app.state（流水线不启动后台 worker）"""
    from tickflow.core.config import PipelineConfig
    from tickflow.core.pipeline import SchedulerPipeline
    from tickflow.core.store import create_store_group
    from tickflow.gateway.main import create_app

    app = create_app()

    store_group = await create_store_group(str(gateway_env))
    app.state.store_group = store_group
    app.state.pipeline = SchedulerPipeline(
        store_group,
        config=PipelineConfig(scan_page_size=3, publish_timeout_s=1.0),
        clock=manual_clock,
    )

    yield app

    await app.state.pipeline.stop()
    await store_group.conn.close()


@pytest_asyncio.fixture
async def client(test_app) -> AsyncGenerator[AsyncClient, None]:
    """提供 httpx AsyncClient 用于测试"""
    async with AsyncClient(
        transport=ASGITransport(app=test_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest.fixture
def pipeline(test_app):
    return test_app.state.pipeline


@pytest.fixture
def stores(test_app):
    return test_app.state.store_group


@pytest.fixture(autouse=True)
def _reset_sse_exit_event():
    """sse_starlette 的退出事件绑定在首次使用的事件循环上，每个测试重置"""
    from sse_starlette.sse import AppStatus

    if hasattr(AppStatus, "should_exit_event"):
        AppStatus.should_exit_event = None
    yield


@pytest.fixture
def advance_to_delivered(pipeline):
    """经调度引擎触发 + 投递阶段把任务推进到 DELIVERED"""
    from tickflow.core.models import TaskMetadata, TaskStatus

    async def _advance(task_id: str) -> None:
        engine = pipeline.engine
        await engine.process(TaskMetadata(task_id=task_id, tenant="acme"))
        fire_at = engine.timers.deadline(task_id)
        pipeline.clock.set(fire_at)
        await engine.timers.fire_due(fire_at)
        await pipeline.delivery.handle_batch(
            [TaskMetadata(task_id=task_id, status=TaskStatus.SCHEDULED)]
        )

    return _advance
