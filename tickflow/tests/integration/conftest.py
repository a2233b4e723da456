"""集成测试共享 fixture -- 后台 worker 全部运行的完整流水线"""

import asyncio
from collections.abc import AsyncGenerator
from pathlib import Path

import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from tickflow.core.config import PipelineConfig
from tickflow.core.pipeline import SchedulerPipeline
from tickflow.core.store import create_store_group


@pytest_asyncio.fixture
async def integration_app(tmp_path: Path, monkeypatch):
    """集成测试用 FastAPI app：定时器间隔缩短到 50ms，真实时钟"""
    monkeypatch.setenv("TICKFLOW_DB_PATH", str(tmp_path / "test.db"))
    monkeypatch.setenv("LOGFIRE_SEND_TO_LOGFIRE", "false")

    from tickflow.gateway.main import create_app

    app = create_app()

    store_group = await create_store_group(str(tmp_path / "test.db"))
    pipeline = SchedulerPipeline(
        store_group,
        config=PipelineConfig(
            rearm_interval_ms=50,
            delivery_batch_wait_ms=10,
            scan_page_size=2,
            publish_timeout_s=1.0,
            page_fetch_timeout_s=1.0,
        ),
    )
    app.state.store_group = store_group
    app.state.pipeline = pipeline
    await pipeline.start()

    yield app

    await pipeline.stop()
    await store_group.conn.close()


@pytest_asyncio.fixture
async def client(integration_app) -> AsyncGenerator[AsyncClient, None]:
    async with AsyncClient(
        transport=ASGITransport(app=integration_app),
        base_url="http://test",
    ) as ac:
        yield ac


@pytest_asyncio.fixture
async def wait_for_status(client):
    """轮询任务详情直到状态满足期望"""

    async def _wait(task_id: str, status: str, timeout: float = 5.0) -> dict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while True:
            resp = await client.get(f"/api/tasks/{task_id}")
            data = resp.json()
            if resp.status_code == 200 and data["task"]["status"] == status:
                return data
            if loop.time() > deadline:
                raise AssertionError(f"task {task_id} did not reach {status}: {data}")
            await asyncio.sleep(0.02)

    return _wait
