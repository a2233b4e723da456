"""任务取消测试

测试内容：
1. 取消非终态任务返回 200 + CANCELLED，并撤销调度引擎中的定时器
2. 取消终态任务返回 409
3. 取消不存在的任务返回 404
4. 取消事件落盘
"""

from httpx import AsyncClient
from tickflow.core.models import TaskMetadata

BASE_NOW_MS = 1_700_050_000_000


async def _create(client: AsyncClient, task_id: str) -> None:
    resp = await client.post(
        "/api/tasks", json={"id": task_id, "tenant": "acme", "scheduled_at": BASE_NOW_MS}
    )
    assert resp.status_code == 201


class TestTaskCancel:
    async def test_cancel_created_task(self, client: AsyncClient, stores):
        await _create(client, "t-1")

        resp = await client.post("/api/tasks/t-1/cancel")

        assert resp.status_code == 200
        assert resp.json() == {"task_id": "t-1", "status": "CANCELLED"}
        events = await stores.event_store.get_events_for_task("t-1")
        assert events[-1].payload["to_status"] == "CANCELLED"
        assert events[-1].payload["reason"] == "用户取消"

    async def test_cancel_retires_timer(self, client: AsyncClient, pipeline, stores):
        await _create(client, "t-1")
        await pipeline.engine.process(TaskMetadata(task_id="t-1", tenant="acme"))
        assert pipeline.engine.timers.deadline("t-1") is not None

        await client.post("/api/tasks/t-1/cancel")

        assert pipeline.engine.timers.deadline("t-1") is None
        assert await stores.timer_state_store.get("t-1") is None

    async def test_cancel_delivered_task(self, client: AsyncClient, advance_to_delivered):
        await _create(client, "t-1")
        await advance_to_delivered("t-1")

        resp = await client.post("/api/tasks/t-1/cancel")

        assert resp.status_code == 200
        assert resp.json()["status"] == "CANCELLED"

    async def test_cancel_terminal_task(self, client: AsyncClient):
        await _create(client, "t-1")
        await client.post("/api/tasks/t-1/cancel")

        resp = await client.post("/api/tasks/t-1/cancel")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "TASK_ALREADY_TERMINAL"

    async def test_cancel_missing_task(self, client: AsyncClient):
        resp = await client.post("/api/tasks/nope/cancel")
        assert resp.status_code == 404
