"""TaskStore 单元测试

测试内容：
1. save_task upsert 幂等
2. get_task / get_tasks_batch（缺失 ID 忽略）
3. list_tasks 按 scheduled_at 倒序
4. search_tasks 按 created_at 区间 + 过滤
5. update_task_status 条件写入
"""

from datetime import UTC, datetime, timedelta

from tickflow.core.models import TaskPriority, TaskStatus


class TestTaskStore:
    async def test_save_and_get(self, store_group, make_task):
        task = make_task("t-1", parameters={"k": "v"})
        await store_group.task_store.save_task(task)
        await store_group.conn.commit()

        loaded = await store_group.task_store.get_task("t-1")
        assert loaded is not None
        assert loaded.task_id == "t-1"
        assert loaded.tenant == "acme"
        assert loaded.parameters == {"k": "v"}
        assert loaded.status == TaskStatus.CREATED
        assert loaded.created_at == task.created_at

    async def test_get_missing_returns_none(self, store_group):
        assert await store_group.task_store.get_task("missing") is None

    async def test_save_is_upsert(self, store_group, make_task):
        """同一 task_id 多次保存只保留一条，内容以最后一次为准"""
        task = make_task("t-1")
        await store_group.task_store.save_task(task)
        await store_group.task_store.save_task(task.model_copy(update={"payload": "v2"}))
        await store_group.conn.commit()

        tasks = await store_group.task_store.list_tasks()
        assert len(tasks) == 1
        assert tasks[0].payload == "v2"

    async def test_get_batch_omits_missing(self, store_group, make_task, insert_task):
        for i in range(3):
            await insert_task(make_task(f"t-{i}"))

        tasks = await store_group.task_store.get_tasks_batch(["t-0", "t-2", "nope"])
        assert sorted(t.task_id for t in tasks) == ["t-0", "t-2"]

    async def test_get_batch_empty(self, store_group):
        assert await store_group.task_store.get_tasks_batch([]) == []

    async def test_list_sorted_by_scheduled_at_desc(self, store_group, make_task, insert_task):
        await insert_task(make_task("early", scheduled_at=1_000))
        await insert_task(make_task("late", scheduled_at=3_000))
        await insert_task(make_task("mid", scheduled_at=2_000, status=TaskStatus.SCHEDULED))

        tasks = await store_group.task_store.list_tasks()
        assert [t.task_id for t in tasks] == ["late", "mid", "early"]

        scheduled = await store_group.task_store.list_tasks("SCHEDULED")
        assert [t.task_id for t in scheduled] == ["mid"]

    async def test_search_by_created_at(self, store_group, make_task, insert_task):
        base = datetime(2024, 1, 1, tzinfo=UTC)
        await insert_task(make_task("old", created_at=base - timedelta(days=2)))
        await insert_task(
            make_task("in-high", created_at=base + timedelta(hours=1), priority=TaskPriority.HIGH)
        )
        await insert_task(make_task("in-low", created_at=base + timedelta(hours=2), priority=TaskPriority.LOW))
        await insert_task(
            make_task("in-other", created_at=base + timedelta(hours=3), tenant="globex")
        )

        start, end = base, base + timedelta(days=1)
        found = await store_group.task_store.search_tasks(start, end)
        assert [t.task_id for t in found] == ["in-high", "in-low", "in-other"]

        high = await store_group.task_store.search_tasks(start, end, priority="HIGH")
        assert [t.task_id for t in high] == ["in-high"]

        globex = await store_group.task_store.search_tasks(start, end, tenant="globex")
        assert [t.task_id for t in globex] == ["in-other"]

    async def test_update_status_partial(self, store_group, make_task, insert_task):
        await insert_task(make_task("t-1", status=TaskStatus.SCHEDULED))

        updated = await store_group.task_store.update_task_status(
            "t-1",
            "DELIVERED",
            datetime.now(UTC).isoformat(),
        )
        await store_group.conn.commit()

        assert updated is True
        assert await store_group.task_store.get_task_status("t-1") == TaskStatus.DELIVERED

    async def test_update_status_conditional_miss(self, store_group, make_task, insert_task):
        """期望状态不匹配时不写入"""
        await insert_task(make_task("t-1", status=TaskStatus.DELIVERED))

        updated = await store_group.task_store.update_task_status(
            "t-1",
            "DELIVERED",
            datetime.now(UTC).isoformat(),
            expected_status="SCHEDULED",
        )
        assert updated is False

    async def test_update_status_with_retry_fields(self, store_group, make_task, insert_task):
        await insert_task(make_task("t-1", status=TaskStatus.RUNNING))

        await store_group.task_store.update_task_status(
            "t-1",
            "RETRYING",
            datetime.now(UTC).isoformat(),
            current_retries=1,
            retry_count=1,
            error_message="boom",
        )
        await store_group.conn.commit()

        task = await store_group.task_store.get_task("t-1")
        assert task.status == TaskStatus.RETRYING
        assert task.current_retries == 1
        assert task.retry_count == 1
        assert task.error_message == "boom"
