"""SchedulingEngine 单元测试

测试内容：
1. 接收：持久化 next_execution_time、布置定时器、立即转发
2. 触发：CREATED -> SCHEDULED 并转发，重新布置
3. 过期定时器（状态不存在或不匹配）不转发
4. 终态 / 已投递任务撤销 key
5. 重启后按持久状态恢复定时器
6. 触发时读库失败：定时器按原触发时间重试，不丢失
7. 批内单条失败：只重新入队失败记录，其余 key 不被重复处理
"""

import pytest
from tickflow.core.engine import FixedOffsetPolicy, SchedulingEngine
from tickflow.core.models import EventType, TaskMetadata, TaskStatus

SCHEDULED_TOPIC = "scheduled-tasks"


def _emitted(bus) -> list[dict]:
    return [m.value for m in bus.messages(SCHEDULED_TOPIC)]


class TestReceive:
    async def test_persists_arms_and_forwards(
        self, engine, store_group, bus, manual_clock, make_task, insert_task
    ):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))

        expected = manual_clock.now_ms() + 60_000
        assert await store_group.timer_state_store.get("t-1") == expected
        assert engine.timers.deadline("t-1") == expected
        # 立即转发，携带收到时的状态
        assert _emitted(bus) == [TaskMetadata.from_task(task).to_message()]

    async def test_receive_again_rearms_single_timer(self, engine, manual_clock, make_task, insert_task):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        manual_clock.advance(5_000)
        await engine.process(TaskMetadata.from_task(task))

        assert len(engine.timers) == 1
        assert engine.timers.deadline("t-1") == manual_clock.now_ms() + 60_000

    async def test_terminal_metadata_ignored(self, engine, bus, store_group):
        await engine.process(
            TaskMetadata(task_id="t-1", tenant="acme", scheduled_at=1, status=TaskStatus.CANCELLED)
        )
        assert len(engine.timers) == 0
        assert await store_group.timer_state_store.get("t-1") is None
        assert _emitted(bus) == []


class TestTimerFire:
    async def test_fire_schedules_and_rearms(
        self, engine, store_group, bus, manual_clock, make_task, insert_task, metrics
    ):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")

        manual_clock.set(fire_at)
        assert await engine.timers.fire_due(fire_at) == 1

        stored = await store_group.task_store.get_task("t-1")
        assert stored.status == TaskStatus.SCHEDULED
        emitted = _emitted(bus)
        assert len(emitted) == 2
        assert emitted[-1]["status"] == "SCHEDULED"
        # 以触发时间为基准重新布置
        assert await store_group.timer_state_store.get("t-1") == fire_at + 60_000
        assert engine.timers.deadline("t-1") == fire_at + 60_000
        assert metrics.counter("engine.timer_fired") == 1

        events = await store_group.event_store.get_events_for_task("t-1")
        assert [e.type for e in events] == [EventType.STATE_TRANSITION]
        assert events[0].payload["to_status"] == "SCHEDULED"

    async def test_scheduled_task_reemitted(self, engine, bus, store_group, make_task, insert_task):
        """投递失败仍为 SCHEDULED 的任务在下一次触发时再次转发"""
        await insert_task(make_task("t-1", status=TaskStatus.SCHEDULED))
        await engine.process(TaskMetadata(task_id="t-1", tenant="acme", status=TaskStatus.SCHEDULED))
        fire_at = engine.timers.deadline("t-1")

        await engine.on_timer("t-1", fire_at)

        assert len(_emitted(bus)) == 2
        assert await store_group.event_store.get_events_for_task("t-1") == []

    async def test_stale_timer_no_emission(self, engine, bus, make_task, insert_task, metrics):
        """触发时间与持久状态不一致：视为过期，不转发"""
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")

        await engine.on_timer("t-1", fire_at - 1)

        assert len(_emitted(bus)) == 1
        assert metrics.counter("engine.timer_stale") == 1

    async def test_retired_key_timer_no_emission(self, engine, bus, store_group, make_task, insert_task):
        """撤销后的 key 状态不存在，触发为空操作"""
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")

        await engine.retire("t-1")
        await engine.on_timer("t-1", fire_at)

        assert await store_group.timer_state_store.get("t-1") is None
        assert engine.timers.deadline("t-1") is None
        assert len(_emitted(bus)) == 1

    async def test_cancelled_task_retired_on_fire(self, engine, bus, store_group, make_task, insert_task):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")
        await insert_task(task.model_copy(update={"status": TaskStatus.CANCELLED}))

        await engine.on_timer("t-1", fire_at)

        assert len(_emitted(bus)) == 1
        assert await store_group.timer_state_store.get("t-1") is None
        assert len(engine.timers) == 0

    async def test_delivered_task_retired_on_fire(self, engine, bus, store_group, make_task, insert_task):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")
        await insert_task(task.model_copy(update={"status": TaskStatus.DELIVERED}))

        await engine.on_timer("t-1", fire_at)

        assert len(_emitted(bus)) == 1
        assert await store_group.timer_state_store.get("t-1") is None

    async def test_missing_task_retired_on_fire(self, engine, bus, store_group):
        await engine.process(TaskMetadata(task_id="ghost", tenant="acme"))
        fire_at = engine.timers.deadline("ghost")

        await engine.on_timer("ghost", fire_at)

        assert await store_group.timer_state_store.get("ghost") is None
        assert len(_emitted(bus)) == 1

    async def test_store_failure_on_fire_retries_timer(
        self, engine, store_group, manual_clock, make_task, insert_task, pipeline_config, monkeypatch
    ):
        task = await insert_task(make_task("t-1"))
        await engine.process(TaskMetadata.from_task(task))
        fire_at = engine.timers.deadline("t-1")

        async def unavailable(task_id):
            raise OSError("database is locked")

        monkeypatch.setattr(store_group.task_store, "get_task", unavailable)
        manual_clock.set(fire_at)
        assert await engine.timers.fire_due(fire_at) == 1

        assert await store_group.timer_state_store.get("t-1") == fire_at
        assert engine.timers.deadline("t-1") == fire_at
        assert len(engine.timers) == 1

        monkeypatch.undo()
        manual_clock.advance(pipeline_config.timer_retry_delay_ms)
        assert await engine.timers.fire_due(manual_clock.now_ms()) == 1

        stored = await store_group.task_store.get_task("t-1")
        assert stored.status == TaskStatus.SCHEDULED
        assert await store_group.timer_state_store.get("t-1") == fire_at + 60_000
        assert engine.timers.deadline("t-1") == fire_at + 60_000


class TestRestore:
    async def test_restore_rearms_persisted_keys(
        self, store_group, bus, pipeline_config, manual_clock, make_task, insert_task
    ):
        first = SchedulingEngine(store_group, bus, pipeline_config, manual_clock)
        for task_id in ("t-1", "t-2"):
            task = await insert_task(make_task(task_id))
            await first.process(TaskMetadata.from_task(task))

        restarted = SchedulingEngine(store_group, bus, pipeline_config, manual_clock)
        assert await restarted.restore() == 2
        assert restarted.timers.deadline("t-1") == first.timers.deadline("t-1")
        assert len(restarted.timers) == 2


class TestPolicy:
    def test_fixed_offset(self):
        assert FixedOffsetPolicy(1_000).next_fire_time(5) == 1_005

    async def test_custom_policy(self, store_group, bus, pipeline_config, manual_clock):
        class Every10s:
            def next_fire_time(self, base_ms: int) -> int:
                return base_ms + 10_000

        engine = SchedulingEngine(
            store_group, bus, pipeline_config, manual_clock, policy=Every10s()
        )
        await engine.process(TaskMetadata(task_id="t-1", tenant="acme"))
        assert engine.timers.deadline("t-1") == manual_clock.now_ms() + 10_000


class TestConsume:
    async def test_handle_messages_skips_malformed(self, engine, bus, make_task, insert_task):
        task = await insert_task(make_task("t-1"))
        await bus.publish("task-requests", "bad", {"tenant": "no-id"})
        await bus.publish("task-requests", "t-1", TaskMetadata.from_task(task).to_message())
        sub = bus.subscribe("task-requests", "engine")

        failed = await engine.handle_messages(await sub.poll(10, 0.01))

        assert failed == []
        assert engine.timers.deadline("t-1") is not None

    @pytest.fixture
    def failing_key(self, engine, monkeypatch):
        """让 t-b 的处理始终失败"""
        process = engine.process

        async def flaky(metadata: TaskMetadata) -> None:
            if metadata.task_id == "t-b":
                raise OSError("disk I/O error")
            await process(metadata)

        monkeypatch.setattr(engine, "process", flaky)
        return "t-b"

    async def test_failed_record_requeued_without_reprocessing_batch(
        self, engine, bus, manual_clock, metrics, failing_key
    ):
        for task_id in ("t-a", failing_key):
            await bus.publish(
                "task-requests", task_id, TaskMetadata(task_id=task_id, tenant="acme").to_message()
            )
        sub = bus.subscribe("task-requests", "engine")
        first_deadline = manual_clock.now_ms() + 60_000

        for _ in range(3):
            assert await engine.consume_once(sub) == 1
            manual_clock.advance(30_000)

        # 健康的 key 只处理一次，定时器没有被反复推后
        assert engine.timers.deadline("t-a") == first_deadline
        assert [m["id"] for m in _emitted(bus)] == ["t-a"]
        requests = bus.messages("task-requests")
        assert [m.key for m in requests[2:]] == [failing_key] * 3
        assert bus.committed_offset("task-requests", "engine") == len(requests) - 1
        assert metrics.counter("engine.process_failed") == 3

        assert await engine.timers.fire_due(manual_clock.now_ms()) == 1

    async def test_requeue_failure_rewinds(self, engine, bus, failing_key, monkeypatch):
        await bus.publish(
            "task-requests", failing_key, TaskMetadata(task_id=failing_key, tenant="acme").to_message()
        )
        sub = bus.subscribe("task-requests", "engine")

        async def bus_down(topic, key, value):
            raise ConnectionError("bus down")

        monkeypatch.setattr(bus, "publish", bus_down)

        assert await engine.consume_once(sub) == 1
        assert bus.committed_offset("task-requests", "engine") == 0
        assert sub.position == 0

    async def test_consume_once_commits_clean_batch(self, engine, bus):
        await bus.publish("task-requests", "t-1", TaskMetadata(task_id="t-1", tenant="acme").to_message())
        sub = bus.subscribe("task-requests", "engine")

        assert await engine.consume_once(sub) == 0
        assert await engine.consume_once(sub) is None
        assert bus.committed_offset("task-requests", "engine") == 1
