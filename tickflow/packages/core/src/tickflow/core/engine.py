"""SchedulingEngine -- 按任务 key 的定时器状态机

每个 task_id 持有一份持久状态 next_execution_time（timer_state 表），
并在 TimerService 中布置恰好一个定时器。

收到任务：计算 next_execution_time -> 落盘 -> 布置定时器 -> 立即转发。
定时器在 T 触发：读回持久状态，不存在或不等于 T 视为过期定时器直接忽略；
否则按任务当前状态转发到期任务并重新布置，直到 key 被撤销。
同一 key 的接收、触发、撤销由 key 级锁串行化。
"""

import asyncio
from datetime import UTC, datetime
from typing import Protocol

import structlog
from pydantic import ValidationError

from .bus import BusMessage, MessageBus, Subscription
from .clock import Clock, SystemClock
from .config import PipelineConfig
from .exceptions import TaskNotFoundError, TaskStatusConflictError
from .metrics import InMemoryMetrics, MetricsRecorder
from .models.enums import TERMINAL_STATES, ActorType, TaskStatus
from .models.task import Task, TaskMetadata
from .store import StoreGroup
from .store.transaction import clear_timer_state, save_timer_state
from .timers import TimerService
from .transitions import record_transition

log = structlog.get_logger()

# 已交给下游的状态：不再由定时器推动，重试经调度通道重新进入
_HANDED_OFF = {TaskStatus.DELIVERED, TaskStatus.RUNNING}


class NextFirePolicy(Protocol):
    """下一次触发时间计算策略"""

    def next_fire_time(self, base_ms: int) -> int:
        ...


class FixedOffsetPolicy:
    """固定偏移：base + offset_ms"""

    def __init__(self, offset_ms: int = 60_000) -> None:
        self._offset_ms = offset_ms

    def next_fire_time(self, base_ms: int) -> int:
        return base_ms + self._offset_ms


class SchedulingEngine:
    """调度引擎"""

    def __init__(
        self,
        stores: StoreGroup,
        bus: MessageBus,
        config: PipelineConfig | None = None,
        clock: Clock | None = None,
        metrics: MetricsRecorder | None = None,
        policy: NextFirePolicy | None = None,
    ) -> None:
        self._stores = stores
        self._bus = bus
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or InMemoryMetrics()
        self._policy = policy or FixedOffsetPolicy(self._config.rearm_interval_ms)
        self._timers = TimerService(
            self.on_timer, self._clock, self._config.timer_retry_delay_ms
        )
        self._key_locks: dict[str, asyncio.Lock] = {}

    @property
    def timers(self) -> TimerService:
        return self._timers

    def _lock_for(self, task_id: str) -> asyncio.Lock:
        lock = self._key_locks.get(task_id)
        if lock is None:
            lock = asyncio.Lock()
            self._key_locks[task_id] = lock
        return lock

    def _cleanup_lock(self, task_id: str) -> None:
        lock = self._key_locks.get(task_id)
        if lock is not None and not lock.locked():
            self._key_locks.pop(task_id, None)

    async def restore(self) -> int:
        """进程启动时按持久状态重新布置全部定时器

        Returns:
            恢复的 key 数量
        """
        entries = await self._stores.timer_state_store.list_all()
        for task_id, next_execution_time in entries:
            self._timers.arm(task_id, next_execution_time)
        self._metrics.set_gauge("engine.live_timers", len(self._timers))
        log.info("engine_timers_restored", count=len(entries))
        return len(entries)

    async def process(self, metadata: TaskMetadata) -> None:
        """接收一条调度请求"""
        task_id = metadata.task_id
        if metadata.status in TERMINAL_STATES:
            log.info("engine_skip_terminal", task_id=task_id, status=metadata.status)
            return

        async with self._lock_for(task_id):
            now = self._clock.now_ms()
            next_time = self._policy.next_fire_time(now)
            await save_timer_state(
                self._stores.conn,
                self._stores.timer_state_store,
                task_id,
                next_time,
                datetime.now(UTC),
            )
            self._timers.arm(task_id, next_time)
            self._metrics.increment("engine.received")
            self._metrics.set_gauge("engine.live_timers", len(self._timers))
            log.debug("engine_timer_armed", task_id=task_id, next_execution_time=next_time)

            # 立即转发，到期前即可在下游观察到任务
            await self._emit(metadata)

    async def on_timer(self, task_id: str, fire_at: int) -> None:
        """定时器回调"""
        retired = False
        async with self._lock_for(task_id):
            stored = await self._stores.timer_state_store.get(task_id)
            if stored is None or stored != fire_at:
                self._metrics.increment("engine.timer_stale")
                log.debug(
                    "engine_timer_stale",
                    task_id=task_id,
                    fire_at=fire_at,
                    stored=stored,
                )
                return

            self._metrics.increment("engine.timer_fired")
            task = await self._stores.task_store.get_task(task_id)
            if task is None or task.status in TERMINAL_STATES or task.status in _HANDED_OFF:
                log.info(
                    "engine_key_retired",
                    task_id=task_id,
                    status=task.status if task else None,
                )
                await self._retire_locked(task_id)
                retired = True
            else:
                # 先重新布置，转发失败时定时器仍然存活
                next_time = self._policy.next_fire_time(fire_at)
                await save_timer_state(
                    self._stores.conn,
                    self._stores.timer_state_store,
                    task_id,
                    next_time,
                    datetime.now(UTC),
                )
                self._timers.arm(task_id, next_time)
                if await self._mark_scheduled(task):
                    await self._emit(
                        TaskMetadata(
                            task_id=task.task_id,
                            tenant=task.tenant,
                            scheduled_at=task.scheduled_at,
                            status=TaskStatus.SCHEDULED,
                        )
                    )
        if retired:
            self._cleanup_lock(task_id)
        self._metrics.set_gauge("engine.live_timers", len(self._timers))

    async def retire(self, task_id: str) -> None:
        """撤销 key：删除持久状态并取消定时器（取消任务时调用）"""
        async with self._lock_for(task_id):
            await self._retire_locked(task_id)
        self._cleanup_lock(task_id)
        self._metrics.set_gauge("engine.live_timers", len(self._timers))

    async def _retire_locked(self, task_id: str) -> None:
        await clear_timer_state(
            self._stores.conn,
            self._stores.timer_state_store,
            task_id,
        )
        self._timers.disarm(task_id)
        self._metrics.increment("engine.retired")

    async def _mark_scheduled(self, task: Task) -> bool:
        """CREATED / RETRYING 推进到 SCHEDULED；已是 SCHEDULED 直接返回 True"""
        if task.status == TaskStatus.SCHEDULED:
            return True
        try:
            await record_transition(
                self._stores,
                task.task_id,
                task.status,
                TaskStatus.SCHEDULED,
                ActorType.ENGINE,
                reason="timer_fired",
            )
        except (TaskStatusConflictError, TaskNotFoundError) as e:
            # 其他阶段已推进状态，下一次触发时重新判断
            log.info("engine_schedule_conflict", task_id=task.task_id, error=str(e))
            return False
        return True

    async def _emit(self, metadata: TaskMetadata) -> None:
        try:
            await asyncio.wait_for(
                self._bus.publish(
                    self._config.topics.scheduled_tasks,
                    metadata.task_id,
                    metadata.to_message(),
                ),
                self._config.publish_timeout_s,
            )
        except Exception as e:
            self._metrics.increment("engine.emit_failed")
            log.warning(
                "engine_emit_failed",
                task_id=metadata.task_id,
                error_type=type(e).__name__,
            )
            return
        self._metrics.increment("engine.emitted")

    async def handle_messages(self, messages: list[BusMessage]) -> list[TaskMetadata]:
        """处理一批调度请求，返回处理失败的记录

        无法解析的消息记录日志后丢弃；单条失败不影响同批其他记录。
        """
        failed: list[TaskMetadata] = []
        for message in messages:
            try:
                metadata = TaskMetadata.model_validate(message.value)
            except ValidationError:
                log.warning("engine_malformed_message", key=message.key, offset=message.offset)
                continue
            try:
                await self.process(metadata)
            except Exception as e:
                failed.append(metadata)
                self._metrics.increment("engine.process_failed")
                log.error(
                    "engine_process_failed",
                    task_id=metadata.task_id,
                    error_type=type(e).__name__,
                    error=str(e),
                )
        return failed

    async def consume_once(self, subscription: Subscription) -> int | None:
        """拉取并处理一批调度请求

        失败的记录重新发布到调度请求通道后提交整批，已成功的 key 不会被重复处理；
        重新发布失败时才回退到上次提交位点。

        Returns:
            失败条数；没有消息时返回 None
        """
        messages = await subscription.poll(
            self._config.delivery_batch_size,
            self._config.delivery_batch_wait_ms / 1000,
        )
        if not messages:
            return None
        failed = await self.handle_messages(messages)
        try:
            for metadata in failed:
                await asyncio.wait_for(
                    self._bus.publish(
                        self._config.topics.task_requests,
                        metadata.task_id,
                        metadata.to_message(),
                    ),
                    self._config.publish_timeout_s,
                )
        except Exception as e:
            log.warning("engine_requeue_failed", failed=len(failed), error_type=type(e).__name__)
            subscription.rewind()
            return len(failed)
        subscription.commit()
        if failed:
            log.info("engine_requests_requeued", count=len(failed))
        return len(failed)

    async def consume(self, subscription: Subscription) -> None:
        """后台循环：拉取调度请求；有失败时等待一个批次间隔再继续"""
        wait_s = self._config.delivery_batch_wait_ms / 1000
        while True:
            failed = await self.consume_once(subscription)
            if failed:
                await asyncio.sleep(wait_s)
