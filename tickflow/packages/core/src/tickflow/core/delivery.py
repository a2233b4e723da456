"""DeliveryStage -- 到期任务的微批投递

每个批次：
1. 按 task_id 去重，保留首次出现（稳定、保序）
2. 一次批量查询完整任务记录
3. 每个任务并发、独立处理：状态为 SCHEDULED 则发布到投递通道并推进到 DELIVERED，
   否则视为状态漂移跳过（至少一次重投下的预期情况）
4. 全部任务有结果后才确认批次

单个任务的发布或落盘失败只记录日志，任务保持 SCHEDULED，等待上游重新发送。
"""

import asyncio
import time
from typing import Literal

import structlog
from pydantic import ValidationError

from .bus import BusMessage, MessageBus, Subscription
from .config import PipelineConfig
from .exceptions import TaskNotFoundError, TaskStatusConflictError, TransientIOError
from .metrics import InMemoryMetrics, MetricsRecorder
from .models.enums import ActorType, TaskStatus
from .models.reports import DeliveryReport
from .models.task import Task, TaskMetadata
from .store import StoreGroup
from .transitions import record_transition

log = structlog.get_logger()

DeliveryOutcome = Literal["delivered", "skipped"]


def dedupe_by_task_id(batch: list[TaskMetadata]) -> list[TaskMetadata]:
    """按 task_id 去重，保留首次出现，顺序不变"""
    seen: set[str] = set()
    unique: list[TaskMetadata] = []
    for item in batch:
        if item.task_id in seen:
            continue
        seen.add(item.task_id)
        unique.append(item)
    return unique


class DeliveryStage:
    """投递阶段"""

    def __init__(
        self,
        stores: StoreGroup,
        bus: MessageBus,
        config: PipelineConfig | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._stores = stores
        self._bus = bus
        self._config = config or PipelineConfig()
        self._metrics = metrics or InMemoryMetrics()

    async def handle_messages(self, messages: list[BusMessage]) -> DeliveryReport:
        """解析总线消息后按批处理，无法解析的消息丢弃"""
        batch: list[TaskMetadata] = []
        for message in messages:
            try:
                batch.append(TaskMetadata.model_validate(message.value))
            except ValidationError:
                log.warning("delivery_malformed_message", key=message.key, offset=message.offset)
        return await self.handle_batch(batch)

    async def handle_batch(self, batch: list[TaskMetadata]) -> DeliveryReport:
        """处理一个批次

        Raises:
            TransientIOError: 批量查询失败，整批未处理
        """
        report = DeliveryReport(received=len(batch))
        if not batch:
            return report
        started = time.monotonic()

        unique = dedupe_by_task_id(batch)
        report.duplicates = len(batch) - len(unique)
        if report.duplicates:
            log.info("delivery_duplicates_removed", removed=report.duplicates)

        task_ids = [item.task_id for item in unique]
        try:
            tasks = await self._stores.task_store.get_tasks_batch(task_ids)
        except Exception as e:
            log.error("delivery_batch_fetch_failed", batch=len(task_ids), error_type=type(e).__name__)
            raise TransientIOError("get_tasks_batch", e) from e
        report.fetched = len(tasks)
        report.missing = len(task_ids) - len(tasks)
        if report.missing:
            log.warning("delivery_tasks_missing", missing=report.missing)

        results = await asyncio.gather(
            *(self._deliver(task) for task in tasks),
            return_exceptions=True,
        )
        for task, result in zip(tasks, results):
            if isinstance(result, BaseException):
                report.failed += 1
                log.error(
                    "delivery_task_failed",
                    task_id=task.task_id,
                    error_type=type(result).__name__,
                    error=str(result),
                )
            elif result == "delivered":
                report.delivered += 1
            else:
                report.skipped += 1

        self._metrics.increment("delivery.batches")
        self._metrics.increment("delivery.delivered", report.delivered)
        self._metrics.increment("delivery.skipped", report.skipped)
        self._metrics.increment("delivery.failed", report.failed)
        self._metrics.increment("delivery.duplicates", report.duplicates)
        self._metrics.record("delivery.batch_size", len(batch))
        self._metrics.record("delivery.batch_duration_s", time.monotonic() - started)
        log.info("delivery_batch_completed", **report.model_dump())
        return report

    async def _deliver(self, task: Task) -> DeliveryOutcome:
        if task.status != TaskStatus.SCHEDULED:
            log.debug("delivery_status_drift", task_id=task.task_id, status=task.status)
            return "skipped"

        await asyncio.wait_for(
            self._bus.publish(
                self._config.topics.delivered_tasks,
                task.task_id,
                task.model_dump(mode="json"),
            ),
            self._config.publish_timeout_s,
        )
        try:
            await record_transition(
                self._stores,
                task.task_id,
                TaskStatus.SCHEDULED,
                TaskStatus.DELIVERED,
                ActorType.DELIVERY,
                reason="delivered",
            )
        except (TaskStatusConflictError, TaskNotFoundError) as e:
            log.info("delivery_status_changed_after_publish", task_id=task.task_id, error=str(e))
            return "skipped"
        return "delivered"


class DeliveryWorker:
    """投递消费循环：poll -> handle_batch -> commit；整批失败时回退重投"""

    def __init__(
        self,
        stage: DeliveryStage,
        subscription: Subscription,
        config: PipelineConfig | None = None,
    ) -> None:
        self._stage = stage
        self._subscription = subscription
        self._config = config or PipelineConfig()

    async def run_once(self) -> DeliveryReport | None:
        """拉取并处理一批；没有消息时返回 None"""
        messages = await self._subscription.poll(
            self._config.delivery_batch_size,
            self._config.delivery_batch_wait_ms / 1000,
        )
        if not messages:
            return None
        try:
            report = await self._stage.handle_messages(messages)
        except TransientIOError:
            self._subscription.rewind()
            raise
        self._subscription.commit()
        return report

    async def run(self) -> None:
        while True:
            try:
                await self.run_once()
            except TransientIOError as e:
                log.warning("delivery_batch_rewound", error=str(e))
                await asyncio.sleep(self._config.delivery_batch_wait_ms / 1000)
