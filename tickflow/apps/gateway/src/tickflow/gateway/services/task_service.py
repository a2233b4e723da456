"""TaskService -- 任务入口、管理与执行结果上报

任务创建流程：
1. 分配 task_id，构建 Task（CREATED）与 TASK_CREATED 事件
2. scheduled_at 落在近期窗口内：单事务写 task + 事件，提交后发布到调度请求通道
3. 否则：单事务写 task + 事件 + 未来日桶记录，等该日扫描时再进入流水线

发布到调度请求通道失败时，任务改写入日桶（不早于下一个 UTC 日），
由次日扫描补发，已落盘的任务不会滞留。

下游消费者通过 start / complete / fail 上报执行结果；
失败且仍有重试预算时进入 RETRYING 并重新入队，预算耗尽进入终态 FAILED 并发出通知。
"""

import asyncio
from datetime import UTC, datetime

import structlog
from tickflow.core.bucketing import bucket_id_for, is_within_horizon, next_bucket_start
from tickflow.core.exceptions import (
    RetryBudgetExhaustedError,
    TaskNotFoundError,
    TaskStatusConflictError,
    TaskValidationError,
    TransientIOError,
)
from tickflow.core.models import (
    ACTIVE_STATES,
    TERMINAL_STATES,
    ActorType,
    Event,
    EventType,
    Task,
    TaskMetadata,
    TaskStatus,
    TaskSubmission,
)
from tickflow.core.models.payloads import TaskCreatedPayload, TaskFailedPayload
from tickflow.core.pipeline import SchedulerPipeline
from tickflow.core.store import StoreGroup
from tickflow.core.store.transaction import create_task_with_initial_events, save_bucket_metadata
from tickflow.core.transitions import build_event, record_transition, trace_id_for
from ulid import ULID

log = structlog.get_logger()


class TaskService:
    """任务业务服务"""

    def __init__(self, store_group: StoreGroup, pipeline: SchedulerPipeline) -> None:
        self._stores = store_group
        self._pipeline = pipeline

    @property
    def _config(self):
        return self._pipeline.config

    async def create_task(self, submission: TaskSubmission) -> Task:
        """创建任务并按近期窗口路由

        Raises:
            TaskValidationError: 提交内容非法
            TaskAlreadyExistsError: 调用方指定的 task_id 已存在
            TransientIOError: 发布失败且兜底日桶写入也失败
        """
        if not submission.tenant.strip():
            raise TaskValidationError("tenant must not be blank")
        if submission.task_id is not None and not submission.task_id.strip():
            raise TaskValidationError("task_id must not be blank")

        now = datetime.now(UTC)
        now_ms = self._pipeline.clock.now_ms()
        task_id = submission.task_id or str(ULID())

        task = Task(
            task_id=task_id,
            tenant=submission.tenant,
            payload=submission.payload,
            scheduled_at=submission.scheduled_at,
            status=TaskStatus.CREATED,
            priority=submission.priority,
            created_by=submission.created_by,
            assigned_to=submission.assigned_to,
            parameters=submission.parameters,
            created_at=now,
            updated_at=now,
            max_retries=submission.max_retries,
            retry_delay_ms=submission.retry_delay_ms,
        )

        near_term = is_within_horizon(
            task.scheduled_at, now_ms, self._config.near_term_horizon_ms
        )
        bucket_id = None if near_term else bucket_id_for(task.scheduled_at)

        created_event = Event(
            event_id=str(ULID()),
            task_id=task_id,
            ts=now,
            type=EventType.TASK_CREATED,
            actor=ActorType.INTAKE,
            payload=TaskCreatedPayload(
                tenant=task.tenant,
                scheduled_at=task.scheduled_at,
                priority=task.priority.value,
                route="dispatch" if near_term else "bucket",
                bucket_id=bucket_id,
            ).model_dump(),
            trace_id=trace_id_for(task_id),
        )

        # 单事务写入 task + 初始事件（+ 未来日桶记录）
        events = await create_task_with_initial_events(
            self._stores.conn,
            self._stores.task_store,
            self._stores.event_store,
            task,
            [created_event],
            bucket_store=None if near_term else self._stores.bucket_store,
            metadata=None if near_term else TaskMetadata.from_task(task, bucket_id=bucket_id),
        )
        for event in events:
            await self._stores.event_hub.broadcast(task_id, event)

        if near_term:
            if await self._dispatch(task):
                log.info("task_dispatched", task_id=task_id, scheduled_at=task.scheduled_at)
        else:
            log.info(
                "task_bucketed",
                task_id=task_id,
                scheduled_at=task.scheduled_at,
                bucket_id=bucket_id,
            )
        return task

    async def get_task(self, task_id: str) -> Task:
        """查询任务

        Raises:
            TaskNotFoundError: 任务不存在
        """
        task = await self._stores.task_store.get_task(task_id)
        if task is None:
            raise TaskNotFoundError(task_id)
        return task

    async def get_task_events(self, task_id: str) -> list[Event]:
        return await self._stores.event_store.get_events_for_task(task_id)

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        """查询任务列表，按 scheduled_at 倒序"""
        return await self._stores.task_store.list_tasks(status)

    async def search_tasks(
        self,
        start: datetime,
        end: datetime,
        priority: str | None = None,
        tenant: str | None = None,
    ) -> list[Task]:
        """按 created_at 区间检索

        Raises:
            TaskValidationError: start 晚于 end
        """
        if start > end:
            raise TaskValidationError("start must not be after end")
        return await self._stores.task_store.search_tasks(start, end, priority, tenant)

    async def cancel_task(self, task_id: str) -> Task:
        """取消任务，同时撤销调度引擎中的 key

        Raises:
            TaskNotFoundError: 任务不存在
            TaskStatusConflictError: 任务已在终态
        """
        task = await self.get_task(task_id)
        if task.status in TERMINAL_STATES:
            raise TaskStatusConflictError(task_id, None, task.status.value)

        await record_transition(
            self._stores,
            task_id,
            task.status,
            TaskStatus.CANCELLED,
            ActorType.USER,
            reason="用户取消",
        )
        await self._pipeline.engine.retire(task_id)
        log.info("task_cancelled", task_id=task_id, from_status=task.status)
        return await self.get_task(task_id)

    async def report_start(self, task_id: str) -> Task:
        """下游开始执行：DELIVERED -> RUNNING"""
        task = await self.get_task(task_id)
        await self._transition(task, TaskStatus.RUNNING, reason="execution_started")
        return await self.get_task(task_id)

    async def report_complete(self, task_id: str, result: str | None = None) -> Task:
        """下游执行成功：DELIVERED / RUNNING -> COMPLETED"""
        task = await self.get_task(task_id)
        await self._transition(
            task,
            TaskStatus.COMPLETED,
            reason="execution_completed",
            execution_result=result,
        )
        return await self.get_task(task_id)

    async def report_failure(self, task_id: str, error_message: str) -> Task:
        """下游执行失败

        max_retries 是首次执行之外允许的重试次数：
        current_retries < max_retries 时 current_retries / retry_count 各加 1，
        进入 RETRYING 并重新入队；否则进入终态 FAILED，向通知通道发送失败通知，不再入队。
        因此 max_retries=N 的任务在第 N+1 次失败时进入 FAILED，current_retries 不超过 N。

        Raises:
            TaskNotFoundError: 任务不存在
            TaskStatusConflictError: 任务不在可上报失败的状态
        """
        task = await self.get_task(task_id)
        if task.status not in ACTIVE_STATES:
            raise TaskStatusConflictError(task_id, "SCHEDULED|DELIVERED|RUNNING", task.status.value)

        if task.current_retries < task.max_retries:
            current_retries = task.current_retries + 1
            await record_transition(
                self._stores,
                task_id,
                task.status,
                TaskStatus.RETRYING,
                ActorType.USER,
                reason="execution_failed",
                current_retries=current_retries,
                retry_count=task.retry_count + 1,
                error_message=error_message,
            )
            retried = await self.get_task(task_id)
            await self._dispatch(retried)
            log.info(
                "task_retry_enqueued",
                task_id=task_id,
                current_retries=current_retries,
                max_retries=task.max_retries,
            )
            return retried

        exhausted = RetryBudgetExhaustedError(task_id, task.max_retries)
        notification = TaskFailedPayload(
            task_id=task_id,
            tenant=task.tenant,
            error_message=error_message,
            retry_count=task.retry_count + 1,
            max_retries=task.max_retries,
            recoverable=exhausted.recoverable,
        )
        # 失败事件与终态流转同一事务写入，流转事件是 SSE 流的最后一条
        await record_transition(
            self._stores,
            task_id,
            task.status,
            TaskStatus.FAILED,
            ActorType.USER,
            reason=str(exhausted),
            preceding_events=[
                build_event(
                    task_id,
                    EventType.TASK_FAILED,
                    ActorType.SYSTEM,
                    notification.model_dump(),
                )
            ],
            retry_count=task.retry_count + 1,
            error_message=error_message,
        )
        await self._pipeline.engine.retire(task_id)
        try:
            await asyncio.wait_for(
                self._pipeline.bus.publish(
                    self._config.topics.notifications,
                    task_id,
                    notification.model_dump(),
                ),
                self._config.publish_timeout_s,
            )
        except Exception as e:
            log.error(
                "task_failure_notification_failed",
                task_id=task_id,
                error_type=type(e).__name__,
            )
        log.warning("task_failed", task_id=task_id, max_retries=task.max_retries)
        return await self.get_task(task_id)

    async def _transition(self, task: Task, to_status: TaskStatus, reason: str, **fields) -> None:
        try:
            await record_transition(
                self._stores,
                task.task_id,
                task.status,
                to_status,
                ActorType.USER,
                reason=reason,
                **fields,
            )
        except ValueError as e:
            raise TaskStatusConflictError(task.task_id, None, task.status.value) from e

    async def _dispatch(self, task: Task) -> bool:
        """发布到调度请求通道；失败时写入日桶兜底

        兜底日桶取 scheduled_at 所在日与下一个 UTC 日中较晚者，保证被下一次日扫描覆盖。

        Returns:
            是否已发布到调度请求通道

        Raises:
            TransientIOError: 发布与兜底日桶写入都失败
        """
        try:
            await self._publish_request(TaskMetadata.from_task(task))
            return True
        except TransientIOError as publish_error:
            bucket_id = max(
                bucket_id_for(task.scheduled_at),
                next_bucket_start(self._pipeline.clock.now_ms()),
            )
            try:
                await save_bucket_metadata(
                    self._stores.conn,
                    self._stores.bucket_store,
                    TaskMetadata.from_task(task, bucket_id=bucket_id),
                )
            except Exception as e:
                log.error(
                    "task_bucket_fallback_failed",
                    task_id=task.task_id,
                    error_type=type(e).__name__,
                )
                raise TransientIOError("bucket fallback", e) from publish_error
            log.warning(
                "task_request_bucketed_fallback",
                task_id=task.task_id,
                bucket_id=bucket_id,
                error=str(publish_error),
            )
            return False

    async def _publish_request(self, metadata: TaskMetadata) -> None:
        """发布到调度请求通道"""
        try:
            await asyncio.wait_for(
                self._pipeline.bus.publish(
                    self._config.topics.task_requests,
                    metadata.task_id,
                    metadata.to_message(),
                ),
                self._config.publish_timeout_s,
            )
        except Exception as e:
            log.error(
                "task_request_publish_failed",
                task_id=metadata.task_id,
                error_type=type(e).__name__,
            )
            raise TransientIOError("publish task request", e) from e
