"""Store Protocol 接口定义

定义 TaskStore、BucketStore、EventStore、TimerStateStore 的抽象接口，
使用 Python Protocol 实现结构化子类型（duck typing）。
"""

from collections.abc import Iterable
from datetime import datetime
from typing import TYPE_CHECKING, Protocol

from ..models.enums import TaskStatus
from ..models.event import Event
from ..models.task import Task, TaskMetadata

if TYPE_CHECKING:
    from .bucket_store import BucketPage


class TaskStore(Protocol):
    """Task 存储接口"""

    async def create_task(self, task: Task) -> None:
        """插入新任务记录"""
        ...

    async def save_task(self, task: Task) -> Task:
        """按 task_id upsert"""
        ...

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        ...

    async def get_tasks_batch(self, task_ids: Iterable[str]) -> list[Task]:
        """按 ID 集合批量查询，不存在的 ID 被忽略"""
        ...

    async def get_task_status(self, task_id: str) -> TaskStatus | None:
        ...

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        """查询任务列表，支持按状态筛选"""
        ...

    async def search_tasks(
        self,
        start: datetime,
        end: datetime,
        priority: str | None = None,
        tenant: str | None = None,
    ) -> list[Task]:
        """按 created_at 区间检索"""
        ...

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        updated_at: str,
        expected_status: str | None = None,
    ) -> bool:
        """更新任务状态（仅通过事件触发）"""
        ...


class BucketStore(Protocol):
    """日桶存储接口"""

    async def save_metadata(self, metadata: TaskMetadata) -> None:
        ...

    async def scan_bucket(
        self,
        bucket_id: int,
        cursor: str | None,
        limit: int,
    ) -> "BucketPage":
        """桶内游标分页：id > cursor，按 id 升序，至多 limit 条"""
        ...


class EventStore(Protocol):
    """Event 存储接口

    事件表 append-only：只允许插入，不允许更新或删除。
    """

    async def append_event(self, event: Event) -> Event:
        """追加事件（append-only）"""
        ...

    async def get_events_for_task(self, task_id: str) -> list[Event]:
        """查询指定任务的所有事件"""
        ...

    async def get_events_after(
        self,
        task_id: str,
        after_event_id: str,
    ) -> list[Event]:
        """查询指定事件之后的增量事件（用于 SSE 断线重连）"""
        ...


class TimerStateStore(Protocol):
    """调度引擎 key 状态存储接口"""

    async def get(self, task_id: str) -> int | None:
        ...

    async def put(self, task_id: str, next_execution_time: int, updated_at: datetime) -> None:
        ...

    async def delete(self, task_id: str) -> None:
        ...

    async def list_all(self) -> list[tuple[str, int]]:
        ...
