"""事件 + 任务状态原子事务封装

在同一 SQLite 事务内原子提交事件和 tasks 表的状态更新，
状态变更与其流转事件要么同时可见，要么都不可见。

所有写入共享同一个 aiosqlite 连接；多个协程交错执行时，
一个协程的 commit 会提交另一个协程写了一半的语句。
因此每个写事务都在连接级写锁内完成。
"""

import asyncio
import sqlite3
import weakref
from datetime import datetime
from typing import Any

import aiosqlite

from ..exceptions import TaskAlreadyExistsError, TaskNotFoundError, TaskStatusConflictError
from ..models.event import Event
from ..models.task import Task, TaskMetadata
from .bucket_store import SqliteBucketStore
from .event_store import SqliteEventStore
from .task_store import SqliteTaskStore, format_ts
from .timer_state_store import SqliteTimerStateStore

_write_locks: "weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock]" = (
    weakref.WeakKeyDictionary()
)


def connection_write_lock(conn: aiosqlite.Connection) -> asyncio.Lock:
    """获取连接级写锁（每个连接一把）"""
    lock = _write_locks.get(conn)
    if lock is None:
        lock = asyncio.Lock()
        _write_locks[conn] = lock
    return lock


async def create_task_with_initial_events(
    conn: aiosqlite.Connection,
    task_store: SqliteTaskStore,
    event_store: SqliteEventStore,
    task: Task,
    events: list[Event],
    bucket_store: SqliteBucketStore | None = None,
    metadata: TaskMetadata | None = None,
) -> list[Event]:
    """在同一事务内创建任务、写入初始事件，并可选写入日桶记录

    Raises:
        TaskAlreadyExistsError: task_id 已存在
    """
    async with connection_write_lock(conn):
        try:
            await task_store.create_task(task)
            written = [await event_store.append_event(event) for event in events]
            if bucket_store is not None and metadata is not None:
                await bucket_store.save_metadata(metadata)
            await conn.commit()
        except sqlite3.IntegrityError as e:
            await conn.rollback()
            if await task_store.get_task_status(task.task_id) is not None:
                raise TaskAlreadyExistsError(task.task_id) from e
            raise
        except Exception:
            await conn.rollback()
            raise
    return written


async def append_event_and_update_task(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    event: Event,
    new_status: str | None = None,
    expected_status: str | None = None,
    **fields: Any,
) -> Event:
    """在同一事务内原子提交单个事件写入和任务状态更新，返回分配了 task_seq 的事件"""
    written = await append_events_and_update_task(
        conn,
        event_store,
        task_store,
        [event],
        new_status=new_status,
        expected_status=expected_status,
        **fields,
    )
    return written[-1]


async def append_events_and_update_task(
    conn: aiosqlite.Connection,
    event_store: SqliteEventStore,
    task_store: SqliteTaskStore,
    events: list[Event],
    new_status: str | None = None,
    expected_status: str | None = None,
    **fields: Any,
) -> list[Event]:
    """在同一事务内原子提交事件写入和任务状态更新

    Args:
        conn: 数据库连接（需在同一连接上操作以保证事务性）
        event_store: EventStore 实例
        task_store: TaskStore 实例
        events: 按顺序写入的事件，task_id 取最后一条
        new_status: 新状态值；为 None 时只写事件
        expected_status: 条件写入的期望来源状态
        **fields: 随状态一同更新的列（current_retries / retry_count /
            execution_result / error_message）

    Returns:
        分配了 task_seq 的事件，顺序与 events 一致

    Raises:
        TaskNotFoundError: 任务不存在
        TaskStatusConflictError: 当前状态不等于 expected_status
    """
    event = events[-1]
    async with connection_write_lock(conn):
        try:
            if new_status is not None:
                updated = await task_store.update_task_status(
                    task_id=event.task_id,
                    status=new_status,
                    updated_at=format_ts(event.ts),
                    expected_status=expected_status,
                    **fields,
                )
                if not updated:
                    actual = await task_store.get_task_status(event.task_id)
                    await conn.rollback()
                    if actual is None:
                        raise TaskNotFoundError(event.task_id)
                    raise TaskStatusConflictError(
                        event.task_id, expected_status, actual.value
                    )
            written = [await event_store.append_event(e) for e in events]
            await conn.commit()
        except (TaskNotFoundError, TaskStatusConflictError):
            raise
        except Exception:
            await conn.rollback()
            raise
    return written


async def save_bucket_metadata(
    conn: aiosqlite.Connection,
    bucket_store: SqliteBucketStore,
    metadata: TaskMetadata,
) -> None:
    """写入一条日桶记录并提交"""
    async with connection_write_lock(conn):
        try:
            await bucket_store.save_metadata(metadata)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def save_timer_state(
    conn: aiosqlite.Connection,
    timer_store: SqliteTimerStateStore,
    task_id: str,
    next_execution_time: int,
    updated_at: datetime,
) -> None:
    """持久化 key 的下一次触发时间"""
    async with connection_write_lock(conn):
        try:
            await timer_store.put(task_id, next_execution_time, updated_at)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise


async def clear_timer_state(
    conn: aiosqlite.Connection,
    timer_store: SqliteTimerStateStore,
    task_id: str,
) -> None:
    """清除 key 的定时器状态"""
    async with connection_write_lock(conn):
        try:
            await timer_store.delete(task_id)
            await conn.commit()
        except Exception:
            await conn.rollback()
            raise
