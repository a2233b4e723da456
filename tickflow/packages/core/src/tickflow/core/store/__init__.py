"""Tickflow Core Store -- SQLite 持久化实现

提供工厂函数创建共享数据库连接的 Store 实例组。
"""

from pathlib import Path

import aiosqlite

from ..event_hub import EventHub
from .bucket_store import BucketPage, SqliteBucketStore
from .event_store import SqliteEventStore
from .sqlite_init import init_db
from .task_store import SqliteTaskStore
from .timer_state_store import SqliteTimerStateStore
from .transaction import (
    append_event_and_update_task,
    append_events_and_update_task,
    clear_timer_state,
    connection_write_lock,
    create_task_with_initial_events,
    save_bucket_metadata,
    save_timer_state,
)


class StoreGroup:
    """Store 实例组 -- 共享同一个数据库连接"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self.conn = conn
        self.task_store = SqliteTaskStore(conn)
        self.bucket_store = SqliteBucketStore(conn)
        self.event_store = SqliteEventStore(conn)
        self.timer_state_store = SqliteTimerStateStore(conn)
        self.event_hub = EventHub()


async def create_store_group(db_path: str) -> StoreGroup:
    """创建 Store 实例组

    Args:
        db_path: SQLite 数据库文件路径（":memory:" 用于测试）

    Returns:
        StoreGroup 实例
    """
    if db_path != ":memory:":
        # 确保数据库目录存在
        Path(db_path).parent.mkdir(parents=True, exist_ok=True)

    conn = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row
    await init_db(conn)

    return StoreGroup(conn=conn)


__all__ = [
    "StoreGroup",
    "create_store_group",
    "BucketPage",
    "SqliteTaskStore",
    "SqliteBucketStore",
    "SqliteEventStore",
    "SqliteTimerStateStore",
    "init_db",
    "connection_write_lock",
    "create_task_with_initial_events",
    "append_event_and_update_task",
    "append_events_and_update_task",
    "save_bucket_metadata",
    "save_timer_state",
    "clear_timer_state",
]
