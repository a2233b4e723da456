"""TimerStateStore SQLite 实现 -- 调度引擎按 key 的持久状态

每个 task_id 至多一条 next_execution_time；进程重启后由引擎 restore 重新布置定时器。
不自动提交事务。
"""

from datetime import datetime

import aiosqlite

from .task_store import format_ts


class SqliteTimerStateStore:
    """TimerStateStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def get(self, task_id: str) -> int | None:
        """读取 key 的 next_execution_time，未布置时返回 None"""
        cursor = await self._conn.execute(
            "SELECT next_execution_time FROM timer_state WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else None

    async def put(self, task_id: str, next_execution_time: int, updated_at: datetime) -> None:
        await self._conn.execute(
            """
            INSERT INTO timer_state (task_id, next_execution_time, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                next_execution_time = excluded.next_execution_time,
                updated_at = excluded.updated_at
            """,
            (task_id, next_execution_time, format_ts(updated_at)),
        )

    async def delete(self, task_id: str) -> None:
        await self._conn.execute(
            "DELETE FROM timer_state WHERE task_id = ?",
            (task_id,),
        )

    async def list_all(self) -> list[tuple[str, int]]:
        """全部 (task_id, next_execution_time)，按触发时间升序"""
        cursor = await self._conn.execute(
            "SELECT task_id, next_execution_time FROM timer_state "
            "ORDER BY next_execution_time ASC"
        )
        rows = await cursor.fetchall()
        return [(row[0], row[1]) for row in rows]
