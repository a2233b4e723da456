"""TaskStore SQLite 实现

tasks 表是任务的权威记录，按 task_id 主键存储。
此处仅提供数据库操作，不自动提交事务，由 transaction 模块统一提交。
"""

import json
from collections.abc import Iterable
from datetime import UTC, datetime

import aiosqlite

from ..models.enums import TaskStatus
from ..models.task import Task

_COLUMNS = (
    "task_id, tenant, payload, scheduled_at, status, priority, created_by, "
    "assigned_to, parameters, created_at, updated_at, retry_count, "
    "current_retries, max_retries, retry_delay_ms, execution_result, error_message"
)

# SQLite 单条语句绑定参数上限较保守的取值
_IN_CLAUSE_CHUNK = 900


def format_ts(ts: datetime) -> str:
    """统一的时间戳存储格式（UTC，固定微秒精度，保证字典序即时间序）"""
    return ts.astimezone(UTC).isoformat(timespec="microseconds")


class SqliteTaskStore:
    """TaskStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def create_task(self, task: Task) -> None:
        """插入新任务记录

        task_id 已存在时抛出 sqlite3.IntegrityError。
        """
        await self._conn.execute(
            f"""
            INSERT INTO tasks ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            self._task_params(task),
        )

    async def save_task(self, task: Task) -> Task:
        """按 task_id upsert 任务记录（幂等）"""
        await self._conn.execute(
            f"""
            INSERT INTO tasks ({_COLUMNS})
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(task_id) DO UPDATE SET
                tenant = excluded.tenant,
                payload = excluded.payload,
                scheduled_at = excluded.scheduled_at,
                status = excluded.status,
                priority = excluded.priority,
                created_by = excluded.created_by,
                assigned_to = excluded.assigned_to,
                parameters = excluded.parameters,
                updated_at = excluded.updated_at,
                retry_count = excluded.retry_count,
                current_retries = excluded.current_retries,
                max_retries = excluded.max_retries,
                retry_delay_ms = excluded.retry_delay_ms,
                execution_result = excluded.execution_result,
                error_message = excluded.error_message
            """,
            self._task_params(task),
        )
        return task

    async def get_task(self, task_id: str) -> Task | None:
        """根据 task_id 查询任务"""
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    async def get_tasks_batch(self, task_ids: Iterable[str]) -> list[Task]:
        """按 ID 集合批量查询（尽力而为：不存在的 ID 直接忽略，不报错）

        返回顺序不保证与输入一致。
        """
        ids = list(dict.fromkeys(task_ids))
        tasks: list[Task] = []
        for start in range(0, len(ids), _IN_CLAUSE_CHUNK):
            chunk = ids[start : start + _IN_CLAUSE_CHUNK]
            placeholders = ", ".join("?" for _ in chunk)
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM tasks WHERE task_id IN ({placeholders})",
                chunk,
            )
            rows = await cursor.fetchall()
            tasks.extend(self._row_to_task(row) for row in rows)
        return tasks

    async def get_task_status(self, task_id: str) -> TaskStatus | None:
        """仅读取状态列"""
        cursor = await self._conn.execute(
            "SELECT status FROM tasks WHERE task_id = ?",
            (task_id,),
        )
        row = await cursor.fetchone()
        return TaskStatus(row[0]) if row else None

    async def list_tasks(self, status: str | None = None) -> list[Task]:
        """查询任务列表，支持按状态筛选，按 scheduled_at 倒序"""
        if status:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM tasks WHERE status = ? "
                "ORDER BY scheduled_at DESC, task_id ASC",
                (status,),
            )
        else:
            cursor = await self._conn.execute(
                f"SELECT {_COLUMNS} FROM tasks ORDER BY scheduled_at DESC, task_id ASC"
            )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def search_tasks(
        self,
        start: datetime,
        end: datetime,
        priority: str | None = None,
        tenant: str | None = None,
    ) -> list[Task]:
        """按 created_at 闭区间检索，可选 priority / tenant 过滤"""
        clauses = ["created_at >= ?", "created_at <= ?"]
        params: list = [format_ts(start), format_ts(end)]
        if priority:
            clauses.append("priority = ?")
            params.append(priority)
        if tenant:
            clauses.append("tenant = ?")
            params.append(tenant)
        cursor = await self._conn.execute(
            f"SELECT {_COLUMNS} FROM tasks WHERE {' AND '.join(clauses)} "
            "ORDER BY created_at ASC, task_id ASC",
            params,
        )
        rows = await cursor.fetchall()
        return [self._row_to_task(row) for row in rows]

    async def update_task_status(
        self,
        task_id: str,
        status: str,
        updated_at: str,
        expected_status: str | None = None,
        *,
        current_retries: int | None = None,
        retry_count: int | None = None,
        execution_result: str | None = None,
        error_message: str | None = None,
    ) -> bool:
        """局部更新任务状态（无需先读取完整记录）

        expected_status 不为 None 时只在当前状态等于期望状态时写入。

        Returns:
            True 如果有记录被更新
        """
        assignments = ["status = ?", "updated_at = ?"]
        params: list = [status, updated_at]
        for column, value in (
            ("current_retries", current_retries),
            ("retry_count", retry_count),
            ("execution_result", execution_result),
            ("error_message", error_message),
        ):
            if value is not None:
                assignments.append(f"{column} = ?")
                params.append(value)

        sql = f"UPDATE tasks SET {', '.join(assignments)} WHERE task_id = ?"
        params.append(task_id)
        if expected_status is not None:
            sql += " AND status = ?"
            params.append(expected_status)

        cursor = await self._conn.execute(sql, params)
        return cursor.rowcount > 0

    @staticmethod
    def _task_params(task: Task) -> tuple:
        return (
            task.task_id,
            task.tenant,
            task.payload,
            task.scheduled_at,
            task.status.value,
            task.priority.value,
            task.created_by,
            task.assigned_to,
            json.dumps(task.parameters, ensure_ascii=False),
            format_ts(task.created_at),
            format_ts(task.updated_at),
            task.retry_count,
            task.current_retries,
            task.max_retries,
            task.retry_delay_ms,
            task.execution_result,
            task.error_message,
        )

    @staticmethod
    def _row_to_task(row: aiosqlite.Row) -> Task:
        """将数据库行转换为 Task 模型"""
        return Task(
            task_id=row[0],
            tenant=row[1],
            payload=row[2],
            scheduled_at=row[3],
            status=row[4],
            priority=row[5],
            created_by=row[6],
            assigned_to=row[7],
            parameters=json.loads(row[8]) if row[8] else {},
            created_at=datetime.fromisoformat(row[9]),
            updated_at=datetime.fromisoformat(row[10]),
            retry_count=row[11],
            current_retries=row[12],
            max_retries=row[13],
            retry_delay_ms=row[14],
            execution_result=row[15],
            error_message=row[16],
        )
