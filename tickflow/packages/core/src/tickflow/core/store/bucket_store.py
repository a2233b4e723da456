"""BucketStore SQLite 实现 -- 按日桶分区的 TaskMetadata

task_metadata 表以 (bucket_id, id) 为主键；所有扫描都限定在单个 bucket_id 内，
按 id 升序做游标分页。不自动提交事务。
"""

import aiosqlite
from pydantic import BaseModel, Field

from ..models.task import TaskMetadata


class BucketPage(BaseModel):
    """一页桶扫描结果"""

    records: list[TaskMetadata] = Field(default_factory=list)
    next_cursor: str | None = Field(
        default=None,
        description="本页最后一条记录的 id；页不满（桶已读完）时为 None",
    )


class SqliteBucketStore:
    """BucketStore 的 SQLite 实现"""

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def save_metadata(self, metadata: TaskMetadata) -> None:
        """按 (bucket_id, id) upsert 桶记录"""
        if metadata.bucket_id is None:
            raise ValueError(f"metadata {metadata.task_id} has no bucket_id")
        await self._conn.execute(
            """
            INSERT INTO task_metadata (bucket_id, id, tenant, scheduled_at, status)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(bucket_id, id) DO UPDATE SET
                tenant = excluded.tenant,
                scheduled_at = excluded.scheduled_at,
                status = excluded.status
            """,
            (
                metadata.bucket_id,
                metadata.task_id,
                metadata.tenant,
                metadata.scheduled_at,
                metadata.status.value,
            ),
        )

    async def scan_bucket(
        self,
        bucket_id: int,
        cursor: str | None,
        limit: int,
    ) -> BucketPage:
        """桶内游标分页

        返回 id 严格大于 cursor 的记录（cursor 为 None 时返回首页），
        按 id 升序，至多 limit 条。
        """
        if cursor is None:
            result = await self._conn.execute(
                """
                SELECT bucket_id, id, tenant, scheduled_at, status
                FROM task_metadata
                WHERE bucket_id = ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (bucket_id, limit),
            )
        else:
            result = await self._conn.execute(
                """
                SELECT bucket_id, id, tenant, scheduled_at, status
                FROM task_metadata
                WHERE bucket_id = ? AND id > ?
                ORDER BY id ASC
                LIMIT ?
                """,
                (bucket_id, cursor, limit),
            )
        rows = await result.fetchall()
        records = [self._row_to_metadata(row) for row in rows]
        next_cursor = records[-1].task_id if len(records) == limit and records else None
        return BucketPage(records=records, next_cursor=next_cursor)

    async def count_bucket(self, bucket_id: int) -> int:
        cursor = await self._conn.execute(
            "SELECT COUNT(*) FROM task_metadata WHERE bucket_id = ?",
            (bucket_id,),
        )
        row = await cursor.fetchone()
        return row[0] if row else 0

    @staticmethod
    def _row_to_metadata(row: aiosqlite.Row) -> TaskMetadata:
        """将数据库行转换为 TaskMetadata 模型"""
        return TaskMetadata(
            bucket_id=row[0],
            task_id=row[1],
            tenant=row[2],
            scheduled_at=row[3],
            status=row[4],
        )
