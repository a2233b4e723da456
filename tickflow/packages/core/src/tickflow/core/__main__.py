"""CLI 入口模块 -- python -m tickflow.core <command>

支持的命令：
  bucket-stats [bucket_id]  查看日桶记录数（默认当前 UTC 日）
  timers                    列出调度引擎持久化的定时器状态
"""

import asyncio
import sys

from .bucketing import current_bucket_id, to_datetime
from .clock import SystemClock
from .config import get_db_path

_USAGE = """用法: python -m tickflow.core <command>
命令:
  bucket-stats [bucket_id]  查看日桶记录数（默认当前 UTC 日）
  timers                    列出调度引擎持久化的定时器状态"""


def main() -> None:
    """CLI 主入口"""
    if len(sys.argv) < 2:
        print(_USAGE)
        sys.exit(1)

    command = sys.argv[1]

    if command == "bucket-stats":
        bucket_id = int(sys.argv[2]) if len(sys.argv) > 2 else None
        asyncio.run(bucket_stats(bucket_id))
    elif command == "timers":
        asyncio.run(list_timers())
    else:
        print(f"未知命令: {command}")
        print(_USAGE)
        sys.exit(1)


async def bucket_stats(bucket_id: int | None = None) -> int:
    """打印日桶记录数"""
    from .store import create_store_group

    if bucket_id is None:
        bucket_id = current_bucket_id(SystemClock().now_ms())

    store_group = await create_store_group(get_db_path())
    try:
        count = await store_group.bucket_store.count_bucket(bucket_id)
    finally:
        await store_group.conn.close()

    print(f"桶 {bucket_id} ({to_datetime(bucket_id).date().isoformat()}): {count} 条记录")
    return count


async def list_timers() -> list[tuple[str, int]]:
    """打印全部持久化定时器"""
    from .store import create_store_group

    store_group = await create_store_group(get_db_path())
    try:
        entries = await store_group.timer_state_store.list_all()
    finally:
        await store_group.conn.close()

    for task_id, next_execution_time in entries:
        print(f"{task_id}\t{to_datetime(next_execution_time).isoformat()}")
    print(f"共 {len(entries)} 个定时器")
    return entries


if __name__ == "__main__":
    main()
