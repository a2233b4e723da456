"""全局 pytest 配置 -- 临时 SQLite 数据库、手动时钟、任务构造 fixture"""

from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime
from pathlib import Path

import aiosqlite
import pytest
import pytest_asyncio

# 2023-11-15T12:26:40Z，落在桶 1_700_006_400_000 内
BASE_NOW_MS = 1_700_050_000_000


class ManualClock:
    """测试用手动时钟"""

    def __init__(self, now_ms: int = BASE_NOW_MS) -> None:
        self._now_ms = now_ms

    def now_ms(self) -> int:
        return self._now_ms

    def advance(self, delta_ms: int) -> int:
        self._now_ms += delta_ms
        return self._now_ms

    def set(self, now_ms: int) -> None:
        self._now_ms = now_ms


@pytest.fixture
def manual_clock() -> ManualClock:
    return ManualClock()


@pytest_asyncio.fixture
async def tmp_db_path(tmp_path: Path) -> Path:
    """提供临时 SQLite 数据库路径"""
    return tmp_path / "test.db"


@pytest_asyncio.fixture
async def db_conn(tmp_db_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """提供已初始化的临时 SQLite 数据库连接"""
    from tickflow.core.store.sqlite_init import init_db

    conn = await aiosqlite.connect(str(tmp_db_path))
    await init_db(conn)
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def store_group(tmp_db_path: Path):
    """提供共享临时数据库连接的 StoreGroup"""
    from tickflow.core.store import create_store_group

    stores = await create_store_group(str(tmp_db_path))
    yield stores
    await stores.conn.close()


@pytest.fixture
def make_task() -> Callable:
    """Task 构造器"""
    from tickflow.core.models import Task, TaskStatus

    def _make(
        task_id: str,
        status: TaskStatus = TaskStatus.CREATED,
        scheduled_at: int = BASE_NOW_MS + 10_000,
        **kwargs,
    ) -> Task:
        now = datetime.now(UTC)
        fields = {
            "tenant": "acme",
            "payload": f"payload-{task_id}",
            "created_at": now,
            "updated_at": now,
        }
        fields.update(kwargs)
        return Task(task_id=task_id, status=status, scheduled_at=scheduled_at, **fields)

    return _make


@pytest.fixture
def insert_task(store_group) -> Callable:
    """直接落盘一条任务（绕过入口服务）"""

    async def _insert(task):
        await store_group.task_store.save_task(task)
        await store_group.conn.commit()
        return task

    return _insert
