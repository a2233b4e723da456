"""SQLite 数据库初始化

PRAGMA 配置 + 四张表 DDL + 索引创建。
使用 aiosqlite 异步操作。
"""

import aiosqlite

# tasks 表 DDL（按 task_id 主键存储完整任务）
_TASKS_DDL = """
CREATE TABLE IF NOT EXISTS tasks (
    task_id          TEXT PRIMARY KEY,
    tenant           TEXT NOT NULL DEFAULT '',
    payload          TEXT NOT NULL DEFAULT '',
    scheduled_at     INTEGER NOT NULL,
    status           TEXT NOT NULL DEFAULT 'CREATED',
    priority         TEXT NOT NULL DEFAULT 'MEDIUM',
    created_by       TEXT NOT NULL DEFAULT '',
    assigned_to      TEXT NOT NULL DEFAULT '',
    parameters       TEXT NOT NULL DEFAULT '{}',
    created_at       TEXT NOT NULL,
    updated_at       TEXT NOT NULL,
    retry_count      INTEGER NOT NULL DEFAULT 0,
    current_retries  INTEGER NOT NULL DEFAULT 0,
    max_retries      INTEGER NOT NULL DEFAULT 3,
    retry_delay_ms   INTEGER NOT NULL DEFAULT 5000,
    execution_result TEXT,
    error_message    TEXT,

    CHECK (current_retries <= max_retries)
);
"""

_TASKS_INDEXES = [
    "CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_scheduled_at ON tasks(scheduled_at DESC);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_created_at ON tasks(created_at);",
    "CREATE INDEX IF NOT EXISTS idx_tasks_tenant ON tasks(tenant);",
]

# task_metadata 表 DDL（日桶分区，(bucket_id, id) 复合主键，桶内按 id 范围扫描）
_TASK_METADATA_DDL = """
CREATE TABLE IF NOT EXISTS task_metadata (
    bucket_id    INTEGER NOT NULL,
    id           TEXT NOT NULL,
    tenant       TEXT NOT NULL DEFAULT '',
    scheduled_at INTEGER,
    status       TEXT NOT NULL DEFAULT 'CREATED',

    PRIMARY KEY (bucket_id, id)
);
"""

# events 表 DDL
_EVENTS_DDL = """
CREATE TABLE IF NOT EXISTS events (
    event_id        TEXT PRIMARY KEY,
    task_id         TEXT NOT NULL,
    task_seq        INTEGER NOT NULL,
    ts              TEXT NOT NULL,
    type            TEXT NOT NULL,
    schema_version  INTEGER NOT NULL DEFAULT 1,
    actor           TEXT NOT NULL,
    payload         TEXT NOT NULL DEFAULT '{}',
    trace_id        TEXT NOT NULL DEFAULT '',

    FOREIGN KEY (task_id) REFERENCES tasks(task_id)
);
"""

_EVENTS_INDEXES = [
    # 任务内事件序号唯一约束（确保 task_seq 严格单调递增）
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_events_task_seq ON events(task_id, task_seq);",
]

# timer_state 表 DDL（调度引擎按 key 持久化的下一次触发时间）
_TIMER_STATE_DDL = """
CREATE TABLE IF NOT EXISTS timer_state (
    task_id             TEXT PRIMARY KEY,
    next_execution_time INTEGER NOT NULL,
    updated_at          TEXT NOT NULL
);
"""


async def init_db(conn: aiosqlite.Connection) -> None:
    """初始化数据库：设置 PRAGMA + 创建表 + 创建索引

    Args:
        conn: aiosqlite 数据库连接
    """
    # 设置 PRAGMA
    await conn.execute("PRAGMA journal_mode = WAL;")
    await conn.execute("PRAGMA foreign_keys = ON;")
    await conn.execute("PRAGMA busy_timeout = 5000;")

    # 创建表
    await conn.execute(_TASKS_DDL)
    await conn.execute(_TASK_METADATA_DDL)
    await conn.execute(_EVENTS_DDL)
    await conn.execute(_TIMER_STATE_DDL)

    # 创建索引
    for idx_sql in _TASKS_INDEXES + _EVENTS_INDEXES:
        await conn.execute(idx_sql)

    await conn.commit()


async def verify_wal_mode(conn: aiosqlite.Connection) -> bool:
    """验证 WAL 模式是否生效

    Returns:
        True 如果 WAL 模式已启用
    """
    cursor = await conn.execute("PRAGMA journal_mode;")
    row = await cursor.fetchone()
    return row is not None and row[0].lower() == "wal"
