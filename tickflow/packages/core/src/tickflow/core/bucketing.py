"""日桶计算 -- 按 UTC 自然日划分 TaskMetadata 分区

bucket_id = scheduled_at - (scheduled_at mod 86_400_000)，
即 scheduled_at 所在 UTC 日零点的 epoch 毫秒。
"""

from datetime import UTC, datetime

from .config import DAY_MS


def bucket_id_for(scheduled_at: int) -> int:
    """计算 scheduled_at 所属日桶

    例: 1_700_050_000_000 -> 1_700_006_400_000
    """
    return scheduled_at - (scheduled_at % DAY_MS)


def current_bucket_id(now_ms: int) -> int:
    """当前 UTC 日的桶 ID"""
    return bucket_id_for(now_ms)


def next_bucket_start(now_ms: int) -> int:
    """下一个 UTC 零点的 epoch 毫秒"""
    return bucket_id_for(now_ms) + DAY_MS


def is_within_horizon(scheduled_at: int, now_ms: int, horizon_ms: int) -> bool:
    """scheduled_at 是否落在近期调度窗口内（严格小于 now + horizon）"""
    return scheduled_at < now_ms + horizon_ms


def to_datetime(epoch_ms: int) -> datetime:
    """epoch 毫秒转 UTC datetime"""
    return datetime.fromtimestamp(epoch_ms / 1000, tz=UTC)
