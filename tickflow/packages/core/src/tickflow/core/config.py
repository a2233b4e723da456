"""配置模块 -- 可通过环境变量覆盖

包含数据库路径、分页大小、近期调度窗口、定时器重挂间隔、
投递批次阈值、各通道名称等可配置项。
"""

import os
from pathlib import Path

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


def _get_base_dir() -> Path:
    """获取项目 data 基础目录"""
    return Path(os.environ.get("TICKFLOW_DATA_DIR", "data"))


def get_db_path() -> str:
    """获取 SQLite 数据库路径"""
    return os.environ.get(
        "TICKFLOW_DB_PATH",
        str(_get_base_dir() / "sqlite" / "tickflow.db"),
    )


# 一天的毫秒数（桶粒度）
DAY_MS: int = 86_400_000

# SSE 心跳间隔（秒）
SSE_HEARTBEAT_INTERVAL: int = int(
    os.environ.get("TICKFLOW_SSE_HEARTBEAT_INTERVAL", "15")
)


class TopicNames(BaseModel):
    """消息总线通道名称"""

    task_requests: str = Field(default="task-requests", description="调度请求通道")
    scheduled_tasks: str = Field(default="scheduled-tasks", description="到期任务通道")
    delivered_tasks: str = Field(default="delivered-tasks", description="已投递任务通道")
    notifications: str = Field(default="task-notifications", description="终态失败通知通道")


class PipelineConfig(BaseModel):
    """调度流水线配置 -- 从环境变量加载

    环境变量:
        TICKFLOW_SCAN_PAGE_SIZE: 桶扫描分页大小（默认 500）
        TICKFLOW_NEAR_TERM_HORIZON_DAYS: 近期调度窗口（天，默认 30）
        TICKFLOW_REARM_INTERVAL_MS: 定时器重挂间隔（毫秒，默认 60000）
        TICKFLOW_TIMER_RETRY_DELAY_MS: 定时器回调失败后的重试延迟（毫秒，默认 5000）
        TICKFLOW_DELIVERY_BATCH_SIZE: 投递批次最大条数（默认 500）
        TICKFLOW_DELIVERY_BATCH_WAIT_MS: 投递批次最长等待（毫秒，默认 500）
        TICKFLOW_PAGE_FETCH_TIMEOUT_S: 单页拉取超时（秒，默认 10）
        TICKFLOW_PUBLISH_TIMEOUT_S: 单条发布超时（秒，默认 5）
        TICKFLOW_PIPELINE_ENABLED: 是否随网关启动后台 worker（默认 true）
    """

    scan_page_size: int = Field(default=500, ge=1, description="桶扫描分页大小")
    near_term_horizon_days: int = Field(default=30, ge=0, description="近期调度窗口（天）")
    rearm_interval_ms: int = Field(default=60_000, ge=1, description="定时器重挂间隔（毫秒）")
    timer_retry_delay_ms: int = Field(
        default=5_000, ge=1, description="定时器回调失败后的重试延迟（毫秒）"
    )
    delivery_batch_size: int = Field(default=500, ge=1, description="投递批次最大条数")
    delivery_batch_wait_ms: int = Field(default=500, ge=0, description="投递批次最长等待（毫秒）")
    page_fetch_timeout_s: float = Field(default=10.0, gt=0, description="单页拉取超时（秒）")
    publish_timeout_s: float = Field(default=5.0, gt=0, description="单条发布超时（秒）")
    pipeline_enabled: bool = Field(default=True, description="是否启动后台 worker")
    topics: TopicNames = Field(default_factory=TopicNames, description="通道名称")

    @property
    def near_term_horizon_ms(self) -> int:
        return self.near_term_horizon_days * DAY_MS


_INT_ENV_VARS: dict[str, str] = {
    "TICKFLOW_SCAN_PAGE_SIZE": "scan_page_size",
    "TICKFLOW_NEAR_TERM_HORIZON_DAYS": "near_term_horizon_days",
    "TICKFLOW_REARM_INTERVAL_MS": "rearm_interval_ms",
    "TICKFLOW_TIMER_RETRY_DELAY_MS": "timer_retry_delay_ms",
    "TICKFLOW_DELIVERY_BATCH_SIZE": "delivery_batch_size",
    "TICKFLOW_DELIVERY_BATCH_WAIT_MS": "delivery_batch_wait_ms",
}

_FLOAT_ENV_VARS: dict[str, str] = {
    "TICKFLOW_PAGE_FETCH_TIMEOUT_S": "page_fetch_timeout_s",
    "TICKFLOW_PUBLISH_TIMEOUT_S": "publish_timeout_s",
}

_TOPIC_ENV_VARS: dict[str, str] = {
    "TICKFLOW_TOPIC_TASK_REQUESTS": "task_requests",
    "TICKFLOW_TOPIC_SCHEDULED_TASKS": "scheduled_tasks",
    "TICKFLOW_TOPIC_DELIVERED_TASKS": "delivered_tasks",
    "TICKFLOW_TOPIC_NOTIFICATIONS": "notifications",
}


def load_pipeline_config() -> PipelineConfig:
    """从环境变量加载流水线配置

    数值格式非法时记录警告并沿用默认值，不阻塞启动；
    越界值由 pydantic 校验拒绝。

    Returns:
        PipelineConfig 实例
    """
    kwargs: dict = {}

    for env_var, field_name in _INT_ENV_VARS.items():
        if val := os.environ.get(env_var):
            try:
                kwargs[field_name] = int(val)
            except ValueError:
                log.warning(
                    "invalid_int_config",
                    env_var=env_var,
                    value=val,
                    fallback=PipelineConfig.model_fields[field_name].default,
                )

    for env_var, field_name in _FLOAT_ENV_VARS.items():
        if val := os.environ.get(env_var):
            try:
                kwargs[field_name] = float(val)
            except ValueError:
                log.warning(
                    "invalid_float_config",
                    env_var=env_var,
                    value=val,
                    fallback=PipelineConfig.model_fields[field_name].default,
                )

    if val := os.environ.get("TICKFLOW_PIPELINE_ENABLED"):
        kwargs["pipeline_enabled"] = val.lower() not in ("0", "false", "no", "off")

    topics = {
        field_name: val
        for env_var, field_name in _TOPIC_ENV_VARS.items()
        if (val := os.environ.get(env_var))
    }
    if topics:
        kwargs["topics"] = TopicNames(**topics)

    return PipelineConfig(**kwargs)
