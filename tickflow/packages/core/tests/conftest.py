"""packages/core 测试配置 -- 核心层 fixture"""

import pytest
import pytest_asyncio


@pytest.fixture
def bus():
    """进程内消息总线"""
    from tickflow.core.bus import InMemoryBus

    return InMemoryBus()


@pytest.fixture
def metrics():
    from tickflow.core.metrics import InMemoryMetrics

    return InMemoryMetrics()


@pytest.fixture
def pipeline_config():
    """测试用流水线配置：小分页、短超时"""
    from tickflow.core.config import PipelineConfig

    return PipelineConfig(
        scan_page_size=3,
        delivery_batch_size=10,
        delivery_batch_wait_ms=10,
        page_fetch_timeout_s=1.0,
        publish_timeout_s=1.0,
    )


@pytest_asyncio.fixture
async def engine(store_group, bus, pipeline_config, manual_clock, metrics):
    """使用手动时钟的调度引擎"""
    from tickflow.core.engine import SchedulingEngine

    return SchedulingEngine(store_group, bus, pipeline_config, manual_clock, metrics)
