"""可观测性端口 -- 由进程持有并注入各组件，替代全局计数器

组件只依赖 MetricsRecorder 协议；InMemoryMetrics 是默认实现，
不带导出器。观测值按序列保留最近 sample_size 条，另记累计次数与总和。
"""

from collections import defaultdict, deque
from functools import partial
from typing import Protocol


def _series_key(name: str, tags: dict[str, str]) -> str:
    if not tags:
        return name
    labels = ",".join(f"{k}={v}" for k, v in sorted(tags.items()))
    return f"{name}{{{labels}}}"


class MetricsRecorder(Protocol):
    """指标记录接口"""

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        """计数器累加"""
        ...

    def record(self, name: str, value: float, **tags: str) -> None:
        """记录一次观测值（耗时、批大小等）"""
        ...

    def set_gauge(self, name: str, value: float, **tags: str) -> None:
        """设置瞬时值"""
        ...


class InMemoryMetrics:
    """内存指标记录器"""

    def __init__(self, sample_size: int = 1_000) -> None:
        self.counters: dict[str, int] = defaultdict(int)
        self.observations: dict[str, deque[float]] = defaultdict(
            partial(deque, maxlen=sample_size)
        )
        self.totals: dict[str, tuple[int, float]] = {}
        self.gauges: dict[str, float] = {}

    def increment(self, name: str, value: int = 1, **tags: str) -> None:
        self.counters[_series_key(name, tags)] += value

    def record(self, name: str, value: float, **tags: str) -> None:
        key = _series_key(name, tags)
        self.observations[key].append(value)
        count, total = self.totals.get(key, (0, 0.0))
        self.totals[key] = (count + 1, total + value)

    def set_gauge(self, name: str, value: float, **tags: str) -> None:
        self.gauges[_series_key(name, tags)] = value

    def counter(self, name: str, **tags: str) -> int:
        """读取计数器当前值（未记录时为 0）"""
        return self.counters.get(_series_key(name, tags), 0)

    def snapshot(self) -> dict:
        """导出当前所有指标"""
        return {
            "counters": dict(self.counters),
            "observations": {k: list(v) for k, v in self.observations.items()},
            "gauges": dict(self.gauges),
            "totals": {k: {"count": c, "sum": s} for k, (c, s) in self.totals.items()},
        }
