"""消息总线 -- 进程内实现

每个通道是一条 append-only 日志；消费组持有读取位置和已提交位点。
poll 在凑满 max_records 或超时后返回（微批触发：数量或时间阈值）；
commit 确认已 poll 的全部消息；rewind 回退到上次提交位点，
未确认的批次会被重新投递（至少一次语义）。新消费组从最早保留位点开始。

位点是通道内的绝对序号。所有已订阅消费组都已提交的前缀超过
compact_threshold 条时被截掉，base_offset 随之前移。
"""

import asyncio
from collections import defaultdict
from datetime import UTC, datetime
from typing import Any, Protocol

import structlog
from pydantic import BaseModel, Field

log = structlog.get_logger()


class BusMessage(BaseModel):
    """总线消息"""

    topic: str
    key: str
    value: dict[str, Any] = Field(default_factory=dict, description="JSON 消息体")
    offset: int = Field(description="通道内位点")
    ts: datetime = Field(default_factory=lambda: datetime.now(UTC))


class Subscription(Protocol):
    """消费组订阅接口"""

    async def poll(self, max_records: int, timeout_s: float) -> list[BusMessage]:
        """拉取一批消息"""
        ...

    def commit(self) -> None:
        """确认已拉取的全部消息"""
        ...

    def rewind(self) -> None:
        """回退到上次提交位点"""
        ...


class MessageBus(Protocol):
    """消息总线接口"""

    async def publish(self, topic: str, key: str, value: dict[str, Any]) -> BusMessage:
        """按 key 发布一条消息"""
        ...

    def subscribe(self, topic: str, group: str) -> Subscription:
        """以消费组身份订阅通道"""
        ...


class InMemorySubscription:
    """InMemoryBus 的消费组订阅"""

    def __init__(self, bus: "InMemoryBus", topic: str, group: str) -> None:
        self._bus = bus
        self._topic = topic
        self._group = group
        bus.register_group(topic, group)
        self._position = max(bus.committed_offset(topic, group), bus.base_offset(topic))

    @property
    def position(self) -> int:
        return self._position

    async def poll(self, max_records: int, timeout_s: float) -> list[BusMessage]:
        """拉取至多 max_records 条消息

        可用消息达到 max_records 时立即返回，否则最多等待 timeout_s 秒，
        返回期间到达的全部消息（可能为空）。
        """
        cond = self._bus.condition(self._topic)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s

        async with cond:
            while self._bus.end_offset(self._topic) - self._position < max_records:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    break
                try:
                    await asyncio.wait_for(cond.wait(), remaining)
                except TimeoutError:
                    break

        self._position = max(self._position, self._bus.base_offset(self._topic))
        batch = self._bus.read(self._topic, self._position, max_records)
        self._position += len(batch)
        return batch

    def commit(self) -> None:
        self._bus.set_committed_offset(self._topic, self._group, self._position)

    def rewind(self) -> None:
        committed = max(
            self._bus.committed_offset(self._topic, self._group),
            self._bus.base_offset(self._topic),
        )
        if committed < self._position:
            log.info(
                "subscription_rewound",
                topic=self._topic,
                group=self._group,
                redeliver=self._position - committed,
            )
        self._position = committed


class InMemoryBus:
    """进程内消息总线 -- 基于 asyncio.Condition 的日志式发布/订阅"""

    def __init__(self, compact_threshold: int = 10_000) -> None:
        self._compact_threshold = compact_threshold
        self._logs: dict[str, list[BusMessage]] = defaultdict(list)
        self._base: dict[str, int] = defaultdict(int)
        self._groups: dict[str, set[str]] = defaultdict(set)
        self._conditions: dict[str, asyncio.Condition] = {}
        self._committed: dict[tuple[str, str], int] = {}

    def base_offset(self, topic: str) -> int:
        """最早保留消息的位点"""
        return self._base[topic]

    def end_offset(self, topic: str) -> int:
        """下一条消息将获得的位点"""
        return self._base[topic] + len(self._logs[topic])

    def read(self, topic: str, start: int, max_records: int) -> list[BusMessage]:
        """从绝对位点 start 起读取至多 max_records 条"""
        index = max(start - self._base[topic], 0)
        return self._logs[topic][index : index + max_records]

    def condition(self, topic: str) -> asyncio.Condition:
        cond = self._conditions.get(topic)
        if cond is None:
            cond = asyncio.Condition()
            self._conditions[topic] = cond
        return cond

    def register_group(self, topic: str, group: str) -> None:
        self._groups[topic].add(group)

    def committed_offset(self, topic: str, group: str) -> int:
        return self._committed.get((topic, group), 0)

    def set_committed_offset(self, topic: str, group: str, offset: int) -> None:
        self._committed[(topic, group)] = offset
        self._compact(topic)

    def _compact(self, topic: str) -> None:
        """截掉所有消费组都已提交的前缀

        没有进程内消费组的通道（由外部订阅）只保留最近 compact_threshold 条。
        """
        groups = self._groups.get(topic)
        if groups:
            low = min(self.committed_offset(topic, group) for group in groups)
        elif len(self._logs[topic]) >= 2 * self._compact_threshold:
            low = self.end_offset(topic) - self._compact_threshold
        else:
            return
        drop = low - self._base[topic]
        if drop < self._compact_threshold:
            return
        del self._logs[topic][:drop]
        self._base[topic] = low
        log.debug("bus_topic_compacted", topic=topic, dropped=drop, base_offset=low)

    async def publish(self, topic: str, key: str, value: dict[str, Any]) -> BusMessage:
        """追加消息到通道日志并唤醒等待中的消费者"""
        cond = self.condition(topic)
        async with cond:
            message = BusMessage(topic=topic, key=key, value=value, offset=self.end_offset(topic))
            self._logs[topic].append(message)
            self._compact(topic)
            cond.notify_all()
        return message

    def subscribe(self, topic: str, group: str) -> InMemorySubscription:
        return InMemorySubscription(self, topic, group)

    def messages(self, topic: str) -> list[BusMessage]:
        """通道内保留消息的快照"""
        return list(self._logs.get(topic, []))
