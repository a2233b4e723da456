"""TimerService -- 按 key 的单定时器调度

最小堆保存 (wake_at, seq, key, fire_at)；每个 key 只有 _live 中记录的那一项是有效的，
重新布置或撤销后堆中的旧项在出堆时被惰性丢弃。

回调失败且回调期间没有为该 key 重新布置或撤销时，按原 fire_at 在
retry_delay_ms 之后重试，持久状态未推进的 key 不会丢失定时器。
"""

import asyncio
import heapq
import itertools
from collections.abc import Awaitable, Callable

import structlog

from .clock import Clock, SystemClock

log = structlog.get_logger()

TimerCallback = Callable[[str, int], Awaitable[None]]


class TimerService:
    """按 key 的定时器服务，同一 key 任一时刻至多一个有效定时器"""

    def __init__(
        self,
        callback: TimerCallback,
        clock: Clock | None = None,
        retry_delay_ms: int = 5_000,
    ) -> None:
        self._callback = callback
        self._clock = clock or SystemClock()
        self._retry_delay_ms = retry_delay_ms
        self._heap: list[tuple[int, int, str, int]] = []
        self._live: dict[str, int] = {}
        self._deadlines: dict[str, int] = {}
        self._seq = itertools.count()
        self._changed = asyncio.Event()
        # 正在回调的 key 及回调期间是否被重新布置 / 撤销
        self._firing: str | None = None
        self._firing_touched = False

    def arm(self, key: str, fire_at: int, wake_at: int | None = None) -> None:
        """布置（或替换）key 的定时器

        Args:
            key: 任务 key
            fire_at: 传给回调的触发时间
            wake_at: 实际唤醒时间，默认等于 fire_at
        """
        seq = next(self._seq)
        self._live[key] = seq
        self._deadlines[key] = fire_at
        heapq.heappush(self._heap, (fire_at if wake_at is None else wake_at, seq, key, fire_at))
        self._touch(key)
        self._changed.set()

    def disarm(self, key: str) -> None:
        self._touch(key)
        self._live.pop(key, None)
        if self._deadlines.pop(key, None) is not None:
            self._changed.set()

    def _touch(self, key: str) -> None:
        if key == self._firing:
            self._firing_touched = True

    def deadline(self, key: str) -> int | None:
        return self._deadlines.get(key)

    def __len__(self) -> int:
        return len(self._deadlines)

    def next_deadline(self) -> int | None:
        """最早的有效唤醒时间"""
        while self._heap:
            wake_at, seq, key, _ = self._heap[0]
            if self._live.get(key) == seq:
                return wake_at
            heapq.heappop(self._heap)
        return None

    async def fire_due(self, now_ms: int) -> int:
        """依次触发所有唤醒时间 <= now_ms 的有效定时器

        回调可以为同一 key 重新布置定时器；单个回调失败只记录日志，
        并按原 fire_at 延迟 retry_delay_ms 重试。

        Returns:
            触发的定时器数量
        """
        fired = 0
        while True:
            wake_at = self.next_deadline()
            if wake_at is None or wake_at > now_ms:
                break
            _, _, key, fire_at = heapq.heappop(self._heap)
            del self._live[key]
            del self._deadlines[key]
            fired += 1
            self._firing = key
            self._firing_touched = False
            try:
                await self._callback(key, fire_at)
            except Exception as e:
                retry_at = None
                if not self._firing_touched:
                    retry_at = now_ms + self._retry_delay_ms
                    self.arm(key, fire_at, wake_at=retry_at)
                log.error(
                    "timer_callback_failed",
                    task_id=key,
                    fire_at=fire_at,
                    retry_at=retry_at,
                    error_type=type(e).__name__,
                    error=str(e),
                )
            finally:
                self._firing = None
        return fired

    async def run(self) -> None:
        """后台循环：睡眠到最早的唤醒时间，或被新布置的定时器唤醒"""
        while True:
            self._changed.clear()
            wake_at = self.next_deadline()
            if wake_at is None:
                await self._changed.wait()
                continue
            delay = (wake_at - self._clock.now_ms()) / 1000
            if delay > 0:
                try:
                    await asyncio.wait_for(self._changed.wait(), delay)
                    continue
                except TimeoutError:
                    pass
            await self.fire_due(self._clock.now_ms())
