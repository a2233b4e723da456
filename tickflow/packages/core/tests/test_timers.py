"""TimerService 单元测试

测试内容：
1. 到期触发、未到期不触发
2. 同一 key 重新布置后旧定时器失效
3. disarm 后不触发
4. 回调失败不影响其他 key，且按原触发时间延迟重试
"""

import asyncio
import time

from tickflow.core.timers import TimerService


class _Recorder:
    def __init__(self) -> None:
        self.fired: list[tuple[str, int]] = []

    async def __call__(self, key: str, fire_at: int) -> None:
        self.fired.append((key, fire_at))


class TestTimerService:
    async def test_fires_due_only(self, manual_clock):
        recorder = _Recorder()
        timers = TimerService(recorder, manual_clock)
        timers.arm("a", 100)
        timers.arm("b", 200)

        assert await timers.fire_due(150) == 1
        assert recorder.fired == [("a", 100)]
        assert timers.deadline("a") is None
        assert timers.deadline("b") == 200

    async def test_fires_in_deadline_order(self, manual_clock):
        recorder = _Recorder()
        timers = TimerService(recorder, manual_clock)
        timers.arm("late", 300)
        timers.arm("early", 100)
        timers.arm("mid", 200)

        await timers.fire_due(1_000)
        assert [key for key, _ in recorder.fired] == ["early", "mid", "late"]

    async def test_rearm_replaces_previous_timer(self, manual_clock):
        """同一 key 只有一个有效定时器"""
        recorder = _Recorder()
        timers = TimerService(recorder, manual_clock)
        timers.arm("a", 100)
        timers.arm("a", 500)

        assert len(timers) == 1
        assert await timers.fire_due(200) == 0
        assert await timers.fire_due(500) == 1
        assert recorder.fired == [("a", 500)]

    async def test_disarm(self, manual_clock):
        recorder = _Recorder()
        timers = TimerService(recorder, manual_clock)
        timers.arm("a", 100)
        timers.disarm("a")

        assert timers.next_deadline() is None
        assert await timers.fire_due(1_000) == 0

    async def test_callback_may_rearm(self, manual_clock):
        timers: TimerService

        async def rearm(key: str, fire_at: int) -> None:
            timers.arm(key, fire_at + 100)

        timers = TimerService(rearm, manual_clock)
        timers.arm("a", 100)
        await timers.fire_due(150)
        assert timers.deadline("a") == 200

    async def test_callback_failure_isolated(self, manual_clock):
        fired: list[str] = []

        async def callback(key: str, fire_at: int) -> None:
            if key == "bad":
                raise RuntimeError("boom")
            fired.append(key)

        timers = TimerService(callback, manual_clock)
        timers.arm("bad", 100)
        timers.arm("good", 200)

        assert await timers.fire_due(300) == 2
        assert fired == ["good"]

    async def test_failed_callback_retried_with_original_fire_at(self, manual_clock):
        attempts: list[int] = []

        async def flaky(key: str, fire_at: int) -> None:
            attempts.append(fire_at)
            if len(attempts) == 1:
                raise OSError("store unavailable")

        timers = TimerService(flaky, manual_clock, retry_delay_ms=1_000)
        timers.arm("a", 100)

        assert await timers.fire_due(100) == 1
        # 失败后仍保留一个有效定时器，唤醒时间推迟
        assert timers.deadline("a") == 100
        assert timers.next_deadline() == 1_100
        assert await timers.fire_due(500) == 0

        assert await timers.fire_due(1_100) == 1
        assert attempts == [100, 100]
        assert timers.deadline("a") is None

    async def test_failed_callback_not_retried_after_disarm(self, manual_clock):
        timers: TimerService

        async def retire_then_fail(key: str, fire_at: int) -> None:
            timers.disarm(key)
            raise RuntimeError("boom")

        timers = TimerService(retire_then_fail, manual_clock, retry_delay_ms=1_000)
        timers.arm("a", 100)
        await timers.fire_due(100)

        assert len(timers) == 0
        assert timers.next_deadline() is None

    async def test_failed_callback_keeps_rearm_from_callback(self, manual_clock):
        timers: TimerService

        async def rearm_then_fail(key: str, fire_at: int) -> None:
            timers.arm(key, fire_at + 60_000)
            raise RuntimeError("emit failed")

        timers = TimerService(rearm_then_fail, manual_clock, retry_delay_ms=1_000)
        timers.arm("a", 100)
        await timers.fire_due(100)

        assert timers.deadline("a") == 60_100
        assert timers.next_deadline() == 60_100

    async def test_run_loop_fires_with_system_clock(self):
        recorder = _Recorder()
        timers = TimerService(recorder)
        runner = asyncio.create_task(timers.run())
        try:
            now_ms = time.time_ns() // 1_000_000
            timers.arm("a", now_ms + 20)
            for _ in range(100):
                if recorder.fired:
                    break
                await asyncio.sleep(0.01)
        finally:
            runner.cancel()
            await asyncio.gather(runner, return_exceptions=True)

        assert [key for key, _ in recorder.fired] == ["a"]
