"""时钟抽象 -- 统一以 epoch 毫秒表示时间，便于测试注入"""

import time
from typing import Protocol


class Clock(Protocol):
    """时钟接口"""

    def now_ms(self) -> int:
        """当前时间（epoch 毫秒）"""
        ...


class SystemClock:
    """系统墙钟"""

    def now_ms(self) -> int:
        return time.time_ns() // 1_000_000
