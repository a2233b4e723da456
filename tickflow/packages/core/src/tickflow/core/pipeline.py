"""SchedulerPipeline -- 进程内流水线装配与后台 worker 生命周期

持有 Store、总线、指标，装配扫描器 / 调度引擎 / 投递阶段，
start() 启动长驻 worker，stop() 取消并等待它们退出。
"""

import asyncio

import structlog

from .bus import InMemoryBus, MessageBus
from .clock import Clock, SystemClock
from .config import PipelineConfig
from .delivery import DeliveryStage, DeliveryWorker
from .engine import NextFirePolicy, SchedulingEngine
from .metrics import InMemoryMetrics, MetricsRecorder
from .scanner import BucketScanner, DailyScanLoop
from .store import StoreGroup

log = structlog.get_logger()

ENGINE_GROUP = "scheduling-engine"
DELIVERY_GROUP = "delivery-stage"


class SchedulerPipeline:
    """调度流水线运行时"""

    def __init__(
        self,
        stores: StoreGroup,
        bus: MessageBus | None = None,
        config: PipelineConfig | None = None,
        clock: Clock | None = None,
        metrics: MetricsRecorder | None = None,
        policy: NextFirePolicy | None = None,
    ) -> None:
        self.stores = stores
        self.bus = bus or InMemoryBus()
        self.config = config or PipelineConfig()
        self.clock = clock or SystemClock()
        self.metrics = metrics or InMemoryMetrics()

        self.engine = SchedulingEngine(
            stores, self.bus, self.config, self.clock, self.metrics, policy
        )
        self.delivery = DeliveryStage(stores, self.bus, self.config, self.metrics)
        self.scanner = BucketScanner(
            stores.bucket_store, self.bus, self.config, self.clock, self.metrics
        )
        self.daily_scan = DailyScanLoop(self.scanner, self.clock)
        self._workers: dict[str, asyncio.Task] = {}

    async def start(self) -> None:
        """恢复定时器并启动后台 worker"""
        if self._workers:
            return
        await self.engine.restore()
        engine_sub = self.bus.subscribe(self.config.topics.task_requests, ENGINE_GROUP)
        delivery_sub = self.bus.subscribe(self.config.topics.scheduled_tasks, DELIVERY_GROUP)
        delivery_worker = DeliveryWorker(self.delivery, delivery_sub, self.config)

        self._workers = {
            "engine": asyncio.create_task(self.engine.consume(engine_sub), name="engine"),
            "timers": asyncio.create_task(self.engine.timers.run(), name="timers"),
            "delivery": asyncio.create_task(delivery_worker.run(), name="delivery"),
            "daily_scan": asyncio.create_task(self.daily_scan.run(), name="daily_scan"),
        }
        log.info("pipeline_started", workers=list(self._workers))

    async def stop(self) -> None:
        """取消全部 worker 并等待退出"""
        workers = list(self._workers.values())
        self._workers = {}
        for worker in workers:
            worker.cancel()
        await asyncio.gather(*workers, return_exceptions=True)
        if workers:
            log.info("pipeline_stopped")

    def worker_status(self) -> dict[str, bool]:
        """各 worker 是否存活"""
        return {name: not task.done() for name, task in self._workers.items()}

    @property
    def running(self) -> bool:
        return bool(self._workers) and all(self.worker_status().values())
