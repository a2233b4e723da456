"""BucketScanner -- 当日桶的游标分页扫描

每次运行按 id 升序访问当日桶内每条记录恰好一次，发布到调度请求通道。
单条发布失败只计数不中断；整轮失败（存储不可达）中止本轮，由下一轮重试。
不保存扫描断点：发布和桶存储都是幂等的，失败的一轮可以完整重跑。
"""

import asyncio
import time

import structlog

from .bucketing import current_bucket_id, next_bucket_start
from .bus import MessageBus
from .clock import Clock, SystemClock
from .config import PipelineConfig
from .exceptions import PartitionMismatchError, TransientIOError
from .metrics import InMemoryMetrics, MetricsRecorder
from .models.reports import ScanSummary
from .models.task import TaskMetadata
from .store.bucket_store import BucketPage
from .store.protocols import BucketStore

log = structlog.get_logger()


class BucketScanner:
    """日桶扫描器"""

    def __init__(
        self,
        bucket_store: BucketStore,
        bus: MessageBus,
        config: PipelineConfig | None = None,
        clock: Clock | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._bucket_store = bucket_store
        self._bus = bus
        self._config = config or PipelineConfig()
        self._clock = clock or SystemClock()
        self._metrics = metrics or InMemoryMetrics()

    async def run(self, bucket_id: int | None = None) -> ScanSummary:
        """扫描一个桶（默认当前 UTC 日）

        Raises:
            TransientIOError: 分页拉取失败或超时，本轮中止
        """
        if bucket_id is None:
            bucket_id = current_bucket_id(self._clock.now_ms())
        summary = ScanSummary(bucket_id=bucket_id)
        started = time.monotonic()
        log.info("bucket_scan_started", bucket_id=bucket_id)

        cursor: str | None = None
        while True:
            page = await self._fetch_page(bucket_id, cursor)
            if not page.records:
                break
            summary.batches += 1
            summary.tasks_seen += len(page.records)

            for record in page.records:
                if record.bucket_id != bucket_id:
                    mismatch = PartitionMismatchError(record.task_id, bucket_id, record.bucket_id)
                    summary.mismatched += 1
                    self._metrics.increment("scanner.mismatched")
                    log.warning(
                        "bucket_record_mismatch",
                        task_id=record.task_id,
                        bucket_id=bucket_id,
                        record_bucket_id=record.bucket_id,
                        error=str(mismatch),
                    )
                if await self._publish(record):
                    summary.succeeded += 1
                else:
                    summary.failed += 1

            if page.next_cursor is None:
                break
            cursor = page.next_cursor

        self._metrics.increment("scanner.runs")
        self._metrics.increment("scanner.published", summary.succeeded)
        self._metrics.increment("scanner.publish_failed", summary.failed)
        self._metrics.record("scanner.duration_s", time.monotonic() - started)
        log.info("bucket_scan_completed", **summary.model_dump())
        return summary

    async def _fetch_page(self, bucket_id: int, cursor: str | None) -> BucketPage:
        try:
            return await asyncio.wait_for(
                self._bucket_store.scan_bucket(bucket_id, cursor, self._config.scan_page_size),
                self._config.page_fetch_timeout_s,
            )
        except Exception as e:
            self._metrics.increment("scanner.runs_failed")
            log.error(
                "bucket_scan_failed",
                bucket_id=bucket_id,
                cursor=cursor,
                error_type=type(e).__name__,
                error=str(e),
            )
            raise TransientIOError("scan_bucket", e) from e

    async def _publish(self, record: TaskMetadata) -> bool:
        try:
            await asyncio.wait_for(
                self._bus.publish(
                    self._config.topics.task_requests,
                    record.task_id,
                    record.to_message(),
                ),
                self._config.publish_timeout_s,
            )
        except Exception as e:
            log.warning(
                "bucket_record_publish_failed",
                task_id=record.task_id,
                error_type=type(e).__name__,
            )
            return False
        return True


class DailyScanLoop:
    """每个 UTC 零点运行一次扫描，也支持按需触发"""

    def __init__(self, scanner: BucketScanner, clock: Clock | None = None) -> None:
        self._scanner = scanner
        self._clock = clock or SystemClock()
        self._last_summary: ScanSummary | None = None

    @property
    def last_summary(self) -> ScanSummary | None:
        return self._last_summary

    async def trigger(self) -> ScanSummary:
        """立即扫描当前 UTC 日的桶，失败向调用方抛出"""
        summary = await self._scanner.run()
        self._last_summary = summary
        return summary

    def seconds_until_next_run(self) -> float:
        now = self._clock.now_ms()
        return max(0.0, (next_bucket_start(now) - now) / 1000)

    async def run(self) -> None:
        """后台循环：睡眠到下一个 UTC 零点后扫描；失败记录日志，等待下一天"""
        while True:
            await asyncio.sleep(self.seconds_until_next_run())
            try:
                await self.trigger()
            except TransientIOError as e:
                log.error("daily_scan_aborted", error=str(e))
