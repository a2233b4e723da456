"""调度管理路由

POST /api/scheduler/trigger-daily: 立即扫描当前 UTC 日的桶，返回扫描汇总。
GET /api/scheduler/metrics: 当前进程的流水线指标快照。
"""

import structlog
from fastapi import APIRouter, Depends
from tickflow.core.exceptions import TickflowError
from tickflow.core.models import ScanSummary
from tickflow.core.pipeline import SchedulerPipeline

from ..deps import get_pipeline
from ..errors import error_response

log = structlog.get_logger()

router = APIRouter()


@router.post("/api/scheduler/trigger-daily", response_model=ScanSummary)
async def trigger_daily_scan(pipeline: SchedulerPipeline = Depends(get_pipeline)):
    """手动触发当日桶扫描；存储不可达时返回错误"""
    try:
        summary = await pipeline.daily_scan.trigger()
    except TickflowError as e:
        log.error("manual_scan_failed", error=str(e))
        return error_response(500, "SCAN_FAILED", str(e))
    return summary


@router.get("/api/scheduler/metrics")
async def pipeline_metrics(pipeline: SchedulerPipeline = Depends(get_pipeline)):
    snapshot = getattr(pipeline.metrics, "snapshot", None)
    return {
        "workers": pipeline.worker_status(),
        "metrics": snapshot() if snapshot else {},
    }
