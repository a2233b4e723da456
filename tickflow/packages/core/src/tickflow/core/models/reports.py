"""运行报告模型 -- 桶扫描汇总与投递批次报告"""

from pydantic import BaseModel, Field


class ScanSummary(BaseModel):
    """一次桶扫描的汇总"""

    bucket_id: int
    batches: int = Field(default=0, description="访问的非空分页数")
    tasks_seen: int = Field(default=0, description="读到的记录数")
    succeeded: int = Field(default=0, description="发布成功数")
    failed: int = Field(default=0, description="发布失败数")
    mismatched: int = Field(default=0, description="bucket_id 不匹配（已标记但仍发布）")


class DeliveryReport(BaseModel):
    """一个投递批次的处理结果"""

    received: int = 0
    duplicates: int = 0
    fetched: int = 0
    missing: int = 0
    delivered: int = 0
    skipped: int = 0
    failed: int = 0
