"""Tickflow 异常体系

单条记录级失败（扫描中的一条发布、批次中的一个任务）在组件内部捕获并计数，
不会中断所在的扫描或批次；整轮失败（存储不可达）中止本轮，由下一轮调度重试。
"""


class TickflowError(Exception):
    """Tickflow 基础异常"""

    def __init__(self, message: str, recoverable: bool = True) -> None:
        """
        Args:
            message: 错误描述
            recoverable: 是否可通过重试或下一轮调度恢复
        """
        super().__init__(message)
        self.recoverable = recoverable


class TaskNotFoundError(TickflowError):
    """按 ID 查询的任务不存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id {task_id} does not exist", recoverable=False)
        self.task_id = task_id


class TaskAlreadyExistsError(TickflowError):
    """调用方指定的任务 ID 已存在"""

    def __init__(self, task_id: str) -> None:
        super().__init__(f"Task with id {task_id} already exists", recoverable=False)
        self.task_id = task_id


class TaskValidationError(TickflowError):
    """提交内容非法，在入口处拒绝，不进入流水线"""

    def __init__(self, message: str) -> None:
        super().__init__(message, recoverable=False)


class TaskStatusConflictError(TickflowError):
    """条件状态写入失败：存储中的状态已不是期望的来源状态

    在至少一次投递语义下这是预期情况（其他阶段已推进了状态）。
    """

    def __init__(
        self,
        task_id: str,
        expected_status: str | None,
        actual_status: str | None = None,
    ) -> None:
        super().__init__(
            f"Task {task_id} status conflict: expected {expected_status}, "
            f"actual {actual_status}",
            recoverable=False,
        )
        self.task_id = task_id
        self.expected_status = expected_status
        self.actual_status = actual_status


class PartitionMismatchError(TickflowError):
    """桶记录的 bucket_id 与扫描的桶不一致

    仅用于标记和日志，记录仍然会被发布。
    """

    def __init__(self, task_id: str, expected: int, actual: int | None) -> None:
        super().__init__(
            f"Task {task_id} has bucket_id {actual}, expected {expected}",
            recoverable=True,
        )
        self.task_id = task_id
        self.expected = expected
        self.actual = actual


class RetryBudgetExhaustedError(TickflowError):
    """重试预算耗尽，任务进入终态 FAILED"""

    def __init__(self, task_id: str, max_retries: int) -> None:
        super().__init__(
            f"Task {task_id} exhausted its retry budget ({max_retries})",
            recoverable=False,
        )
        self.task_id = task_id
        self.max_retries = max_retries


class TransientIOError(TickflowError):
    """存储或总线暂时不可达（连接失败、超时等）"""

    def __init__(self, operation: str, original_error: Exception) -> None:
        """
        Args:
            operation: 失败的操作名称
            original_error: 原始异常
        """
        super().__init__(
            f"{operation} failed: {type(original_error).__name__}: {original_error}",
            recoverable=True,
        )
        self.operation = operation
        self.original_error = original_error
