"""状态流转写入 -- 校验、落盘、广播

所有阶段（引擎、投递、入口服务）推进任务状态都经过 record_transition：
先按 VALID_TRANSITIONS 校验，再在单事务内写 STATE_TRANSITION 事件并
按期望来源状态条件更新 tasks 表，提交后向 EventHub 广播。
"""

from datetime import UTC, datetime
from typing import Any

from ulid import ULID

from .models.enums import ActorType, EventType, TaskStatus, validate_transition
from .models.event import Event
from .models.payloads import StateTransitionPayload
from .store import StoreGroup
from .store.transaction import append_events_and_update_task


def trace_id_for(task_id: str) -> str:
    return f"trace-{task_id}"


def build_event(
    task_id: str,
    event_type: EventType,
    actor: ActorType,
    payload: dict[str, Any],
) -> Event:
    return Event(
        event_id=str(ULID()),
        task_id=task_id,
        ts=datetime.now(UTC),
        type=event_type,
        actor=actor,
        payload=payload,
        trace_id=trace_id_for(task_id),
    )


async def record_transition(
    stores: StoreGroup,
    task_id: str,
    from_status: TaskStatus,
    to_status: TaskStatus,
    actor: ActorType,
    reason: str = "",
    preceding_events: list[Event] | None = None,
    **fields: Any,
) -> Event:
    """写入 STATE_TRANSITION 事件并条件更新任务状态

    preceding_events 与流转事件同一事务写入并排在它之前；
    条件写入冲突时它们也不会落盘。

    Raises:
        ValueError: 流转不在状态机允许范围内
        TaskNotFoundError: 任务不存在
        TaskStatusConflictError: 当前状态已不是 from_status
    """
    if not validate_transition(from_status, to_status):
        raise ValueError(f"Cannot transition from {from_status} to {to_status}")

    event = build_event(
        task_id,
        EventType.STATE_TRANSITION,
        actor,
        StateTransitionPayload(
            from_status=from_status,
            to_status=to_status,
            reason=reason,
            current_retries=fields.get("current_retries"),
        ).model_dump(mode="json"),
    )
    written = await append_events_and_update_task(
        stores.conn,
        stores.event_store,
        stores.task_store,
        [*(preceding_events or []), event],
        new_status=to_status.value,
        expected_status=from_status.value,
        **fields,
    )
    for item in written:
        await stores.event_hub.broadcast(task_id, item)
    return written[-1]
