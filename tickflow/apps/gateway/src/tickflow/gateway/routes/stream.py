"""SSE 事件流路由

GET /api/stream/task/{task_id}: SSE 实时推送指定任务的状态流转事件。
先推送历史事件，再推送实时新事件；支持 Last-Event-ID 断线重连与心跳保活。
任务到达终态的事件携带 final: true，随后关闭流。
"""

import asyncio
import json

from fastapi import APIRouter, Depends, Request
from sse_starlette.sse import EventSourceResponse
from tickflow.core.config import SSE_HEARTBEAT_INTERVAL
from tickflow.core.models import TERMINAL_STATES, EventType, TaskStatus
from tickflow.core.models.event import Event

from ..deps import get_store_group
from ..errors import error_response

router = APIRouter()


def _event_to_sse_data(event: Event, is_final: bool = False) -> dict:
    """将 Event 模型转换为 SSE data JSON"""
    return {
        "event_id": event.event_id,
        "task_id": event.task_id,
        "task_seq": event.task_seq,
        "ts": event.ts.isoformat(),
        "type": event.type,
        "actor": event.actor,
        "payload": event.payload,
        "final": is_final,
    }


def _is_terminal_event(event: Event) -> bool:
    """判断事件是否标识任务到达终态"""
    if event.type != EventType.STATE_TRANSITION:
        return False
    try:
        return TaskStatus(event.payload.get("to_status")) in TERMINAL_STATES
    except ValueError:
        return False


def _to_sse(event: Event) -> tuple[dict, bool]:
    is_final = _is_terminal_event(event)
    data = _event_to_sse_data(event, is_final=is_final)
    return (
        {
            "id": event.event_id,
            "event": event.type,
            "data": json.dumps(data, ensure_ascii=False),
        },
        is_final,
    )


@router.get("/api/stream/task/{task_id}")
async def stream_task_events(
    task_id: str,
    request: Request,
    store_group=Depends(get_store_group),
):
    """SSE 事件流端点"""
    task = await store_group.task_store.get_task(task_id)
    if task is None:
        return error_response(
            404, "TASK_NOT_FOUND", f"Task with id {task_id} does not exist"
        )

    last_event_id = request.headers.get("last-event-id")
    hub = store_group.event_hub

    async def event_generator():
        # 先订阅再读历史，避免两者之间的事件丢失；重复事件按 event_id 过滤
        queue = await hub.subscribe(task_id)
        try:
            if last_event_id:
                events = await store_group.event_store.get_events_after(
                    task_id, last_event_id
                )
            else:
                events = await store_group.event_store.get_events_for_task(task_id)

            sent: set[str] = set()
            for event in events:
                message, is_final = _to_sse(event)
                sent.add(event.event_id)
                yield message
                if is_final:
                    return

            if task.status in TERMINAL_STATES:
                return

            while True:
                try:
                    event = await asyncio.wait_for(
                        queue.get(), timeout=SSE_HEARTBEAT_INTERVAL
                    )
                except TimeoutError:
                    yield {"comment": "heartbeat"}
                    continue
                if event.event_id in sent:
                    continue
                message, is_final = _to_sse(event)
                yield message
                if is_final:
                    return
        finally:
            await hub.unsubscribe(task_id, queue)

    return EventSourceResponse(event_generator())
