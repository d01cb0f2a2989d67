import json
import time
import uuid
from typing import Any


SSE_HEADERS: dict[str, str] = {
    "Content-Type": "text/event-stream",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

SLEEP_INTERVAL_SECONDS = 0.05


def make_task_id() -> str:
    return f"task_{int(time.time()*1000)}_{uuid.uuid4().hex[:8]}"


def sse_format(event: dict[str, Any]) -> str:
    return f"data: {json.dumps(event)}\n\n"


def emit_event(
    task_id: str, event_type: str, data: Any = None, error: Any = None
) -> dict[str, Any]:
    return {
        "event_type": event_type,
        "task_id": task_id,
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%S+00:00", time.gmtime()),
        "data": data,
        "error": error,
    }


def callback_event_sse(task_id: str, ev: dict[str, Any]) -> str:
    """Wrap one collected callback event; its ``type`` becomes the event type."""
    payload = dict(ev)
    event_type = payload.pop("type")
    return sse_format(emit_event(task_id, event_type, data=payload))
