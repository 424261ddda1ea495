"""Server-sent event framing for run event streams.

The engine delivers events on worker threads; ``EventStream`` hands them to
the event loop through a thread-safe queue and renders them as SSE frames.
"""

import asyncio
import json
import queue
from typing import Any, AsyncIterator, Callable, Dict, Optional

from ..core.logging import get_logger
from ..models.core import ExecutionEvent, RunResult


logger = get_logger(__name__)

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_frame(event: str, data: Any) -> str:
    return f"event: {event}\ndata: {json.dumps(data, default=str)}\n\n"


def format_event(event: ExecutionEvent) -> str:
    """Render one execution event as an SSE frame named after its kind."""
    return format_frame(event.event_kind.value, event.to_wire())


def end_payload(run_id: Optional[str], result: Optional[RunResult]) -> Dict[str, Any]:
    """Payload of the closing ``end`` frame."""
    if result is None:
        return {"runId": run_id, "status": "failed", "error": {"kind": "internal_error",
                                                               "message": "Run terminated unexpectedly"}}

    payload: Dict[str, Any] = {"runId": result.run_id, "status": result.status.value}
    if result.output is not None:
        payload["output"] = result.output
    if result.error is not None:
        payload["error"] = result.error.model_dump(mode="json", by_alias=True)
    if result.pending_node_id is not None:
        payload["pendingNodeId"] = result.pending_node_id
    if result.warnings:
        payload["warnings"] = result.warnings
    return payload


class EventStream:
    """
    Bridge between an engine sink and a streaming HTTP response.

    ``push`` is the sink handed to the engine and ``finish`` its completion
    callback; both may be called from any thread. ``frames`` yields the SSE
    frames in order and ends after the ``end`` frame.
    """

    def __init__(self, keepalive_interval: float = 15.0, on_disconnect: Optional[Callable[[str], Any]] = None):
        self.keepalive_interval = keepalive_interval
        self.on_disconnect = on_disconnect
        self.run_id: Optional[str] = None
        self._queue: "queue.Queue" = queue.Queue()
        self._finished = False

    def push(self, event: ExecutionEvent) -> None:
        self._queue.put(("event", event))

    def finish(self, result: Optional[RunResult]) -> None:
        self._queue.put(("end", result))

    async def frames(self) -> AsyncIterator[str]:
        try:
            while True:
                try:
                    kind, value = await asyncio.to_thread(self._queue.get, True, self.keepalive_interval)
                except queue.Empty:
                    yield ": keepalive\n\n"
                    continue

                if kind == "event":
                    yield format_event(value)
                    continue

                self._finished = True
                yield format_frame("end", end_payload(self.run_id, value))
                break
        finally:
            if not self._finished and self.run_id and self.on_disconnect is not None:
                logger.info(f"Client disconnected from run {self.run_id} before it finished")
                self.on_disconnect(self.run_id)
