"""In-process SSE event bus for live run updates.

The engine publishes node, run and entity events as it mutates state;
clients watching a run subscribe via ``GET /api/stitch/runs/{run_id}/stream``.
Events are notifications only: the run store is the source of truth, and a
client that misses events recovers by reading ``/status/{run_id}``.

Event Envelope:
  {
    "event": "<event_type>",
    "data": {"run_id": "<run_id>", "timestamp": "<ISO 8601>", ...payload}
  }

Event types: node_status, run_status, entity_moved, run_completed, run_failed.
"""

from __future__ import annotations

import asyncio
import json
import time
from datetime import datetime, timezone
from typing import AsyncGenerator, Optional

from stitch.logging_config import get_sse_logger
from stitch.settings import (
    SSE_BUFFER_MAX_AGE_SECS,
    SSE_BUFFER_MAX_EVENTS,
    SSE_KEEPALIVE_INTERVAL,
)

logger = get_sse_logger()

# Events that close the stream
STOP_EVENTS = frozenset({"run_completed", "run_failed"})


class EventBus:
    """Per-run SSE queues plus buffering for events published before a client connects."""

    def __init__(
        self,
        buffer_max_events: int = SSE_BUFFER_MAX_EVENTS,
        buffer_max_age_secs: int = SSE_BUFFER_MAX_AGE_SECS,
    ):
        self._streams: dict[str, list[asyncio.Queue]] = {}
        self._buffers: dict[str, dict] = {}
        self._buffer_max_events = buffer_max_events
        self._buffer_max_age_secs = buffer_max_age_secs
        self._lock = asyncio.Lock()

    def push(self, run_id: str, event_type: str, data: dict) -> None:
        """Deliver an event to every subscriber of run_id, or buffer it.

        Synchronous: no await points, so it is safe to call from inside
        engine code paths without holding the lock.
        """
        data = {"run_id": run_id, **data}
        data.setdefault("timestamp", datetime.now(timezone.utc).isoformat())

        event = {"event": event_type, "data": data}
        queues = self._streams.get(run_id)
        if queues:
            for queue in queues:
                queue.put_nowait(event)
            logger.info(f"Event sent: {event_type} for {run_id}")
        else:
            self._buffer_event(run_id, event, event_type)

    async def subscribe(
        self,
        run_id: str,
        stop_events: Optional[frozenset] = None,
        keepalive_interval: float = SSE_KEEPALIVE_INTERVAL,
    ) -> AsyncGenerator[str, None]:
        """Yield SSE-formatted strings for run_id until a stop event.

        Buffered events are flushed first.
        """
        if stop_events is None:
            stop_events = STOP_EVENTS

        logger.info(f"Client subscribed: {run_id}")
        queue: asyncio.Queue = asyncio.Queue()

        async with self._lock:
            self._streams.setdefault(run_id, []).append(queue)
            buf = self._buffers.pop(run_id, None)

        buffered = buf["events"] if buf else []
        if buffered:
            logger.info(f"Flushing {len(buffered)} buffered events for {run_id}")

        try:
            for event in buffered:
                yield _format_sse(event)
                if event.get("event") in stop_events:
                    return

            while True:
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=keepalive_interval)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                if event is None:
                    break
                yield _format_sse(event)
                if event.get("event") in stop_events:
                    break
        finally:
            async with self._lock:
                queues = self._streams.get(run_id, [])
                if queue in queues:
                    queues.remove(queue)
                if not queues:
                    self._streams.pop(run_id, None)

    def _buffer_event(self, run_id: str, event: dict, event_type: str) -> None:
        if run_id not in self._buffers:
            self._cleanup_stale_buffers()
            self._buffers[run_id] = {"events": [], "created_at": time.monotonic()}

        buf = self._buffers[run_id]
        if len(buf["events"]) < self._buffer_max_events:
            buf["events"].append(event)
        else:
            logger.warning(
                f"Buffer full ({self._buffer_max_events}), dropping: {event_type} for {run_id}"
            )

    def _cleanup_stale_buffers(self) -> None:
        now = time.monotonic()
        stale = [
            rid for rid, buf in self._buffers.items()
            if now - buf["created_at"] > self._buffer_max_age_secs
        ]
        for rid in stale:
            removed = self._buffers.pop(rid, None)
            if removed:
                logger.info(f"Cleaned up stale buffer for {rid} ({len(removed['events'])} events)")

    def buffered(self, run_id: str) -> list[dict]:
        """Events waiting for a subscriber (used by tests and diagnostics)."""
        buf = self._buffers.get(run_id)
        return list(buf["events"]) if buf else []


def _format_sse(event: dict) -> str:
    return f"event: {event['event']}\ndata: {json.dumps(event['data'], default=str)}\n\n"


_bus: Optional[EventBus] = None


def get_event_bus() -> EventBus:
    global _bus
    if _bus is None:
        _bus = EventBus()
    return _bus


def push_event(run_id: str, event_type: str, data: dict) -> None:
    get_event_bus().push(run_id, event_type, data)


async def subscribe_events(
    run_id: str,
    stop_events: Optional[frozenset] = None,
) -> AsyncGenerator[str, None]:
    async for event_str in get_event_bus().subscribe(run_id, stop_events=stop_events):
        yield event_str
