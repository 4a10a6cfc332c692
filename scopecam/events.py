"""In-process event channel for supervisor and capture lifecycle events.

The transport layer subscribes to the installed bus and relays events to its
clients. Publishing never blocks: a slow subscriber loses its oldest queued
event rather than stalling the publisher.
"""

from __future__ import annotations

import asyncio
import copy
import logging
import time
from collections import deque
from typing import Any, Deque, Set

STREAM_STARTED = "streamStarted"
STREAM_STOPPED = "streamStopped"
STREAM_RESTART_SCHEDULED = "streamRestartScheduled"
STREAM_ERROR = "streamError"
RECORDING_STARTED = "recordingStarted"
RECORDING_STOPPED = "recordingStopped"
RECORDING_EXITED = "recordingExited"
PHOTO_CAPTURED = "photoCaptured"
CAPTURE_DELETED = "captureDeleted"

_LOG = logging.getLogger("events")


class EventBus:
    """Fan-out publisher with bounded per-subscriber queues and replay history."""

    def __init__(self, *, max_queue_size: int = 64, history_limit: int = 128) -> None:
        if max_queue_size <= 0:
            raise ValueError("max_queue_size must be positive")
        if history_limit <= 0:
            raise ValueError("history_limit must be positive")
        self._max_queue_size = max_queue_size
        self._history: Deque[dict[str, Any]] = deque(maxlen=history_limit)
        self._subscribers: Set[asyncio.Queue] = set()
        self._seq = 0

    def subscribe(self, *, last_event_id: str | None = None) -> asyncio.Queue:
        """Register a subscriber queue, pre-filled with the replayable backlog."""
        queue: asyncio.Queue = asyncio.Queue(maxsize=self._max_queue_size)
        self._subscribers.add(queue)

        threshold = _parse_event_id(last_event_id)
        if threshold is not None:
            backlog = [event for event in self._history if event["seq"] > threshold]
        else:
            backlog = list(self._history)
        for event in backlog:
            self._enqueue_nowait(queue, event)
        return queue

    def unsubscribe(self, queue: asyncio.Queue) -> None:
        self._subscribers.discard(queue)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def publish(self, event_type: str, payload: Any = None) -> str:
        if not event_type or not isinstance(event_type, str):
            raise ValueError("event_type must be a non-empty string")
        self._seq += 1
        event_payload = copy.deepcopy(payload) if isinstance(payload, (dict, list)) else payload
        event = {
            "id": str(self._seq),
            "seq": self._seq,
            "type": event_type,
            "timestamp": time.time(),
            "payload": event_payload,
        }
        self._history.append(event)
        _LOG.debug("event %s %s", event_type, event_payload)
        for queue in list(self._subscribers):
            self._enqueue_nowait(queue, event)
        return event["id"]

    def _enqueue_nowait(self, queue: asyncio.Queue, event: dict[str, Any]) -> None:
        try:
            queue.put_nowait(event)
        except asyncio.QueueFull:
            try:
                queue.get_nowait()
            except asyncio.QueueEmpty:
                pass
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                pass

    def history_snapshot(self) -> list[dict[str, Any]]:
        return list(self._history)


_event_bus: EventBus | None = None


def install_event_bus(bus: EventBus) -> None:
    global _event_bus
    _event_bus = bus


def get_event_bus() -> EventBus | None:
    return _event_bus


def publish(event_type: str, payload: Any = None) -> str | None:
    bus = get_event_bus()
    if bus is None:
        return None
    return bus.publish(event_type, payload)


def uninstall_event_bus(bus: EventBus) -> None:
    global _event_bus
    if _event_bus is bus:
        _event_bus = None


def reset_for_tests() -> None:
    global _event_bus
    _event_bus = None


def _parse_event_id(candidate: str | None) -> int | None:
    if not candidate:
        return None
    try:
        return int(candidate)
    except (TypeError, ValueError):
        return None
