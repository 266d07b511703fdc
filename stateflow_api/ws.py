from __future__ import annotations

"""Fan-out of history events to WebSocket subscribers."""

import asyncio
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List

from stateflow.history import ExecutionEvent

StreamMessage = Dict[str, Any]


class EventStreamManager:
    """Tracks subscribers interested in the history of an execution."""

    def __init__(self) -> None:
        self._subscribers: DefaultDict[str, List[asyncio.Queue[StreamMessage]]] = defaultdict(list)
        self._loop: asyncio.AbstractEventLoop | None = None

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the asyncio loop used to deliver messages."""

        self._loop = loop

    def register(self, execution_id: str) -> asyncio.Queue[StreamMessage]:
        """Register a subscriber queue for an execution."""

        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        queue: asyncio.Queue[StreamMessage] = asyncio.Queue()
        self._subscribers[execution_id].append(queue)
        return queue

    def unregister(self, execution_id: str, queue: asyncio.Queue[StreamMessage]) -> None:
        subscribers = self._subscribers.get(execution_id)
        if not subscribers:
            return
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers:
            self._subscribers.pop(execution_id, None)

    def publish(self, execution_id: str, message: StreamMessage) -> None:
        """Publish a message to all subscribers; safe to call from any thread."""

        if not self._loop:
            return
        for queue in list(self._subscribers.get(execution_id, [])):
            self._loop.call_soon_threadsafe(queue.put_nowait, message)

    def publish_event(self, event: ExecutionEvent) -> None:
        """History listener hook: forwards every recorded event."""

        self.publish(event.execution_id, event_message(event))


def event_message(event: ExecutionEvent) -> StreamMessage:
    return {"type": "event", "event": event.model_dump(mode="json")}


__all__ = ["EventStreamManager", "StreamMessage", "event_message"]
