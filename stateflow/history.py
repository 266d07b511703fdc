from __future__ import annotations

"""Append-only execution history: events, stores and the per-execution recorder."""

import asyncio
import json
import logging
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Protocol

from pydantic import BaseModel, ConfigDict

logger = logging.getLogger("stateflow.history")


class EventKind(str, Enum):
    """Types of history events."""

    EXECUTION_STARTED = "ExecutionStarted"
    ENTERED = "Entered"
    EXITED = "Exited"
    TASK_SCHEDULED = "TaskScheduled"
    TASK_PENDING = "TaskPending"
    TASK_SUCCEEDED = "TaskSucceeded"
    TASK_FAILED = "TaskFailed"
    RETRIED = "Retried"
    CAUGHT = "Caught"
    EXECUTION_SUCCEEDED = "ExecutionSucceeded"
    EXECUTION_FAILED = "ExecutionFailed"
    EXECUTION_CANCELLED = "ExecutionCancelled"
    EXECUTION_TIMED_OUT = "ExecutionTimedOut"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_EVENT_KINDS


TERMINAL_EVENT_KINDS = frozenset(
    {
        EventKind.EXECUTION_SUCCEEDED,
        EventKind.EXECUTION_FAILED,
        EventKind.EXECUTION_CANCELLED,
        EventKind.EXECUTION_TIMED_OUT,
    }
)


class ExecutionEvent(BaseModel):
    """Immutable record of one step in an execution.

    ``scope`` locates events raised inside Parallel branches and Map
    iterations (``Fan[1]/Each[3]``); it is empty at the top level. ``payload``
    is the document snapshot relevant to the event.
    """

    model_config = ConfigDict(frozen=True)

    execution_id: str
    sequence: int
    timestamp: datetime
    kind: EventKind
    state_id: Optional[str] = None
    scope: str = ""
    payload: Any = None
    next_state: Optional[str] = None
    error: Optional[str] = None
    cause: Optional[str] = None

    def fingerprint(self) -> tuple:
        """Everything but the wall-clock timestamp, for replay comparisons."""

        return (
            self.sequence,
            self.kind,
            self.state_id,
            self.scope,
            json.dumps(self.payload, sort_keys=True),
            self.next_state,
            self.error,
            self.cause,
        )


class HistoryStore(Protocol):
    """Durable, append-only event log keyed by execution id."""

    async def append(self, execution_id: str, event: ExecutionEvent) -> None:
        ...

    async def read_all(self, execution_id: str) -> list[ExecutionEvent]:
        ...

    def drop(self, execution_id: str) -> None:
        ...


class _PerExecutionLocks:
    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}

    def __len__(self) -> int:
        return len(self._locks)

    def lock_for(self, execution_id: str) -> asyncio.Lock:
        lock = self._locks.get(execution_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[execution_id] = lock
        return lock

    def discard(self, execution_id: str) -> None:
        self._locks.pop(execution_id, None)


class InMemoryHistoryStore:
    """Process-local history, used by default and in tests."""

    def __init__(self) -> None:
        self._events: Dict[str, list[ExecutionEvent]] = {}
        self._locks = _PerExecutionLocks()

    async def append(self, execution_id: str, event: ExecutionEvent) -> None:
        async with self._locks.lock_for(execution_id):
            self._events.setdefault(execution_id, []).append(event)

    async def read_all(self, execution_id: str) -> list[ExecutionEvent]:
        if execution_id not in self._events:
            return []
        async with self._locks.lock_for(execution_id):
            return list(self._events.get(execution_id, []))

    def drop(self, execution_id: str) -> None:
        self._events.pop(execution_id, None)
        self._locks.discard(execution_id)


def _append_line(path: Path, line: str) -> None:
    with open(path, "a", encoding="utf-8") as handle:
        handle.write(line + "\n")


def _read_events(path: Path) -> list[ExecutionEvent]:
    if not path.exists():
        return []
    with open(path, encoding="utf-8") as handle:
        return [ExecutionEvent.model_validate_json(line) for line in handle if line.strip()]


class JsonlHistoryStore:
    """One JSON-lines file per execution under ``base_path``.

    File access runs in worker threads.
    """

    def __init__(self, base_path: Path | str) -> None:
        self.base_path = Path(base_path)
        self.base_path.mkdir(parents=True, exist_ok=True)
        self._locks = _PerExecutionLocks()

    def _file_for(self, execution_id: str) -> Path:
        return self.base_path / f"{execution_id}.jsonl"

    async def append(self, execution_id: str, event: ExecutionEvent) -> None:
        path = self._file_for(execution_id)
        async with self._locks.lock_for(execution_id):
            await asyncio.to_thread(_append_line, path, event.model_dump_json())

    async def read_all(self, execution_id: str) -> list[ExecutionEvent]:
        path = self._file_for(execution_id)
        if not path.exists():
            return []
        async with self._locks.lock_for(execution_id):
            return await asyncio.to_thread(_read_events, path)

    def drop(self, execution_id: str) -> None:
        self._file_for(execution_id).unlink(missing_ok=True)
        self._locks.discard(execution_id)


EventListener = Callable[[ExecutionEvent], None]


class EventRecorder:
    """Numbers and appends the events of a single execution.

    Sequence numbers are assigned under a lock so concurrent branches append
    in a strict total order.
    """

    def __init__(
        self,
        store: HistoryStore,
        execution_id: str,
        *,
        clock: Callable[[], datetime],
        listener: Optional[EventListener] = None,
        start_sequence: int = 0,
    ) -> None:
        self._store = store
        self._execution_id = execution_id
        self._clock = clock
        self._listener = listener
        self._sequence = start_sequence
        self._lock = asyncio.Lock()

    async def record(self, kind: EventKind, **fields: Any) -> ExecutionEvent:
        async with self._lock:
            self._sequence += 1
            event = ExecutionEvent(
                execution_id=self._execution_id,
                sequence=self._sequence,
                timestamp=self._clock(),
                kind=kind,
                **fields,
            )
            await self._store.append(self._execution_id, event)
        logger.debug(
            "execution=%s seq=%d %s %s%s",
            self._execution_id,
            event.sequence,
            kind.value,
            f"{event.scope}/" if event.scope else "",
            event.state_id or "",
        )
        if self._listener:
            self._listener(event)
        return event


def history_store_from_settings(history_dir: Path | str | None) -> HistoryStore:
    """JSON-lines history when a directory is configured, otherwise in-memory."""

    if history_dir:
        return JsonlHistoryStore(history_dir)
    return InMemoryHistoryStore()


__all__ = [
    "EventKind",
    "EventListener",
    "EventRecorder",
    "ExecutionEvent",
    "HistoryStore",
    "InMemoryHistoryStore",
    "JsonlHistoryStore",
    "TERMINAL_EVENT_KINDS",
    "history_store_from_settings",
]
