from __future__ import annotations

"""Shared fixtures: scripted activities, a recording sleep and a fixed clock."""

import asyncio
import inspect
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict

import pytest

from stateflow.activities import ActivityContext
from stateflow.config import EngineSettings
from stateflow.engine import WorkflowEngine
from stateflow.errors import ActivityTransportError
from stateflow.history import InMemoryHistoryStore

START = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class ScriptedInvoker:
    """Invoker whose results are scripted per resource.

    Each call consumes the next outcome; the last one repeats. Exceptions in
    the script are raised instead of returned.
    """

    def __init__(self) -> None:
        self.scripts: Dict[str, list[Any]] = {}
        self.handlers: Dict[str, Callable[[Any, ActivityContext], Any]] = {}
        self.calls: list[tuple[str, Any, ActivityContext]] = []

    def script(self, resource: str, *outcomes: Any) -> None:
        self.scripts[resource] = list(outcomes)

    def handle(self, resource: str, func: Callable[[Any, ActivityContext], Any]) -> None:
        self.handlers[resource] = func

    def calls_for(self, resource: str) -> list[Any]:
        return [payload for name, payload, _ in self.calls if name == resource]

    async def invoke(self, resource: str, payload: Any, context: ActivityContext) -> Any:
        self.calls.append((resource, payload, context))
        if resource in self.handlers:
            result = self.handlers[resource](payload, context)
            if inspect.isawaitable(result):
                result = await result
        else:
            outcomes = self.scripts.get(resource)
            if not outcomes:
                raise ActivityTransportError(f"No script for '{resource}'.")
            result = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(result, BaseException):
            raise result
        return result


class RecordingSleep:
    """Stand-in for ``asyncio.sleep`` that returns at once and remembers delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        await asyncio.sleep(0)

    @property
    def total(self) -> float:
        return sum(self.delays)


class FixedClock:
    def __init__(self, now: datetime = START) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def invoker() -> ScriptedInvoker:
    return ScriptedInvoker()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(
        max_retry_interval_seconds=300.0,
        default_task_timeout_seconds=None,
        execution_timeout_seconds=None,
        max_map_concurrency=0,
        history_dir=None,
    )


@pytest.fixture
def history() -> InMemoryHistoryStore:
    return InMemoryHistoryStore()


@pytest.fixture
def engine(invoker, history, settings, sleep, clock) -> WorkflowEngine:
    return WorkflowEngine(invoker, history=history, settings=settings, sleep=sleep, clock=clock)


@pytest.fixture
def make_engine(settings, sleep, clock) -> Callable[..., WorkflowEngine]:
    """Build engines with their own invoker, optionally sharing a history store."""

    def factory(history=None, invoker=None) -> WorkflowEngine:
        return WorkflowEngine(
            invoker or ScriptedInvoker(),
            history=history or InMemoryHistoryStore(),
            settings=settings,
            sleep=sleep,
            clock=clock,
        )

    return factory
