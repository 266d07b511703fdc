from __future__ import annotations

"""Activity invocation contract, callable registry and async completion broker."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Union

from stateflow.errors import (
    ActivityApplicationError,
    ActivityError,
    ActivityTimeout,
    ActivityTransportError,
)

logger = logging.getLogger("stateflow.activities")


@dataclass(frozen=True, slots=True)
class Pending:
    """Returned by an activity that will report its result later via a token."""

    token: str


@dataclass(frozen=True, slots=True)
class ActivityContext:
    """Where an invocation comes from."""

    execution_id: str
    state_name: str
    scope: str = ""
    attempt: int = 1

    def task_token(self) -> str:
        """A token unique to this invocation attempt and stable across replays."""

        location = f"{self.scope}/{self.state_name}" if self.scope else self.state_name
        return f"{self.execution_id}:{location}:{self.attempt}"


ActivityResult = Union[Any, Pending]
ActivityCallable = Callable[[Any, ActivityContext], Union[ActivityResult, Awaitable[ActivityResult]]]


class ActivityInvoker(Protocol):
    """The seam the scheduler calls to run a Task's side effect.

    Implementations return the output document or :class:`Pending`, and raise
    :class:`~stateflow.errors.ActivityError` subclasses on failure.
    """

    async def invoke(self, resource: str, payload: Any, context: ActivityContext) -> ActivityResult:
        ...


class ActivityRegistry:
    """Invoker backed by in-process callables registered by resource name."""

    def __init__(self) -> None:
        self._activities: Dict[str, ActivityCallable] = {}

    def register(self, name: str, func: ActivityCallable) -> None:
        """Register a callable under the provided resource name."""

        if name in self._activities:
            raise ValueError(f"Activity '{name}' is already registered.")
        self._activities[name] = func

    def activity(self, name: str) -> Callable[[ActivityCallable], ActivityCallable]:
        """Decorator form of :meth:`register`."""

        def decorator(func: ActivityCallable) -> ActivityCallable:
            self.register(name, func)
            return func

        return decorator

    def get(self, name: str) -> ActivityCallable:
        try:
            return self._activities[name]
        except KeyError as exc:
            raise KeyError(f"Activity '{name}' is not registered.") from exc

    def has(self, name: str) -> bool:
        return name in self._activities

    def unregister(self, name: str) -> None:
        self._activities.pop(name, None)

    async def invoke(self, resource: str, payload: Any, context: ActivityContext) -> ActivityResult:
        """Run the callable; synchronous callables run in a worker thread.

        Exceptions other than ``ActivityError`` become application errors named
        after the exception class.
        """

        func = self._activities.get(resource)
        if func is None:
            raise ActivityTransportError(f"No activity is registered for resource '{resource}'.")

        try:
            if asyncio.iscoroutinefunction(func):
                return await func(payload, context)
            return await asyncio.to_thread(func, payload, context)
        except ActivityError:
            raise
        except Exception as exc:
            logger.debug("Activity %s raised %s", resource, type(exc).__name__, exc_info=True)
            raise ActivityApplicationError(type(exc).__name__, str(exc)) from exc


class CompletionBroker:
    """Suspend/resume point for activities that answered with :class:`Pending`.

    Completion, failure and heartbeats arrive from outside the scheduler (an
    HTTP callback, a queue consumer) and are matched to waiters by token.
    Tokens must be opened before they can be completed; the scheduler opens
    them as soon as ``Pending`` is returned, and an activity that publishes its
    token before returning should call :meth:`open` first.
    """

    def __init__(self) -> None:
        self._results: Dict[str, asyncio.Future[Any]] = {}
        self._heartbeats: Dict[str, asyncio.Event] = {}

    def open(self, token: str) -> None:
        if token not in self._results:
            self._results[token] = asyncio.get_running_loop().create_future()
            self._heartbeats[token] = asyncio.Event()

    def is_open(self, token: str) -> bool:
        return token in self._results

    def _future(self, token: str) -> asyncio.Future[Any]:
        try:
            return self._results[token]
        except KeyError as exc:
            raise KeyError(f"Task token '{token}' is not awaiting a result.") from exc

    def complete(self, token: str, output: Any) -> None:
        future = self._future(token)
        if not future.done():
            future.set_result(output)

    def fail(self, token: str, error: str, cause: str = "") -> None:
        future = self._future(token)
        if not future.done():
            future.set_exception(ActivityApplicationError(error, cause))

    def heartbeat(self, token: str) -> None:
        self._future(token)
        self._heartbeats[token].set()

    async def wait(self, token: str, heartbeat_seconds: Optional[float] = None) -> Any:
        """Block until the token is completed or failed.

        With ``heartbeat_seconds`` set, a silent gap longer than that raises
        :class:`~stateflow.errors.ActivityTimeout`.
        """

        self.open(token)
        future = self._results[token]
        beat = self._heartbeats[token]
        try:
            if heartbeat_seconds is None:
                return await future
            while True:
                beat.clear()
                beat_waiter = asyncio.ensure_future(beat.wait())
                try:
                    done, _ = await asyncio.wait(
                        {future, beat_waiter},
                        timeout=heartbeat_seconds,
                        return_when=asyncio.FIRST_COMPLETED,
                    )
                finally:
                    beat_waiter.cancel()
                if future in done:
                    return future.result()
                if not done:
                    raise ActivityTimeout(
                        f"No heartbeat for task token '{token}' within {heartbeat_seconds}s."
                    )
        finally:
            self._results.pop(token, None)
            self._heartbeats.pop(token, None)


__all__ = [
    "ActivityCallable",
    "ActivityContext",
    "ActivityInvoker",
    "ActivityRegistry",
    "ActivityResult",
    "CompletionBroker",
    "Pending",
]
