from __future__ import annotations

"""Start/Status/Cancel facade tying definitions, executions and the scheduler together."""

import asyncio
import logging
from typing import Any, Dict, Optional

from stateflow.activities import ActivityInvoker, ActivityRegistry, CompletionBroker
from stateflow.config import EngineSettings, get_settings
from stateflow.definition import load_definition
from stateflow.execution import Execution, ExecutionStatusView
from stateflow.history import (
    EventListener,
    ExecutionEvent,
    HistoryStore,
    history_store_from_settings,
)
from stateflow.paths import validate_document
from stateflow.scheduler import Clock, Scheduler, SleepFunc, utcnow
from stateflow.states import WorkflowDefinition
from stateflow.stores import DefinitionStore, ExecutionStore

logger = logging.getLogger("stateflow.engine")


class WorkflowEngine:
    """Registers definitions and runs executions of them.

    ``start_execution`` returns as soon as the execution is scheduled on the
    running loop; ``run_execution`` awaits its terminal status. When the
    invoker is an :class:`ActivityRegistry`, Task resources are checked
    against it at registration time.
    """

    def __init__(
        self,
        invoker: ActivityInvoker | None = None,
        *,
        history: HistoryStore | None = None,
        settings: EngineSettings | None = None,
        broker: CompletionBroker | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Clock = utcnow,
        event_listener: EventListener | None = None,
        definitions: DefinitionStore | None = None,
        executions: ExecutionStore | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.invoker = invoker if invoker is not None else ActivityRegistry()
        self.history = history if history is not None else history_store_from_settings(self.settings.history_dir)
        self.definitions = definitions or DefinitionStore()
        self.executions = executions or ExecutionStore()
        self.scheduler = Scheduler(
            self.invoker,
            self.history,
            broker=broker,
            settings=self.settings,
            sleep=sleep,
            clock=clock,
            event_listener=event_listener,
        )
        self._clock = clock
        self._tasks: Dict[str, asyncio.Task[Execution]] = {}

    @property
    def broker(self) -> CompletionBroker:
        return self.scheduler.broker

    # Definitions ---------------------------------------------------------------

    def register_definition(self, definition_id: str, raw: Any) -> WorkflowDefinition:
        """Validate ``raw`` and store it; raises ``WorkflowValidationError`` on any violation."""

        if self.definitions.exists(definition_id):
            raise ValueError(f"Definition '{definition_id}' already exists.")
        registry = self.invoker if isinstance(self.invoker, ActivityRegistry) else None
        definition = load_definition(raw, registry=registry)
        self.definitions.save(definition_id, definition)
        logger.info("Registered definition %s (start at %s)", definition_id, definition.start_at)
        return definition

    # Executions ----------------------------------------------------------------

    def _new_execution(
        self,
        definition_id: str,
        input: Any,
        execution_id: Optional[str],
    ) -> tuple[WorkflowDefinition, Execution]:
        definition = self.definitions.get(definition_id)
        document = validate_document({} if input is None else input)
        fields: Dict[str, Any] = {"execution_id": execution_id} if execution_id else {}
        execution = Execution(
            definition_id=definition_id,
            input=document,
            document=document,
            started_at=self._clock(),
            **fields,
        )
        self.executions.create(execution)
        return definition, execution

    async def start_execution(
        self,
        definition_id: str,
        input: Any = None,
        execution_id: Optional[str] = None,
    ) -> str:
        """Schedule a new execution in the background and return its id."""

        definition, execution = self._new_execution(definition_id, input, execution_id)
        task = asyncio.create_task(self.scheduler.run(definition, execution))
        self._tasks[execution.execution_id] = task
        task.add_done_callback(lambda _task, key=execution.execution_id: self._tasks.pop(key, None))
        return execution.execution_id

    async def run_execution(
        self,
        definition_id: str,
        input: Any = None,
        execution_id: Optional[str] = None,
    ) -> ExecutionStatusView:
        """Run a new execution to completion and return its final status."""

        definition, execution = self._new_execution(definition_id, input, execution_id)
        await self.scheduler.run(definition, execution)
        return execution.snapshot()

    def run_sync(self, definition_id: str, input: Any = None) -> ExecutionStatusView:
        """Blocking variant of :meth:`run_execution` for scripts and CLIs."""

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            return asyncio.run(self.run_execution(definition_id, input))
        raise RuntimeError("run_sync() cannot be used inside a running event loop; await run_execution().")

    async def wait(self, execution_id: str, timeout: Optional[float] = None) -> ExecutionStatusView:
        """Wait for a background execution to finish."""

        execution = self.executions.get(execution_id)
        task = self._tasks.get(execution_id)
        if task is not None:
            await asyncio.wait_for(asyncio.shield(task), timeout)
        return execution.snapshot()

    def get_execution_status(self, execution_id: str) -> ExecutionStatusView:
        return self.executions.get(execution_id).snapshot()

    def cancel_execution(self, execution_id: str) -> ExecutionStatusView:
        """Request cancellation; raises ``IllegalTransitionError`` once finished."""

        execution = self.executions.get(execution_id)
        execution.request_cancel()
        logger.info("Cancellation requested for execution %s", execution_id)
        return execution.snapshot()

    async def get_history(self, execution_id: str) -> list[ExecutionEvent]:
        return await self.history.read_all(execution_id)

    async def resume_execution(self, definition_id: str, execution_id: str) -> ExecutionStatusView:
        """Rebuild an execution from its history and drive it to completion."""

        definition = self.definitions.get(definition_id)
        events = await self.history.read_all(execution_id)
        if not events:
            raise KeyError(f"No history recorded for execution '{execution_id}'.")
        started = events[0]
        execution = Execution(
            execution_id=execution_id,
            definition_id=definition_id,
            input=started.payload,
            document=started.payload,
            started_at=started.timestamp,
        )
        self.executions.create(execution)
        await self.scheduler.resume(definition, execution)
        return execution.snapshot()

    def forget_execution(self, execution_id: str) -> None:
        """Drop a finished execution together with its history."""

        self.executions.drop(execution_id)
        self.history.drop(execution_id)

    # Asynchronous activity completion ----------------------------------------

    def complete_activity(self, token: str, output: Any) -> None:
        self.broker.complete(token, validate_document(output))

    def fail_activity(self, token: str, error: str, cause: str = "") -> None:
        self.broker.fail(token, error, cause)

    def heartbeat_activity(self, token: str) -> None:
        self.broker.heartbeat(token)


__all__ = ["WorkflowEngine"]
