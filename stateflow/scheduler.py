from __future__ import annotations

"""Execution scheduler: advances an execution one state transition at a time.

Every state is bracketed by ``Entered`` and ``Exited`` history events. The
top-level ``Exited`` event carries the document and the next state, which is
the checkpoint :meth:`Scheduler.resume` restarts from after a crash.
"""

import asyncio
import copy
import itertools
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

from stateflow.activities import ActivityContext, ActivityInvoker, CompletionBroker, Pending
from stateflow.choice import parse_timestamp, select_next
from stateflow.config import EngineSettings, get_settings
from stateflow.errors import (
    ActivityTimeout,
    BranchFailed,
    DataError,
    ExecutionCancelled,
    StateError,
    StateFailed,
    TIMEOUT,
)
from stateflow.execution import Execution, ExecutionStatus
from stateflow.history import EventKind, EventListener, EventRecorder, HistoryStore
from stateflow.paths import (
    apply_input_path,
    apply_output_path,
    apply_parameters,
    apply_result_path,
    get_value,
    validate_document,
)
from stateflow.policy import PolicyOutcome, execute_with_policy
from stateflow.states import (
    ChoiceState,
    FailState,
    MapState,
    ParallelState,
    PassState,
    StateNode,
    SucceedState,
    TaskState,
    WaitState,
    WorkflowDefinition,
)

logger = logging.getLogger("stateflow.scheduler")

Clock = Callable[[], datetime]
SleepFunc = Callable[[float], Awaitable[None]]
StepResult = tuple[Any, Optional[str]]

_EVENT_BY_STATUS: Dict[ExecutionStatus, EventKind] = {
    ExecutionStatus.SUCCEEDED: EventKind.EXECUTION_SUCCEEDED,
    ExecutionStatus.FAILED: EventKind.EXECUTION_FAILED,
    ExecutionStatus.CANCELLED: EventKind.EXECUTION_CANCELLED,
    ExecutionStatus.TIMED_OUT: EventKind.EXECUTION_TIMED_OUT,
}
_STATUS_BY_EVENT = {kind: status for status, kind in _EVENT_BY_STATUS.items()}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _child_scope(scope: str, state_name: str, index: int) -> str:
    child = f"{state_name}[{index}]"
    return f"{scope}/{child}" if scope else child


@dataclass(slots=True)
class _RunContext:
    """Everything the branches of one execution share."""

    definition: WorkflowDefinition
    execution: Execution
    recorder: EventRecorder


class Scheduler:
    """Drives executions of validated workflow definitions.

    Given the same definition, input and sequence of activity results, the
    scheduler produces the same transitions and history. Time only enters
    through the injected ``clock`` and ``sleep``.
    """

    def __init__(
        self,
        invoker: ActivityInvoker,
        history: HistoryStore,
        *,
        broker: CompletionBroker | None = None,
        settings: EngineSettings | None = None,
        sleep: SleepFunc = asyncio.sleep,
        clock: Clock = utcnow,
        event_listener: EventListener | None = None,
    ) -> None:
        self._invoker = invoker
        self._history = history
        self._broker = broker or CompletionBroker()
        self._settings = settings or get_settings()
        self._sleep = sleep
        self._clock = clock
        self._listener = event_listener
        self._handlers: Dict[type, Callable[..., Awaitable[StepResult]]] = {
            TaskState: self._run_task,
            ChoiceState: self._run_choice,
            ParallelState: self._run_parallel,
            MapState: self._run_map,
            WaitState: self._run_wait,
            PassState: self._run_pass,
            SucceedState: self._run_succeed,
            FailState: self._run_fail,
        }

    @property
    def broker(self) -> CompletionBroker:
        return self._broker

    def _recorder(self, execution_id: str, start_sequence: int = 0) -> EventRecorder:
        return EventRecorder(
            self._history,
            execution_id,
            clock=self._clock,
            listener=self._listener,
            start_sequence=start_sequence,
        )

    # Entry points -------------------------------------------------------------

    async def run(self, definition: WorkflowDefinition, execution: Execution) -> Execution:
        """Run ``execution`` from the start state until it reaches a terminal status."""

        recorder = self._recorder(execution.execution_id)
        await recorder.record(EventKind.EXECUTION_STARTED, payload=execution.input)
        logger.info(
            "Execution %s of %s started at %s",
            execution.execution_id,
            execution.definition_id,
            definition.start_at,
        )
        return await self._drive(definition, execution, recorder, definition.start_at, execution.input)

    async def resume(self, definition: WorkflowDefinition, execution: Execution) -> Execution:
        """Continue an interrupted execution from its last durable checkpoint.

        The state that was in flight when the process stopped is run again
        from its recorded input, so its activity may be invoked twice.
        """

        events = await self._history.read_all(execution.execution_id)
        if not events:
            return await self.run(definition, execution)

        last = events[-1]
        if last.kind.is_terminal:
            if not execution.is_terminal:
                if last.kind is EventKind.EXECUTION_SUCCEEDED:
                    execution.replace_document(last.payload)
                execution.transition_to(
                    _STATUS_BY_EVENT[last.kind],
                    at=last.timestamp,
                    error=last.error,
                    cause=last.cause,
                )
            return execution

        started = events[0]
        if execution.input is None:
            execution.input = started.payload
        recorder = self._recorder(execution.execution_id, start_sequence=last.sequence)
        ctx = _RunContext(definition=definition, execution=execution, recorder=recorder)

        start_state, document = definition.start_at, started.payload
        for event in reversed(events):
            if event.kind is EventKind.EXITED and not event.scope:
                execution.current_state = event.state_id
                execution.replace_document(event.payload)
                if event.next_state is None:
                    await self._finish(ctx, ExecutionStatus.SUCCEEDED, payload=event.payload)
                    return execution
                start_state, document = event.next_state, event.payload
                break

        logger.info("Resuming execution %s at %s", execution.execution_id, start_state)
        return await self._drive(definition, execution, recorder, start_state, document)

    async def _drive(
        self,
        definition: WorkflowDefinition,
        execution: Execution,
        recorder: EventRecorder,
        start_state: str,
        document: Any,
    ) -> Execution:
        ctx = _RunContext(definition=definition, execution=execution, recorder=recorder)
        timeout = definition.timeout_seconds or self._settings.execution_timeout_seconds
        run = self._run_graph(ctx, definition.root_id, start_state, document, scope="")
        try:
            if timeout is None:
                output = await run
            else:
                output = await asyncio.wait_for(run, timeout)
        except ExecutionCancelled:
            await self._finish(ctx, ExecutionStatus.CANCELLED)
        except asyncio.TimeoutError:
            await self._finish(
                ctx,
                ExecutionStatus.TIMED_OUT,
                error=TIMEOUT,
                cause=f"Execution exceeded {timeout}s.",
            )
        except StateError as exc:
            await self._finish(ctx, ExecutionStatus.FAILED, error=exc.error, cause=exc.cause)
        except Exception as exc:
            logger.exception("Execution %s crashed: %s", execution.execution_id, exc)
            await self._finish(
                ctx,
                ExecutionStatus.FAILED,
                error=type(exc).__name__,
                cause=str(exc),
            )
        else:
            execution.replace_document(output)
            await self._finish(ctx, ExecutionStatus.SUCCEEDED, payload=output)
        return execution

    async def _finish(
        self,
        ctx: _RunContext,
        status: ExecutionStatus,
        *,
        error: str | None = None,
        cause: str | None = None,
        payload: Any = None,
    ) -> None:
        execution = ctx.execution
        await ctx.recorder.record(
            _EVENT_BY_STATUS[status],
            state_id=execution.current_state,
            payload=payload,
            error=error,
            cause=cause,
        )
        execution.transition_to(status, at=self._clock(), error=error, cause=cause)
        if status is ExecutionStatus.FAILED:
            logger.warning(
                "Execution %s failed in %s: %s %s",
                execution.execution_id,
                execution.current_state,
                error,
                cause or "",
            )
        else:
            logger.info("Execution %s finished: %s", execution.execution_id, status.value)

    # Graph walking -------------------------------------------------------------

    def _checkpoint(self, ctx: _RunContext) -> None:
        if ctx.execution.cancel_requested:
            raise ExecutionCancelled(f"Execution '{ctx.execution.execution_id}' was cancelled.")

    async def _run_graph(
        self,
        ctx: _RunContext,
        graph_id: str,
        start_at: str,
        document: Any,
        scope: str,
    ) -> Any:
        graph = ctx.definition.graph(graph_id)
        state_name = start_at
        while True:
            # Pass and Choice never suspend, so cycles of them must still yield.
            await asyncio.sleep(0)
            self._checkpoint(ctx)
            state = graph.get_state(state_name)
            if not scope:
                ctx.execution.current_state = state_name
            await ctx.recorder.record(
                EventKind.ENTERED, state_id=state_name, scope=scope, payload=document
            )

            output, next_state = await self._handlers[type(state)](ctx, state, document, scope)

            await ctx.recorder.record(
                EventKind.EXITED,
                state_id=state_name,
                scope=scope,
                payload=output,
                next_state=next_state,
            )
            if not scope:
                ctx.execution.replace_document(output)
            if next_state is None:
                return output
            document, state_name = output, next_state

    def _context_object(
        self,
        ctx: _RunContext,
        state_name: str,
        entered_at: datetime,
        retry_count: int = 0,
        item: tuple[int, Any] | None = None,
    ) -> Dict[str, Any]:
        execution = ctx.execution
        context: Dict[str, Any] = {
            "Execution": {
                "Id": execution.execution_id,
                "Input": execution.input,
                "StartTime": execution.started_at.isoformat(),
            },
            "StateMachine": {"Id": execution.definition_id},
            "State": {
                "Name": state_name,
                "EnteredTime": entered_at.isoformat(),
                "RetryCount": retry_count,
            },
        }
        if item is not None:
            index, value = item
            context["Map"] = {"Item": {"Index": index, "Value": value}}
        return context

    async def _with_policy(
        self,
        ctx: _RunContext,
        state: TaskState | ParallelState | MapState,
        scope: str,
        action: Callable[[], Awaitable[Any]],
    ) -> PolicyOutcome[Any]:
        async def on_failure(error: StateError, attempt: int) -> None:
            await ctx.recorder.record(
                EventKind.TASK_FAILED,
                state_id=state.name,
                scope=scope,
                payload={"attempt": attempt},
                error=error.error,
                cause=error.cause,
            )

        async def on_retry(rule: Any, error: StateError, attempt: int, delay: float) -> None:
            await ctx.recorder.record(
                EventKind.RETRIED,
                state_id=state.name,
                scope=scope,
                payload={"attempt": attempt, "delay_seconds": delay},
                error=error.error,
                cause=error.cause,
            )

        return await execute_with_policy(
            action,
            state.retry,
            state.catch,
            sleep=self._sleep,
            max_interval_seconds=self._settings.max_retry_interval_seconds,
            on_failure=on_failure if isinstance(state, TaskState) else None,
            on_retry=on_retry,
        )

    async def _settle(
        self,
        ctx: _RunContext,
        state: TaskState | ParallelState | MapState,
        document: Any,
        scope: str,
        outcome: PolicyOutcome[Any],
    ) -> StepResult:
        if outcome.caught is None:
            return outcome.value, state.next

        caught = outcome.caught
        error_output = caught.output()
        await ctx.recorder.record(
            EventKind.CAUGHT,
            state_id=state.name,
            scope=scope,
            payload=error_output,
            next_state=caught.next,
            error=caught.error.error,
            cause=caught.error.cause,
        )
        return apply_result_path(document, error_output, caught.rule.result_path), caught.next

    # State handlers -----------------------------------------------------------

    async def _run_task(self, ctx: _RunContext, state: TaskState, document: Any, scope: str) -> StepResult:
        entered_at = self._clock()
        attempts = itertools.count(1)

        async def attempt() -> Any:
            return await self._task_attempt(ctx, state, document, scope, next(attempts), entered_at)

        outcome = await self._with_policy(ctx, state, scope, attempt)
        return await self._settle(ctx, state, document, scope, outcome)

    async def _task_attempt(
        self,
        ctx: _RunContext,
        state: TaskState,
        document: Any,
        scope: str,
        attempt: int,
        entered_at: datetime,
    ) -> Any:
        effective = apply_input_path(document, state.input_path)
        context_object = self._context_object(ctx, state.name, entered_at, retry_count=attempt - 1)
        payload = effective
        if state.parameters is not None:
            payload = apply_parameters(state.parameters, effective, context_object)

        await ctx.recorder.record(
            EventKind.TASK_SCHEDULED,
            state_id=state.name,
            scope=scope,
            payload={"resource": state.resource, "attempt": attempt, "input": payload},
        )
        activity_context = ActivityContext(
            execution_id=ctx.execution.execution_id,
            state_name=state.name,
            scope=scope,
            attempt=attempt,
        )
        result = await self._invoke(ctx, state, payload, activity_context, scope)
        await ctx.recorder.record(
            EventKind.TASK_SUCCEEDED, state_id=state.name, scope=scope, payload=result
        )

        if state.result_selector is not None:
            result = apply_parameters(state.result_selector, result, context_object)
        merged = apply_result_path(document, result, state.result_path)
        return apply_output_path(merged, state.output_path)

    async def _invoke(
        self,
        ctx: _RunContext,
        state: TaskState,
        payload: Any,
        activity_context: ActivityContext,
        scope: str,
    ) -> Any:
        timeout = state.timeout_seconds or self._settings.default_task_timeout_seconds

        async def call() -> Any:
            result = await self._invoker.invoke(state.resource, copy.deepcopy(payload), activity_context)
            if isinstance(result, Pending):
                self._broker.open(result.token)
                await ctx.recorder.record(
                    EventKind.TASK_PENDING,
                    state_id=state.name,
                    scope=scope,
                    payload={"token": result.token},
                )
                result = await self._broker.wait(result.token, state.heartbeat_seconds)
            return validate_document(result)

        if timeout is None:
            return await call()
        try:
            return await asyncio.wait_for(call(), timeout)
        except asyncio.TimeoutError as exc:
            raise ActivityTimeout(f"Task '{state.name}' did not finish within {timeout}s.") from exc

    async def _run_choice(self, ctx: _RunContext, state: ChoiceState, document: Any, scope: str) -> StepResult:
        effective = apply_input_path(document, state.input_path)
        next_state = select_next(state, effective)
        logger.debug("Choice %s selected %s", state.name, next_state)
        return apply_output_path(effective, state.output_path), next_state

    async def _run_pass(self, ctx: _RunContext, state: PassState, document: Any, scope: str) -> StepResult:
        effective = apply_input_path(document, state.input_path)
        if state.parameters is not None:
            context_object = self._context_object(ctx, state.name, self._clock())
            effective = apply_parameters(state.parameters, effective, context_object)
        result = state.result if state.has_result else effective
        merged = apply_result_path(document, result, state.result_path)
        return apply_output_path(merged, state.output_path), state.next

    async def _run_wait(self, ctx: _RunContext, state: WaitState, document: Any, scope: str) -> StepResult:
        effective = apply_input_path(document, state.input_path)
        delay = self._wait_seconds(state, effective)
        if delay > 0:
            logger.debug("Wait %s suspending for %.3fs", state.name, delay)
            await self._sleep(delay)
        return apply_output_path(effective, state.output_path), state.next

    def _wait_seconds(self, state: WaitState, document: Any) -> float:
        if state.seconds is not None:
            return float(state.seconds)
        if state.seconds_path is not None:
            value = get_value(document, state.seconds_path)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value < 0:
                raise DataError(f"SecondsPath of '{state.name}' must select a non-negative number.")
            return float(value)

        raw = state.timestamp
        if raw is None:
            raw = get_value(document, state.timestamp_path)
        target = parse_timestamp(raw)
        if target is None:
            raise DataError(f"Wait '{state.name}' got {raw!r}, which is not an ISO 8601 timestamp.")
        return max(0.0, (target - self._clock()).total_seconds())

    async def _run_succeed(self, ctx: _RunContext, state: SucceedState, document: Any, scope: str) -> StepResult:
        effective = apply_input_path(document, state.input_path)
        return apply_output_path(effective, state.output_path), None

    async def _run_fail(self, ctx: _RunContext, state: FailState, document: Any, scope: str) -> StepResult:
        raise StateFailed(state.cause or "", error=state.error)

    async def _run_parallel(self, ctx: _RunContext, state: ParallelState, document: Any, scope: str) -> StepResult:
        entered_at = self._clock()

        async def attempt() -> Any:
            effective = apply_input_path(document, state.input_path)
            if state.parameters is not None:
                context_object = self._context_object(ctx, state.name, entered_at)
                effective = apply_parameters(state.parameters, effective, context_object)
            jobs = [
                (branch_id, copy.deepcopy(effective), _child_scope(scope, state.name, index))
                for index, branch_id in enumerate(state.branches)
            ]
            results = await self._fan_out(ctx, jobs, limit=0)
            return self._fan_in(ctx, state, document, results, entered_at)

        outcome = await self._with_policy(ctx, state, scope, attempt)
        return await self._settle(ctx, state, document, scope, outcome)

    async def _run_map(self, ctx: _RunContext, state: MapState, document: Any, scope: str) -> StepResult:
        entered_at = self._clock()

        async def attempt() -> Any:
            effective = apply_input_path(document, state.input_path)
            items = get_value(effective, state.items_path)
            if not isinstance(items, list):
                raise DataError(f"ItemsPath of '{state.name}' must select an array.")

            jobs = []
            for index, item in enumerate(items):
                item_input = item
                if state.item_selector is not None:
                    context_object = self._context_object(ctx, state.name, entered_at, item=(index, item))
                    item_input = apply_parameters(state.item_selector, effective, context_object)
                jobs.append(
                    (state.iterator, copy.deepcopy(item_input), _child_scope(scope, state.name, index))
                )
            results = await self._fan_out(ctx, jobs, limit=self._map_limit(state))
            return self._fan_in(ctx, state, document, results, entered_at)

        outcome = await self._with_policy(ctx, state, scope, attempt)
        return await self._settle(ctx, state, document, scope, outcome)

    def _map_limit(self, state: MapState) -> int:
        limits = [limit for limit in (state.max_concurrency, self._settings.max_map_concurrency) if limit > 0]
        return min(limits) if limits else 0

    def _fan_in(
        self,
        ctx: _RunContext,
        state: ParallelState | MapState,
        document: Any,
        results: list[Any],
        entered_at: datetime,
    ) -> Any:
        result: Any = results
        if state.result_selector is not None:
            context_object = self._context_object(ctx, state.name, entered_at)
            result = apply_parameters(state.result_selector, results, context_object)
        merged = apply_result_path(document, result, state.result_path)
        return apply_output_path(merged, state.output_path)

    async def _fan_out(
        self,
        ctx: _RunContext,
        jobs: Sequence[tuple[str, Any, str]],
        limit: int,
    ) -> list[Any]:
        """Run sub-graphs concurrently and return their outputs in job order.

        The first failure cancels the remaining jobs. When several jobs failed,
        the lowest index is reported.
        """

        if not jobs:
            return []
        semaphore = asyncio.Semaphore(limit) if limit > 0 else None

        async def run_job(graph_id: str, job_input: Any, job_scope: str) -> Any:
            start_at = ctx.definition.graph(graph_id).start_at
            if semaphore is None:
                return await self._run_graph(ctx, graph_id, start_at, job_input, job_scope)
            async with semaphore:
                return await self._run_graph(ctx, graph_id, start_at, job_input, job_scope)

        tasks = [asyncio.create_task(run_job(*job)) for job in jobs]
        try:
            await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
        finally:
            for task in tasks:
                if not task.done():
                    task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)

        for index, task in enumerate(tasks):
            if task.cancelled():
                continue
            error = task.exception()
            if error is None:
                continue
            if isinstance(error, StateError):
                raise BranchFailed(index, error) from error
            raise error
        return [task.result() for task in tasks]


__all__ = ["Scheduler", "utcnow"]
