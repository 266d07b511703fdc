from __future__ import annotations

"""Unit tests for the engine facade, stores and the activity registry."""

import asyncio
from datetime import datetime, timezone

import pytest

from stateflow.activities import ActivityContext, ActivityRegistry
from stateflow.config import EngineSettings
from stateflow.engine import WorkflowEngine
from stateflow.errors import (
    ActivityApplicationError,
    ActivityTransportError,
    DataError,
    IllegalTransitionError,
    WorkflowValidationError,
)
from stateflow.execution import Execution, ExecutionStatus
from stateflow.history import JsonlHistoryStore
from stateflow.stores import DefinitionStore, ExecutionStore


@pytest.fixture
def registry() -> ActivityRegistry:
    registry = ActivityRegistry()

    def add(payload, context: ActivityContext):
        return {"sum": payload["a"] + payload["b"]}

    async def shout(payload, context: ActivityContext):
        return payload.upper()

    def explode(payload, context: ActivityContext):
        raise ValueError("bad value")

    registry.register("math.add", add)
    registry.register("text.shout", shout)
    registry.register("oops", explode)
    return registry


def build_definition() -> dict:
    return {
        "StartAt": "Add",
        "States": {
            "Add": {"Type": "Task", "Resource": "math.add", "ResultPath": "$.result", "End": True},
        },
    }


def test_registry_invokes_sync_and_async_callables(registry: ActivityRegistry) -> None:
    context = ActivityContext(execution_id="e", state_name="S")
    assert asyncio.run(registry.invoke("math.add", {"a": 1, "b": 2}, context)) == {"sum": 3}
    assert asyncio.run(registry.invoke("text.shout", "hi", context)) == "HI"


def test_registry_wraps_errors(registry: ActivityRegistry) -> None:
    context = ActivityContext(execution_id="e", state_name="S")
    with pytest.raises(ActivityApplicationError) as excinfo:
        asyncio.run(registry.invoke("oops", {}, context))
    assert excinfo.value.error == "ValueError"
    assert excinfo.value.cause == "bad value"

    with pytest.raises(ActivityTransportError):
        asyncio.run(registry.invoke("missing", {}, context))


def test_registry_rejects_duplicates(registry: ActivityRegistry) -> None:
    with pytest.raises(ValueError):
        registry.register("math.add", lambda payload, context: payload)

    @registry.activity("text.echo")
    def echo(payload, context):
        return payload

    assert registry.has("text.echo")
    registry.unregister("text.echo")
    assert not registry.has("text.echo")


def test_task_token_is_deterministic() -> None:
    context = ActivityContext(execution_id="e1", state_name="Approve", scope="Fan[1]", attempt=2)
    assert context.task_token() == "e1:Fan[1]/Approve:2"
    assert context.task_token() == ActivityContext("e1", "Approve", "Fan[1]", 2).task_token()


def test_engine_runs_with_registry(registry: ActivityRegistry, settings, clock) -> None:
    engine = WorkflowEngine(registry, settings=settings, clock=clock)
    engine.register_definition("adder", build_definition())

    view = engine.run_sync("adder", {"a": 2, "b": 3})

    assert view.status is ExecutionStatus.SUCCEEDED
    assert view.document == {"a": 2, "b": 3, "result": {"sum": 5}}
    assert view.started_at == clock()


def test_registry_backed_engine_rejects_unknown_resources(registry: ActivityRegistry, settings) -> None:
    engine = WorkflowEngine(registry, settings=settings)
    raw = build_definition()
    raw["States"]["Add"]["Resource"] = "math.subtract"
    with pytest.raises(WorkflowValidationError):
        engine.register_definition("bad", raw)
    assert not engine.definitions.exists("bad")


def test_wrapped_exceptions_fail_the_execution(registry: ActivityRegistry, settings) -> None:
    engine = WorkflowEngine(registry, settings=settings)
    engine.register_definition(
        "oops", {"StartAt": "O", "States": {"O": {"Type": "Task", "Resource": "oops", "End": True}}}
    )
    view = engine.run_sync("oops", {})
    assert (view.status, view.error, view.cause) == (ExecutionStatus.FAILED, "ValueError", "bad value")


def test_register_duplicate_definition(engine) -> None:
    engine.register_definition("flow", build_definition())
    with pytest.raises(ValueError):
        engine.register_definition("flow", build_definition())


def test_start_requires_known_definition_and_json_input(engine) -> None:
    engine.register_definition("flow", build_definition())
    with pytest.raises(KeyError):
        asyncio.run(engine.run_execution("missing", {}))
    with pytest.raises(DataError):
        asyncio.run(engine.run_execution("flow", {"when": datetime.now(timezone.utc)}))


def test_run_sync_refuses_running_loop(engine) -> None:
    engine.register_definition("flow", build_definition())

    async def inside_loop():
        engine.run_sync("flow", {})

    with pytest.raises(RuntimeError):
        asyncio.run(inside_loop())


def test_status_and_forget(engine, invoker) -> None:
    invoker.script("math.add", {"sum": 1})
    engine.register_definition("flow", build_definition())
    view = asyncio.run(engine.run_execution("flow", {}, execution_id="exec-1"))

    assert engine.get_execution_status("exec-1") == view
    with pytest.raises(IllegalTransitionError):
        engine.cancel_execution("exec-1")

    engine.forget_execution("exec-1")
    with pytest.raises(KeyError):
        engine.get_execution_status("exec-1")
    assert asyncio.run(engine.get_history("exec-1")) == []


def test_duplicate_execution_id_is_rejected(engine, invoker) -> None:
    invoker.script("math.add", {})
    engine.register_definition("flow", build_definition())
    asyncio.run(engine.run_execution("flow", {}, execution_id="same"))
    with pytest.raises(ValueError):
        asyncio.run(engine.run_execution("flow", {}, execution_id="same"))


def test_execution_store_only_drops_finished_executions(clock) -> None:
    store = ExecutionStore()
    execution = Execution(definition_id="flow", started_at=clock())
    store.create(execution)
    with pytest.raises(ValueError):
        store.drop(execution.execution_id)

    execution.transition_to(ExecutionStatus.SUCCEEDED, at=clock())
    store.drop(execution.execution_id)
    assert store.list() == []


def test_execution_status_only_moves_forward(clock) -> None:
    execution = Execution(definition_id="flow", started_at=clock())
    with pytest.raises(IllegalTransitionError):
        execution.transition_to(ExecutionStatus.RUNNING, at=clock())
    execution.transition_to(ExecutionStatus.FAILED, at=clock(), error="E", cause="c")
    with pytest.raises(IllegalTransitionError):
        execution.transition_to(ExecutionStatus.SUCCEEDED, at=clock())
    assert execution.snapshot().error == "E"


def test_definition_store_lists_ids(engine) -> None:
    store = DefinitionStore()
    definition = engine.register_definition("b", build_definition())
    store.save("b", definition)
    store.save("a", definition)
    assert store.list() == ["a", "b"]
    with pytest.raises(KeyError):
        store.get("c")


def test_jsonl_history_from_settings(tmp_path, invoker, clock) -> None:
    settings = EngineSettings(history_dir=tmp_path)
    engine = WorkflowEngine(invoker, settings=settings, clock=clock)
    assert isinstance(engine.history, JsonlHistoryStore)

    invoker.script("math.add", {"sum": 3})
    engine.register_definition("flow", build_definition())
    view = engine.run_sync("flow", {})

    assert (tmp_path / f"{view.execution_id}.jsonl").exists()
    assert len(asyncio.run(engine.get_history(view.execution_id))) == 6

    engine.forget_execution(view.execution_id)
    assert not (tmp_path / f"{view.execution_id}.jsonl").exists()


def test_settings_read_environment(monkeypatch) -> None:
    monkeypatch.setenv("STATEFLOW_MAX_RETRY_INTERVAL_SECONDS", "12.5")
    monkeypatch.setenv("STATEFLOW_MAX_MAP_CONCURRENCY", "4")
    settings = EngineSettings()
    assert settings.max_retry_interval_seconds == 12.5
    assert settings.max_map_concurrency == 4
