from __future__ import annotations

"""Tests for history stores and the event recorder."""

import asyncio

from stateflow.history import (
    EventKind,
    EventRecorder,
    InMemoryHistoryStore,
    JsonlHistoryStore,
    history_store_from_settings,
)


def test_recorder_numbers_events_in_order(clock) -> None:
    store = InMemoryHistoryStore()
    seen = []
    recorder = EventRecorder(store, "exec-1", clock=clock, listener=seen.append)

    async def scenario():
        await recorder.record(EventKind.EXECUTION_STARTED, payload={"a": 1})
        await asyncio.gather(
            *(recorder.record(EventKind.ENTERED, state_id=f"S{i}", scope=f"Fan[{i}]") for i in range(5))
        )
        return await store.read_all("exec-1")

    events = asyncio.run(scenario())
    assert [event.sequence for event in events] == list(range(1, 7))
    assert [event.sequence for event in seen] == list(range(1, 7))
    assert events[0].payload == {"a": 1}


def test_jsonl_store_round_trips_events(tmp_path, clock) -> None:
    store = JsonlHistoryStore(tmp_path / "history")
    recorder = EventRecorder(store, "exec-2", clock=clock)

    async def scenario():
        await recorder.record(EventKind.EXECUTION_STARTED, payload={"n": [1, 2]})
        await recorder.record(EventKind.EXITED, state_id="A", payload={"n": 3}, next_state="B")
        return await store.read_all("exec-2")

    events = asyncio.run(scenario())
    assert [event.kind for event in events] == [EventKind.EXECUTION_STARTED, EventKind.EXITED]
    assert events[1].next_state == "B"
    assert events[1].timestamp == clock()
    assert (tmp_path / "history" / "exec-2.jsonl").exists()
    assert asyncio.run(store.read_all("unknown")) == []


def test_fingerprint_ignores_timestamps(clock) -> None:
    first = InMemoryHistoryStore()
    second = InMemoryHistoryStore()

    async def record(store):
        recorder = EventRecorder(store, "exec", clock=clock)
        await recorder.record(EventKind.ENTERED, state_id="A", payload={"x": 1})
        return await store.read_all("exec")

    one = asyncio.run(record(first))
    clock.advance(60)
    two = asyncio.run(record(second))
    assert one[0].timestamp != two[0].timestamp
    assert one[0].fingerprint() == two[0].fingerprint()


def test_terminal_kinds() -> None:
    assert EventKind.EXECUTION_FAILED.is_terminal
    assert not EventKind.EXITED.is_terminal


def test_history_store_from_settings(tmp_path) -> None:
    assert isinstance(history_store_from_settings(None), InMemoryHistoryStore)
    assert isinstance(history_store_from_settings(tmp_path), JsonlHistoryStore)


def test_reading_unknown_executions_keeps_no_state(tmp_path) -> None:
    memory = InMemoryHistoryStore()
    jsonl = JsonlHistoryStore(tmp_path)

    async def scenario():
        for index in range(100):
            assert await memory.read_all(f"unknown-{index}") == []
            assert await jsonl.read_all(f"unknown-{index}") == []

    asyncio.run(scenario())
    assert len(memory._locks) == 0
    assert len(jsonl._locks) == 0
    assert list(tmp_path.iterdir()) == []


def test_jsonl_drop_removes_file_and_lock(tmp_path, clock) -> None:
    store = JsonlHistoryStore(tmp_path)
    recorder = EventRecorder(store, "exec-3", clock=clock)

    asyncio.run(recorder.record(EventKind.EXECUTION_STARTED, payload={}))
    assert len(store._locks) == 1

    store.drop("exec-3")
    assert not (tmp_path / "exec-3.jsonl").exists()
    assert len(store._locks) == 0
    assert asyncio.run(store.read_all("exec-3")) == []
