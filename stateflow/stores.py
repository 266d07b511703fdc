from __future__ import annotations

"""In-memory stores for registered definitions and live executions."""

from typing import Dict

from stateflow.execution import Execution
from stateflow.states import WorkflowDefinition


class DefinitionStore:
    """In-memory store for validated workflow definitions."""

    def __init__(self) -> None:
        self._definitions: Dict[str, WorkflowDefinition] = {}

    def save(self, definition_id: str, definition: WorkflowDefinition) -> None:
        """Persist a definition under ``definition_id``."""

        self._definitions[definition_id] = definition

    def get(self, definition_id: str) -> WorkflowDefinition:
        try:
            return self._definitions[definition_id]
        except KeyError as exc:
            raise KeyError(f"Definition '{definition_id}' not found.") from exc

    def exists(self, definition_id: str) -> bool:
        return definition_id in self._definitions

    def list(self) -> list[str]:
        return sorted(self._definitions)


class ExecutionStore:
    """Live executions keyed by id.

    An execution may only be dropped after it reached a terminal status; its
    history lives on in the history store.
    """

    def __init__(self) -> None:
        self._executions: Dict[str, Execution] = {}

    def create(self, execution: Execution) -> None:
        if execution.execution_id in self._executions:
            raise ValueError(f"Execution '{execution.execution_id}' already exists.")
        self._executions[execution.execution_id] = execution

    def get(self, execution_id: str) -> Execution:
        try:
            return self._executions[execution_id]
        except KeyError as exc:
            raise KeyError(f"Execution '{execution_id}' not found.") from exc

    def exists(self, execution_id: str) -> bool:
        return execution_id in self._executions

    def list(self) -> list[Execution]:
        return list(self._executions.values())

    def drop(self, execution_id: str) -> None:
        execution = self.get(execution_id)
        if not execution.is_terminal:
            raise ValueError(f"Execution '{execution_id}' is still {execution.status.value}.")
        del self._executions[execution_id]


__all__ = ["DefinitionStore", "ExecutionStore"]
