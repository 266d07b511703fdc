"""stateflow: a declarative workflow state machine engine."""

from stateflow.activities import ActivityContext, ActivityInvoker, ActivityRegistry, CompletionBroker, Pending
from stateflow.config import EngineSettings, get_settings
from stateflow.definition import load_definition, load_definition_file
from stateflow.engine import WorkflowEngine
from stateflow.errors import StateError, StateflowError, WorkflowValidationError
from stateflow.execution import Execution, ExecutionStatus, ExecutionStatusView
from stateflow.history import EventKind, ExecutionEvent, InMemoryHistoryStore, JsonlHistoryStore

__all__ = [
    "ActivityContext",
    "ActivityInvoker",
    "ActivityRegistry",
    "CompletionBroker",
    "EngineSettings",
    "EventKind",
    "Execution",
    "ExecutionEvent",
    "ExecutionStatus",
    "ExecutionStatusView",
    "InMemoryHistoryStore",
    "JsonlHistoryStore",
    "Pending",
    "StateError",
    "StateflowError",
    "WorkflowEngine",
    "WorkflowValidationError",
    "get_settings",
    "load_definition",
    "load_definition_file",
]
