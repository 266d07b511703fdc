from __future__ import annotations

"""Typed state nodes and the workflow definition graph."""

from dataclasses import dataclass, field
from typing import Any, Mapping, Optional, Union

from stateflow.errors import matches_error

ROOT_GRAPH_ID = "root"


@dataclass(frozen=True, slots=True)
class RetryRule:
    """Retry policy attached to a Task, Parallel or Map state."""

    error_equals: tuple[str, ...]
    interval_seconds: float = 1.0
    max_attempts: int = 3
    backoff_rate: float = 2.0
    max_delay_seconds: Optional[float] = None

    def matches(self, error: str) -> bool:
        return matches_error(self.error_equals, error)


@dataclass(frozen=True, slots=True)
class CatchRule:
    """Fallback transition taken once an error can no longer be retried."""

    error_equals: tuple[str, ...]
    next: str
    result_path: Optional[str] = "$"

    def matches(self, error: str) -> bool:
        return matches_error(self.error_equals, error)


@dataclass(frozen=True, slots=True)
class Comparison:
    """Leaf Choice predicate such as ``NumericEquals`` or ``IsPresent``."""

    variable: str
    operator: str
    operand: Any
    operand_is_path: bool = False


@dataclass(frozen=True, slots=True)
class AndRule:
    rules: tuple["ChoiceRule", ...]


@dataclass(frozen=True, slots=True)
class OrRule:
    rules: tuple["ChoiceRule", ...]


@dataclass(frozen=True, slots=True)
class NotRule:
    rule: "ChoiceRule"


ChoiceRule = Union[Comparison, AndRule, OrRule, NotRule]


@dataclass(frozen=True, slots=True)
class ChoiceBranch:
    """Top-level Choice rule paired with the state it selects."""

    rule: ChoiceRule
    next: str


@dataclass(frozen=True, slots=True, kw_only=True)
class BaseState:
    """Attributes shared by every state type."""

    name: str
    comment: Optional[str] = None
    input_path: Optional[str] = "$"
    output_path: Optional[str] = "$"

    @property
    def type_name(self) -> str:
        return type(self).__name__.removesuffix("State")

    @property
    def is_terminal(self) -> bool:
        return False


@dataclass(frozen=True, slots=True, kw_only=True)
class TaskState(BaseState):
    resource: str
    next: Optional[str] = None
    parameters: Any = None
    result_selector: Any = None
    result_path: Optional[str] = "$"
    timeout_seconds: Optional[float] = None
    heartbeat_seconds: Optional[float] = None
    retry: tuple[RetryRule, ...] = ()
    catch: tuple[CatchRule, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class ChoiceState(BaseState):
    choices: tuple[ChoiceBranch, ...] = ()
    default: Optional[str] = None


@dataclass(frozen=True, slots=True, kw_only=True)
class ParallelState(BaseState):
    branches: tuple[str, ...]
    """Ids of the branch graphs in :attr:`WorkflowDefinition.graphs`."""

    next: Optional[str] = None
    parameters: Any = None
    result_selector: Any = None
    result_path: Optional[str] = "$"
    retry: tuple[RetryRule, ...] = ()
    catch: tuple[CatchRule, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class MapState(BaseState):
    iterator: str
    """Id of the per-item graph in :attr:`WorkflowDefinition.graphs`."""

    next: Optional[str] = None
    items_path: str = "$"
    item_selector: Any = None
    max_concurrency: int = 0
    result_selector: Any = None
    result_path: Optional[str] = "$"
    retry: tuple[RetryRule, ...] = ()
    catch: tuple[CatchRule, ...] = ()


@dataclass(frozen=True, slots=True, kw_only=True)
class WaitState(BaseState):
    next: Optional[str] = None
    seconds: Optional[float] = None
    seconds_path: Optional[str] = None
    timestamp: Optional[str] = None
    timestamp_path: Optional[str] = None


@dataclass(frozen=True, slots=True, kw_only=True)
class PassState(BaseState):
    next: Optional[str] = None
    parameters: Any = None
    result: Any = None
    has_result: bool = False
    result_path: Optional[str] = "$"


@dataclass(frozen=True, slots=True, kw_only=True)
class SucceedState(BaseState):
    @property
    def is_terminal(self) -> bool:
        return True


@dataclass(frozen=True, slots=True, kw_only=True)
class FailState(BaseState):
    error: Optional[str] = None
    cause: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return True


StateNode = Union[
    TaskState,
    ChoiceState,
    ParallelState,
    MapState,
    WaitState,
    PassState,
    SucceedState,
    FailState,
]


def transition_targets(state: StateNode) -> list[str]:
    """Every state name ``state`` may hand control to."""

    targets: list[str] = []
    next_state = getattr(state, "next", None)
    if next_state is not None:
        targets.append(next_state)
    if isinstance(state, ChoiceState):
        targets.extend(branch.next for branch in state.choices)
        if state.default is not None:
            targets.append(state.default)
    for rule in getattr(state, "catch", ()):
        targets.append(rule.next)
    return targets


@dataclass(frozen=True, slots=True)
class StateGraph:
    """One ``StartAt``/``States`` block: the top level, a branch or an iterator."""

    start_at: str
    states: Mapping[str, StateNode]

    def get_state(self, name: str) -> StateNode:
        try:
            return self.states[name]
        except KeyError as exc:
            raise KeyError(f"State '{name}' is not defined.") from exc


@dataclass(frozen=True)
class WorkflowDefinition:
    """Validated, immutable workflow shared by every execution that uses it.

    Branch and iterator graphs live in the same ``graphs`` arena as the top
    level graph; Parallel and Map states refer to them by id.
    """

    graphs: Mapping[str, StateGraph]
    root_id: str = ROOT_GRAPH_ID
    timeout_seconds: Optional[float] = None
    comment: Optional[str] = None
    raw: Mapping[str, Any] = field(default_factory=dict, compare=False, repr=False)

    @property
    def root(self) -> StateGraph:
        return self.graphs[self.root_id]

    @property
    def start_at(self) -> str:
        return self.root.start_at

    def graph(self, graph_id: str) -> StateGraph:
        try:
            return self.graphs[graph_id]
        except KeyError as exc:
            raise KeyError(f"Graph '{graph_id}' is not part of this definition.") from exc

    def state(self, graph_id: str, name: str) -> StateNode:
        return self.graph(graph_id).get_state(name)


__all__ = [
    "AndRule",
    "BaseState",
    "CatchRule",
    "ChoiceBranch",
    "ChoiceRule",
    "ChoiceState",
    "Comparison",
    "FailState",
    "MapState",
    "NotRule",
    "OrRule",
    "ParallelState",
    "PassState",
    "ROOT_GRAPH_ID",
    "RetryRule",
    "StateGraph",
    "StateNode",
    "SucceedState",
    "TaskState",
    "WaitState",
    "WorkflowDefinition",
    "transition_targets",
]
