from __future__ import annotations

"""Workflow definition loading and validation.

Definitions use the Amazon States Language field names (``StartAt``,
``States``, ``Type``, ``Next``, ``Retry``, ``Catch`` ...). Loading never stops
at the first problem: every violation found is collected and raised together
as a single :class:`~stateflow.errors.WorkflowValidationError`.
"""

import json
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, Mapping, Optional, Type

import yaml
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from stateflow.choice import (
    COMPARISON_OPERATORS,
    NUMERIC_OPERATORS,
    PATH_OPERATORS,
    STRING_OPERATORS,
    TIMESTAMP_OPERATORS,
    TYPE_TESTS,
    parse_timestamp,
)
from stateflow.errors import PathSyntaxError, WorkflowValidationError
from stateflow.paths import check_reference, parse_path
from stateflow.states import (
    ROOT_GRAPH_ID,
    AndRule,
    CatchRule,
    ChoiceBranch,
    ChoiceRule,
    ChoiceState,
    Comparison,
    FailState,
    MapState,
    NotRule,
    OrRule,
    ParallelState,
    PassState,
    RetryRule,
    StateGraph,
    StateNode,
    SucceedState,
    TaskState,
    WaitState,
    WorkflowDefinition,
    transition_targets,
)

if TYPE_CHECKING:
    from stateflow.activities import ActivityRegistry


class _ConfigModel(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)


class RetryConfig(_ConfigModel):
    """Declarative ``Retry`` entry."""

    error_equals: list[str] = Field(alias="ErrorEquals")
    interval_seconds: float = Field(default=1.0, alias="IntervalSeconds", ge=0)
    max_attempts: int = Field(default=3, alias="MaxAttempts", ge=0)
    backoff_rate: float = Field(default=2.0, alias="BackoffRate", ge=1.0)
    max_delay_seconds: Optional[float] = Field(default=None, alias="MaxDelaySeconds", gt=0)
    comment: Optional[str] = Field(default=None, alias="Comment")


class CatchConfig(_ConfigModel):
    """Declarative ``Catch`` entry."""

    error_equals: list[str] = Field(alias="ErrorEquals")
    next: str = Field(alias="Next")
    result_path: Optional[str] = Field(default="$", alias="ResultPath")
    comment: Optional[str] = Field(default=None, alias="Comment")


class StateConfig(_ConfigModel):
    """Fields every state accepts."""

    type: str = Field(alias="Type")
    comment: Optional[str] = Field(default=None, alias="Comment")
    input_path: Optional[str] = Field(default="$", alias="InputPath")
    output_path: Optional[str] = Field(default="$", alias="OutputPath")


class FlowStateConfig(StateConfig):
    """States that continue with ``Next`` or stop with ``End``."""

    next: Optional[str] = Field(default=None, alias="Next")
    end: bool = Field(default=False, alias="End")


class TaskConfig(FlowStateConfig):
    resource: str = Field(alias="Resource")
    parameters: Any = Field(default=None, alias="Parameters")
    result_selector: Any = Field(default=None, alias="ResultSelector")
    result_path: Optional[str] = Field(default="$", alias="ResultPath")
    timeout_seconds: Optional[float] = Field(default=None, alias="TimeoutSeconds", gt=0)
    heartbeat_seconds: Optional[float] = Field(default=None, alias="HeartbeatSeconds", gt=0)
    retry: list[RetryConfig] = Field(default_factory=list, alias="Retry")
    catch: list[CatchConfig] = Field(default_factory=list, alias="Catch")


class PassConfig(FlowStateConfig):
    parameters: Any = Field(default=None, alias="Parameters")
    result: Any = Field(default=None, alias="Result")
    result_path: Optional[str] = Field(default="$", alias="ResultPath")


class WaitConfig(FlowStateConfig):
    seconds: Optional[float] = Field(default=None, alias="Seconds", ge=0)
    seconds_path: Optional[str] = Field(default=None, alias="SecondsPath")
    timestamp: Optional[str] = Field(default=None, alias="Timestamp")
    timestamp_path: Optional[str] = Field(default=None, alias="TimestampPath")


class ChoiceConfig(StateConfig):
    choices: list[Any] = Field(default_factory=list, alias="Choices")
    default: Optional[str] = Field(default=None, alias="Default")


class ParallelConfig(FlowStateConfig):
    branches: list[Any] = Field(alias="Branches")
    parameters: Any = Field(default=None, alias="Parameters")
    result_selector: Any = Field(default=None, alias="ResultSelector")
    result_path: Optional[str] = Field(default="$", alias="ResultPath")
    retry: list[RetryConfig] = Field(default_factory=list, alias="Retry")
    catch: list[CatchConfig] = Field(default_factory=list, alias="Catch")


class MapConfig(FlowStateConfig):
    iterator: Any = Field(default=None, alias="Iterator")
    item_processor: Any = Field(default=None, alias="ItemProcessor")
    items_path: str = Field(default="$", alias="ItemsPath")
    item_selector: Any = Field(default=None, alias="ItemSelector")
    parameters: Any = Field(default=None, alias="Parameters")
    max_concurrency: int = Field(default=0, alias="MaxConcurrency", ge=0)
    result_selector: Any = Field(default=None, alias="ResultSelector")
    result_path: Optional[str] = Field(default="$", alias="ResultPath")
    retry: list[RetryConfig] = Field(default_factory=list, alias="Retry")
    catch: list[CatchConfig] = Field(default_factory=list, alias="Catch")


class SucceedConfig(StateConfig):
    pass


class FailConfig(StateConfig):
    error: Optional[str] = Field(default=None, alias="Error")
    cause: Optional[str] = Field(default=None, alias="Cause")


class GraphConfig(_ConfigModel):
    """A ``StartAt``/``States`` block used by branches and iterators."""

    start_at: str = Field(alias="StartAt")
    states: Dict[str, Any] = Field(alias="States")
    comment: Optional[str] = Field(default=None, alias="Comment")


class ProcessorGraphConfig(GraphConfig):
    """``ItemProcessor`` block of a Map state."""

    processor_config: Optional[Dict[str, Any]] = Field(default=None, alias="ProcessorConfig")


class DefinitionConfig(GraphConfig):
    """Top-level workflow document."""

    timeout_seconds: Optional[float] = Field(default=None, alias="TimeoutSeconds", gt=0)
    version: Optional[str] = Field(default=None, alias="Version")


STATE_MODELS: Dict[str, Type[StateConfig]] = {
    "Task": TaskConfig,
    "Pass": PassConfig,
    "Wait": WaitConfig,
    "Choice": ChoiceConfig,
    "Parallel": ParallelConfig,
    "Map": MapConfig,
    "Succeed": SucceedConfig,
    "Fail": FailConfig,
}

_PATH_FIELDS = (
    "input_path",
    "output_path",
    "result_path",
    "items_path",
    "seconds_path",
    "timestamp_path",
)

_TEMPLATE_FIELDS = ("parameters", "result_selector", "item_selector")


def _graph_segment(state_name: str) -> str:
    """Escape a state name for use inside a slash-separated graph id."""

    return state_name.replace("%", "%25").replace("/", "%2F")


def _operand_problem(operator_name: str, operand: Any) -> str | None:
    """Describe why ``operand`` does not fit ``operator_name``, or return None."""

    if operator_name in PATH_OPERATORS:
        if not isinstance(operand, str):
            return "expects a path string"
        try:
            parse_path(operand)
        except PathSyntaxError as exc:
            return str(exc)
        return None
    if operator_name in TYPE_TESTS or operator_name == "BooleanEquals":
        return None if isinstance(operand, bool) else "expects a boolean"
    if operator_name in STRING_OPERATORS or operator_name == "StringMatches":
        return None if isinstance(operand, str) else "expects a string"
    if operator_name in NUMERIC_OPERATORS:
        if isinstance(operand, (int, float)) and not isinstance(operand, bool):
            return None
        return "expects a number"
    if operator_name in TIMESTAMP_OPERATORS:
        return None if parse_timestamp(operand) is not None else "expects an ISO 8601 timestamp"
    return "is not a known operator"


class _DefinitionBuilder:
    """Builds the graph arena while collecting violations."""

    def __init__(self, registry: "ActivityRegistry | None" = None) -> None:
        self.registry = registry
        self.violations: list[str] = []
        self.graphs: Dict[str, StateGraph] = {}

    def violation(self, message: str) -> None:
        self.violations.append(message)

    def validate_model(self, model: Type[BaseModel], raw: Any, location: str) -> Any:
        if not isinstance(raw, Mapping):
            self.violation(f"{location}: expected an object, got {type(raw).__name__}")
            return None
        try:
            return model.model_validate(dict(raw))
        except PydanticValidationError as exc:
            for error in exc.errors():
                field = ".".join(str(part) for part in error["loc"])
                where = f"{location}.{field}" if field else location
                self.violation(f"{where}: {error['msg']}")
            return None

    # Graphs ------------------------------------------------------------------

    def build_graph(
        self,
        raw: Any,
        graph_id: str,
        location: str,
        model: Type[GraphConfig] = GraphConfig,
    ) -> Any:
        config = self.validate_model(model, raw, location)
        if config is None:
            return None

        if not config.states:
            self.violation(f"{location}.States: at least one state is required")
        elif config.start_at not in config.states:
            self.violation(f"{location}.StartAt: '{config.start_at}' does not name a state")

        states: Dict[str, StateNode] = {}
        for name, raw_state in config.states.items():
            node = self.build_state(name, raw_state, graph_id, f"{location}.States.{name}")
            if node is not None:
                states[name] = node

        for node in states.values():
            for target in transition_targets(node):
                if target not in config.states:
                    self.violation(
                        f"{location}.States.{node.name}: transition target '{target}' does not exist"
                    )

        self.graphs[graph_id] = StateGraph(start_at=config.start_at, states=states)
        return config

    # States ------------------------------------------------------------------

    def build_state(self, name: str, raw: Any, graph_id: str, location: str) -> StateNode | None:
        state_type = raw.get("Type") if isinstance(raw, Mapping) else None
        model = STATE_MODELS.get(state_type) if isinstance(state_type, str) else None
        if model is None:
            self.violation(f"{location}.Type: unknown state type {state_type!r}")
            return None

        config = self.validate_model(model, raw, location)
        if config is None:
            return None

        self.check_paths(config, location)
        if isinstance(config, FlowStateConfig):
            self.check_transition(config, location)

        common = dict(
            name=name,
            comment=config.comment,
            input_path=config.input_path,
            output_path=config.output_path,
        )
        if isinstance(config, TaskConfig):
            return self.build_task(config, common, location)
        if isinstance(config, PassConfig):
            return PassState(
                **common,
                next=config.next,
                parameters=config.parameters,
                result=config.result,
                has_result="result" in config.model_fields_set,
                result_path=config.result_path,
            )
        if isinstance(config, WaitConfig):
            return self.build_wait(config, common, location)
        if isinstance(config, ChoiceConfig):
            return self.build_choice(config, common, location)
        if isinstance(config, ParallelConfig):
            return self.build_parallel(config, common, graph_id, location)
        if isinstance(config, MapConfig):
            return self.build_map(config, common, graph_id, location)
        if isinstance(config, FailConfig):
            return FailState(**common, error=config.error, cause=config.cause)
        return SucceedState(**common)

    def check_transition(self, config: FlowStateConfig, location: str) -> None:
        if config.end and config.next is not None:
            self.violation(f"{location}: Next and End cannot both be set")
        elif not config.end and config.next is None:
            self.violation(f"{location}: either Next or End: true is required")

    def check_paths(self, config: StateConfig, location: str) -> None:
        fields = type(config).model_fields
        for field_name in _PATH_FIELDS:
            value = getattr(config, field_name, None)
            if isinstance(value, str):
                try:
                    parse_path(value)
                except PathSyntaxError as exc:
                    self.violation(f"{location}.{fields[field_name].alias}: {exc}")
        for field_name in _TEMPLATE_FIELDS:
            template = getattr(config, field_name, None)
            if template is not None:
                self.check_template(template, f"{location}.{fields[field_name].alias}")

    def check_template(self, template: Any, location: str) -> None:
        if isinstance(template, list):
            for index, item in enumerate(template):
                self.check_template(item, f"{location}[{index}]")
            return
        if not isinstance(template, Mapping):
            return
        for key, value in template.items():
            if not key.endswith(".$"):
                self.check_template(value, f"{location}.{key}")
                continue
            if not isinstance(value, str) or not value.startswith("$"):
                self.violation(f"{location}.{key}: expected a reference path, got {value!r}")
                continue
            try:
                check_reference(value)
            except PathSyntaxError as exc:
                self.violation(f"{location}.{key}: {exc}")

    def check_matchers(self, matchers: list[str], location: str) -> None:
        if not matchers:
            self.violation(f"{location}.ErrorEquals: at least one error name is required")

    def build_retriers(self, configs: list[RetryConfig], location: str) -> tuple[RetryRule, ...]:
        rules = []
        for index, config in enumerate(configs):
            self.check_matchers(config.error_equals, f"{location}.Retry[{index}]")
            rules.append(
                RetryRule(
                    error_equals=tuple(config.error_equals),
                    interval_seconds=config.interval_seconds,
                    max_attempts=config.max_attempts,
                    backoff_rate=config.backoff_rate,
                    max_delay_seconds=config.max_delay_seconds,
                )
            )
        return tuple(rules)

    def build_catchers(self, configs: list[CatchConfig], location: str) -> tuple[CatchRule, ...]:
        rules = []
        for index, config in enumerate(configs):
            where = f"{location}.Catch[{index}]"
            self.check_matchers(config.error_equals, where)
            if config.result_path is not None:
                try:
                    parse_path(config.result_path)
                except PathSyntaxError as exc:
                    self.violation(f"{where}.ResultPath: {exc}")
            rules.append(
                CatchRule(
                    error_equals=tuple(config.error_equals),
                    next=config.next,
                    result_path=config.result_path,
                )
            )
        return tuple(rules)

    def build_task(self, config: TaskConfig, common: Dict[str, Any], location: str) -> TaskState:
        if self.registry is not None and not self.registry.has(config.resource):
            self.violation(f"{location}.Resource: '{config.resource}' is not registered")
        return TaskState(
            **common,
            resource=config.resource,
            next=config.next,
            parameters=config.parameters,
            result_selector=config.result_selector,
            result_path=config.result_path,
            timeout_seconds=config.timeout_seconds,
            heartbeat_seconds=config.heartbeat_seconds,
            retry=self.build_retriers(config.retry, location),
            catch=self.build_catchers(config.catch, location),
        )

    def build_wait(self, config: WaitConfig, common: Dict[str, Any], location: str) -> WaitState:
        provided = [
            value
            for value in (config.seconds, config.seconds_path, config.timestamp, config.timestamp_path)
            if value is not None
        ]
        if len(provided) != 1:
            self.violation(
                f"{location}: exactly one of Seconds, SecondsPath, Timestamp or TimestampPath is required"
            )
        if config.timestamp is not None and parse_timestamp(config.timestamp) is None:
            self.violation(f"{location}.Timestamp: '{config.timestamp}' is not an ISO 8601 timestamp")
        return WaitState(
            **common,
            next=config.next,
            seconds=config.seconds,
            seconds_path=config.seconds_path,
            timestamp=config.timestamp,
            timestamp_path=config.timestamp_path,
        )

    def build_choice(self, config: ChoiceConfig, common: Dict[str, Any], location: str) -> ChoiceState:
        if not config.choices and config.default is None:
            self.violation(f"{location}: a Choice state needs at least one rule or a Default")

        branches = []
        for index, raw_rule in enumerate(config.choices):
            where = f"{location}.Choices[{index}]"
            if not isinstance(raw_rule, Mapping):
                self.violation(f"{where}: expected an object")
                continue
            fields = dict(raw_rule)
            next_state = fields.pop("Next", None)
            if not isinstance(next_state, str):
                self.violation(f"{where}.Next: a top-level choice rule must name its Next state")
            rule = self.build_choice_rule(fields, where)
            if rule is not None and isinstance(next_state, str):
                branches.append(ChoiceBranch(rule=rule, next=next_state))

        return ChoiceState(**common, choices=tuple(branches), default=config.default)

    def build_choice_rule(self, raw: Any, location: str) -> ChoiceRule | None:
        if not isinstance(raw, Mapping):
            self.violation(f"{location}: expected an object")
            return None
        fields = {key: value for key, value in raw.items() if key != "Comment"}
        if "Next" in fields:
            self.violation(f"{location}.Next: nested choice rules cannot set Next")
            fields.pop("Next")

        for combinator in ("And", "Or", "Not"):
            if combinator not in fields:
                continue
            if len(fields) != 1:
                self.violation(f"{location}: {combinator} cannot be combined with other fields")
                return None
            value = fields[combinator]
            if combinator == "Not":
                child = self.build_choice_rule(value, f"{location}.Not")
                return NotRule(rule=child) if child is not None else None
            if not isinstance(value, list) or not value:
                self.violation(f"{location}.{combinator}: expected a non-empty list of rules")
                return None
            children = [
                self.build_choice_rule(item, f"{location}.{combinator}[{index}]")
                for index, item in enumerate(value)
            ]
            if any(child is None for child in children):
                return None
            if combinator == "And":
                return AndRule(rules=tuple(children))
            return OrRule(rules=tuple(children))

        variable = fields.pop("Variable", None)
        if not isinstance(variable, str):
            self.violation(f"{location}.Variable: a comparison needs a Variable path")
            return None
        try:
            parse_path(variable)
        except PathSyntaxError as exc:
            self.violation(f"{location}.Variable: {exc}")
            return None

        unknown = sorted(key for key in fields if key not in COMPARISON_OPERATORS)
        if unknown:
            self.violation(f"{location}: unknown fields {unknown}")
        operators = [key for key in fields if key in COMPARISON_OPERATORS]
        if len(operators) != 1:
            self.violation(
                f"{location}: exactly one comparison operator is required, found {len(operators)}"
            )
            return None

        operator_name = operators[0]
        operand = fields[operator_name]
        problem = _operand_problem(operator_name, operand)
        if problem:
            self.violation(f"{location}.{operator_name}: {problem}")
            return None
        return Comparison(
            variable=variable,
            operator=operator_name,
            operand=operand,
            operand_is_path=operator_name in PATH_OPERATORS,
        )

    def build_parallel(
        self,
        config: ParallelConfig,
        common: Dict[str, Any],
        graph_id: str,
        location: str,
    ) -> ParallelState:
        if not config.branches:
            self.violation(f"{location}.Branches: at least one branch is required")

        branch_ids = []
        for index, raw_branch in enumerate(config.branches):
            branch_id = f"{graph_id}/{_graph_segment(common['name'])}/{index}"
            self.build_graph(raw_branch, branch_id, f"{location}.Branches[{index}]")
            branch_ids.append(branch_id)

        return ParallelState(
            **common,
            branches=tuple(branch_ids),
            next=config.next,
            parameters=config.parameters,
            result_selector=config.result_selector,
            result_path=config.result_path,
            retry=self.build_retriers(config.retry, location),
            catch=self.build_catchers(config.catch, location),
        )

    def build_map(
        self,
        config: MapConfig,
        common: Dict[str, Any],
        graph_id: str,
        location: str,
    ) -> MapState:
        iterator_id = f"{graph_id}/{_graph_segment(common['name'])}/iterator"
        if (config.iterator is None) == (config.item_processor is None):
            self.violation(f"{location}: exactly one of Iterator or ItemProcessor is required")
        elif config.item_processor is not None:
            self.build_graph(
                config.item_processor,
                iterator_id,
                f"{location}.ItemProcessor",
                model=ProcessorGraphConfig,
            )
        else:
            self.build_graph(config.iterator, iterator_id, f"{location}.Iterator")

        if config.item_selector is not None and config.parameters is not None:
            self.violation(f"{location}: ItemSelector and Parameters cannot both be set")

        return MapState(
            **common,
            iterator=iterator_id,
            next=config.next,
            items_path=config.items_path,
            item_selector=config.item_selector if config.item_selector is not None else config.parameters,
            max_concurrency=config.max_concurrency,
            result_selector=config.result_selector,
            result_path=config.result_path,
            retry=self.build_retriers(config.retry, location),
            catch=self.build_catchers(config.catch, location),
        )


def _parse_text(text: str | bytes) -> Any:
    try:
        return json.loads(text)
    except ValueError:
        pass
    try:
        return yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise WorkflowValidationError([f"$: definition is neither valid JSON nor YAML ({exc})"]) from exc


def load_definition(raw: Any, *, registry: "ActivityRegistry | None" = None) -> WorkflowDefinition:
    """Parse and validate a workflow definition.

    ``raw`` may be a mapping or a JSON/YAML document. When ``registry`` is
    given, every Task ``Resource`` must name a registered activity.
    """

    if isinstance(raw, (str, bytes)):
        raw = _parse_text(raw)
    if not isinstance(raw, Mapping):
        raise WorkflowValidationError([f"$: expected an object, got {type(raw).__name__}"])

    builder = _DefinitionBuilder(registry)
    config = builder.build_graph(raw, ROOT_GRAPH_ID, "$", model=DefinitionConfig)
    if builder.violations or config is None:
        raise WorkflowValidationError(builder.violations)

    return WorkflowDefinition(
        graphs=builder.graphs,
        root_id=ROOT_GRAPH_ID,
        timeout_seconds=config.timeout_seconds,
        comment=config.comment,
        raw=dict(raw),
    )


def load_definition_file(
    path: str | Path,
    *,
    registry: "ActivityRegistry | None" = None,
) -> WorkflowDefinition:
    """Load a definition from a ``.json``, ``.yaml`` or ``.yml`` file."""

    path = Path(path)
    text = path.read_text(encoding="utf-8")
    if path.suffix.lower() in {".yaml", ".yml"}:
        try:
            raw = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise WorkflowValidationError([f"$: {path.name} is not valid YAML ({exc})"]) from exc
    else:
        try:
            raw = json.loads(text)
        except ValueError as exc:
            raise WorkflowValidationError([f"$: {path.name} is not valid JSON ({exc})"]) from exc
    return load_definition(raw, registry=registry)


__all__ = [
    "CatchConfig",
    "DefinitionConfig",
    "GraphConfig",
    "RetryConfig",
    "STATE_MODELS",
    "StateConfig",
    "load_definition",
    "load_definition_file",
]
