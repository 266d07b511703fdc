from __future__ import annotations

"""Error taxonomy for definition loading and workflow execution."""

from typing import Any, Dict, Iterable

ALL_ERRORS = "States.ALL"
WILDCARD = "*"
TIMEOUT = "States.Timeout"

ERROR_ALIASES: Dict[str, str] = {
    WILDCARD: ALL_ERRORS,
    "Timeout": TIMEOUT,
}
"""Short matcher names accepted in ``ErrorEquals`` lists."""


def normalize_error_name(name: str) -> str:
    """Map matcher aliases onto their canonical error names."""

    return ERROR_ALIASES.get(name, name)


def matches_error(error_equals: Iterable[str], error: str) -> bool:
    """Return True when any matcher in ``error_equals`` accepts ``error``."""

    for matcher in error_equals:
        matcher = normalize_error_name(matcher)
        if matcher == ALL_ERRORS or matcher == error:
            return True
    return False


class StateflowError(Exception):
    """Base class for every error raised by the engine."""


class WorkflowValidationError(StateflowError):
    """Raised when a workflow definition violates structural rules.

    Every violation found during loading is collected so authors can fix a
    definition in a single pass.
    """

    def __init__(self, violations: list[str]) -> None:
        self.violations = list(violations)
        lines = "\n".join(f" - {violation}" for violation in self.violations)
        super().__init__(
            f"Invalid workflow definition ({len(self.violations)} violation(s)):\n{lines}"
        )


class IllegalTransitionError(StateflowError):
    """Raised when an execution status change would move backwards."""


class ExecutionCancelled(StateflowError):
    """Signals that a cancellation request was observed at a checkpoint."""


class StateError(StateflowError):
    """Runtime failure carrying an ASL-style error name and cause.

    Only ``StateError`` instances take part in Retry/Catch routing.
    """

    error_name = "States.Runtime"

    def __init__(self, cause: str = "", *, error: str | None = None) -> None:
        self.error = error or self.error_name
        self.cause = cause
        super().__init__(f"{self.error}: {cause}" if cause else self.error)

    def to_output(self) -> Dict[str, Any]:
        """Render the error the way Catch rules write it into the document."""

        return {"Error": self.error, "Cause": self.cause}


class DataError(StateError):
    """A path was missing or a value had the wrong shape."""

    error_name = "States.Runtime"


class PathSyntaxError(DataError):
    """A reference path could not be parsed."""


class NoMatchingChoice(StateError):
    """A Choice state had no matching rule and no default."""

    error_name = "States.NoChoiceMatched"


class ActivityError(StateError):
    """Failure reported while invoking an activity."""

    error_name = "States.TaskFailed"


class ActivityApplicationError(ActivityError):
    """Business error surfaced by the activity itself."""

    def __init__(self, kind: str, message: str = "") -> None:
        super().__init__(message, error=kind)
        self.kind = kind


class ActivityTimeout(ActivityError):
    """No result or heartbeat arrived within the configured timeout."""

    error_name = TIMEOUT


class ActivityTransportError(ActivityError):
    """The invocation could not be delivered to an activity."""

    error_name = "States.Transport"


class StateFailed(StateError):
    """Raised when execution reaches a Fail state."""

    error_name = "States.Fail"


class BranchFailed(StateError):
    """A Parallel branch or Map iteration failed without being caught.

    The original error name is kept so catchers on the enclosing state can
    match the kind raised inside the branch.
    """

    def __init__(self, branch_index: int, original: StateError) -> None:
        super().__init__(original.cause, error=original.error)
        self.branch_index = branch_index
        self.original = original


__all__ = [
    "ALL_ERRORS",
    "ActivityApplicationError",
    "ActivityError",
    "ActivityTimeout",
    "ActivityTransportError",
    "BranchFailed",
    "DataError",
    "ERROR_ALIASES",
    "ExecutionCancelled",
    "IllegalTransitionError",
    "NoMatchingChoice",
    "PathSyntaxError",
    "StateError",
    "StateFailed",
    "StateflowError",
    "TIMEOUT",
    "WILDCARD",
    "WorkflowValidationError",
    "matches_error",
    "normalize_error_name",
]
