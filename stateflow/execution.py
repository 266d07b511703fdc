from __future__ import annotations

"""Execution records and their status lifecycle."""

from datetime import datetime
from enum import Enum
from typing import Any, Optional
from uuid import uuid4

from pydantic import BaseModel, Field

from stateflow.errors import IllegalTransitionError


class ExecutionStatus(str, Enum):
    """``Running`` is the only non-terminal status."""

    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    TIMED_OUT = "TimedOut"

    @property
    def is_terminal(self) -> bool:
        return self is not ExecutionStatus.RUNNING


class ExecutionStatusView(BaseModel):
    """Read-only status answer for callers and the API."""

    execution_id: str
    definition_id: str
    status: ExecutionStatus
    current_state: Optional[str] = None
    document: Any = None
    error: Optional[str] = None
    cause: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None


class Execution(BaseModel):
    """Mutable runtime instance of a workflow definition.

    ``document`` is only ever replaced as a whole; the scheduler never edits
    it in place.
    """

    execution_id: str = Field(default_factory=lambda: str(uuid4()))
    definition_id: str
    status: ExecutionStatus = ExecutionStatus.RUNNING
    current_state: Optional[str] = None
    input: Any = None
    document: Any = None
    error: Optional[str] = None
    cause: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def replace_document(self, document: Any) -> None:
        self.document = document

    def request_cancel(self) -> None:
        """Flag the execution; the scheduler stops at its next checkpoint."""

        if self.is_terminal:
            raise IllegalTransitionError(
                f"Execution '{self.execution_id}' already finished with status {self.status.value}."
            )
        self.cancel_requested = True

    def transition_to(
        self,
        status: ExecutionStatus,
        *,
        at: datetime,
        error: str | None = None,
        cause: str | None = None,
    ) -> None:
        """Move from ``Running`` to a terminal status, exactly once."""

        if self.is_terminal or not status.is_terminal:
            raise IllegalTransitionError(
                f"Execution '{self.execution_id}' cannot move from "
                f"{self.status.value} to {status.value}."
            )
        self.status = status
        self.ended_at = at
        self.error = error
        self.cause = cause

    def snapshot(self) -> ExecutionStatusView:
        return ExecutionStatusView(
            execution_id=self.execution_id,
            definition_id=self.definition_id,
            status=self.status,
            current_state=self.current_state,
            document=self.document,
            error=self.error,
            cause=self.cause,
            started_at=self.started_at,
            ended_at=self.ended_at,
        )


__all__ = ["Execution", "ExecutionStatus", "ExecutionStatusView"]
