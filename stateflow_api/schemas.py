from __future__ import annotations

"""Request and response schemas for the workflow API."""

from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field


# Definition Schemas ----------------------------------------------------------


class DefinitionCreateRequest(BaseModel):
    """Payload for POST /definitions.

    ``definition`` is either the parsed ASL object or its JSON/YAML text.
    """

    id: str = Field(min_length=1)
    definition: Union[Dict[str, Any], str]


class DefinitionCreateResponse(BaseModel):
    definition_id: str
    start_at: str
    message: str = "Definition registered"


class DefinitionResponse(BaseModel):
    definition_id: str
    start_at: str
    states: List[str]
    definition: Dict[str, Any]


# Execution Schemas ------------------------------------------------------------


class StartExecutionRequest(BaseModel):
    """Payload for POST /executions."""

    definition_id: str
    input: Any = None
    execution_id: Optional[str] = None
    wait: bool = Field(
        default=False,
        description="Run to completion before responding instead of in the background.",
    )


# Activity Schemas -------------------------------------------------------------


class ActivitySuccessRequest(BaseModel):
    output: Any = None


class ActivityFailureRequest(BaseModel):
    error: str = Field(min_length=1)
    cause: str = ""


class ActivityAck(BaseModel):
    token: str
    status: str = "accepted"


__all__ = [
    "ActivityAck",
    "ActivityFailureRequest",
    "ActivitySuccessRequest",
    "DefinitionCreateRequest",
    "DefinitionCreateResponse",
    "DefinitionResponse",
    "StartExecutionRequest",
]
