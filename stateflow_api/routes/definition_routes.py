from __future__ import annotations

"""Definition registration routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from stateflow.errors import WorkflowValidationError
from stateflow_api.deps import get_engine
from stateflow_api.schemas import (
    DefinitionCreateRequest,
    DefinitionCreateResponse,
    DefinitionResponse,
)

logger = logging.getLogger("stateflow.api.routes.definitions")

router = APIRouter(prefix="/definitions", tags=["definitions"])


@router.post(
    "",
    response_model=DefinitionCreateResponse,
    status_code=status.HTTP_201_CREATED,
)
async def create_definition(
    payload: DefinitionCreateRequest,
    engine=Depends(get_engine),
) -> DefinitionCreateResponse:
    """Validate and register a workflow definition."""

    if engine.definitions.exists(payload.id):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Definition '{payload.id}' already exists.",
        )

    try:
        definition = engine.register_definition(payload.id, payload.definition)
    except WorkflowValidationError as exc:
        logger.info("Rejected definition %s with %d violation(s)", payload.id, len(exc.violations))
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"message": "Invalid workflow definition.", "violations": exc.violations},
        ) from exc

    return DefinitionCreateResponse(definition_id=payload.id, start_at=definition.start_at)


@router.get("", response_model=list[str])
async def list_definitions(engine=Depends(get_engine)) -> list[str]:
    return engine.definitions.list()


@router.get("/{definition_id}", response_model=DefinitionResponse)
async def get_definition(definition_id: str, engine=Depends(get_engine)) -> DefinitionResponse:
    try:
        definition = engine.definitions.get(definition_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc

    return DefinitionResponse(
        definition_id=definition_id,
        start_at=definition.start_at,
        states=list(definition.root.states),
        definition=dict(definition.raw),
    )
