from __future__ import annotations

"""Execution start, status, cancel and history routes."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Path, status

from stateflow.errors import DataError, IllegalTransitionError
from stateflow.execution import ExecutionStatusView
from stateflow.history import ExecutionEvent
from stateflow_api.deps import get_engine
from stateflow_api.schemas import StartExecutionRequest

logger = logging.getLogger("stateflow.api.routes.executions")

router = APIRouter(prefix="/executions", tags=["executions"])


@router.post(
    "",
    response_model=ExecutionStatusView,
    status_code=status.HTTP_202_ACCEPTED,
)
async def start_execution(
    payload: StartExecutionRequest,
    engine=Depends(get_engine),
) -> ExecutionStatusView:
    """Start an execution, optionally waiting for it to finish."""

    if not engine.definitions.exists(payload.definition_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Definition not found.")
    if payload.execution_id and engine.executions.exists(payload.execution_id):
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Execution '{payload.execution_id}' already exists.",
        )

    try:
        if payload.wait:
            view = await engine.run_execution(
                payload.definition_id, payload.input, execution_id=payload.execution_id
            )
        else:
            execution_id = await engine.start_execution(
                payload.definition_id, payload.input, execution_id=payload.execution_id
            )
            view = engine.get_execution_status(execution_id)
    except DataError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.cause) from exc

    logger.info("Execution %s accepted for %s", view.execution_id, payload.definition_id)
    return view


@router.get("/{execution_id}", response_model=ExecutionStatusView)
async def get_execution(
    execution_id: str = Path(..., description="Execution identifier"),
    engine=Depends(get_engine),
) -> ExecutionStatusView:
    try:
        return engine.get_execution_status(execution_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc


@router.post(
    "/{execution_id}/cancel",
    response_model=ExecutionStatusView,
    status_code=status.HTTP_202_ACCEPTED,
)
async def cancel_execution(execution_id: str, engine=Depends(get_engine)) -> ExecutionStatusView:
    """Request cancellation of a running execution."""

    try:
        return engine.cancel_execution(execution_id)
    except KeyError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0]) from exc
    except IllegalTransitionError as exc:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(exc)) from exc


@router.get("/{execution_id}/history", response_model=list[ExecutionEvent])
async def get_execution_history(execution_id: str, engine=Depends(get_engine)) -> list[ExecutionEvent]:
    events = await engine.get_history(execution_id)
    if not events and not engine.executions.exists(execution_id):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"Execution '{execution_id}' not found.",
        )
    return events
