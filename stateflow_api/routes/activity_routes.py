from __future__ import annotations

"""Callbacks for activities that answered with a task token."""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from stateflow.errors import DataError
from stateflow_api.deps import get_engine
from stateflow_api.schemas import ActivityAck, ActivityFailureRequest, ActivitySuccessRequest

logger = logging.getLogger("stateflow.api.routes.activities")

router = APIRouter(prefix="/activities", tags=["activities"])


def _unknown_token(exc: KeyError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=exc.args[0])


@router.post("/{token:path}/success", response_model=ActivityAck)
async def complete_activity(
    token: str,
    payload: ActivitySuccessRequest,
    engine=Depends(get_engine),
) -> ActivityAck:
    try:
        engine.complete_activity(token, payload.output)
    except KeyError as exc:
        raise _unknown_token(exc) from exc
    except DataError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=exc.cause) from exc
    logger.info("Activity token %s completed", token)
    return ActivityAck(token=token)


@router.post("/{token:path}/failure", response_model=ActivityAck)
async def fail_activity(
    token: str,
    payload: ActivityFailureRequest,
    engine=Depends(get_engine),
) -> ActivityAck:
    try:
        engine.fail_activity(token, payload.error, payload.cause)
    except KeyError as exc:
        raise _unknown_token(exc) from exc
    logger.info("Activity token %s failed with %s", token, payload.error)
    return ActivityAck(token=token)


@router.post("/{token:path}/heartbeat", response_model=ActivityAck)
async def heartbeat_activity(token: str, engine=Depends(get_engine)) -> ActivityAck:
    try:
        engine.heartbeat_activity(token)
    except KeyError as exc:
        raise _unknown_token(exc) from exc
    return ActivityAck(token=token)
