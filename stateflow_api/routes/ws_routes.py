from __future__ import annotations

"""WebSocket route streaming execution history."""

import logging

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect, status

from stateflow.history import TERMINAL_EVENT_KINDS
from stateflow_api.deps import get_engine, get_event_stream_manager
from stateflow_api.ws import event_message

logger = logging.getLogger("stateflow.api.routes.ws")

router = APIRouter()

_TERMINAL_KINDS = {kind.value for kind in TERMINAL_EVENT_KINDS}


@router.websocket("/ws/executions/{execution_id}")
async def stream_history(
    websocket: WebSocket,
    execution_id: str,
    engine=Depends(get_engine),
    manager=Depends(get_event_stream_manager),
) -> None:
    """Replay recorded history, then stream new events until the execution ends."""

    await websocket.accept()
    if not engine.executions.exists(execution_id):
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION, reason="Unknown execution_id")
        return

    queue = manager.register(execution_id)
    last_sequence = 0
    try:
        for event in await engine.get_history(execution_id):
            await websocket.send_json(event_message(event))
            last_sequence = event.sequence
            if event.kind.is_terminal:
                return

        while True:
            message = await queue.get()
            event = message["event"]
            if event["sequence"] <= last_sequence:
                continue
            await websocket.send_json(message)
            last_sequence = event["sequence"]
            if event["kind"] in _TERMINAL_KINDS:
                break
    except WebSocketDisconnect:
        logger.info("WebSocket disconnected for execution %s", execution_id)
    finally:
        manager.unregister(execution_id, queue)
        try:
            await websocket.close()
        except RuntimeError:
            pass
