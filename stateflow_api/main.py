from __future__ import annotations

"""FastAPI application factory for the workflow service."""

import asyncio
import logging
from typing import Any, Dict

import uvicorn
from fastapi import FastAPI

from stateflow.activities import ActivityContext, ActivityRegistry, Pending
from stateflow.config import EngineSettings, get_settings
from stateflow.engine import WorkflowEngine
from stateflow.errors import ActivityApplicationError
from stateflow_api.routes import activity_routes, definition_routes, execution_routes, ws_routes
from stateflow_api.ws import EventStreamManager

logger = logging.getLogger("stateflow.api")


def configure_logging(level: str = "INFO") -> None:
    """Configure basic logging for the service."""

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _register_builtin_activities(registry: ActivityRegistry) -> None:
    """Register a minimal set of default activities."""

    def echo(payload: Any, context: ActivityContext) -> Any:
        return payload

    def fail(payload: Any, context: ActivityContext) -> Any:
        payload = payload if isinstance(payload, dict) else {}
        raise ActivityApplicationError(
            str(payload.get("error", "Builtin.Failure")),
            str(payload.get("cause", "")),
        )

    def wait_for_callback(payload: Any, context: ActivityContext) -> Pending:
        # Completed later through /activities/{token}/success.
        return Pending(context.task_token())

    for name, func in {
        "builtin:echo": echo,
        "builtin:fail": fail,
        "builtin:callback": wait_for_callback,
    }.items():
        if not registry.has(name):
            registry.register(name, func)


def create_app(
    settings: EngineSettings | None = None,
    registry: ActivityRegistry | None = None,
) -> FastAPI:
    """Construct the FastAPI application."""

    settings = settings or get_settings()
    configure_logging(settings.log_level)
    registry = registry or ActivityRegistry()
    _register_builtin_activities(registry)

    event_stream_manager = EventStreamManager()
    engine = WorkflowEngine(
        registry,
        settings=settings,
        event_listener=event_stream_manager.publish_event,
    )

    app = FastAPI(title="Stateflow", version="0.1.0")

    app.state.settings = settings
    app.state.activity_registry = registry
    app.state.engine = engine
    app.state.event_stream_manager = event_stream_manager

    @app.on_event("startup")
    async def _startup() -> None:
        event_stream_manager.bind_loop(asyncio.get_running_loop())
        logger.info("Workflow service starting up.")

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        logger.info("Workflow service shutting down.")

    @app.get("/health", tags=["system"])
    async def health() -> Dict[str, str]:
        """Simple health probe."""

        return {"status": "ok"}

    app.include_router(definition_routes.router)
    app.include_router(execution_routes.router)
    app.include_router(activity_routes.router)
    app.include_router(ws_routes.router)

    return app


app = create_app()


def run() -> None:
    """Console entry point: serve ``app`` with uvicorn."""

    uvicorn.run("stateflow_api.main:app", host="0.0.0.0", port=8000)


__all__ = ["app", "configure_logging", "create_app", "run"]
