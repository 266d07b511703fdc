from __future__ import annotations

"""Dependency helpers for FastAPI routes."""

from fastapi.requests import HTTPConnection


def get_engine(connection: HTTPConnection):
    """Return the workflow engine."""

    return connection.app.state.engine


def get_event_stream_manager(connection: HTTPConnection):
    """Return the history event stream manager."""

    return connection.app.state.event_stream_manager


__all__ = [
    "get_engine",
    "get_event_stream_manager",
]
