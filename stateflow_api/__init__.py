"""HTTP and WebSocket service exposing the stateflow engine."""
