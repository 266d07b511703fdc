from __future__ import annotations

"""Integration tests for the FastAPI application."""

import time

import pytest
from fastapi.testclient import TestClient

from stateflow.config import EngineSettings
from stateflow_api.main import create_app


@pytest.fixture
def client() -> TestClient:
    app = create_app(EngineSettings(history_dir=None))
    with TestClient(app) as test_client:
        yield test_client


def echo_definition() -> dict:
    return {
        "id": "echo",
        "definition": {
            "StartAt": "Echo",
            "States": {
                "Echo": {
                    "Type": "Task",
                    "Resource": "builtin:echo",
                    "Parameters": {"message.$": "$.message"},
                    "ResultPath": "$.echoed",
                    "End": True,
                }
            },
        },
    }


def poll_status(client: TestClient, execution_id: str, wanted: str) -> dict:
    for _ in range(200):
        body = client.get(f"/executions/{execution_id}").json()
        if body["status"] == wanted:
            return body
        time.sleep(0.01)
    raise AssertionError(f"execution {execution_id} never reached {wanted}")


def wait_for_token(client: TestClient, token: str) -> None:
    for _ in range(200):
        if client.post(f"/activities/{token}/heartbeat").status_code == 200:
            return
        time.sleep(0.01)
    raise AssertionError(f"task token {token} was never opened")


def test_health(client: TestClient) -> None:
    assert client.get("/health").json() == {"status": "ok"}


def test_create_and_get_definition(client: TestClient) -> None:
    response = client.post("/definitions", json=echo_definition())
    assert response.status_code == 201
    assert response.json()["start_at"] == "Echo"

    fetched = client.get("/definitions/echo")
    assert fetched.status_code == 200
    assert fetched.json()["states"] == ["Echo"]
    assert client.get("/definitions").json() == ["echo"]

    duplicate = client.post("/definitions", json=echo_definition())
    assert duplicate.status_code == 400


def test_invalid_definition_lists_violations(client: TestClient) -> None:
    payload = {
        "id": "broken",
        "definition": {"StartAt": "A", "States": {"A": {"Type": "Task", "Resource": "missing"}}},
    }
    response = client.post("/definitions", json=payload)
    assert response.status_code == 422
    violations = response.json()["detail"]["violations"]
    assert any("'missing' is not registered" in violation for violation in violations)
    assert any("Next or End" in violation for violation in violations)


def test_definition_accepts_yaml_text(client: TestClient) -> None:
    yaml_text = "StartAt: Done\nStates:\n  Done:\n    Type: Succeed\n"
    response = client.post("/definitions", json={"id": "yaml", "definition": yaml_text})
    assert response.status_code == 201


def test_run_and_status_flow(client: TestClient) -> None:
    client.post("/definitions", json=echo_definition())
    response = client.post(
        "/executions",
        json={"definition_id": "echo", "input": {"message": "hi"}, "wait": True},
    )
    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "Succeeded"
    assert body["document"] == {"message": "hi", "echoed": {"message": "hi"}}

    status_resp = client.get(f"/executions/{body['execution_id']}")
    assert status_resp.json()["status"] == "Succeeded"

    history = client.get(f"/executions/{body['execution_id']}/history").json()
    assert history[0]["kind"] == "ExecutionStarted"
    assert history[-1]["kind"] == "ExecutionSucceeded"


def test_failed_execution_exposes_error(client: TestClient) -> None:
    definition = {
        "id": "fails",
        "definition": {
            "StartAt": "Boom",
            "States": {"Boom": {"Type": "Task", "Resource": "builtin:fail", "End": True}},
        },
    }
    client.post("/definitions", json=definition)
    body = client.post(
        "/executions",
        json={"definition_id": "fails", "input": {"error": "Payment.Declined", "cause": "no funds"}, "wait": True},
    ).json()
    assert body["status"] == "Failed"
    assert body["error"] == "Payment.Declined"
    assert body["cause"] == "no funds"


def test_missing_definition_and_execution(client: TestClient) -> None:
    response = client.post("/executions", json={"definition_id": "missing", "input": {}})
    assert response.status_code == 404
    assert client.get("/executions/nope").status_code == 404
    assert client.get("/executions/nope/history").status_code == 404
    assert len(client.app.state.engine.history._locks) == 0
    assert client.post("/executions/nope/cancel").status_code == 404


def test_callback_activity_and_cancel_conflict(client: TestClient) -> None:
    definition = {
        "id": "approval",
        "definition": {
            "StartAt": "Approve",
            "States": {
                "Approve": {
                    "Type": "Task",
                    "Resource": "builtin:callback",
                    "ResultPath": "$.approval",
                    "End": True,
                }
            },
        },
    }
    client.post("/definitions", json=definition)
    response = client.post(
        "/executions",
        json={"definition_id": "approval", "input": {}, "execution_id": "exec-approve"},
    )
    assert response.status_code == 202

    token = "exec-approve:Approve:1"
    wait_for_token(client, token)

    ack = client.post(f"/activities/{token}/success", json={"output": {"approved": True}})
    assert ack.status_code == 200

    body = poll_status(client, "exec-approve", "Succeeded")
    assert body["document"] == {"approval": {"approved": True}}

    conflict = client.post("/executions/exec-approve/cancel")
    assert conflict.status_code == 409
    assert client.post(f"/activities/{token}/success", json={"output": {}}).status_code == 404


def test_cancel_running_execution(client: TestClient) -> None:
    definition = {
        "id": "hold",
        "definition": {
            "StartAt": "Hold",
            "States": {
                "Hold": {"Type": "Task", "Resource": "builtin:callback", "Next": "After"},
                "After": {"Type": "Succeed"},
            },
        },
    }
    client.post("/definitions", json=definition)
    client.post("/executions", json={"definition_id": "hold", "input": {}, "execution_id": "exec-hold"})

    token = "exec-hold:Hold:1"
    wait_for_token(client, token)

    cancel = client.post("/executions/exec-hold/cancel")
    assert cancel.status_code == 202
    assert client.post(f"/activities/{token}/success", json={"output": {}}).status_code == 200

    body = poll_status(client, "exec-hold", "Cancelled")
    assert body["current_state"] == "Hold"


def test_websocket_streams_history(client: TestClient) -> None:
    client.post("/definitions", json=echo_definition())
    body = client.post(
        "/executions",
        json={"definition_id": "echo", "input": {"message": "hi"}, "wait": True},
    ).json()

    with client.websocket_connect(f"/ws/executions/{body['execution_id']}") as websocket:
        kinds = []
        while True:
            message = websocket.receive_json()
            kinds.append(message["event"]["kind"])
            if message["event"]["kind"] == "ExecutionSucceeded":
                break

    assert kinds[0] == "ExecutionStarted"
    assert "TaskSucceeded" in kinds
