"""Tests for the HTTP API, including the server-sent event run streams."""

import json

import pytest
from fastapi.testclient import TestClient

from conftest import edge, graph, linear_graph, node
from flowgraph.config import get_testing_config
from flowgraph.factory import create_app


def parse_frames(body: str):
    """Split an SSE body into (event, data) pairs, skipping comments."""
    frames = []
    for block in body.strip().split("\n\n"):
        event, data = None, None
        for line in block.splitlines():
            if line.startswith("event: "):
                event = line[len("event: "):]
            elif line.startswith("data: "):
                data = json.loads(line[len("data: "):])
        if event is not None:
            frames.append((event, data))
    return frames


def approval_graph():
    return graph(
        [
            node("start", "start", inputVariables=[{"name": "topic", "required": True}]),
            node("draft", "transform", transformScript="'draft about ' + input.topic"),
            node("review", "user-approval", message="Publish {{lastOutput}}?"),
            node("end", "end"),
        ],
        [edge("start", "draft"), edge("draft", "review"), edge("review", "end")],
    )


@pytest.fixture
def client(engine):
    app = create_app(get_testing_config(), execution_engine=engine)
    with TestClient(app) as test_client:
        yield test_client


class TestHealth:
    """Health endpoints."""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["version"] == "1.0.0"

    def test_health(self, client):
        body = client.get("/health").json()

        assert body["status"] == "healthy"
        assert body["active_runs"] == 0
        assert body["persistent_checkpoints"] is True

    def test_request_id_header(self, client):
        response = client.get("/", headers={"X-Request-ID": "req-42"})

        assert response.headers["X-Request-ID"] == "req-42"
        assert "X-Response-Time" in response.headers


class TestValidateEndpoint:
    """POST /api/v1/workflows/validate"""

    def test_valid_graph(self, client):
        response = client.post("/api/v1/workflows/validate", json={"graph": linear_graph()})

        assert response.status_code == 200
        assert response.json()["isValid"] is True

    def test_invalid_graph_is_reported_in_body(self, client):
        response = client.post("/api/v1/workflows/validate", json={"graph": graph([node("start", "start")], [])})

        body = response.json()
        assert response.status_code == 200
        assert body["isValid"] is False
        assert {"reason": "Graph must contain at least one end node", "nodeId": None} in body["errors"]

    def test_malformed_document(self, client):
        response = client.post("/api/v1/workflows/validate", json={"graph": {"nodes": [{"id": "x"}], "edges": []}})

        assert response.status_code == 200
        assert response.json()["isValid"] is False


class TestNormalizeEndpoint:
    """POST /api/v1/workflows/normalize"""

    def test_normalize_text(self, client):
        document = {
            "nodes": [{"id": "a", "type": "start", "data": {}}, {"id": "b", "type": "end", "data": {}}],
            "edges": [{"source": "a", "target": "b"}],
        }
        text = f"Here it is:\n```json\n{json.dumps(document)}\n```"

        response = client.post("/api/v1/workflows/normalize", json={"text": text})

        body = response.json()
        assert response.status_code == 200
        assert body["idMap"] == {"a": "node_1", "b": "node_2"}
        assert body["validation"]["isValid"] is True

    def test_unparseable_text(self, client):
        response = client.post("/api/v1/workflows/normalize", json={"text": "no workflow here"})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "validation_error"

    def test_requires_graph_or_text(self, client):
        response = client.post("/api/v1/workflows/normalize", json={})

        assert response.status_code == 422


class TestRunEndpoints:
    """Run execution, resume, cancel and status."""

    def test_run_streams_events_then_end(self, client, model_client):
        model_client.replies = ["summary"]
        document = linear_graph(node("agent", "agent", instructions="Summarize {{input.topic}}"))

        response = client.post("/api/v1/runs", json={"graph": document, "inputs": {"topic": "bees"}})

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert response.headers["Cache-Control"] == "no-cache"
        frames = parse_frames(response.text)
        assert [name for name, _ in frames] == ["started", "output"] * 3 + ["end"]
        assert [data["sequence"] for _, data in frames[:-1]] == [1, 2, 3, 4, 5, 6]
        assert frames[3][1]["nodeId"] == "agent"
        assert frames[3][1]["eventKind"] == "output"
        end = frames[-1][1]
        assert end["status"] == "completed"
        assert end["output"] == "summary"
        assert end["runId"] == response.headers["X-Run-ID"]

    def test_invalid_graph_is_rejected_before_streaming(self, client):
        response = client.post("/api/v1/runs", json={"graph": graph([node("start", "start")], [])})

        assert response.status_code == 400
        assert response.json()["detail"]["kind"] == "validation_error"

    def test_failed_run_ends_with_error(self, client):
        document = linear_graph(node("bad", "transform", transformScript="1 / 0"))

        frames = parse_frames(client.post("/api/v1/runs", json={"graph": document}).text)

        assert frames[-2][0] == "error"
        assert frames[-2][1]["payload"]["kind"] == "script_error"
        assert frames[-1][1]["status"] == "failed"
        assert frames[-1][1]["error"]["nodeId"] == "bad"

    def test_suspend_then_resume(self, client):
        response = client.post("/api/v1/runs", json={
            "graph": approval_graph(), "inputs": {"topic": "otters"}, "runId": "run-approval",
        })
        frames = parse_frames(response.text)

        assert frames[-2][0] == "suspended"
        assert frames[-2][1]["payload"] == {"message": "Publish draft about otters?", "pendingNodeId": "review"}
        assert frames[-1][1] == {"runId": "run-approval", "status": "suspended", "pendingNodeId": "review"}
        assert client.get("/api/v1/runs/run-approval").json()["status"] == "suspended"

        resumed = parse_frames(client.post(
            "/api/v1/runs/run-approval/resume", json={"decision": "approve", "note": "ship it"}
        ).text)

        assert [name for name, _ in resumed] == ["resumed", "output", "started", "output", "end"]
        assert resumed[0][1]["sequence"] == frames[-2][1]["sequence"] + 1
        assert resumed[-1][1]["status"] == "completed"
        assert resumed[-1][1]["output"] == "draft about otters"

    def test_reject(self, client):
        client.post("/api/v1/runs", json={"graph": approval_graph(), "inputs": {"topic": "x"}, "runId": "r1"})

        frames = parse_frames(client.post("/api/v1/runs/r1/resume", json={"decision": "reject"}).text)

        assert frames[-1][1]["status"] == "failed"
        assert frames[-1][1]["error"]["kind"] == "approval_rejected"

    def test_resume_unknown_run(self, client):
        response = client.post("/api/v1/runs/missing/resume", json={"decision": "approve"})

        assert response.status_code == 404
        assert response.json()["detail"]["kind"] == "run_not_found"

    def test_resume_with_bad_decision(self, client):
        response = client.post("/api/v1/runs/any/resume", json={"decision": "maybe"})

        assert response.status_code == 422

    def test_cancel_suspended_run(self, client):
        client.post("/api/v1/runs", json={"graph": approval_graph(), "inputs": {"topic": "x"}, "runId": "r2"})

        response = client.post("/api/v1/runs/r2/cancel")

        assert response.json() == {"runId": "r2", "cancelled": True, "message": "Run r2 cancellation requested"}
        summary = client.get("/api/v1/runs/r2").json()
        assert summary["status"] == "failed"
        assert summary["error"]["kind"] == "cancelled"

    def test_cancel_unknown_run(self, client):
        response = client.post("/api/v1/runs/nope/cancel")

        assert response.status_code == 200
        assert response.json()["cancelled"] is False

    def test_get_unknown_run(self, client):
        response = client.get("/api/v1/runs/nope")

        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "RunNotFound"

    def test_list_runs(self, client):
        client.post("/api/v1/runs", json={"graph": linear_graph(), "runId": "done-1"})
        client.post("/api/v1/runs", json={"graph": approval_graph(), "inputs": {"topic": "x"}, "runId": "wait-1"})

        completed = client.get("/api/v1/runs", params={"status": "completed"}).json()
        active = client.get("/api/v1/runs", params={"active": "true"}).json()

        assert [run["runId"] for run in completed] == ["done-1"]
        assert [run["runId"] for run in active] == ["wait-1"]
