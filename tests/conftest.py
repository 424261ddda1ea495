"""Pytest configuration and fixtures."""

import threading
from typing import Any, Dict, List, Optional

import pytest

from flowgraph.core.agent_invoker import AgentInvoker
from flowgraph.core.error_recovery import RetryConfig
from flowgraph.core.execution_engine import ExecutionEngine
from flowgraph.core.exceptions import InvokerError
from flowgraph.core.model_client import ModelClient
from flowgraph.core.state_manager import StateManager
from flowgraph.core.tool_client import ToolClient
from flowgraph.models.core import ModelResponse, ToolCall, ToolResult, ToolServer
from flowgraph.storage.database import Database


class FakeModelClient(ModelClient):
    """Replays scripted replies; an Exception in the script is raised instead."""

    def __init__(self, replies: Optional[List[Any]] = None, default: Optional[Any] = None):
        self.replies = list(replies or [])
        self.default = default
        self.calls: List[Dict[str, Any]] = []

    def create_message(self, model, system, messages, tools=None, max_tokens=4096):
        self.calls.append({
            "model": model,
            "system": system,
            "messages": [dict(message) for message in messages],
            "tools": tools,
        })
        reply = self.replies.pop(0) if self.replies else self.default
        if reply is None:
            reply = "ok"
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, str):
            return ModelResponse(text=reply)
        return reply


class FakeToolClient(ToolClient):
    """In-memory tool servers keyed by server name."""

    def __init__(self, servers: Optional[Dict[str, Dict[str, Any]]] = None):
        # {server_name: {tool_name: ToolResult | Exception | callable(arguments)}}
        self.servers = servers or {}
        self.calls: List[Dict[str, Any]] = []

    def list_tools(self, server: ToolServer) -> List[Dict[str, Any]]:
        tools = self.servers.get(server.name, {})
        return [
            {"name": name, "description": f"{name} tool", "inputSchema": {"type": "object", "properties": {}}}
            for name in tools
        ]

    def call_tool(self, server: ToolServer, name: str, arguments: Dict[str, Any]) -> ToolResult:
        self.calls.append({"server": server.name, "name": name, "arguments": arguments})
        handler = self.servers.get(server.name, {}).get(name)
        if handler is None:
            raise InvokerError(f"Unknown tool {name}", kind="tool_error")
        if isinstance(handler, Exception):
            raise handler
        if callable(handler):
            return handler(arguments)
        return handler


class BlockingModelClient(ModelClient):
    """Blocks until released; used to cancel runs in the middle of an agent step."""

    def __init__(self):
        self.entered = threading.Event()
        self.release = threading.Event()

    def create_message(self, model, system, messages, tools=None, max_tokens=4096):
        self.entered.set()
        self.release.wait(5.0)
        return ModelResponse(text="late")


def tool_call(name: str, call_id: str = "call-1", **arguments) -> ModelResponse:
    return ModelResponse(tool_calls=[ToolCall(id=call_id, name=name, arguments=arguments)])


def node(node_id: str, kind: str, name: Optional[str] = None, **config) -> Dict[str, Any]:
    """Build a compact node document."""
    document = {"id": node_id, "kind": kind, "config": config}
    if name:
        document["name"] = name
    return document


def edge(source: str, target: str, label: Optional[str] = None) -> Dict[str, Any]:
    document = {"source": source, "target": target}
    if label is not None:
        document["label"] = label
    return document


def graph(nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]]) -> Dict[str, Any]:
    return {"nodes": nodes, "edges": edges}


def linear_graph(*middle: Dict[str, Any], start_config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """start -> middle... -> end"""
    nodes = [node("start", "start", **(start_config or {}))] + list(middle) + [node("end", "end")]
    edges = [edge(nodes[i]["id"], nodes[i + 1]["id"]) for i in range(len(nodes) - 1)]
    return graph(nodes, edges)


def no_wait_retry(max_attempts: int = 3) -> RetryConfig:
    return RetryConfig(max_attempts=max_attempts, base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def database():
    """In-memory SQLite database shared across threads."""
    db = Database("sqlite:///:memory:")
    db.create_tables()
    yield db
    db.dispose()


@pytest.fixture
def model_client():
    return FakeModelClient()


@pytest.fixture
def tool_client():
    return FakeToolClient()


@pytest.fixture
def invoker(model_client, tool_client):
    """AgentInvoker wired to fake clients; retries never sleep."""
    return AgentInvoker(
        model_client=model_client,
        tool_client=tool_client,
        retry_config=no_wait_retry(),
        max_tool_rounds=3,
        sleep=lambda seconds: None
    )


@pytest.fixture
def state_manager(database):
    return StateManager(database=database, retry_config=no_wait_retry(1))


@pytest.fixture
def engine(invoker, state_manager):
    """ExecutionEngine with fake upstreams and persistent checkpoints."""
    execution_engine = ExecutionEngine(
        invoker=invoker,
        state_manager=state_manager,
        max_concurrent_executions=4,
        node_timeout=5.0,
        script_timeout=2.0
    )
    yield execution_engine
    execution_engine.shutdown(wait=True, cancel_active=True)


@pytest.fixture
def events():
    """List collecting events; pass ``events.append`` as the sink."""
    return []
