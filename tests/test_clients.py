"""Tests for the model and tool clients."""

from contextlib import asynccontextmanager
from types import SimpleNamespace
from unittest.mock import Mock

import anthropic
import httpx
import pytest
from mcp.shared.exceptions import McpError
from mcp.types import CallToolResult, ErrorData, ListToolsResult, TextContent, Tool

from flowgraph.core.exceptions import InvokerError, TransientError
from flowgraph.core.model_client import AnthropicModelClient, parse_message, strip_provider_prefix
from flowgraph.core.tool_client import (
    HttpToolClient,
    expand_env_vars,
    map_tool_error,
    parse_tool_result,
    resolve_server,
    server_headers,
)
from flowgraph.models.core import ToolServer


REQUEST = httpx.Request("POST", "https://models.local/v1/messages")


def status_error(error_class, status_code, message="failed", headers=None):
    response = httpx.Response(status_code, request=REQUEST, headers=headers or {})
    return error_class(message, response=response, body={"error": {"type": "error", "message": message}})


def text_message(text, stop_reason="end_turn"):
    return SimpleNamespace(content=[SimpleNamespace(type="text", text=text)], stop_reason=stop_reason)


class TestAnthropicModelClient:
    """Test cases for AnthropicModelClient."""

    def setup_method(self):
        self.sdk = Mock()
        self.client = AnthropicModelClient(api_key="key-123", client=self.sdk)

    def test_sends_messages_request(self):
        self.sdk.messages.create.return_value = text_message("hello")

        reply = self.client.create_message(
            "anthropic/claude-test", "be brief", [{"role": "user", "content": "hi"}], max_tokens=100
        )

        assert reply.text == "hello"
        assert reply.stop_reason == "end_turn"
        self.sdk.messages.create.assert_called_once_with(
            model="claude-test",
            max_tokens=100,
            messages=[{"role": "user", "content": "hi"}],
            system="be brief",
        )

    def test_tools_are_passed_through(self):
        self.sdk.messages.create.return_value = text_message("ok")
        tools = [{"name": "lookup", "description": "", "input_schema": {"type": "object"}}]

        self.client.create_message("m", None, [], tools=tools)

        kwargs = self.sdk.messages.create.call_args.kwargs
        assert kwargs["tools"] == tools
        assert "system" not in kwargs

    def test_rate_limit_is_transient(self):
        self.sdk.messages.create.side_effect = status_error(
            anthropic.RateLimitError, 429, "Too many requests", headers={"retry-after": "2"}
        )

        with pytest.raises(TransientError) as info:
            self.client.create_message("m", None, [])

        assert info.value.status_code == 429
        assert info.value.retry_after == 2.0
        assert "Too many requests" in info.value.message

    def test_server_error_is_transient(self):
        self.sdk.messages.create.side_effect = status_error(anthropic.InternalServerError, 529, "Overloaded")

        with pytest.raises(TransientError) as info:
            self.client.create_message("m", None, [])

        assert info.value.status_code == 529

    def test_connection_and_timeout_errors_are_transient(self):
        for error in (anthropic.APIConnectionError(request=REQUEST), anthropic.APITimeoutError(request=REQUEST)):
            self.sdk.messages.create.side_effect = error

            with pytest.raises(TransientError):
                self.client.create_message("m", None, [])

    def test_bad_request_is_rejected(self):
        self.sdk.messages.create.side_effect = status_error(anthropic.BadRequestError, 400, "bad tools")

        with pytest.raises(InvokerError) as info:
            self.client.create_message("m", None, [])

        assert info.value.kind == "upstream_rejected"
        assert info.value.details["status_code"] == 400
        assert "bad tools" in info.value.message

    def test_missing_api_key(self):
        client = AnthropicModelClient(api_key=None)

        with pytest.raises(InvokerError):
            client.create_message("m", None, [])


def test_parse_message_with_tool_use():
    reply = parse_message(SimpleNamespace(
        content=[
            SimpleNamespace(type="text", text="Let me look."),
            SimpleNamespace(type="tool_use", id="tu_1", name="lookup", input={"q": "x"}),
        ],
        stop_reason="tool_use",
    ))

    assert reply.text == "Let me look."
    assert reply.tool_calls[0].name == "lookup"
    assert reply.tool_calls[0].arguments == {"q": "x"}
    assert reply.content == [
        {"type": "text", "text": "Let me look."},
        {"type": "tool_use", "id": "tu_1", "name": "lookup", "input": {"q": "x"}},
    ]


def test_strip_provider_prefix():
    assert strip_provider_prefix("anthropic/claude-sonnet-4-20250514") == "claude-sonnet-4-20250514"
    assert strip_provider_prefix("claude-haiku") == "claude-haiku"


class FakeSession:
    """Stands in for an initialized MCP ClientSession."""

    def __init__(self, tools=None, result=None, error=None):
        self.tools = tools or []
        self.result = result
        self.error = error
        self.calls = []

    async def list_tools(self):
        if self.error:
            raise self.error
        return ListToolsResult(tools=self.tools)

    async def call_tool(self, name, arguments):
        self.calls.append((name, arguments))
        if self.error:
            raise self.error
        return self.result


class TestHttpToolClient:
    """Test cases for HttpToolClient."""

    def setup_method(self):
        self.opened = []
        self.session = FakeSession()
        self.client = HttpToolClient(timeout=5.0, session_factory=self.session_factory)
        self.server = ToolServer(name="search", url="http://tools.local/mcp", accessToken="secret")

    @asynccontextmanager
    async def session_factory(self, server, timeout):
        self.opened.append((server, timeout))
        yield self.session

    def test_list_tools(self):
        self.session.tools = [
            Tool(name="lookup", description="Find things", inputSchema={"type": "object", "properties": {}}),
        ]

        tools = self.client.list_tools(self.server)

        assert tools == [
            {"name": "lookup", "description": "Find things", "inputSchema": {"type": "object", "properties": {}}},
        ]
        assert self.opened[0][1] == 5.0

    def test_call_tool(self):
        self.session.result = CallToolResult(content=[TextContent(type="text", text="42")])

        result = self.client.call_tool(self.server, "answer", {"q": "life"})

        assert result.text == "42"
        assert result.value == 42
        assert not result.is_error
        assert self.session.calls == [("answer", {"q": "life"})]

    def test_server_placeholders_are_expanded(self, monkeypatch):
        monkeypatch.setenv("TOOLS_HOST", "tools.internal")
        self.session.result = CallToolResult(content=[])

        self.client.call_tool(ToolServer(name="s", url="http://${TOOLS_HOST}/mcp"), "noop", {})

        assert self.opened[0][0].url == "http://tools.internal/mcp"

    def test_rpc_error_is_tool_error(self):
        self.session.error = McpError(ErrorData(code=-32602, message="bad args"))

        with pytest.raises(InvokerError) as info:
            self.client.call_tool(self.server, "answer", {})

        assert info.value.kind == "tool_error"
        assert "bad args" in info.value.message

    def test_connection_error_is_transient(self):
        self.session.error = httpx.ConnectError("refused")

        with pytest.raises(TransientError):
            self.client.list_tools(self.server)


class TestToolHelpers:
    """Module-level helpers of the tool client."""

    def test_expand_env_vars(self):
        env = {"TOKEN": "abc", "HOST": "tools.local"}

        assert expand_env_vars("Bearer ${TOKEN}", env) == "Bearer abc"
        assert expand_env_vars("${MISSING:-fallback}", env) == "fallback"
        assert expand_env_vars("http://{HOST}/mcp", env) == "http://tools.local/mcp"
        assert expand_env_vars("{UNKNOWN}", env) == "{UNKNOWN}"

    def test_resolve_server(self):
        server = ToolServer(name="s", url="${BASE}/mcp", accessToken="${TOKEN}", headers={"X-Key": "${TOKEN}"})

        resolved = resolve_server(server, {"BASE": "http://x", "TOKEN": "t"})

        assert resolved.url == "http://x/mcp"
        assert resolved.access_token == "t"
        assert resolved.headers == {"X-Key": "t"}
        assert server.url == "${BASE}/mcp"

    def test_server_headers(self):
        server = ToolServer(name="s", url="http://x", accessToken="t", headers={"X-Key": "k"})

        assert server_headers(server) == {"Authorization": "Bearer t", "X-Key": "k"}

    @pytest.mark.parametrize("status_code, expected", [
        (503, TransientError),
        (429, TransientError),
        (401, InvokerError),
    ])
    def test_http_status_mapping(self, status_code, expected):
        request = httpx.Request("POST", "http://tools.local/mcp")
        error = httpx.HTTPStatusError("failed", request=request, response=httpx.Response(status_code, request=request))

        mapped = map_tool_error(error, ToolServer(name="s", url="http://tools.local/mcp"))

        assert type(mapped) is expected

    def test_wrapped_errors_are_unwrapped(self):
        class Grouped(Exception):
            def __init__(self, exceptions):
                super().__init__("group")
                self.exceptions = exceptions

        mapped = map_tool_error(Grouped([httpx.ReadTimeout("slow")]), ToolServer(name="s", url="http://x"))

        assert isinstance(mapped, TransientError)

    def test_parse_tool_result(self):
        result = parse_tool_result(CallToolResult(
            content=[TextContent(type="text", text="a"), TextContent(type="text", text="b")],
            structuredContent={"items": [1]},
            isError=True,
        ))

        assert result.text == "a\nb"
        assert result.value == {"items": [1]}
        assert result.is_error
