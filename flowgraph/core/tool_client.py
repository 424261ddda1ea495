"""Client for remote tool servers speaking the MCP streamable HTTP transport."""

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, List, Optional

import httpx
from mcp import ClientSession
from mcp.client.streamable_http import streamable_http_client
from mcp.shared.exceptions import McpError

from ..models.core import ToolResult, ToolServer
from .exceptions import InvokerError, TransientError, WorkflowEngineError
from .logging import get_logger


logger = get_logger(__name__)

_ENV_PATTERN = re.compile(r"\$\{([^}:]+)(?::-([^}]*))?\}")
_BARE_ENV_PATTERN = re.compile(r"(?<!\$)\{([A-Z][A-Z0-9_]*)\}")

SessionFactory = Callable[[ToolServer, float], Any]


def expand_env_vars(value: str, env: Optional[Dict[str, str]] = None) -> str:
    """Expand ``${VAR}``, ``${VAR:-default}`` and ``{VAR}`` in value."""
    if not isinstance(value, str):
        return value
    env = os.environ if env is None else env

    def replacer(match: "re.Match[str]") -> str:
        var_name = match.group(1)
        default = match.group(2) or ""
        return env.get(var_name, default)

    def bare_replacer(match: "re.Match[str]") -> str:
        return env.get(match.group(1), match.group(0))

    return _BARE_ENV_PATTERN.sub(bare_replacer, _ENV_PATTERN.sub(replacer, value))


def resolve_server(server: ToolServer, env: Optional[Dict[str, str]] = None) -> ToolServer:
    """Return a copy of ``server`` with environment placeholders expanded."""
    return server.model_copy(update={
        "url": expand_env_vars(server.url, env),
        "access_token": expand_env_vars(server.access_token, env) if server.access_token else None,
        "headers": {key: expand_env_vars(value, env) for key, value in server.headers.items()},
    })


def server_headers(server: ToolServer) -> Dict[str, str]:
    headers = {}
    if server.access_token:
        headers["Authorization"] = f"Bearer {server.access_token}"
    headers.update(server.headers)
    return headers


@asynccontextmanager
async def open_session(server: ToolServer, timeout: float) -> AsyncIterator[ClientSession]:
    """Connect to ``server`` and yield an initialized MCP ClientSession."""
    http_client = httpx.AsyncClient(headers=server_headers(server), timeout=timeout)
    try:
        async with streamable_http_client(server.url, http_client=http_client) as (read, write, _get_session_id):
            async with ClientSession(read, write) as session:
                await session.initialize()
                yield session
    finally:
        await http_client.aclose()


class ToolClient(ABC):
    """Interface to remote tool servers."""

    @abstractmethod
    def list_tools(self, server: ToolServer) -> List[Dict[str, Any]]:
        """Return tool descriptors ``{name, description, inputSchema}`` offered by ``server``."""

    @abstractmethod
    def call_tool(self, server: ToolServer, name: str, arguments: Dict[str, Any]) -> ToolResult:
        """Invoke tool ``name`` on ``server``."""


class HttpToolClient(ToolClient):
    """
    ToolClient for HTTP tool servers.

    Each operation opens an MCP session, runs the request and closes it again
    on an event loop private to the calling worker thread. Failures are mapped
    onto the engine's error types: transport problems and 429/5xx replies are
    transient, JSON-RPC errors are tool errors.
    """

    def __init__(self, timeout: float = 60.0, session_factory: Optional[SessionFactory] = None):
        self.timeout = timeout
        self.session_factory = session_factory or open_session

    def list_tools(self, server: ToolServer) -> List[Dict[str, Any]]:
        server = resolve_server(server)
        result = self._run(server, lambda session: session.list_tools())
        tools = [
            {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": tool.inputSchema or {"type": "object", "properties": {}},
            }
            for tool in result.tools
        ]
        logger.debug(f"Tool server '{server.name}' offers {len(tools)} tools")
        return tools

    def call_tool(self, server: ToolServer, name: str, arguments: Dict[str, Any]) -> ToolResult:
        server = resolve_server(server)
        logger.info(f"Calling tool '{name}' on server '{server.name}'")
        result = self._run(server, lambda session: session.call_tool(name, arguments))
        return parse_tool_result(result)

    def _run(self, server: ToolServer, operation: Callable[[ClientSession], Awaitable[Any]]) -> Any:
        async def _session_call():
            async with self.session_factory(server, self.timeout) as session:
                return await operation(session)

        try:
            return asyncio.run(asyncio.wait_for(_session_call(), timeout=self.timeout))
        except WorkflowEngineError:
            raise
        except Exception as e:
            raise map_tool_error(e, server) from e


def map_tool_error(error: BaseException, server: ToolServer) -> WorkflowEngineError:
    """Translate an SDK/transport failure into TransientError or InvokerError."""
    error = _leaf_error(error)
    if isinstance(error, McpError):
        return InvokerError(f"Tool server '{server.name}' error: {error.error.message}", kind="tool_error")
    if isinstance(error, httpx.HTTPStatusError):
        status_code = error.response.status_code
        if status_code == 429 or status_code >= 500:
            return TransientError(f"Tool server '{server.name}' returned {status_code}", status_code=status_code)
        return InvokerError(
            f"Tool server '{server.name}' rejected the request ({status_code})", kind="upstream_rejected"
        ).add_details(status_code=status_code)
    if isinstance(error, (httpx.TransportError, asyncio.TimeoutError, TimeoutError, ConnectionError)):
        return TransientError(f"Tool server '{server.name}' unreachable: {error!r}")
    return InvokerError(f"Tool server '{server.name}' request failed: {error!r}", kind="upstream_rejected")


def _leaf_error(error: BaseException) -> BaseException:
    # task groups in the transport wrap failures in exception groups
    while getattr(error, "exceptions", None):
        error = error.exceptions[0]
    return error


def parse_tool_result(result: Any) -> ToolResult:
    """Build a ToolResult from an SDK ``CallToolResult``."""
    texts = []
    for item in getattr(result, "content", None) or []:
        if getattr(item, "type", None) == "text":
            texts.append(item.text)
        elif hasattr(item, "model_dump"):
            texts.append(json.dumps(item.model_dump(mode="json", exclude_none=True), default=str))
    return ToolResult(
        text="\n".join(texts),
        structured=getattr(result, "structuredContent", None),
        is_error=bool(getattr(result, "isError", False))
    )
