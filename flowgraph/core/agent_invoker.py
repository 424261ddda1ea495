"""Agent and tool invocation: model calls, tool-call loops and structured output."""

import json
import re
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError

from ..models.core import (
    AgentResult,
    ModelResponse,
    OutputFormat,
    ToolCallRecord,
    ToolResult,
    ToolServer,
)
from .error_recovery import RetryConfig, RetryExhaustedError, execute_with_retry
from .exceptions import ExecutionCancelledError, InvokerError
from .logging import get_logger
from .model_client import ModelClient
from .tool_client import ToolClient


logger = get_logger(__name__)

DEFAULT_MODEL = "anthropic/claude-sonnet-4-20250514"

_JSON_FENCE = re.compile(r"```(?:json)?\s*([\s\S]*?)```", re.IGNORECASE)

MCP_ACTIONS = {
    "scrape": "firecrawl_scrape",
    "search": "firecrawl_search",
    "crawl": "firecrawl_crawl",
    "map": "firecrawl_map",
}


def extract_json(text: str) -> Any:
    """
    Parse JSON out of model text.

    Tries, in order: a fenced ```json block, the outermost ``{...}``, the
    whole text. Raises ValueError when none of them parse.
    """
    if not isinstance(text, str):
        raise ValueError("Expected text")

    candidates = []
    fence = _JSON_FENCE.search(text)
    if fence:
        candidates.append(fence.group(1))
    first, last = text.find("{"), text.rfind("}")
    if first != -1 and last > first:
        candidates.append(text[first:last + 1])
    candidates.append(text)

    for candidate in candidates:
        try:
            return json.loads(candidate.strip())
        except ValueError:
            continue
    raise ValueError("No JSON object found in text")


def build_action_call(action: str, scrape_url: Optional[str], search_query: Optional[str]) -> Tuple[str, Dict[str, Any]]:
    """Map a named mcp action to a tool name and arguments."""
    if action not in MCP_ACTIONS:
        raise InvokerError(f"Unknown mcp action '{action}'", kind="upstream_rejected")
    if action == "search":
        return MCP_ACTIONS[action], {"query": search_query or ""}
    if action == "scrape":
        return MCP_ACTIONS[action], {"url": scrape_url or "", "formats": ["markdown"]}
    return MCP_ACTIONS[action], {"url": scrape_url or ""}


def select_output_field(value: Any, output_field: Optional[str]) -> Any:
    """Pick part of a tool result: ``full``, ``first`` or a dotted path such as ``data.0.url``."""
    if not output_field or output_field == "full":
        return value
    if output_field == "first":
        if isinstance(value, list):
            return value[0] if value else None
        if isinstance(value, dict):
            for item in value.values():
                return select_output_field(item, "first") if isinstance(item, list) else item
            return None
        return value

    current = value
    for part in output_field.split("."):
        if isinstance(current, dict):
            current = current.get(part)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else None
        else:
            return None
    return current


class AgentInvoker:
    """
    Runs agent steps against an injected model client and tool client.

    Transient upstream failures are retried according to ``retry_config``;
    when retries run out an ``upstream_unavailable`` InvokerError is raised.
    """

    def __init__(
        self,
        model_client: ModelClient,
        tool_client: Optional[ToolClient] = None,
        retry_config: Optional[RetryConfig] = None,
        max_tool_rounds: int = 10,
        max_tokens: int = 4096,
        default_model: str = DEFAULT_MODEL,
        sleep: Callable[[float], None] = time.sleep
    ):
        self.model_client = model_client
        self.tool_client = tool_client
        self.retry_config = retry_config or RetryConfig()
        self.max_tool_rounds = max_tool_rounds
        self.max_tokens = max_tokens
        self.default_model = default_model
        self._sleep = sleep

    def invoke(
        self,
        instructions: str,
        model: Optional[str] = None,
        tools: Optional[List[ToolServer]] = None,
        output_format: Union[OutputFormat, str] = OutputFormat.TEXT,
        json_schema: Optional[Union[Dict[str, Any], str]] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> AgentResult:
        """
        Run one agent step.

        Args:
            instructions: Fully resolved prompt
            model: Model id; the invoker's default when omitted
            tools: Tool servers whose tools the model may call
            output_format: ``Text`` or ``JSON``
            json_schema: Schema the JSON output must satisfy
            cancel_event: Checked before every model call, retry and tool dispatch

        Returns:
            AgentResult with the output (text or parsed JSON) and the tool-call trace

        Raises:
            InvokerError: upstream_unavailable, upstream_rejected, tool_rounds_exhausted
                or invalid_structured_output
            ExecutionCancelledError: If the cancel event is set
        """
        model = model or self.default_model
        output_format = OutputFormat(output_format)
        schema = self._load_schema(json_schema) if output_format == OutputFormat.JSON else None

        tool_defs, tool_owners = self._discover_tools(tools or [], cancel_event)
        system = self._system_prompt(output_format, schema)
        messages: List[Dict[str, Any]] = [{"role": "user", "content": instructions}]
        trace: List[ToolCallRecord] = []
        rounds = 0

        while True:
            response = self._create_message(model, system, messages, tool_defs, cancel_event)
            if not response.tool_calls:
                break

            rounds += 1
            if rounds > self.max_tool_rounds:
                raise InvokerError(
                    f"Model requested more than {self.max_tool_rounds} tool rounds",
                    kind="tool_rounds_exhausted",
                    raw_text=response.text or None
                )

            messages.append({"role": "assistant", "content": _assistant_blocks(response)})
            result_blocks = []
            for call in response.tool_calls:
                _check_cancelled(cancel_event)
                record = self._dispatch_tool_call(call.name, call.arguments, tool_owners, cancel_event)
                trace.append(record)
                result_blocks.append({
                    "type": "tool_result",
                    "tool_use_id": call.id,
                    "content": record.result or "",
                    "is_error": record.is_error,
                })
            messages.append({"role": "user", "content": result_blocks})

        text = response.text
        if output_format == OutputFormat.JSON:
            output = self._parse_structured(text, schema)
        else:
            output = text

        logger.info(f"Agent step finished with model {model} after {rounds} tool rounds")
        return AgentResult(output=output, text=text, model=model, tool_calls=trace, rounds=rounds)

    def call_tool(
        self,
        server: ToolServer,
        name: str,
        arguments: Dict[str, Any],
        cancel_event: Optional[threading.Event] = None
    ) -> ToolResult:
        """Invoke one tool directly, with the invoker's retry policy."""
        if self.tool_client is None:
            raise InvokerError("No tool client configured", kind="upstream_rejected")
        _check_cancelled(cancel_event)
        return self._with_retry(
            lambda: self.tool_client.call_tool(server, name, arguments),
            f"tool call {name}",
            cancel_event
        )

    def _create_message(self, model, system, messages, tool_defs, cancel_event) -> ModelResponse:
        _check_cancelled(cancel_event)
        return self._with_retry(
            lambda: self.model_client.create_message(
                model=model,
                system=system,
                messages=messages,
                tools=tool_defs or None,
                max_tokens=self.max_tokens
            ),
            "model call",
            cancel_event
        )

    def _with_retry(self, func, operation: str, cancel_event):
        try:
            return execute_with_retry(func, self.retry_config, operation, cancel_event=cancel_event, sleep=self._sleep)
        except RetryExhaustedError as e:
            raise InvokerError(
                f"{operation} unavailable after {e.attempts} attempts: {e.last_error}",
                kind="upstream_unavailable"
            ) from e

    def _discover_tools(self, servers: List[ToolServer], cancel_event):
        tool_defs: List[Dict[str, Any]] = []
        owners: Dict[str, ToolServer] = {}
        if not servers:
            return tool_defs, owners
        if self.tool_client is None:
            raise InvokerError("Tools were requested but no tool client is configured", kind="upstream_rejected")

        for server in servers:
            _check_cancelled(cancel_event)
            descriptors = self._with_retry(
                lambda: self.tool_client.list_tools(server), f"tool discovery on {server.name}", cancel_event
            )
            for descriptor in descriptors:
                name = descriptor.get("name")
                if not name:
                    continue
                if name in owners:
                    logger.warning(f"Tool '{name}' offered by several servers; using '{owners[name].name}'")
                    continue
                owners[name] = server
                tool_defs.append({
                    "name": name,
                    "description": descriptor.get("description", ""),
                    "input_schema": descriptor.get("inputSchema") or {"type": "object", "properties": {}},
                })

        logger.debug(f"Discovered {len(tool_defs)} tools on {len(servers)} servers")
        return tool_defs, owners

    def _dispatch_tool_call(self, name, arguments, owners, cancel_event) -> ToolCallRecord:
        server = owners.get(name)
        if server is None:
            logger.warning(f"Model requested unknown tool '{name}'")
            return ToolCallRecord(name=name, arguments=arguments, result=f"Unknown tool: {name}", is_error=True)

        try:
            result = self.call_tool(server, name, arguments, cancel_event)
        except ExecutionCancelledError:
            raise
        except InvokerError as e:
            logger.warning(f"Tool '{name}' on '{server.name}' failed: {e.message}")
            return ToolCallRecord(server=server.name, name=name, arguments=arguments, result=e.message, is_error=True)

        return ToolCallRecord(
            server=server.name, name=name, arguments=arguments, result=result.text, is_error=result.is_error
        )

    def _load_schema(self, json_schema) -> Optional[Dict[str, Any]]:
        if json_schema is None or json_schema == "":
            return None
        if isinstance(json_schema, str):
            try:
                json_schema = json.loads(json_schema)
            except ValueError as e:
                raise InvokerError(f"JSON output schema is not valid JSON: {e}", kind="invalid_structured_output") from e
        try:
            Draft202012Validator.check_schema(json_schema)
        except SchemaError as e:
            raise InvokerError(f"Invalid JSON output schema: {e.message}", kind="invalid_structured_output") from e
        return json_schema

    def _system_prompt(self, output_format: OutputFormat, schema) -> Optional[str]:
        if output_format != OutputFormat.JSON:
            return None
        prompt = "Respond with a single JSON value and nothing else."
        if schema:
            prompt += f" The JSON must conform to this JSON Schema:\n{json.dumps(schema, indent=2)}"
        return prompt

    def _parse_structured(self, text: str, schema) -> Any:
        try:
            payload = extract_json(text)
        except ValueError as e:
            raise InvokerError(
                "Model output is not valid JSON", kind="invalid_structured_output", raw_text=text
            ) from e

        if schema:
            errors = sorted(Draft202012Validator(schema).iter_errors(payload), key=lambda e: list(e.path))
            if errors:
                raise InvokerError(
                    f"Model output does not match the schema: {'; '.join(e.message for e in errors)}",
                    kind="invalid_structured_output",
                    raw_text=text
                )
        return payload


def _assistant_blocks(response: ModelResponse) -> List[Dict[str, Any]]:
    if response.content:
        return response.content
    blocks: List[Dict[str, Any]] = []
    if response.text:
        blocks.append({"type": "text", "text": response.text})
    for call in response.tool_calls:
        blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.arguments})
    return blocks


def _check_cancelled(cancel_event: Optional[threading.Event]):
    if cancel_event is not None and cancel_event.is_set():
        raise ExecutionCancelledError("Agent step cancelled")
