"""LLM client used by the agent invoker."""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import anthropic

from ..models.core import ModelResponse, ToolCall
from .exceptions import InvokerError, TransientError
from .logging import get_logger


logger = get_logger(__name__)

DEFAULT_BASE_URL = "https://api.anthropic.com"
DEFAULT_ANTHROPIC_VERSION = "2023-06-01"
TRANSIENT_STATUS_CODES = {408, 409, 425, 429}


def strip_provider_prefix(model: str) -> str:
    """``anthropic/claude-sonnet-4-20250514`` -> ``claude-sonnet-4-20250514``."""
    if "/" in model:
        return model.split("/", 1)[1]
    return model


class ModelClient(ABC):
    """Interface to a chat model that can request tool calls."""

    @abstractmethod
    def create_message(
        self,
        model: str,
        system: Optional[str],
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 4096
    ) -> ModelResponse:
        """
        Send one conversation turn and return the model's reply.

        Messages use the Anthropic Messages shape: ``{"role", "content"}``, where
        content is a string or a list of content blocks. Tool results are sent as
        ``tool_result`` blocks in a user message.

        Raises:
            TransientError: For failures worth retrying (connection errors, timeouts, 429, 5xx)
            InvokerError: For other upstream rejections
        """


class AnthropicModelClient(ModelClient):
    """
    ModelClient for the Anthropic Messages API, built on the ``anthropic`` SDK.

    The SDK's own retries are disabled; retrying is left to the invoker's
    RetryConfig so attempts stay bounded and cancellable.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = DEFAULT_BASE_URL,
        anthropic_version: str = DEFAULT_ANTHROPIC_VERSION,
        timeout: float = 120.0,
        client: Optional[anthropic.Anthropic] = None
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.anthropic_version = anthropic_version
        self.timeout = timeout
        self._client = client

    @property
    def client(self) -> anthropic.Anthropic:
        if self._client is None:
            if not self.api_key:
                raise InvokerError("No API key configured for the model provider", kind="upstream_rejected")
            self._client = anthropic.Anthropic(
                api_key=self.api_key,
                base_url=self.base_url,
                timeout=self.timeout,
                max_retries=0,
                default_headers={"anthropic-version": self.anthropic_version}
            )
        return self._client

    def create_message(
        self,
        model: str,
        system: Optional[str],
        messages: List[Dict[str, Any]],
        tools: Optional[List[Dict[str, Any]]] = None,
        max_tokens: int = 4096
    ) -> ModelResponse:
        request: Dict[str, Any] = {
            "model": strip_provider_prefix(model),
            "max_tokens": max_tokens,
            "messages": messages,
        }
        if system:
            request["system"] = system
        if tools:
            request["tools"] = tools

        client = self.client
        logger.debug(f"Calling model {request['model']} with {len(messages)} messages and {len(tools or [])} tools")
        try:
            message = client.messages.create(**request)
        except anthropic.APIConnectionError as e:
            # APITimeoutError is a subclass
            raise TransientError(f"Model request failed: {e}") from e
        except anthropic.APIStatusError as e:
            raise _status_error(e) from e
        except anthropic.AnthropicError as e:
            raise InvokerError(f"Model request failed: {e}", kind="upstream_rejected") from e

        return parse_message(message)


def parse_message(message: Any) -> ModelResponse:
    """Build a ModelResponse from an SDK ``Message``."""
    content: List[Dict[str, Any]] = []
    text_parts = []
    tool_calls = []
    for block in getattr(message, "content", None) or []:
        block_type = getattr(block, "type", None)
        if block_type == "text":
            text_parts.append(block.text)
            content.append({"type": "text", "text": block.text})
        elif block_type == "tool_use":
            arguments = dict(block.input or {})
            tool_calls.append(ToolCall(id=block.id, name=block.name, arguments=arguments))
            content.append({"type": "tool_use", "id": block.id, "name": block.name, "input": arguments})
        elif hasattr(block, "model_dump"):
            content.append(block.model_dump(exclude_none=True))

    return ModelResponse(
        text="".join(text_parts),
        tool_calls=tool_calls,
        stop_reason=getattr(message, "stop_reason", None),
        content=content
    )


def _status_error(error: anthropic.APIStatusError) -> Exception:
    status_code = error.status_code
    detail = _error_message(error)
    if status_code in TRANSIENT_STATUS_CODES or status_code >= 500:
        return TransientError(
            f"Model provider returned {status_code}: {detail}",
            status_code=status_code,
            retry_after=_retry_after(error)
        )
    return InvokerError(
        f"Model provider rejected the request ({status_code}): {detail}",
        kind="upstream_rejected"
    ).add_details(status_code=status_code)


def _error_message(error: anthropic.APIStatusError) -> str:
    body = error.body
    if isinstance(body, dict):
        inner = body.get("error")
        if isinstance(inner, dict) and inner.get("message"):
            return inner["message"]
    return error.message


def _retry_after(error: anthropic.APIStatusError) -> Optional[float]:
    value = error.response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None
