"""Core workflow engine components."""

from .exceptions import (
    WorkflowEngineError,
    GraphValidationError,
    InputError,
    ScriptError,
    ScriptTimeoutError,
    InvokerError,
    TransientError,
    LoopSafetyViolation,
    NodeTimeoutError,
    ExecutionCancelledError,
    ApprovalRejectedError,
    ExecutionEngineError,
    RunNotFoundError,
    StateManagementError,
    StorageError,
    ConfigurationError,
)
from .logging import setup_logging, get_logger
from .variable_resolver import VariableResolver
from .script_runner import ScriptRunner, SandboxedScriptRunner, IsolatedScriptRunner
from .graph_validator import GraphValidator
from .model_client import ModelClient, AnthropicModelClient
from .tool_client import ToolClient, HttpToolClient
from .agent_invoker import AgentInvoker
from .state_manager import StateManager
from .execution_engine import ExecutionEngine
from .normalizer import extract_graph_document, normalize_graph_document

__all__ = [
    "WorkflowEngineError",
    "GraphValidationError",
    "InputError",
    "ScriptError",
    "ScriptTimeoutError",
    "InvokerError",
    "TransientError",
    "LoopSafetyViolation",
    "NodeTimeoutError",
    "ExecutionCancelledError",
    "ApprovalRejectedError",
    "ExecutionEngineError",
    "RunNotFoundError",
    "StateManagementError",
    "StorageError",
    "ConfigurationError",
    "setup_logging",
    "get_logger",
    "VariableResolver",
    "ScriptRunner",
    "SandboxedScriptRunner",
    "IsolatedScriptRunner",
    "GraphValidator",
    "ModelClient",
    "AnthropicModelClient",
    "ToolClient",
    "HttpToolClient",
    "AgentInvoker",
    "StateManager",
    "ExecutionEngine",
    "extract_graph_document",
    "normalize_graph_document",
]
