"""Data models for the workflow graph engine."""

from .core import (
    AgentConfig,
    AgentResult,
    Decision,
    Edge,
    EndConfig,
    EventKind,
    ExecutionContext,
    ExecutionEvent,
    IfElseConfig,
    InputVariable,
    McpConfig,
    ModelResponse,
    Node,
    NodeKind,
    NoteConfig,
    OutputFormat,
    ResumeSignal,
    RunCheckpoint,
    RunError,
    RunResult,
    RunStatus,
    RunSummary,
    StartConfig,
    ToolCall,
    ToolCallRecord,
    ToolResult,
    ToolServer,
    TransformConfig,
    UserApprovalConfig,
    ValidationIssue,
    ValidationResult,
    VariableType,
    WhileConfig,
    WorkflowGraph,
)

__all__ = [
    "AgentConfig",
    "AgentResult",
    "Decision",
    "Edge",
    "EndConfig",
    "EventKind",
    "ExecutionContext",
    "ExecutionEvent",
    "IfElseConfig",
    "InputVariable",
    "McpConfig",
    "ModelResponse",
    "Node",
    "NodeKind",
    "NoteConfig",
    "OutputFormat",
    "ResumeSignal",
    "RunCheckpoint",
    "RunError",
    "RunResult",
    "RunStatus",
    "RunSummary",
    "StartConfig",
    "ToolCall",
    "ToolCallRecord",
    "ToolResult",
    "ToolServer",
    "TransformConfig",
    "UserApprovalConfig",
    "ValidationIssue",
    "ValidationResult",
    "VariableType",
    "WhileConfig",
    "WorkflowGraph",
]
