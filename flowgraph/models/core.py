"""Core Pydantic models for the workflow graph engine."""

import json
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


_NODE_ID_PATTERN = re.compile(r'^[a-zA-Z0-9_-]+$')


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class NodeKind(str, Enum):
    """Enumeration of node kinds."""
    START = "start"
    END = "end"
    AGENT = "agent"
    TRANSFORM = "transform"
    IF_ELSE = "if-else"
    WHILE = "while"
    USER_APPROVAL = "user-approval"
    MCP = "mcp"
    NOTE = "note"


class RunStatus(str, Enum):
    """Enumeration of workflow run statuses."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SUSPENDED = "suspended"

    @property
    def is_terminal(self) -> bool:
        return self in (RunStatus.COMPLETED, RunStatus.FAILED)


class EventKind(str, Enum):
    """Enumeration of execution event kinds."""
    STARTED = "started"
    OUTPUT = "output"
    ERROR = "error"
    SUSPENDED = "suspended"
    RESUMED = "resumed"


class VariableType(str, Enum):
    """Types a start node may declare for its input variables."""
    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"


class OutputFormat(str, Enum):
    """Agent output formats."""
    TEXT = "Text"
    JSON = "JSON"

    @classmethod
    def _missing_(cls, value):
        if isinstance(value, str):
            for member in cls:
                if member.value.lower() == value.strip().lower():
                    return member
        return None


class Decision(str, Enum):
    """Human decision carried by a resume signal."""
    APPROVE = "approve"
    REJECT = "reject"


# --- Node configuration variants -------------------------------------------


class NodeConfigBase(BaseModel):
    """Base for per-kind node configuration; editor keys are ignored."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class InputVariable(BaseModel):
    """A runtime input declared by the start node."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., description="Variable name, referenced as {{input.<name>}}")
    type: VariableType = Field(default=VariableType.STRING, description="Declared value type")
    required: bool = Field(default=False, description="Whether the run fails when the value is missing")
    default_value: Optional[Any] = Field(default=None, alias="defaultValue", description="Value used when none is supplied")
    description: Optional[str] = Field(default=None, description="Human-readable description")

    @field_validator('name')
    @classmethod
    def validate_name(cls, name):
        """Ensure the variable name is a valid identifier."""
        name = name.strip()
        if not re.match(r'^[A-Za-z_][A-Za-z0-9_]*$', name):
            raise ValueError(f"Input variable name '{name}' must be an identifier")
        return name


class ToolServer(BaseModel):
    """A remote tool server an agent or mcp node may call."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    name: str = Field(..., description="Display name of the server")
    url: str = Field(..., description="Endpoint URL; may contain ${VAR} placeholders")
    access_token: Optional[str] = Field(default=None, alias="accessToken", description="Bearer token; may contain placeholders")
    headers: Dict[str, str] = Field(default_factory=dict, description="Extra HTTP headers")

    @model_validator(mode='before')
    @classmethod
    def fill_name(cls, data):
        """Editor documents sometimes carry only ``label`` or ``id``."""
        if isinstance(data, dict) and not data.get("name"):
            data = dict(data)
            data["name"] = data.get("label") or data.get("id") or data.get("url", "tool-server")
        return data


class StartConfig(NodeConfigBase):
    kind: Literal["start"] = "start"
    input_variables: List[InputVariable] = Field(default_factory=list, alias="inputVariables")


class EndConfig(NodeConfigBase):
    kind: Literal["end"] = "end"


class AgentConfig(NodeConfigBase):
    kind: Literal["agent"] = "agent"
    instructions: str = Field(..., description="Prompt template")
    model: Optional[str] = Field(default=None, description="Model id, e.g. anthropic/claude-sonnet-4-20250514")
    output_format: OutputFormat = Field(default=OutputFormat.TEXT, alias="outputFormat")
    json_output_schema: Optional[Union[Dict[str, Any], str]] = Field(default=None, alias="jsonOutputSchema")
    mcp_tools: List[ToolServer] = Field(default_factory=list, alias="mcpTools")
    timeout: Optional[float] = Field(default=None, description="Node timeout in seconds")

    @field_validator('instructions')
    @classmethod
    def validate_instructions(cls, instructions):
        if not instructions or not instructions.strip():
            raise ValueError("Agent instructions cannot be empty")
        return instructions


class TransformConfig(NodeConfigBase):
    kind: Literal["transform"] = "transform"
    transform_script: str = Field(..., alias="transformScript")
    timeout: Optional[float] = None


class IfElseConfig(NodeConfigBase):
    kind: Literal["if-else"] = "if-else"
    condition: str = Field(..., description="Script evaluated to a boolean")
    true_label: Optional[str] = Field(default=None, alias="trueLabel")
    false_label: Optional[str] = Field(default=None, alias="falseLabel")
    timeout: Optional[float] = None


class WhileConfig(NodeConfigBase):
    kind: Literal["while"] = "while"
    while_condition: str = Field(..., alias="whileCondition")
    max_iterations: int = Field(default=10, alias="maxIterations")
    timeout: Optional[float] = None

    @field_validator('max_iterations', mode='before')
    @classmethod
    def validate_max_iterations(cls, value):
        """Reject fractional or non-numeric bounds; the ceiling is enforced by the validator."""
        if isinstance(value, bool):
            raise ValueError("maxIterations must be an integer")
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("maxIterations must be an integer")
            value = int(value)
        if isinstance(value, str):
            value = int(value.strip())
        return value


class UserApprovalConfig(NodeConfigBase):
    kind: Literal["user-approval"] = "user-approval"
    message: Optional[str] = Field(default=None, description="Prompt shown to the approver; template-resolved")


class McpConfig(NodeConfigBase):
    kind: Literal["mcp"] = "mcp"
    mcp_servers: List[ToolServer] = Field(..., alias="mcpServers", min_length=1)
    tool_name: Optional[str] = Field(default=None, alias="toolName")
    arguments: Dict[str, Any] = Field(default_factory=dict)
    mcp_action: Optional[Literal["scrape", "search", "crawl", "map"]] = Field(default=None, alias="mcpAction")
    scrape_url: Optional[str] = Field(default=None, alias="scrapeUrl")
    search_query: Optional[str] = Field(default=None, alias="searchQuery")
    output_field: str = Field(default="full", alias="outputField")
    timeout: Optional[float] = None

    @model_validator(mode='after')
    def validate_target(self):
        if not self.tool_name and not self.mcp_action:
            raise ValueError("mcp node needs either toolName or mcpAction")
        return self


class NoteConfig(NodeConfigBase):
    kind: Literal["note"] = "note"
    note_text: Optional[str] = Field(default=None, alias="noteText")


NodeConfig = Annotated[
    Union[
        StartConfig, EndConfig, AgentConfig, TransformConfig, IfElseConfig,
        WhileConfig, UserApprovalConfig, McpConfig, NoteConfig,
    ],
    Field(discriminator="kind"),
]


# --- Graph ------------------------------------------------------------------


class Node(BaseModel):
    """A typed step in a workflow graph.

    Accepts the compact shape ``{id, kind, config}`` as well as the editor
    document shape ``{id, type, position, data: {nodeType, nodeName, ...}}``.
    """
    id: str = Field(..., description="Unique identifier for the node")
    kind: NodeKind = Field(..., description="Node kind")
    name: Optional[str] = Field(default=None, description="Display name")
    config: NodeConfig

    @model_validator(mode='before')
    @classmethod
    def coerce_document_shape(cls, data):
        if not isinstance(data, dict):
            return data
        data = dict(data)
        raw_config = data.get("config")
        if raw_config is None:
            raw_config = data.get("data") or {}
        if isinstance(raw_config, BaseModel):
            raw_config = raw_config.model_dump(by_alias=True)
        raw_config = dict(raw_config)

        kind = data.get("kind") or data.get("type") or raw_config.get("nodeType") or raw_config.get("kind")
        if isinstance(kind, Enum):
            kind = kind.value
        if kind is None:
            raise ValueError(f"Node '{data.get('id')}' has no kind")
        raw_config["kind"] = kind

        if not data.get("name"):
            data["name"] = raw_config.get("nodeName") or raw_config.get("label")
        return {"id": data.get("id"), "kind": kind, "name": data.get("name"), "config": raw_config}

    @field_validator('id')
    @classmethod
    def validate_id_format(cls, id_value):
        """Ensure node ID follows valid format."""
        if not id_value or not id_value.strip():
            raise ValueError("Node ID cannot be empty")
        if not _NODE_ID_PATTERN.match(id_value.strip()):
            raise ValueError("Node ID must contain only alphanumeric characters, underscores, and hyphens")
        return id_value.strip()

    @model_validator(mode='after')
    def validate_config_kind(self):
        if self.config.kind != self.kind.value:
            raise ValueError(f"Node '{self.id}' config does not match kind '{self.kind.value}'")
        return self

    @property
    def label(self) -> str:
        return self.name or self.id


class Edge(BaseModel):
    """A directed connection between two nodes, optionally labeled for branch selection."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str = Field(default="", description="Edge identifier")
    source: str = Field(..., description="Source node ID")
    target: str = Field(..., description="Target node ID")
    label: Optional[str] = Field(default=None, description="Branch label")
    source_handle: Optional[str] = Field(default=None, alias="sourceHandle", description="Editor handle id")

    @field_validator('source', 'target')
    @classmethod
    def validate_node_ids(cls, node_id):
        if not node_id or not node_id.strip():
            raise ValueError("Node ID cannot be empty")
        return node_id.strip()

    @model_validator(mode='after')
    def default_id(self):
        if not self.id:
            self.id = f"edge-{self.source}-{self.target}"
        return self

    @property
    def branch(self) -> Optional[str]:
        """Normalized branch key: the label, falling back to the source handle."""
        key = self.label if self.label else self.source_handle
        if key is None:
            return None
        key = str(key).strip().lower()
        return key or None


class WorkflowGraph(BaseModel):
    """A workflow graph document: nodes plus edges."""
    model_config = ConfigDict(frozen=True)

    nodes: List[Node] = Field(..., description="Nodes in the graph")
    edges: List[Edge] = Field(default_factory=list, description="Edges connecting nodes")

    def get_node(self, node_id: str) -> Optional[Node]:
        for node in self.nodes:
            if node.id == node_id:
                return node
        return None

    def outgoing(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.source == node_id]

    def incoming(self, node_id: str) -> List[Edge]:
        return [edge for edge in self.edges if edge.target == node_id]

    def nodes_of_kind(self, kind: NodeKind) -> List[Node]:
        return [node for node in self.nodes if node.kind == kind]

    @property
    def start_node(self) -> Optional[Node]:
        starts = self.nodes_of_kind(NodeKind.START)
        return starts[0] if len(starts) == 1 else None


# --- Execution --------------------------------------------------------------


class ExecutionContext(BaseModel):
    """Mutable state owned by exactly one run."""
    model_config = ConfigDict(populate_by_name=True)

    inputs: Dict[str, Any] = Field(default_factory=dict)
    last_output: Optional[Any] = Field(default=None, alias="lastOutput")
    node_outputs: Dict[str, Any] = Field(default_factory=dict, alias="nodeOutputs")
    iteration_counters: Dict[str, int] = Field(default_factory=dict, alias="iterationCounters")
    visited_edge_trace: List[str] = Field(default_factory=list, alias="visitedEdgeTrace")
    warnings: List[str] = Field(default_factory=list)
    step_count: int = Field(default=0, alias="stepCount")

    def record_output(self, node_id: str, value: Any) -> None:
        """Store an output-producing node's result."""
        self.last_output = value
        self.node_outputs[node_id] = value

    def add_warning(self, message: str) -> None:
        if message not in self.warnings:
            self.warnings.append(message)


class ExecutionEvent(BaseModel):
    """Immutable record of one run state transition."""
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    sequence: int = Field(..., description="Monotonic per run, continues across resume")
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    event_kind: EventKind = Field(..., alias="eventKind")
    payload: Any = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    timestamp: datetime = Field(default_factory=_utcnow)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready representation with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)


class RunError(BaseModel):
    """Terminal error details of a failed run."""
    model_config = ConfigDict(populate_by_name=True)

    kind: str
    message: str
    node_id: Optional[str] = Field(default=None, alias="nodeId")
    details: Dict[str, Any] = Field(default_factory=dict)


class RunResult(BaseModel):
    """Outcome of driving a run until it completes, fails or suspends."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    status: RunStatus
    output: Optional[Any] = None
    error: Optional[RunError] = None
    pending_node_id: Optional[str] = Field(default=None, alias="pendingNodeId")
    events: List[ExecutionEvent] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class ResumeSignal(BaseModel):
    """Out-of-band decision that resumes a suspended run."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    decision: Decision
    note: Optional[str] = None


class RunCheckpoint(BaseModel):
    """Just enough state to resume a suspended run at the exact next node."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    graph: WorkflowGraph
    context: ExecutionContext
    cursor: str = Field(..., description="Node id awaiting a decision")
    sequence: int = Field(default=0, description="Last emitted event sequence number")
    status: RunStatus = RunStatus.SUSPENDED
    created_at: datetime = Field(default_factory=_utcnow)


class RunSummary(BaseModel):
    """Status information about a run."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    status: RunStatus
    current_node: Optional[str] = Field(default=None, alias="currentNode")
    output: Optional[Any] = None
    error: Optional[RunError] = None
    started_at: datetime = Field(default_factory=_utcnow, alias="startedAt")
    updated_at: datetime = Field(default_factory=_utcnow, alias="updatedAt")


# --- Validation ---------------------------------------------------------------


class ValidationIssue(BaseModel):
    """One structural problem found in a graph."""
    model_config = ConfigDict(populate_by_name=True)

    reason: str
    node_id: Optional[str] = Field(default=None, alias="nodeId")


class ValidationResult(BaseModel):
    """Result of graph validation."""
    model_config = ConfigDict(populate_by_name=True)

    is_valid: bool = Field(..., alias="isValid", description="Whether the graph is valid")
    errors: List[ValidationIssue] = Field(default_factory=list, description="Validation errors")
    warnings: List[str] = Field(default_factory=list, description="Validation warnings")
    loop_bounds: Dict[str, int] = Field(
        default_factory=dict, alias="loopBounds",
        description="Effective maxIterations per while node after ceiling enforcement"
    )


# --- Invoker ------------------------------------------------------------------


class ToolCall(BaseModel):
    """A tool invocation requested by the model."""
    id: str
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)


class ModelResponse(BaseModel):
    """One model reply: final text and/or requested tool calls."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    tool_calls: List[ToolCall] = Field(default_factory=list, alias="toolCalls")
    stop_reason: Optional[str] = Field(default=None, alias="stopReason")
    content: List[Dict[str, Any]] = Field(default_factory=list, description="Raw content blocks, echoed back on tool rounds")


class ToolResult(BaseModel):
    """Result of one remote tool invocation."""
    model_config = ConfigDict(populate_by_name=True)

    text: str = ""
    structured: Optional[Any] = None
    is_error: bool = Field(default=False, alias="isError")

    @property
    def value(self) -> Any:
        """Structured content when present, else the text parsed as JSON when possible."""
        if self.structured is not None:
            return self.structured
        try:
            return json.loads(self.text)
        except (TypeError, ValueError):
            return self.text


class ToolCallRecord(BaseModel):
    """Trace entry for a tool call made during an agent step."""
    model_config = ConfigDict(populate_by_name=True)

    server: Optional[str] = None
    name: str
    arguments: Dict[str, Any] = Field(default_factory=dict)
    result: Optional[str] = None
    is_error: bool = Field(default=False, alias="isError")


class AgentResult(BaseModel):
    """Outcome of one agent invocation."""
    model_config = ConfigDict(populate_by_name=True)

    output: Any = None
    text: str = ""
    model: str
    tool_calls: List[ToolCallRecord] = Field(default_factory=list, alias="toolCalls")
    rounds: int = 0
