"""Custom exceptions for the workflow graph engine with detailed error information."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from enum import Enum


class ErrorSeverity(Enum):
    """Error severity levels for categorizing exceptions."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ErrorCategory(Enum):
    """Categories of errors for better classification."""
    VALIDATION = "validation"
    INPUT = "input"
    EXECUTION = "execution"
    SCRIPT = "script"
    UPSTREAM = "upstream"
    STORAGE = "storage"
    CONFIGURATION = "configuration"
    INVARIANT = "invariant"


class WorkflowEngineError(Exception):
    """Base exception for all workflow engine errors.

    ``error_kind`` is the short machine-readable tag carried by terminal
    ``error`` events; subclasses override it.
    """

    error_kind = "engine_error"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        severity: ErrorSeverity = ErrorSeverity.MEDIUM,
        category: ErrorCategory = ErrorCategory.EXECUTION,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        retry_after: Optional[float] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.severity = severity
        self.category = category
        self.details = details or {}
        self.recoverable = recoverable
        self.retry_after = retry_after
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc)

    @property
    def node_id(self) -> Optional[str]:
        return self.context.get("node_id")

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging, events and API responses."""
        return {
            "error_code": self.error_code,
            "error_kind": self.error_kind,
            "message": self.message,
            "severity": self.severity.value,
            "category": self.category.value,
            "details": self.details,
            "recoverable": self.recoverable,
            "retry_after": self.retry_after,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
            "exception_type": self.__class__.__name__
        }

    def add_context(self, **kwargs):
        """Add additional context to the exception."""
        self.context.update(kwargs)
        return self

    def add_details(self, **kwargs):
        """Add additional details to the exception."""
        self.details.update(kwargs)
        return self


class GraphValidationError(WorkflowEngineError):
    """Raised when a graph fails structural validation; the run never starts."""

    error_kind = "validation_error"

    def __init__(
        self,
        message: str,
        node_id: Optional[str] = None,
        validation_errors: Optional[List[Dict[str, Any]]] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.VALIDATION,
            **kwargs
        )
        self.reason = message
        self.validation_errors = validation_errors or []
        if node_id:
            self.add_context(node_id=node_id)
        if validation_errors:
            self.add_details(validation_errors=validation_errors)


class InputError(WorkflowEngineError):
    """Raised when a required runtime input is missing or has the wrong type."""

    error_kind = "input_error"

    def __init__(self, message: str, variable: Optional[str] = None, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.INPUT,
            **kwargs
        )
        if variable:
            self.add_context(variable=variable)
        if node_id:
            self.add_context(node_id=node_id)


class ScriptError(WorkflowEngineError):
    """Raised when sandboxed script code fails to parse, throws or times out."""

    error_kind = "script_error"

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        kwargs.setdefault("category", ErrorCategory.SCRIPT)
        super().__init__(message, **kwargs)
        if node_id:
            self.add_context(node_id=node_id)


class ScriptTimeoutError(ScriptError):
    """Raised when a script exceeds its wall-clock time limit."""

    error_kind = "script_timeout"

    def __init__(self, message: str, timeout: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        if timeout is not None:
            self.add_details(timeout=timeout)


class InvokerError(WorkflowEngineError):
    """Raised for upstream model/tool failures, bad structured output or tool-round exhaustion.

    ``kind`` narrows the failure: ``upstream_unavailable``, ``upstream_rejected``,
    ``tool_rounds_exhausted``, ``invalid_structured_output``, ``tool_error``.
    """

    error_kind = "invoker_error"

    def __init__(
        self,
        message: str,
        kind: str = "upstream_rejected",
        raw_text: Optional[str] = None,
        node_id: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.UPSTREAM,
            **kwargs
        )
        self.kind = kind
        self.raw_text = raw_text
        self.add_details(kind=kind)
        if raw_text is not None:
            self.add_details(raw_text=raw_text)
        if node_id:
            self.add_context(node_id=node_id)


class TransientError(WorkflowEngineError):
    """Raised for transient upstream errors that should be retried."""

    error_kind = "transient_error"

    def __init__(self, message: str, status_code: Optional[int] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.MEDIUM,
            category=ErrorCategory.UPSTREAM,
            recoverable=True,
            **kwargs
        )
        self.status_code = status_code
        if status_code is not None:
            self.add_details(status_code=status_code)


class LoopSafetyViolation(WorkflowEngineError):
    """Internal invariant check: a loop ran past its bound. Should never surface."""

    error_kind = "loop_safety_violation"

    def __init__(self, message: str, node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.CRITICAL,
            category=ErrorCategory.INVARIANT,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)


class NodeTimeoutError(WorkflowEngineError):
    """Raised when a node exceeds its node-level timeout."""

    error_kind = "node_timeout"

    def __init__(self, message: str, node_id: Optional[str] = None, timeout: Optional[float] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if timeout is not None:
            self.add_details(timeout=timeout)


class ExecutionCancelledError(WorkflowEngineError):
    """Raised when a run is cancelled by an external signal."""

    error_kind = "cancelled"

    def __init__(self, message: str = "Execution cancelled", node_id: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)


class ApprovalRejectedError(WorkflowEngineError):
    """Raised when a human rejects a user-approval gate."""

    error_kind = "approval_rejected"

    def __init__(self, message: str, node_id: Optional[str] = None, note: Optional[str] = None, **kwargs):
        super().__init__(
            message,
            severity=ErrorSeverity.LOW,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if node_id:
            self.add_context(node_id=node_id)
        if note:
            self.add_details(note=note)


class ExecutionEngineError(WorkflowEngineError):
    """Raised when execution engine operations fail."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        **kwargs
    ):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(
            message,
            category=ErrorCategory.EXECUTION,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)


class RunNotFoundError(ExecutionEngineError):
    """Raised when a run id is unknown to the engine."""

    error_kind = "run_not_found"

    def __init__(self, run_id: str, **kwargs):
        super().__init__(f"Run '{run_id}' not found", run_id=run_id, severity=ErrorSeverity.LOW, **kwargs)


class StateManagementError(WorkflowEngineError):
    """Raised when run state bookkeeping fails."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        operation: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            **kwargs
        )
        if run_id:
            self.add_context(run_id=run_id)
        if operation:
            self.add_context(operation=operation)


class StorageError(WorkflowEngineError):
    """Raised when checkpoint storage operations fail."""

    error_kind = "storage_error"

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.STORAGE,
            recoverable=True,
            retry_after=3,
            **kwargs
        )
        if operation:
            self.add_context(operation=operation)
        if table:
            self.add_context(table=table)


class ConfigurationError(WorkflowEngineError):
    """Raised when configuration is invalid or missing."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        **kwargs
    ):
        super().__init__(
            message,
            severity=ErrorSeverity.HIGH,
            category=ErrorCategory.CONFIGURATION,
            **kwargs
        )
        if config_key:
            self.add_context(config_key=config_key)


def create_error_response(error: WorkflowEngineError) -> Dict[str, Any]:
    """Create a standardized error response from a WorkflowEngineError."""
    return {
        "error": error.error_code,
        "kind": error.error_kind,
        "message": error.message,
        "details": {
            **error.details,
            "severity": error.severity.value,
            "category": error.category.value,
            "recoverable": error.recoverable,
            "retry_after": error.retry_after,
            "timestamp": error.timestamp.isoformat()
        },
        "context": error.context
    }
