"""FastAPI REST endpoints for the workflow engine."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, ConfigDict, Field, model_validator

from ..core.execution_engine import ExecutionEngine
from ..core.exceptions import WorkflowEngineError, create_error_response
from ..core.logging import get_logger
from ..core.middleware import status_code_for_error
from ..core.normalizer import extract_graph_document, normalize_graph_document
from ..core.state_manager import StateManager
from ..models.core import Decision, ResumeSignal, RunStatus, RunSummary, ValidationResult
from .sse import SSE_HEADERS, EventStream


logger = get_logger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["workflow"])

# Global instances (initialized by the application factory)
_execution_engine: Optional[ExecutionEngine] = None
_state_manager: Optional[StateManager] = None


def init_dependencies(execution_engine: ExecutionEngine, state_manager: Optional[StateManager] = None):
    """Initialize the global dependencies."""
    global _execution_engine, _state_manager
    _execution_engine = execution_engine
    _state_manager = state_manager or execution_engine.state_manager


def get_execution_engine() -> ExecutionEngine:
    """Dependency to get execution engine."""
    if _execution_engine is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="Execution engine not initialized"
        )
    return _execution_engine


def get_state_manager() -> StateManager:
    """Dependency to get state manager."""
    if _state_manager is None:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail="State manager not initialized"
        )
    return _state_manager


def _http_error(error: WorkflowEngineError, action: str) -> HTTPException:
    status_code = status_code_for_error(error)
    if status_code >= 500:
        logger.error(f"Workflow engine error while {action}: {str(error)}")
    else:
        logger.warning(f"Workflow engine error while {action}: {str(error)}")
    return HTTPException(status_code=status_code, detail=create_error_response(error))


def _unexpected_error(error: Exception, action: str) -> HTTPException:
    logger.error(f"Unexpected error while {action}: {str(error)}", exc_info=True)
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "error": "InternalError",
            "message": f"An unexpected error occurred while {action}",
            "details": {"original_error": str(error)},
            "timestamp": datetime.now(timezone.utc).isoformat()
        }
    )


# Request/Response models
class ValidateWorkflowRequest(BaseModel):
    """Request model for graph validation."""
    graph: Dict[str, Any] = Field(..., description="Graph document with nodes and edges")


class NormalizeWorkflowRequest(BaseModel):
    """Request model for normalizing a generated graph document."""
    graph: Optional[Dict[str, Any]] = Field(None, description="Graph document to normalize")
    text: Optional[str] = Field(None, description="Generator output containing a graph document")

    @model_validator(mode="after")
    def require_source(self):
        if self.graph is None and not self.text:
            raise ValueError("Either 'graph' or 'text' must be provided")
        return self


class NormalizeWorkflowResponse(BaseModel):
    """Response model for normalization."""
    model_config = ConfigDict(populate_by_name=True)

    graph: Dict[str, Any] = Field(..., description="Normalized graph document")
    id_map: Dict[str, str] = Field(default_factory=dict, alias="idMap", description="Original to canonical node ids")
    validation: ValidationResult = Field(..., description="Validation result of the normalized graph")


class RunWorkflowRequest(BaseModel):
    """Request model for running a workflow."""
    model_config = ConfigDict(populate_by_name=True)

    graph: Dict[str, Any] = Field(..., description="Graph document to execute")
    inputs: Dict[str, Any] = Field(default_factory=dict, description="Runtime inputs bound by the start node")
    run_id: Optional[str] = Field(None, alias="runId", description="Optional caller-chosen run id")


class ResumeWorkflowRequest(BaseModel):
    """Request model for resuming a suspended run."""
    decision: Decision = Field(..., description="approve or reject")
    note: Optional[str] = Field(None, description="Optional reviewer note")


class CancelWorkflowResponse(BaseModel):
    """Response model for cancellation."""
    model_config = ConfigDict(populate_by_name=True)

    run_id: str = Field(..., alias="runId")
    cancelled: bool
    message: str


def _event_stream_response(stream: EventStream, run_id: str) -> StreamingResponse:
    return StreamingResponse(
        stream.frames(),
        media_type="text/event-stream",
        headers={**SSE_HEADERS, "X-Run-ID": run_id}
    )


# Endpoints

@router.post(
    "/workflows/validate",
    response_model=ValidationResult,
    summary="Validate a workflow graph",
    description="Check a graph document against the structural rules without running it"
)
async def validate_workflow(
    request: ValidateWorkflowRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> ValidationResult:
    """
    Validate a workflow graph.

    Returns the validation result; an invalid graph is reported in the body,
    not as an HTTP error.
    """
    try:
        result = execution_engine.validate(request.graph)
        logger.info(f"Validated graph: valid={result.is_valid}, errors={len(result.errors)}")
        return result
    except WorkflowEngineError as e:
        raise _http_error(e, "validating the graph")
    except Exception as e:
        raise _unexpected_error(e, "validating the graph")


@router.post(
    "/workflows/normalize",
    response_model=NormalizeWorkflowResponse,
    summary="Normalize a generated workflow graph",
    description="Assign canonical node ids, fill editor defaults and remap edges"
)
async def normalize_workflow(
    request: NormalizeWorkflowRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> NormalizeWorkflowResponse:
    """
    Normalize a graph document or generator output text.

    Raises:
        HTTPException: 400 if no graph document can be extracted from the text
    """
    try:
        document = request.graph if request.graph is not None else extract_graph_document(request.text)
        normalized, id_map = normalize_graph_document(document)
        return NormalizeWorkflowResponse(
            graph=normalized,
            id_map=id_map,
            validation=execution_engine.validate(normalized)
        )
    except WorkflowEngineError as e:
        raise _http_error(e, "normalizing the graph")
    except Exception as e:
        raise _unexpected_error(e, "normalizing the graph")


@router.post(
    "/runs",
    summary="Execute a workflow graph",
    description="Validate and run a graph, streaming execution events as server-sent events",
    responses={200: {"content": {"text/event-stream": {}}}}
)
async def run_workflow(
    request: RunWorkflowRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StreamingResponse:
    """
    Execute a workflow graph.

    The response streams one frame per execution event and closes with an
    ``end`` frame carrying the run status. An invalid graph is rejected with
    400 before any event is emitted.
    """
    stream = EventStream(on_disconnect=execution_engine.cancel)
    try:
        run_id = execution_engine.start_run(
            request.graph,
            request.inputs,
            sink=stream.push,
            run_id=request.run_id,
            on_finish=stream.finish
        )
    except WorkflowEngineError as e:
        raise _http_error(e, "starting the run")
    except Exception as e:
        raise _unexpected_error(e, "starting the run")

    stream.run_id = run_id
    logger.info(f"Streaming events for run {run_id}")
    return _event_stream_response(stream, run_id)


@router.post(
    "/runs/{run_id}/resume",
    summary="Resume a suspended run",
    description="Approve or reject the pending user-approval node and stream the remaining events",
    responses={200: {"content": {"text/event-stream": {}}}}
)
async def resume_workflow(
    run_id: str,
    request: ResumeWorkflowRequest,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> StreamingResponse:
    """
    Resume a suspended run.

    Raises:
        HTTPException: 404 if the run has no checkpoint, 409 if it is not suspended
    """
    stream = EventStream(on_disconnect=execution_engine.cancel)
    signal = ResumeSignal(run_id=run_id, decision=request.decision, note=request.note)
    try:
        execution_engine.start_resume(signal, sink=stream.push, on_finish=stream.finish)
    except WorkflowEngineError as e:
        raise _http_error(e, "resuming the run")
    except Exception as e:
        raise _unexpected_error(e, "resuming the run")

    stream.run_id = run_id
    logger.info(f"Streaming resumed events for run {run_id} (decision={request.decision.value})")
    return _event_stream_response(stream, run_id)


@router.post(
    "/runs/{run_id}/cancel",
    response_model=CancelWorkflowResponse,
    summary="Cancel workflow execution",
    description="Cancel a running or suspended run"
)
async def cancel_workflow(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> CancelWorkflowResponse:
    """Cancel a workflow run; ``cancelled`` is false when the run was not active."""
    try:
        logger.info(f"Cancelling workflow run: {run_id}")
        cancelled = execution_engine.cancel(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "cancelling the run")
    except Exception as e:
        raise _unexpected_error(e, "cancelling the run")

    if not cancelled:
        return CancelWorkflowResponse(
            run_id=run_id,
            cancelled=False,
            message=f"Run {run_id} could not be cancelled (may not be active)"
        )
    return CancelWorkflowResponse(run_id=run_id, cancelled=True, message=f"Run {run_id} cancellation requested")


@router.get(
    "/runs/{run_id}",
    response_model=RunSummary,
    summary="Get run status",
    description="Get the current status, node and outcome of a run"
)
async def get_run(
    run_id: str,
    execution_engine: ExecutionEngine = Depends(get_execution_engine)
) -> RunSummary:
    """
    Get the status of a run.

    Raises:
        HTTPException: 404 if the run is unknown
    """
    try:
        summary = execution_engine.get_run(run_id)
    except WorkflowEngineError as e:
        raise _http_error(e, "reading the run")
    except Exception as e:
        raise _unexpected_error(e, "reading the run")

    if summary is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "error": "RunNotFound",
                "message": f"Run '{run_id}' not found",
                "details": {"run_id": run_id}
            }
        )
    return summary


@router.get(
    "/runs",
    response_model=List[RunSummary],
    summary="List runs",
    description="List known runs, optionally filtered by status"
)
async def list_runs(
    status_filter: Optional[RunStatus] = Query(None, alias="status"),
    active: bool = False,
    state_manager: StateManager = Depends(get_state_manager)
) -> List[RunSummary]:
    """List runs in start order."""
    if active:
        return state_manager.list_active_runs()
    return state_manager.list_runs(status_filter)
