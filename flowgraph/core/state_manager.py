"""Run registry and suspension checkpoints."""

import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError

from ..models.core import RunCheckpoint, RunError, RunStatus, RunSummary, WorkflowGraph, ExecutionContext
from ..storage.database import Database
from ..storage.models import RunCheckpointModel
from .error_recovery import RetryConfig, RetryExhaustedError, execute_with_retry
from .exceptions import StateManagementError, StorageError
from .logging import get_logger


logger = get_logger(__name__)

_UNSET = object()


class StateManager:
    """
    Tracks run status and stores checkpoints of suspended runs.

    Run summaries live in memory. Checkpoints are kept in memory and, when a
    database is configured, in the ``run_checkpoints`` table so a suspended run
    can be resumed by another engine instance.
    """

    def __init__(self, database: Optional[Database] = None, retry_config: Optional[RetryConfig] = None):
        self.database = database
        self.retry_config = retry_config or RetryConfig(
            max_attempts=3, base_delay=0.5, max_delay=5.0, retryable_exceptions=[StorageError]
        )
        self._runs: Dict[str, RunSummary] = {}
        self._checkpoints: Dict[str, RunCheckpoint] = {}
        self._lock = threading.RLock()
        if self.database is not None:
            self.database.create_tables()
        logger.info(f"StateManager initialized (persistent checkpoints: {self.database is not None})")

    def register_run(self, run_id: str) -> RunSummary:
        """
        Register a new run as pending.

        Raises:
            StateManagementError: If the run id is empty or already registered
        """
        if not run_id or not run_id.strip():
            raise StateManagementError("Run ID cannot be empty", operation="register_run")

        with self._lock:
            if run_id in self._runs:
                raise StateManagementError(f"Run {run_id} already exists", run_id=run_id, operation="register_run")
            summary = RunSummary(run_id=run_id, status=RunStatus.PENDING)
            self._runs[run_id] = summary

        logger.debug(f"Registered run {run_id}")
        return summary

    def update_run(
        self,
        run_id: str,
        status: Optional[RunStatus] = None,
        current_node: Any = _UNSET,
        output: Any = _UNSET,
        error: Optional[RunError] = None
    ) -> RunSummary:
        """Update the summary of a run, registering it first when it is unknown (resumed runs)."""
        with self._lock:
            summary = self._runs.get(run_id) or RunSummary(run_id=run_id, status=RunStatus.PENDING)
            updates: Dict[str, Any] = {"updated_at": datetime.now(timezone.utc)}
            if status is not None:
                updates["status"] = status
            if current_node is not _UNSET:
                updates["current_node"] = current_node
            if output is not _UNSET:
                updates["output"] = output
            if error is not None:
                updates["error"] = error
            summary = summary.model_copy(update=updates)
            self._runs[run_id] = summary
        return summary

    def get_run(self, run_id: str) -> Optional[RunSummary]:
        """Summary of a run; falls back to a stored checkpoint for runs suspended by another process."""
        with self._lock:
            summary = self._runs.get(run_id)
        if summary is not None:
            return summary

        checkpoint = self.load_checkpoint(run_id)
        if checkpoint is None:
            return None
        return RunSummary(
            run_id=run_id,
            status=checkpoint.status,
            current_node=checkpoint.cursor,
            started_at=checkpoint.created_at,
            updated_at=checkpoint.created_at
        )

    def list_runs(self, status: Optional[RunStatus] = None) -> List[RunSummary]:
        with self._lock:
            runs = list(self._runs.values())
        if status is not None:
            runs = [run for run in runs if run.status == status]
        return sorted(runs, key=lambda run: run.started_at)

    def list_active_runs(self) -> List[RunSummary]:
        """Runs that are pending, running or suspended."""
        return [run for run in self.list_runs() if not run.status.is_terminal]

    def forget_run(self, run_id: str) -> bool:
        """Drop a terminal run from the registry."""
        with self._lock:
            summary = self._runs.get(run_id)
            if summary is None or not summary.status.is_terminal:
                return False
            del self._runs[run_id]
        return True

    def save_checkpoint(self, checkpoint: RunCheckpoint) -> None:
        """
        Store the checkpoint of a suspended run.

        Raises:
            StorageError: If the database write keeps failing
        """
        with self._lock:
            self._checkpoints[checkpoint.run_id] = checkpoint

        if self.database is not None:
            self._with_retry(lambda: self._write_checkpoint(checkpoint), "save_checkpoint")

        logger.info(f"Saved checkpoint for run {checkpoint.run_id} at node {checkpoint.cursor}")

    def load_checkpoint(self, run_id: str) -> Optional[RunCheckpoint]:
        with self._lock:
            checkpoint = self._checkpoints.get(run_id)
        if checkpoint is not None or self.database is None:
            return checkpoint
        return self._with_retry(lambda: self._read_checkpoint(run_id), "load_checkpoint")

    def delete_checkpoint(self, run_id: str) -> None:
        with self._lock:
            self._checkpoints.pop(run_id, None)
        if self.database is not None:
            self._with_retry(lambda: self._remove_checkpoint(run_id), "delete_checkpoint")

    def _write_checkpoint(self, checkpoint: RunCheckpoint) -> None:
        try:
            with self.database.session() as db:
                row = db.get(RunCheckpointModel, checkpoint.run_id)
                values = {
                    "status": checkpoint.status.value,
                    "cursor": checkpoint.cursor,
                    "graph": checkpoint.graph.model_dump(mode="json", by_alias=True),
                    "context": checkpoint.context.model_dump(mode="json", by_alias=True),
                    "sequence": checkpoint.sequence,
                }
                if row is None:
                    db.add(RunCheckpointModel(run_id=checkpoint.run_id, created_at=checkpoint.created_at, **values))
                else:
                    for key, value in values.items():
                        setattr(row, key, value)
        except SQLAlchemyError as e:
            logger.error(f"Database error while saving checkpoint: {str(e)}")
            raise StorageError(f"Failed to save checkpoint: {str(e)}", operation="save_checkpoint",
                               table=RunCheckpointModel.__tablename__)

    def _read_checkpoint(self, run_id: str) -> Optional[RunCheckpoint]:
        try:
            with self.database.session() as db:
                row = db.get(RunCheckpointModel, run_id)
                if row is None:
                    return None
                checkpoint = RunCheckpoint(
                    run_id=row.run_id,
                    graph=WorkflowGraph.model_validate(row.graph),
                    context=ExecutionContext.model_validate(row.context),
                    cursor=row.cursor,
                    sequence=row.sequence,
                    status=RunStatus(row.status),
                    created_at=row.created_at
                )
        except SQLAlchemyError as e:
            logger.error(f"Database error while loading checkpoint: {str(e)}")
            raise StorageError(f"Failed to load checkpoint: {str(e)}", operation="load_checkpoint",
                               table=RunCheckpointModel.__tablename__)

        with self._lock:
            self._checkpoints[run_id] = checkpoint
        return checkpoint

    def _remove_checkpoint(self, run_id: str) -> None:
        try:
            with self.database.session() as db:
                row = db.get(RunCheckpointModel, run_id)
                if row is not None:
                    db.delete(row)
        except SQLAlchemyError as e:
            logger.error(f"Database error while deleting checkpoint: {str(e)}")
            raise StorageError(f"Failed to delete checkpoint: {str(e)}", operation="delete_checkpoint",
                               table=RunCheckpointModel.__tablename__)

    def _with_retry(self, func, operation: str):
        try:
            return execute_with_retry(func, self.retry_config, operation)
        except RetryExhaustedError as e:
            raise e.last_error
