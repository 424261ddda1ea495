"""Execution engine for workflow graphs."""

import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from pydantic import ValidationError

from ..models.core import (
    Decision,
    Edge,
    EventKind,
    ExecutionContext,
    ExecutionEvent,
    InputVariable,
    Node,
    NodeKind,
    ResumeSignal,
    RunCheckpoint,
    RunError,
    RunResult,
    RunStatus,
    RunSummary,
    ValidationResult,
    VariableType,
    WorkflowGraph,
)
from .agent_invoker import AgentInvoker, build_action_call, select_output_field
from .exceptions import (
    ApprovalRejectedError,
    ExecutionCancelledError,
    ExecutionEngineError,
    GraphValidationError,
    InputError,
    InvokerError,
    LoopSafetyViolation,
    NodeTimeoutError,
    RunNotFoundError,
    WorkflowEngineError,
)
from .graph_validator import GraphValidator, LOOP_BODY_KEYS, LOOP_EXIT_KEYS, if_else_keys
from .logging import get_logger, logging_context
from .script_runner import ScriptRunner, SandboxedScriptRunner, coerce_condition
from .state_manager import StateManager
from .variable_resolver import VariableResolver


logger = get_logger(__name__)

EventSink = Callable[[ExecutionEvent], None]
FinishCallback = Callable[[Optional[RunResult]], None]

_POLL_INTERVAL = 0.05
_TRUE_STRINGS = {"true", "yes", "1", "on"}
_FALSE_STRINGS = {"false", "no", "0", "off"}


@dataclass
class _RunHandle:
    """Per-run cancellation and sequencing; never shared between runs."""
    run_id: str
    cancel_event: threading.Event
    sequence: int = 0
    future: Optional[Future] = None
    lock: threading.Lock = field(default_factory=threading.Lock)


@dataclass
class _RunState:
    handle: _RunHandle
    graph: WorkflowGraph
    context: ExecutionContext
    loop_bounds: Dict[str, int]
    sink: Optional[EventSink]
    events: List[ExecutionEvent] = field(default_factory=list)

    @property
    def run_id(self) -> str:
        return self.handle.run_id


@dataclass
class _Step:
    """What a node visit decided: follow ``edge``, finish, or suspend."""
    edge: Optional[Edge] = None
    completed: bool = False
    suspended: bool = False


class ExecutionEngine:
    """Walks workflow graphs one node at a time and reports every transition as an event."""

    def __init__(
        self,
        invoker: Optional[AgentInvoker] = None,
        state_manager: Optional[StateManager] = None,
        script_runner: Optional[ScriptRunner] = None,
        validator: Optional[GraphValidator] = None,
        resolver: Optional[VariableResolver] = None,
        max_concurrent_executions: int = 10,
        node_timeout: float = 300.0,
        script_timeout: float = 5.0,
        max_steps_per_run: int = 10000
    ):
        """Initialize the execution engine.

        Args:
            invoker: Agent/tool invoker used by agent and mcp nodes
            state_manager: Run registry and checkpoint store
            script_runner: Evaluator for transform scripts and conditions
            validator: Graph validator run before every execution
            resolver: Template variable resolver
            max_concurrent_executions: Size of the background run pool
            node_timeout: Default timeout in seconds for agent and mcp nodes
            script_timeout: Default timeout in seconds for scripts
            max_steps_per_run: Upper bound on node visits per run
        """
        self.invoker = invoker
        self.state_manager = state_manager or StateManager()
        self.script_runner = script_runner or SandboxedScriptRunner(default_timeout=script_timeout)
        self.validator = validator or GraphValidator(script_runner=self.script_runner)
        self.resolver = resolver or VariableResolver()
        self.node_timeout = node_timeout
        self.script_timeout = script_timeout
        self.max_steps_per_run = max_steps_per_run

        self._max_concurrent_executions = max_concurrent_executions
        self._executor = ThreadPoolExecutor(max_workers=max_concurrent_executions, thread_name_prefix="flowgraph-run")
        self._handles: Dict[str, _RunHandle] = {}
        self._handles_lock = threading.RLock()

        logger.info(f"ExecutionEngine initialized with max_concurrent_executions={max_concurrent_executions}")

    # public operations

    def validate(self, graph: Union[WorkflowGraph, Dict[str, Any]]) -> ValidationResult:
        """Validate a graph without running it. Documents that fail to load are reported as errors."""
        try:
            graph = self._load_graph(graph)
        except GraphValidationError as e:
            return ValidationResult(
                is_valid=False,
                errors=[{"reason": issue.get("reason", e.message), "nodeId": issue.get("nodeId")}
                        for issue in (e.validation_errors or [{"reason": e.message}])]
            )
        return self.validator.validate(graph)

    def run(
        self,
        graph: Union[WorkflowGraph, Dict[str, Any]],
        inputs: Optional[Dict[str, Any]] = None,
        sink: Optional[EventSink] = None,
        run_id: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> RunResult:
        """
        Execute a graph synchronously until it completes, fails or suspends.

        Args:
            graph: Graph to run
            inputs: Runtime inputs bound by the start node
            sink: Callable receiving each event in order
            run_id: Run identifier; generated when omitted
            cancel_event: External cancellation signal

        Returns:
            RunResult with the final status and every event emitted

        Raises:
            GraphValidationError: If the graph is invalid; no event is emitted
        """
        graph, loop_bounds = self._prepare(graph)
        handle = self._open_handle(run_id or str(uuid.uuid4()), cancel_event)
        return self._execute_new_run(handle, graph, loop_bounds, inputs or {}, sink)

    def start_run(
        self,
        graph: Union[WorkflowGraph, Dict[str, Any]],
        inputs: Optional[Dict[str, Any]] = None,
        sink: Optional[EventSink] = None,
        run_id: Optional[str] = None,
        on_finish: Optional[FinishCallback] = None
    ) -> str:
        """
        Validate a graph and run it on the engine's thread pool.

        ``on_finish`` receives the RunResult once the run completes, fails or
        suspends. Returns the run id.
        """
        graph, loop_bounds = self._prepare(graph)
        handle = self._open_handle(run_id or str(uuid.uuid4()), None)
        handle.future = self._executor.submit(self._execute_new_run, handle, graph, loop_bounds, inputs or {}, sink)
        self._watch(handle, on_finish)
        logger.info(f"Started workflow execution: run_id={handle.run_id}")
        return handle.run_id

    def resume(
        self,
        signal: ResumeSignal,
        sink: Optional[EventSink] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> RunResult:
        """
        Continue a suspended run with a human decision.

        Raises:
            RunNotFoundError: If no checkpoint exists for the run
            ExecutionEngineError: If the run is not suspended or is already running
        """
        checkpoint, handle = self._claim_checkpoint(signal.run_id, cancel_event)
        return self._execute_resume(handle, checkpoint, signal, sink)

    def start_resume(self, signal: ResumeSignal, sink: Optional[EventSink] = None,
                     on_finish: Optional[FinishCallback] = None) -> str:
        """Resume a suspended run on the engine's thread pool."""
        checkpoint, handle = self._claim_checkpoint(signal.run_id, None)
        handle.future = self._executor.submit(self._execute_resume, handle, checkpoint, signal, sink)
        self._watch(handle, on_finish)
        logger.info(f"Resuming workflow execution: run_id={handle.run_id}")
        return handle.run_id

    def cancel(self, run_id: str) -> bool:
        """
        Cancel a running or suspended run.

        A running run stops at its next cancellation check and fails with kind
        ``cancelled``. A suspended run loses its checkpoint and is marked failed.

        Returns:
            True if the run was running or suspended, False otherwise
        """
        with self._handles_lock:
            handle = self._handles.get(run_id)
            if handle is not None:
                handle.cancel_event.set()
                logger.info(f"Cancellation requested for run {run_id}")
                return True

            checkpoint = self.state_manager.load_checkpoint(run_id)
            if checkpoint is None or checkpoint.status != RunStatus.SUSPENDED:
                logger.warning(f"Attempted to cancel non-active execution: {run_id}")
                return False
            self.state_manager.delete_checkpoint(run_id)

        self.state_manager.update_run(
            run_id,
            status=RunStatus.FAILED,
            error=RunError(kind=ExecutionCancelledError.error_kind, message="Run cancelled while suspended",
                           node_id=checkpoint.cursor)
        )
        logger.info(f"Cancelled suspended run {run_id}")
        return True

    def get_run(self, run_id: str) -> Optional[RunSummary]:
        return self.state_manager.get_run(run_id)

    def list_active_runs(self) -> List[RunSummary]:
        return self.state_manager.list_active_runs()

    def is_execution_active(self, run_id: str) -> bool:
        with self._handles_lock:
            return run_id in self._handles

    def shutdown(self, wait: bool = True, cancel_active: bool = False) -> None:
        """Shut down the thread pools, optionally cancelling runs in progress."""
        if cancel_active:
            with self._handles_lock:
                for handle in self._handles.values():
                    handle.cancel_event.set()
        self._executor.shutdown(wait=wait)
        logger.info("ExecutionEngine shut down")

    # run lifecycle

    def _load_graph(self, graph: Union[WorkflowGraph, Dict[str, Any]]) -> WorkflowGraph:
        if isinstance(graph, WorkflowGraph):
            return graph
        try:
            return WorkflowGraph.model_validate(graph)
        except ValidationError as e:
            issues = [
                {"reason": f"{'.'.join(str(part) for part in error['loc'])}: {error['msg']}", "nodeId": None}
                for error in e.errors()
            ]
            raise GraphValidationError(
                f"Graph document is malformed: {'; '.join(issue['reason'] for issue in issues)}",
                validation_errors=issues
            ) from e

    def _prepare(self, graph):
        graph = self._load_graph(graph)
        result = self.validator.ensure_valid(graph)
        return graph, result.loop_bounds

    def _open_handle(self, run_id: str, cancel_event: Optional[threading.Event], sequence: int = 0,
                     register: bool = True) -> _RunHandle:
        with self._handles_lock:
            if run_id in self._handles:
                raise ExecutionEngineError(f"Run {run_id} is already executing", run_id=run_id)
            if register:
                self.state_manager.register_run(run_id)
            handle = _RunHandle(run_id=run_id, cancel_event=cancel_event or threading.Event(), sequence=sequence)
            self._handles[run_id] = handle
        return handle

    def _close_handle(self, handle: _RunHandle) -> None:
        with self._handles_lock:
            # a suspended run may already have been resumed under a new handle
            if self._handles.get(handle.run_id) is handle:
                del self._handles[handle.run_id]

    def _watch(self, handle: _RunHandle, on_finish: Optional[FinishCallback]) -> None:
        if on_finish is None:
            return

        def _done(future: Future) -> None:
            try:
                result = future.result()
            except Exception as e:
                logger.error(f"Background run {handle.run_id} raised: {str(e)}", exc_info=True)
                result = None
            on_finish(result)

        handle.future.add_done_callback(_done)

    def _claim_checkpoint(self, run_id: str, cancel_event: Optional[threading.Event]):
        with self._handles_lock:
            if run_id in self._handles:
                raise ExecutionEngineError(f"Run {run_id} is already executing", run_id=run_id)
            checkpoint = self.state_manager.load_checkpoint(run_id)
            if checkpoint is None:
                raise RunNotFoundError(run_id)
            if checkpoint.status != RunStatus.SUSPENDED:
                raise ExecutionEngineError(f"Run {run_id} is not suspended", run_id=run_id)
            self.state_manager.delete_checkpoint(run_id)
            handle = self._open_handle(run_id, cancel_event, sequence=checkpoint.sequence, register=False)
        return checkpoint, handle

    def _execute_new_run(self, handle, graph, loop_bounds, inputs, sink) -> RunResult:
        with logging_context(run_id=handle.run_id):
            try:
                self.state_manager.update_run(handle.run_id, status=RunStatus.RUNNING)
                state = _RunState(handle=handle, graph=graph, context=ExecutionContext(),
                                  loop_bounds=loop_bounds, sink=sink)
                logger.info(f"Run {handle.run_id} started")
                return self._drive(state, graph.start_node.id, inputs)
            finally:
                self._close_handle(handle)

    def _execute_resume(self, handle, checkpoint: RunCheckpoint, signal: ResumeSignal, sink) -> RunResult:
        with logging_context(run_id=handle.run_id):
            try:
                self.state_manager.update_run(handle.run_id, status=RunStatus.RUNNING, current_node=checkpoint.cursor)
                loop_bounds = {
                    node.id: self.validator.effective_max_iterations(node)
                    for node in checkpoint.graph.nodes_of_kind(NodeKind.WHILE)
                }
                state = _RunState(handle=handle, graph=checkpoint.graph, context=checkpoint.context,
                                  loop_bounds=loop_bounds, sink=sink)
                logger.info(f"Run {handle.run_id} resumed at node {checkpoint.cursor} with decision {signal.decision.value}")

                node_id = checkpoint.cursor
                try:
                    node = self._require_node(state, node_id)
                    payload = {"decision": signal.decision.value, "note": signal.note}
                    self._emit(state, node_id, EventKind.RESUMED, payload)
                    if signal.decision == Decision.REJECT:
                        raise ApprovalRejectedError(
                            f"Approval rejected at node '{node_id}'", node_id=node_id, note=signal.note
                        )
                    state.context.node_outputs[node_id] = payload
                    self._emit(state, node_id, EventKind.OUTPUT, payload)
                    next_node = self._traverse(state, self._sole_edge(state, node))
                except Exception as e:
                    return self._fail(state, node_id, e)

                return self._drive(state, next_node)
            finally:
                self._close_handle(handle)

    def _drive(self, state: _RunState, node_id: str, inputs: Optional[Dict[str, Any]] = None) -> RunResult:
        """Visit nodes from ``node_id`` until the run completes, fails or suspends."""
        try:
            while True:
                self._check_cancelled(state, node_id)
                state.context.step_count += 1
                if state.context.step_count > self.max_steps_per_run:
                    raise LoopSafetyViolation(
                        f"Run exceeded {self.max_steps_per_run} steps", node_id=node_id
                    )

                node = self._require_node(state, node_id)
                self.state_manager.update_run(state.run_id, current_node=node_id)
                with logging_context(node_id=node_id):
                    step = self._visit(state, node, inputs)

                if step.completed:
                    return self._complete(state)
                if step.suspended:
                    return self._suspend(state, node_id)
                node_id = self._traverse(state, step.edge)
        except Exception as e:
            return self._fail(state, node_id, e)

    def _visit(self, state: _RunState, node: Node, inputs: Optional[Dict[str, Any]]) -> _Step:
        metadata = {"kind": node.kind.value, "name": node.label}

        if node.kind == NodeKind.START:
            # bind before announcing the node: an input error is the only event
            bound = self._bind_inputs(node, inputs or {})
            state.context.inputs = bound
            self._emit(state, node.id, EventKind.STARTED, None, metadata)
            self._emit(state, node.id, EventKind.OUTPUT, bound)
            return _Step(edge=self._sole_edge(state, node))

        self._emit(state, node.id, EventKind.STARTED, None, metadata)
        logger.debug(f"Executing node {node.id} ({node.kind.value})")

        handler = getattr(self, f"_execute_{node.kind.value.replace('-', '_')}")
        return handler(state, node)

    def _complete(self, state: _RunState) -> RunResult:
        output = state.context.last_output
        self.state_manager.update_run(state.run_id, status=RunStatus.COMPLETED, output=output)
        logger.info(f"Run {state.run_id} completed")
        return RunResult(
            run_id=state.run_id, status=RunStatus.COMPLETED, output=output,
            events=state.events, warnings=list(state.context.warnings)
        )

    def _suspend(self, state: _RunState, node_id: str) -> RunResult:
        # status and checkpoint were committed by _execute_user_approval
        logger.info(f"Run {state.run_id} suspended at node {node_id}")
        return RunResult(
            run_id=state.run_id, status=RunStatus.SUSPENDED, pending_node_id=node_id,
            events=state.events, warnings=list(state.context.warnings)
        )

    def _fail(self, state: _RunState, node_id: Optional[str], error: Exception) -> RunResult:
        if isinstance(error, WorkflowEngineError):
            if error.node_id is None and node_id:
                error.add_context(node_id=node_id)
            kind = error.kind if isinstance(error, InvokerError) else error.error_kind
            message = error.message
            details = dict(error.details)
            logger.error(f"Run {state.run_id} failed at node {node_id}: [{kind}] {message}")
        else:
            kind = "internal_error"
            message = f"{type(error).__name__}: {error}"
            details = {}
            logger.error(f"Run {state.run_id} failed at node {node_id} with unexpected error: {message}", exc_info=True)

        run_error = RunError(kind=kind, message=message, node_id=node_id, details=details)
        self._emit(
            state, node_id, EventKind.ERROR,
            {"kind": kind, "message": message, "details": details},
            {"errorKind": kind}
        )
        self.state_manager.update_run(state.run_id, status=RunStatus.FAILED, error=run_error)
        return RunResult(
            run_id=state.run_id, status=RunStatus.FAILED, error=run_error,
            events=state.events, warnings=list(state.context.warnings)
        )

    # node kinds

    def _execute_end(self, state: _RunState, node: Node) -> _Step:
        self._emit(state, node.id, EventKind.OUTPUT, state.context.last_output)
        return _Step(completed=True)

    def _execute_note(self, state: _RunState, node: Node) -> _Step:
        self._emit(state, node.id, EventKind.OUTPUT, None)
        return _Step(edge=self._sole_edge(state, node))

    def _execute_agent(self, state: _RunState, node: Node) -> _Step:
        config = node.config
        instructions = self.resolver.resolve(config.instructions, state.context)
        invoker = self._require_invoker(node)

        result = self._call_with_timeout(
            state, node,
            lambda cancel_event: invoker.invoke(
                instructions,
                model=config.model,
                tools=config.mcp_tools,
                output_format=config.output_format,
                json_schema=config.json_output_schema,
                cancel_event=cancel_event
            )
        )

        state.context.record_output(node.id, result.output)
        self._emit(state, node.id, EventKind.OUTPUT, result.output, {
            "model": result.model,
            "rounds": result.rounds,
            "toolCalls": [call.model_dump(by_alias=True) for call in result.tool_calls],
        })
        return _Step(edge=self._sole_edge(state, node))

    def _execute_transform(self, state: _RunState, node: Node) -> _Step:
        value = self._run_script(state, node, node.config.transform_script)
        state.context.record_output(node.id, value)
        self._emit(state, node.id, EventKind.OUTPUT, value)
        return _Step(edge=self._sole_edge(state, node))

    def _execute_if_else(self, state: _RunState, node: Node) -> _Step:
        decision = coerce_condition(self._run_script(state, node, node.config.condition))
        state.context.node_outputs[node.id] = decision

        true_keys, false_keys = if_else_keys(node)
        edge = self._branch_edge(state, node, true_keys if decision else false_keys)
        self._emit(state, node.id, EventKind.OUTPUT, decision, {"branch": edge.branch, "edgeId": edge.id})
        return _Step(edge=edge)

    def _execute_while(self, state: _RunState, node: Node) -> _Step:
        bound = state.loop_bounds.get(node.id, self.validator.effective_max_iterations(node))
        counters = state.context.iteration_counters
        counter = counters.get(node.id, 0)
        if counter > bound:
            raise LoopSafetyViolation(
                f"while node '{node.id}' ran {counter} iterations, bound is {bound}", node_id=node.id
            )

        iteration = counter + 1
        forced = iteration > bound
        if forced:
            proceed = False
        else:
            proceed = coerce_condition(
                self._run_script(state, node, node.config.while_condition, {"iteration": iteration})
            )

        if proceed:
            counters[node.id] = iteration
            edge = self._branch_edge(state, node, LOOP_BODY_KEYS)
        else:
            counters.pop(node.id, None)
            edge = self._branch_edge(state, node, LOOP_EXIT_KEYS)

        completed = iteration if proceed else counter
        state.context.node_outputs[node.id] = {"iterations": completed}
        self._emit(state, node.id, EventKind.OUTPUT, {"iteration": completed, "continue": proceed, "forced": forced},
                   {"branch": edge.branch, "edgeId": edge.id})
        return _Step(edge=edge)

    def _execute_user_approval(self, state: _RunState, node: Node) -> _Step:
        message = self.resolver.resolve(node.config.message, state.context) if node.config.message else None

        # Checkpoint, status and handle release happen under the handles lock,
        # so cancel() either stops the run here or finds the saved checkpoint.
        with self._handles_lock:
            self._check_cancelled(state, node.id)
            event = self._new_event(state, node.id, EventKind.SUSPENDED, {"message": message, "pendingNodeId": node.id})
            self.state_manager.save_checkpoint(RunCheckpoint(
                run_id=state.run_id,
                graph=state.graph,
                context=state.context,
                cursor=node.id,
                sequence=event.sequence
            ))
            self.state_manager.update_run(state.run_id, status=RunStatus.SUSPENDED, current_node=node.id)
            self._handles.pop(state.run_id, None)

        self._deliver(state, event)
        return _Step(suspended=True)

    def _execute_mcp(self, state: _RunState, node: Node) -> _Step:
        config = node.config
        invoker = self._require_invoker(node)
        server = config.mcp_servers[0]

        if config.tool_name:
            tool_name = config.tool_name
            arguments = self.resolver.resolve_value(config.arguments, state.context)
        else:
            tool_name, arguments = build_action_call(
                config.mcp_action,
                self.resolver.resolve(config.scrape_url, state.context) if config.scrape_url else None,
                self.resolver.resolve(config.search_query, state.context) if config.search_query else None
            )

        result = self._call_with_timeout(
            state, node, lambda cancel_event: invoker.call_tool(server, tool_name, arguments, cancel_event)
        )
        if result.is_error:
            raise InvokerError(
                f"Tool '{tool_name}' on '{server.name}' returned an error: {result.text}",
                kind="tool_error", raw_text=result.text, node_id=node.id
            )

        value = select_output_field(result.value, config.output_field)
        state.context.record_output(node.id, value)
        self._emit(state, node.id, EventKind.OUTPUT, value, {"server": server.name, "tool": tool_name})
        return _Step(edge=self._sole_edge(state, node))

    # helpers

    def _bind_inputs(self, node: Node, inputs: Dict[str, Any]) -> Dict[str, Any]:
        """Apply declared types, defaults and required checks to the runtime inputs."""
        bound = dict(inputs)
        for variable in node.config.input_variables:
            raw = inputs.get(variable.name)
            if raw is None or raw == "":
                if variable.default_value is not None:
                    raw = variable.default_value
                elif variable.required:
                    raise InputError(
                        f"Missing required input '{variable.name}'", variable=variable.name, node_id=node.id
                    )
                else:
                    bound.pop(variable.name, None)
                    continue
            bound[variable.name] = _coerce_input(variable, raw, node.id)
        return bound

    def _run_script(self, state: _RunState, node: Node, script: str, extra: Optional[Dict[str, Any]] = None) -> Any:
        bindings = {
            "input": state.context.inputs,
            "lastOutput": state.context.last_output,
            "nodeOutputs": state.context.node_outputs,
        }
        if extra:
            bindings.update(extra)
        timeout = node.config.timeout if node.config.timeout is not None else self.script_timeout
        return self.script_runner.run(
            script, bindings, timeout=timeout, cancel_event=state.handle.cancel_event, node_id=node.id
        )

    def _call_with_timeout(self, state: _RunState, node: Node, function: Callable[[threading.Event], Any]) -> Any:
        """
        Run a blocking upstream call under the node timeout.

        The call gets its own cancel event, set when the run is cancelled or
        the node times out, so the invoker stops at its next check. Each call
        runs on its own daemon thread: a call abandoned on timeout finishes in
        the background without holding a slot other runs wait for.
        """
        timeout = getattr(node.config, "timeout", None)
        if timeout is None:
            timeout = self.node_timeout
        call_cancel = threading.Event()
        future: Future = Future()

        def _target():
            if not future.set_running_or_notify_cancel():
                return
            try:
                future.set_result(function(call_cancel))
            except BaseException as e:
                future.set_exception(e)

        threading.Thread(target=_target, name=f"flowgraph-node-{node.id}", daemon=True).start()

        waited = 0.0
        while True:
            try:
                return future.result(timeout=_POLL_INTERVAL)
            except FutureTimeoutError:
                waited += _POLL_INTERVAL
            if state.handle.cancel_event.is_set():
                call_cancel.set()
                raise ExecutionCancelledError(f"Run cancelled during node '{node.id}'", node_id=node.id)
            if waited >= timeout:
                call_cancel.set()
                raise NodeTimeoutError(
                    f"Node '{node.id}' exceeded its {timeout}s timeout", node_id=node.id, timeout=timeout
                )

    def _check_cancelled(self, state: _RunState, node_id: str) -> None:
        if state.handle.cancel_event.is_set():
            raise ExecutionCancelledError(f"Run cancelled before node '{node_id}'", node_id=node_id)

    def _require_node(self, state: _RunState, node_id: str) -> Node:
        node = state.graph.get_node(node_id)
        if node is None:
            raise ExecutionEngineError(f"Node '{node_id}' not found in graph", run_id=state.run_id)
        return node

    def _require_invoker(self, node: Node) -> AgentInvoker:
        if self.invoker is None:
            raise InvokerError("No agent invoker configured", kind="upstream_rejected", node_id=node.id)
        return self.invoker

    def _sole_edge(self, state: _RunState, node: Node) -> Edge:
        outgoing = state.graph.outgoing(node.id)
        if len(outgoing) != 1:
            raise ExecutionEngineError(
                f"Node '{node.id}' has {len(outgoing)} outgoing edges, expected 1", run_id=state.run_id
            )
        return outgoing[0]

    def _branch_edge(self, state: _RunState, node: Node, keys) -> Edge:
        for edge in state.graph.outgoing(node.id):
            if edge.branch in keys:
                return edge
        raise ExecutionEngineError(
            f"Node '{node.id}' has no outgoing edge labelled one of {sorted(keys)}", run_id=state.run_id
        )

    def _traverse(self, state: _RunState, edge: Edge) -> str:
        state.context.visited_edge_trace.append(edge.id)
        return edge.target

    def _emit(self, state: _RunState, node_id: Optional[str], kind: EventKind, payload: Any = None,
              metadata: Optional[Dict[str, Any]] = None) -> ExecutionEvent:
        return self._deliver(state, self._new_event(state, node_id, kind, payload, metadata))

    def _new_event(self, state: _RunState, node_id: Optional[str], kind: EventKind, payload: Any = None,
                   metadata: Optional[Dict[str, Any]] = None) -> ExecutionEvent:
        with state.handle.lock:
            state.handle.sequence += 1
            event = ExecutionEvent(
                run_id=state.run_id,
                sequence=state.handle.sequence,
                node_id=node_id,
                event_kind=kind,
                payload=payload,
                metadata=metadata or {}
            )
        return event

    def _deliver(self, state: _RunState, event: ExecutionEvent) -> ExecutionEvent:
        state.events.append(event)

        if state.sink is not None:
            try:
                state.sink(event)
            except Exception as e:
                logger.error(f"Event sink failed for run {state.run_id} event {event.sequence}: {str(e)}")
        return event


def _coerce_input(variable: InputVariable, value: Any, node_id: str) -> Any:
    """Coerce a runtime input to its declared type."""
    def _error():
        return InputError(
            f"Input '{variable.name}' must be a {variable.type.value}, got {value!r}",
            variable=variable.name, node_id=node_id
        )

    if variable.type == VariableType.STRING:
        if isinstance(value, str):
            return value
        if isinstance(value, (int, float, bool)):
            return str(value).lower() if isinstance(value, bool) else str(value)
        raise _error()

    if variable.type == VariableType.NUMBER:
        if isinstance(value, bool):
            raise _error()
        if isinstance(value, (int, float)):
            return value
        if isinstance(value, str):
            text = value.strip()
            try:
                return int(text)
            except ValueError:
                pass
            try:
                return float(text)
            except ValueError:
                raise _error()
        raise _error()

    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)) and value in (0, 1):
        return bool(value)
    if isinstance(value, str):
        text = value.strip().lower()
        if text in _TRUE_STRINGS:
            return True
        if text in _FALSE_STRINGS:
            return False
    raise _error()
