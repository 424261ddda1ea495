"""Structural validation of workflow graphs."""

from collections import deque
from typing import Dict, List, Optional, Set

from ..models.core import (
    Node,
    NodeKind,
    ValidationIssue,
    ValidationResult,
    WorkflowGraph,
)
from .exceptions import GraphValidationError
from .logging import get_logger
from .script_runner import ScriptRunner, SandboxedScriptRunner


logger = get_logger(__name__)

TRUE_KEYS = {"true", "yes"}
FALSE_KEYS = {"false", "no"}
LOOP_BODY_KEYS = {"body", "loop", "continue", "true"}
LOOP_EXIT_KEYS = {"exit", "done", "break", "false"}

BRANCHING_KINDS = {NodeKind.IF_ELSE, NodeKind.WHILE}

LOOP_CEILING_CLAMP = "clamp"
LOOP_CEILING_REJECT = "reject"


def if_else_keys(node: Node):
    """Return the (true, false) branch key sets accepted for an if-else node."""
    true_keys = set(TRUE_KEYS)
    false_keys = set(FALSE_KEYS)
    if node.config.true_label:
        true_keys.add(node.config.true_label.strip().lower())
    if node.config.false_label:
        false_keys.add(node.config.false_label.strip().lower())
    return true_keys, false_keys


class GraphValidator:
    """Checks that a workflow graph is safe to execute."""

    def __init__(
        self,
        max_loop_iterations: int = 100,
        loop_ceiling_policy: str = LOOP_CEILING_CLAMP,
        script_runner: Optional[ScriptRunner] = None
    ):
        if loop_ceiling_policy not in (LOOP_CEILING_CLAMP, LOOP_CEILING_REJECT):
            raise ValueError(f"Unknown loop ceiling policy: {loop_ceiling_policy}")
        self.max_loop_iterations = max_loop_iterations
        self.loop_ceiling_policy = loop_ceiling_policy
        self.script_runner = script_runner or SandboxedScriptRunner()

    def validate(self, graph: WorkflowGraph) -> ValidationResult:
        """
        Validate a graph for structural correctness.

        Args:
            graph: The graph to validate

        Returns:
            ValidationResult: every error found, plus warnings and the effective loop bounds
        """
        errors: List[ValidationIssue] = []
        warnings: List[str] = []
        loop_bounds: Dict[str, int] = {}

        active = self._active_nodes(graph)

        self._validate_start_and_end(active, errors)
        self._validate_unique_ids(graph, errors)
        self._validate_edge_references(graph, errors)
        self._validate_incoming_edges(graph, active, errors)
        self._validate_reachability(graph, active, errors)
        self._validate_cycles(graph, active, errors)
        self._validate_outgoing_edges(graph, active, errors)
        self._validate_loop_bounds(active, errors, warnings, loop_bounds)
        self._validate_scripts(active, errors)

        result = ValidationResult(
            is_valid=len(errors) == 0,
            errors=errors,
            warnings=warnings,
            loop_bounds=loop_bounds
        )

        logger.debug(f"Graph validation completed. Valid: {result.is_valid}, "
                     f"Errors: {len(result.errors)}, Warnings: {len(result.warnings)}")
        return result

    def ensure_valid(self, graph: WorkflowGraph) -> ValidationResult:
        """Validate ``graph`` and raise GraphValidationError if it has any error."""
        result = self.validate(graph)
        if not result.is_valid:
            first = result.errors[0]
            message = f"Graph validation failed: {'; '.join(issue.reason for issue in result.errors)}"
            logger.error(message)
            raise GraphValidationError(
                message,
                node_id=first.node_id,
                validation_errors=[issue.model_dump(by_alias=True) for issue in result.errors]
            )
        for warning in result.warnings:
            logger.warning(f"Graph validation warning: {warning}")
        return result

    def effective_max_iterations(self, node: Node) -> int:
        """Loop bound after ceiling enforcement."""
        return min(node.config.max_iterations, self.max_loop_iterations)

    def _active_nodes(self, graph: WorkflowGraph) -> List[Node]:
        """All nodes except notes that no edge touches."""
        connected = {edge.source for edge in graph.edges} | {edge.target for edge in graph.edges}
        return [
            node for node in graph.nodes
            if not (node.kind == NodeKind.NOTE and node.id not in connected)
        ]

    def _validate_start_and_end(self, nodes: List[Node], errors: List[ValidationIssue]):
        starts = [node for node in nodes if node.kind == NodeKind.START]
        ends = [node for node in nodes if node.kind == NodeKind.END]

        if not starts:
            errors.append(ValidationIssue(reason="Graph must contain exactly one start node, found none"))
        elif len(starts) > 1:
            errors.append(ValidationIssue(
                reason=f"Graph must contain exactly one start node, found {len(starts)}",
                node_id=starts[1].id
            ))
        if not ends:
            errors.append(ValidationIssue(reason="Graph must contain at least one end node"))

    def _validate_unique_ids(self, graph: WorkflowGraph, errors: List[ValidationIssue]):
        seen: Set[str] = set()
        for node in graph.nodes:
            if node.id in seen:
                errors.append(ValidationIssue(reason=f"Duplicate node id '{node.id}'", node_id=node.id))
            seen.add(node.id)

        seen_edges: Set[str] = set()
        for edge in graph.edges:
            if edge.id in seen_edges:
                errors.append(ValidationIssue(reason=f"Duplicate edge id '{edge.id}'", node_id=edge.source))
            seen_edges.add(edge.id)

    def _validate_edge_references(self, graph: WorkflowGraph, errors: List[ValidationIssue]):
        node_ids = {node.id for node in graph.nodes}
        for edge in graph.edges:
            if edge.source not in node_ids:
                errors.append(ValidationIssue(
                    reason=f"Edge '{edge.id}' references non-existent source node '{edge.source}'"
                ))
            if edge.target not in node_ids:
                errors.append(ValidationIssue(
                    reason=f"Edge '{edge.id}' references non-existent target node '{edge.target}'",
                    node_id=edge.source if edge.source in node_ids else None
                ))

    def _validate_incoming_edges(self, graph: WorkflowGraph, nodes: List[Node], errors: List[ValidationIssue]):
        for node in nodes:
            incoming = graph.incoming(node.id)
            if node.kind == NodeKind.START:
                if incoming:
                    errors.append(ValidationIssue(reason="Start node cannot have incoming edges", node_id=node.id))
            elif not incoming:
                errors.append(ValidationIssue(reason=f"Node '{node.id}' has no incoming edge", node_id=node.id))

    def _validate_reachability(self, graph: WorkflowGraph, nodes: List[Node], errors: List[ValidationIssue]):
        starts = [node for node in nodes if node.kind == NodeKind.START]
        if len(starts) != 1:
            return

        reachable = self._find_reachable_nodes(graph, starts[0].id)
        unreachable = [node.id for node in nodes if node.id not in reachable]
        for node_id in unreachable:
            errors.append(ValidationIssue(
                reason=f"Node '{node_id}' is not reachable from the start node", node_id=node_id
            ))

    def _validate_cycles(self, graph: WorkflowGraph, nodes: List[Node], errors: List[ValidationIssue]):
        """Every cycle must pass through a while node."""
        loop_ids = {node.id for node in nodes if node.kind == NodeKind.WHILE}
        cycle_node = self._find_cycle(graph, nodes, exclude=loop_ids)
        if cycle_node is not None:
            errors.append(ValidationIssue(
                reason=f"Cycle through node '{cycle_node}' does not pass through a while node",
                node_id=cycle_node
            ))

    def _validate_outgoing_edges(self, graph: WorkflowGraph, nodes: List[Node], errors: List[ValidationIssue]):
        for node in nodes:
            outgoing = graph.outgoing(node.id)

            if node.kind == NodeKind.END:
                if outgoing:
                    errors.append(ValidationIssue(reason="End node cannot have outgoing edges", node_id=node.id))

            elif node.kind == NodeKind.IF_ELSE:
                true_keys, false_keys = if_else_keys(node)
                self._validate_branch_edges(node, outgoing, true_keys, false_keys, ("true", "false"), errors)

            elif node.kind == NodeKind.WHILE:
                self._validate_branch_edges(node, outgoing, LOOP_BODY_KEYS, LOOP_EXIT_KEYS, ("body", "exit"), errors)

            elif len(outgoing) != 1:
                errors.append(ValidationIssue(
                    reason=f"Node '{node.id}' ({node.kind.value}) must have exactly one outgoing edge, "
                           f"found {len(outgoing)}",
                    node_id=node.id
                ))

    def _validate_branch_edges(self, node, outgoing, first_keys, second_keys, names, errors):
        first = [edge for edge in outgoing if edge.branch in first_keys]
        second = [edge for edge in outgoing if edge.branch in second_keys and edge not in first]
        other = [edge for edge in outgoing if edge not in first and edge not in second]

        if len(outgoing) != 2 or len(first) != 1 or len(second) != 1 or other:
            errors.append(ValidationIssue(
                reason=f"{node.kind.value} node '{node.id}' must have exactly one '{names[0]}' edge and one "
                       f"'{names[1]}' edge (labels {sorted(first_keys)} / {sorted(second_keys)})",
                node_id=node.id
            ))

    def _validate_loop_bounds(self, nodes, errors, warnings, loop_bounds):
        for node in nodes:
            if node.kind != NodeKind.WHILE:
                continue
            requested = node.config.max_iterations
            if requested < 0:
                errors.append(ValidationIssue(
                    reason=f"while node '{node.id}' maxIterations must be non-negative, got {requested}",
                    node_id=node.id
                ))
                continue
            if requested > self.max_loop_iterations:
                if self.loop_ceiling_policy == LOOP_CEILING_REJECT:
                    errors.append(ValidationIssue(
                        reason=f"while node '{node.id}' maxIterations {requested} exceeds the ceiling "
                               f"of {self.max_loop_iterations}",
                        node_id=node.id
                    ))
                    continue
                warnings.append(
                    f"while node '{node.id}' maxIterations {requested} clamped to {self.max_loop_iterations}"
                )
            loop_bounds[node.id] = self.effective_max_iterations(node)

    def _validate_scripts(self, nodes, errors):
        for node in nodes:
            script = _script_of(node)
            if script is None:
                continue
            for problem in self.script_runner.check(script):
                errors.append(ValidationIssue(
                    reason=f"Script of node '{node.id}' is invalid: {problem}", node_id=node.id
                ))

    def _find_reachable_nodes(self, graph: WorkflowGraph, start_node: str) -> Set[str]:
        """Find all nodes reachable from the start node using BFS."""
        reachable = set()
        queue = deque([start_node])

        while queue:
            current = queue.popleft()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in graph.outgoing(current):
                if edge.target not in reachable:
                    queue.append(edge.target)

        return reachable

    def _find_cycle(self, graph: WorkflowGraph, nodes: List[Node], exclude: Set[str]) -> Optional[str]:
        """Return a node on a cycle that avoids ``exclude``, or None when there is none."""
        node_ids = {node.id for node in nodes} - exclude
        adjacency: Dict[str, List[str]] = {node_id: [] for node_id in node_ids}
        for edge in graph.edges:
            if edge.source in node_ids and edge.target in node_ids:
                adjacency[edge.source].append(edge.target)

        visited: Set[str] = set()
        on_stack: Set[str] = set()

        for root in sorted(node_ids):
            if root in visited:
                continue
            stack = [(root, iter(adjacency[root]))]
            visited.add(root)
            on_stack.add(root)
            while stack:
                current, neighbours = stack[-1]
                advanced = False
                for neighbour in neighbours:
                    if neighbour in on_stack:
                        return neighbour
                    if neighbour not in visited:
                        visited.add(neighbour)
                        on_stack.add(neighbour)
                        stack.append((neighbour, iter(adjacency[neighbour])))
                        advanced = True
                        break
                if not advanced:
                    on_stack.discard(current)
                    stack.pop()

        return None


def _script_of(node: Node) -> Optional[str]:
    if node.kind == NodeKind.TRANSFORM:
        return node.config.transform_script
    if node.kind == NodeKind.IF_ELSE:
        return node.config.condition
    if node.kind == NodeKind.WHILE:
        return node.config.while_condition
    return None
