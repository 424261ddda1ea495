"""Tests for structural graph validation."""

import pytest

from conftest import edge, graph, linear_graph, node
from flowgraph.core.exceptions import GraphValidationError
from flowgraph.core.graph_validator import GraphValidator
from flowgraph.models.core import WorkflowGraph


def load(document) -> WorkflowGraph:
    return WorkflowGraph.model_validate(document)


def reasons(result):
    return [issue.reason for issue in result.errors]


def loop_document(max_iterations=5):
    return graph(
        [
            node("start", "start"),
            node("loop", "while", whileCondition="iteration < 3", maxIterations=max_iterations),
            node("body", "transform", transformScript="lastOutput"),
            node("end", "end"),
        ],
        [
            edge("start", "loop"),
            edge("loop", "body", "body"),
            edge("body", "loop"),
            edge("loop", "end", "exit"),
        ],
    )


class TestGraphValidator:
    """Test cases for GraphValidator."""

    def setup_method(self):
        self.validator = GraphValidator(max_loop_iterations=10)

    def test_linear_graph_is_valid(self):
        result = self.validator.validate(load(linear_graph(node("t", "transform", transformScript="1"))))

        assert result.is_valid
        assert result.errors == []

    def test_missing_start_node(self):
        document = graph([node("a", "transform", transformScript="1"), node("end", "end")], [edge("a", "end")])

        result = self.validator.validate(load(document))

        assert not result.is_valid
        assert "Graph must contain exactly one start node, found none" in reasons(result)

    def test_multiple_start_nodes(self):
        document = graph(
            [node("s1", "start"), node("s2", "start"), node("end", "end")],
            [edge("s1", "end"), edge("s2", "end")],
        )

        result = self.validator.validate(load(document))

        assert "Graph must contain exactly one start node, found 2" in reasons(result)

    def test_missing_end_node(self):
        document = graph([node("start", "start"), node("t", "transform", transformScript="1")], [edge("start", "t")])

        result = self.validator.validate(load(document))

        assert "Graph must contain at least one end node" in reasons(result)

    def test_duplicate_node_ids(self):
        document = linear_graph()
        document["nodes"].append(node("end", "end"))

        result = self.validator.validate(load(document))

        assert "Duplicate node id 'end'" in reasons(result)

    def test_dangling_edge(self):
        document = linear_graph()
        document["edges"].append(edge("start", "ghost"))

        result = self.validator.validate(load(document))

        assert any("non-existent target node 'ghost'" in reason for reason in reasons(result))

    def test_node_without_incoming_edge(self):
        document = linear_graph()
        document["nodes"].append(node("orphan", "transform", transformScript="1"))
        document["edges"].append(edge("orphan", "end"))

        result = self.validator.validate(load(document))

        assert "Node 'orphan' has no incoming edge" in reasons(result)
        assert "Node 'orphan' is not reachable from the start node" in reasons(result)

    def test_start_with_incoming_edge(self):
        document = linear_graph(node("t", "transform", transformScript="1"))
        document["edges"].append(edge("t", "start"))

        result = self.validator.validate(load(document))

        assert "Start node cannot have incoming edges" in reasons(result)

    def test_cycle_without_while_node(self):
        document = graph(
            [
                node("start", "start"),
                node("a", "transform", transformScript="1"),
                node("b", "if-else", condition="true"),
                node("end", "end"),
            ],
            [edge("start", "a"), edge("a", "b"), edge("b", "a", "true"), edge("b", "end", "false")],
        )

        result = self.validator.validate(load(document))

        assert any("does not pass through a while node" in reason for reason in reasons(result))

    def test_cycle_through_while_node_is_valid(self):
        result = self.validator.validate(load(loop_document()))

        assert result.is_valid, reasons(result)
        assert result.loop_bounds == {"loop": 5}

    def test_while_needs_body_and_exit_edges(self):
        document = loop_document()
        document["edges"][3]["label"] = "body"

        result = self.validator.validate(load(document))

        assert any("must have exactly one 'body' edge and one 'exit' edge" in r for r in reasons(result))

    def test_if_else_needs_true_and_false_edges(self):
        document = graph(
            [node("start", "start"), node("check", "if-else", condition="true"), node("e1", "end"), node("e2", "end")],
            [edge("start", "check"), edge("check", "e1", "true"), edge("check", "e2")],
        )

        result = self.validator.validate(load(document))

        assert not result.is_valid
        assert result.errors[0].node_id == "check"

    def test_if_else_custom_labels(self):
        document = graph(
            [
                node("start", "start"),
                node("check", "if-else", condition="true", trueLabel="Ship", falseLabel="Hold"),
                node("e1", "end"),
                node("e2", "end"),
            ],
            [edge("start", "check"), edge("check", "e1", "ship"), edge("check", "e2", "HOLD")],
        )

        assert self.validator.validate(load(document)).is_valid

    def test_plain_node_needs_one_outgoing_edge(self):
        document = linear_graph(node("t", "transform", transformScript="1"))
        document["nodes"].append(node("end2", "end"))
        document["edges"].append(edge("t", "end2"))

        result = self.validator.validate(load(document))

        assert any("(transform) must have exactly one outgoing edge, found 2" in r for r in reasons(result))

    def test_end_node_with_outgoing_edge(self):
        document = linear_graph()
        document["nodes"].append(node("end2", "end"))
        document["edges"].append(edge("end", "end2"))

        result = self.validator.validate(load(document))

        assert "End node cannot have outgoing edges" in reasons(result)

    def test_unconnected_notes_are_ignored(self):
        document = linear_graph()
        document["nodes"].append(node("memo", "note", noteText="todo"))

        assert self.validator.validate(load(document)).is_valid

    def test_invalid_script_is_reported(self):
        document = linear_graph(node("t", "transform", transformScript="import os"))

        result = self.validator.validate(load(document))

        assert "Script of node 't' is invalid: imports are not allowed" in reasons(result)

    def test_reports_every_error(self):
        document = graph([node("t", "transform", transformScript="import os")], [edge("t", "nowhere")])

        result = self.validator.validate(load(document))

        assert len(result.errors) >= 3


class TestLoopCeiling:
    """Enforcement of the while-loop iteration ceiling."""

    def test_clamp_policy_warns(self):
        validator = GraphValidator(max_loop_iterations=3, loop_ceiling_policy="clamp")

        result = validator.validate(load(loop_document(max_iterations=50)))

        assert result.is_valid
        assert result.loop_bounds == {"loop": 3}
        assert result.warnings == ["while node 'loop' maxIterations 50 clamped to 3"]

    def test_reject_policy_errors(self):
        validator = GraphValidator(max_loop_iterations=3, loop_ceiling_policy="reject")

        result = validator.validate(load(loop_document(max_iterations=50)))

        assert not result.is_valid
        assert result.errors[0].node_id == "loop"

    def test_zero_iterations_is_allowed(self):
        result = GraphValidator().validate(load(loop_document(max_iterations=0)))

        assert result.is_valid
        assert result.loop_bounds == {"loop": 0}

    def test_negative_iterations_is_an_error(self):
        result = GraphValidator().validate(load(loop_document(max_iterations=-1)))

        assert "while node 'loop' maxIterations must be non-negative, got -1" in reasons(result)

    def test_unknown_policy(self):
        with pytest.raises(ValueError):
            GraphValidator(loop_ceiling_policy="ignore")


class TestEnsureValid:
    """ensure_valid raises with every issue attached."""

    def test_raises_graph_validation_error(self):
        document = graph([node("start", "start")], [])

        with pytest.raises(GraphValidationError) as info:
            GraphValidator().ensure_valid(load(document))

        assert {"reason": "Graph must contain at least one end node", "nodeId": None} in info.value.validation_errors

    def test_returns_result_when_valid(self):
        result = GraphValidator().ensure_valid(load(linear_graph()))

        assert result.is_valid
