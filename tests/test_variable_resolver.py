"""Tests for template variable resolution."""

from flowgraph.core.variable_resolver import VariableResolver, render_value
from flowgraph.models.core import ExecutionContext


class TestVariableResolver:
    """Test cases for VariableResolver."""

    def setup_method(self):
        self.resolver = VariableResolver()
        self.ctx = ExecutionContext(inputs={"q": "x", "count": 3})

    def test_resolves_input_reference(self):
        assert self.resolver.resolve("{{input.q}}", self.ctx) == "x"

    def test_tolerates_inner_whitespace(self):
        assert self.resolver.resolve("Q={{ input.q }}", self.ctx) == "Q=x"

    def test_non_string_inputs_render_as_json(self):
        assert self.resolver.resolve("n={{input.count}}", self.ctx) == "n=3"

    def test_missing_input_becomes_empty_with_warning(self):
        """Unknown inputs resolve to the empty string and record one warning."""
        result = self.resolver.resolve("[{{input.missing}}][{{input.missing}}]", self.ctx)

        assert result == "[][]"
        assert self.ctx.warnings == ["Unresolved variable 'input.missing' replaced with empty string"]

    def test_last_output_string_is_verbatim(self):
        self.ctx.last_output = "hello"
        assert self.resolver.resolve("says {{lastOutput}}", self.ctx) == "says hello"

    def test_last_output_structure_renders_as_json(self):
        self.ctx.last_output = {"a": [1, 2]}
        assert self.resolver.resolve("{{lastOutput}}", self.ctx) == '{"a": [1, 2]}'

    def test_last_output_none_renders_empty(self):
        assert self.resolver.resolve("<{{lastOutput}}>", self.ctx) == "<>"

    def test_unknown_templates_stay_verbatim(self):
        template = "{{nodeOutputs.a}} and {{ something else }}"
        assert self.resolver.resolve(template, self.ctx) == template

    def test_resolution_is_single_pass(self):
        """Substituted values that look like templates are not expanded again."""
        self.ctx.inputs["q"] = "{{input.count}}"

        once = self.resolver.resolve("{{input.q}}", self.ctx)

        assert once == "{{input.count}}"

    def test_resolution_is_idempotent_for_plain_text(self):
        resolved = self.resolver.resolve("topic: {{input.q}}", self.ctx)
        assert self.resolver.resolve(resolved, self.ctx) == resolved

    def test_resolve_value_walks_nested_structures(self):
        value = {"query": "{{input.q}}", "filters": ["{{input.count}}", 7], "flag": True}

        resolved = self.resolver.resolve_value(value, self.ctx)

        assert resolved == {"query": "x", "filters": ["3", 7], "flag": True}

    def test_non_string_template_is_returned_unchanged(self):
        assert self.resolver.resolve(None, self.ctx) is None


def test_render_value():
    assert render_value(None) == ""
    assert render_value("text") == "text"
    assert render_value(True) == "true"
    assert render_value([1, "a"]) == '[1, "a"]'
