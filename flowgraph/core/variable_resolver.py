"""Template variable resolution for node parameters."""

import json
import re
from typing import Any

from ..models.core import ExecutionContext
from .logging import get_logger


logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")
_INPUT_REFERENCE = re.compile(r"^input\.([A-Za-z_][A-Za-z0-9_]*)$")
_LAST_OUTPUT = "lastOutput"


def render_value(value: Any) -> str:
    """Render a substituted value: strings verbatim, everything else as JSON."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    try:
        return json.dumps(value, ensure_ascii=False, default=str)
    except (TypeError, ValueError):
        return str(value)


class VariableResolver:
    """
    Substitutes ``{{input.<name>}}`` and ``{{lastOutput}}`` in templates.

    Only those two reference forms are recognized; any other ``{{...}}`` text
    is left verbatim. Substitution is a single pass, so values that themselves
    contain ``{{...}}`` are never expanded again.
    """

    def resolve(self, template: str, ctx: ExecutionContext) -> str:
        if not isinstance(template, str) or "{{" not in template:
            return template

        def _substitute(match: "re.Match[str]") -> str:
            expression = match.group(1)
            if expression == _LAST_OUTPUT:
                return render_value(ctx.last_output)

            input_match = _INPUT_REFERENCE.match(expression)
            if input_match:
                name = input_match.group(1)
                if name not in ctx.inputs:
                    warning = f"Unresolved variable 'input.{name}' replaced with empty string"
                    logger.warning(warning)
                    ctx.add_warning(warning)
                    return ""
                return render_value(ctx.inputs[name])

            return match.group(0)

        return TEMPLATE_PATTERN.sub(_substitute, template)

    def resolve_value(self, value: Any, ctx: ExecutionContext) -> Any:
        """Resolve every string nested inside dicts and lists."""
        if isinstance(value, str):
            return self.resolve(value, ctx)
        if isinstance(value, dict):
            return {key: self.resolve_value(item, ctx) for key, item in value.items()}
        if isinstance(value, list):
            return [self.resolve_value(item, ctx) for item in value]
        return value


_default_resolver = VariableResolver()


def resolve(template: str, ctx: ExecutionContext) -> str:
    """Resolve ``template`` against ``ctx`` with the default resolver."""
    return _default_resolver.resolve(template, ctx)


def resolve_value(value: Any, ctx: ExecutionContext) -> Any:
    return _default_resolver.resolve_value(value, ctx)
