"""Sandboxed evaluation of transform scripts and branch conditions.

Scripts are a restricted Python subset interpreted directly on the AST. Nothing
is compiled or passed to ``eval``: every construct the interpreter does not
explicitly support is rejected, both by ``check`` before a run and again at
evaluation time.

Supported:
- single expressions (``input.x > 10``), whose value is the result
- statement blocks with assignment, ``if``, ``for``, ``while``, ``break``,
  ``continue``, ``pass`` and ``return``; without ``return`` the value of
  ``result`` is used when assigned
- literals, comprehensions, f-strings, comparisons, boolean and arithmetic
  operators, attribute access on dicts as key lookup (``input.name``)
- calls to a fixed set of builtins and to whitelisted ``str``/``list``/``dict``
  methods
"""

import ast
import copy
import json
import multiprocessing
import operator
import re
import threading
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, Callable, Dict, List, Optional

from .exceptions import ScriptError, ScriptTimeoutError, ExecutionCancelledError
from .logging import get_logger


logger = get_logger(__name__)

DEFAULT_SCRIPT_TIMEOUT = 5.0
MAX_SCRIPT_LENGTH = 20000
MAX_SEQUENCE_LENGTH = 1_000_000
MAX_EXPONENT = 10000
MAX_INT_BITS = 100_000
MAX_FORMAT_WIDTH = 10_000

_FORMAT_NUMBER = re.compile(r"\d+")

_NAME_ALIASES = {
    "true": True,
    "false": False,
    "null": None,
    "None": None,
    "True": True,
    "False": False,
}

_FALSE_STRINGS = {"", "false", "0", "no", "off"}


def coerce_condition(value: Any) -> bool:
    """Coerce a script result to a branch decision."""
    if isinstance(value, bool):
        return value
    if value is None:
        return False
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        return value.strip().lower() not in _FALSE_STRINGS
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) > 0
    return bool(value)


def _parse_json(text):
    if not isinstance(text, str):
        return text
    return json.loads(text)


def _to_json(value, indent=None):
    return json.dumps(value, ensure_ascii=False, indent=indent, default=str)


def _safe_range(*args):
    result = range(*args)
    if len(result) > MAX_SEQUENCE_LENGTH:
        raise ScriptError(f"range() of {len(result)} items exceeds the limit of {MAX_SEQUENCE_LENGTH}")
    return result


SAFE_BUILTINS: Dict[str, Callable] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "sorted": sorted,
    "range": _safe_range,
    "list": list,
    "dict": dict,
    "enumerate": enumerate,
    "zip": zip,
    "any": any,
    "all": all,
    "parse_json": _parse_json,
    "to_json": _to_json,
}

SAFE_METHODS = {
    str: {
        "lower", "upper", "strip", "lstrip", "rstrip", "split", "rsplit", "splitlines",
        "join", "replace", "startswith", "endswith", "find", "count", "title",
        "capitalize", "isdigit", "isalpha", "isalnum", "zfill",
    },
    list: {
        "append", "extend", "insert", "pop", "remove", "index", "count", "copy",
        "reverse", "sort", "clear",
    },
    dict: {
        "get", "keys", "values", "items", "update", "pop", "setdefault", "copy",
    },
}

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_ALLOWED_NODES = (
    ast.Module, ast.Expression, ast.Expr, ast.Assign, ast.AugAssign, ast.If, ast.For,
    ast.While, ast.Break, ast.Continue, ast.Pass, ast.Return,
    ast.Constant, ast.Name, ast.Load, ast.Store, ast.Attribute, ast.Subscript, ast.Slice,
    ast.BinOp, ast.UnaryOp, ast.BoolOp, ast.Compare, ast.IfExp,
    ast.List, ast.Tuple, ast.Set, ast.Dict, ast.JoinedStr, ast.FormattedValue,
    ast.Call, ast.keyword, ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp,
    ast.comprehension,
    ast.And, ast.Or, ast.Not, ast.USub, ast.UAdd,
    ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE, ast.Is, ast.IsNot, ast.In, ast.NotIn,
)

_FORBIDDEN_MESSAGES = {
    ast.Import: "imports are not allowed",
    ast.ImportFrom: "imports are not allowed",
    ast.FunctionDef: "function definitions are not allowed",
    ast.AsyncFunctionDef: "function definitions are not allowed",
    ast.Lambda: "lambda expressions are not allowed",
    ast.ClassDef: "class definitions are not allowed",
    ast.Global: "global declarations are not allowed",
    ast.Nonlocal: "nonlocal declarations are not allowed",
}


class _Break(Exception):
    pass


class _Continue(Exception):
    pass


class _Return(Exception):
    def __init__(self, value):
        super().__init__()
        self.value = value


class ScriptRunner(ABC):
    """Interface for evaluating node scripts against run bindings."""

    @abstractmethod
    def run(
        self,
        script: str,
        bindings: Dict[str, Any],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        node_id: Optional[str] = None
    ) -> Any:
        """Evaluate ``script`` and return its value, raising ScriptError on failure."""

    @abstractmethod
    def check(self, script: str) -> List[str]:
        """Return grammar errors in ``script`` without running it."""


class SandboxedScriptRunner(ScriptRunner):
    """In-process AST interpreter for the restricted script language."""

    def __init__(self, default_timeout: float = DEFAULT_SCRIPT_TIMEOUT, max_sequence_length: int = MAX_SEQUENCE_LENGTH):
        self.default_timeout = default_timeout
        self.max_sequence_length = max_sequence_length

    def check(self, script: str) -> List[str]:
        try:
            tree = self._parse(script)
        except ScriptError as e:
            return [e.message]
        return self._grammar_errors(tree)

    def run(
        self,
        script: str,
        bindings: Dict[str, Any],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        node_id: Optional[str] = None
    ) -> Any:
        tree = self._parse(script, node_id)
        errors = self._grammar_errors(tree)
        if errors:
            raise ScriptError(f"Script rejected: {'; '.join(errors)}", node_id=node_id)

        timeout = timeout if timeout is not None else self.default_timeout
        scope = copy.deepcopy(dict(bindings))
        interpreter = _Interpreter(
            deadline=time.monotonic() + timeout,
            timeout=timeout,
            cancel_event=cancel_event,
            max_sequence_length=self.max_sequence_length,
            node_id=node_id
        )

        try:
            if isinstance(tree, ast.Expression):
                value = interpreter.evaluate(tree.body, scope)
            else:
                value = interpreter.execute_module(tree, scope)
        except (ScriptError, ExecutionCancelledError):
            raise
        except RecursionError as e:
            raise ScriptError("Script is nested too deeply", node_id=node_id) from e
        except (_Break, _Continue) as e:
            raise ScriptError("'break' or 'continue' outside a loop", node_id=node_id) from e
        except Exception as e:
            raise ScriptError(f"{type(e).__name__}: {e}", node_id=node_id) from e

        return _to_plain(value)

    def _parse(self, script: str, node_id: Optional[str] = None) -> ast.AST:
        if not isinstance(script, str) or not script.strip():
            raise ScriptError("Script cannot be empty", node_id=node_id)
        if len(script) > MAX_SCRIPT_LENGTH:
            raise ScriptError(
                f"Script too long ({len(script)} chars, max {MAX_SCRIPT_LENGTH})", node_id=node_id
            )

        source = script.strip()
        try:
            return ast.parse(source, mode="eval")
        except SyntaxError:
            pass
        try:
            return ast.parse(source, mode="exec")
        except SyntaxError as e:
            raise ScriptError(f"Invalid script syntax: {e.msg} (line {e.lineno})", node_id=node_id) from e

    def _grammar_errors(self, tree: ast.AST) -> List[str]:
        errors = []
        pending = deque([tree])
        while pending:
            node = pending.popleft()
            message = _FORBIDDEN_MESSAGES.get(type(node))
            if message is None and not isinstance(node, _ALLOWED_NODES):
                message = f"{type(node).__name__} is not allowed"
            if message:
                # one message per rejected construct, not one per child
                errors.append(message)
                continue
            pending.extend(ast.iter_child_nodes(node))

            if isinstance(node, ast.Name) and node.id.startswith("_"):
                errors.append(f"name '{node.id}' is not allowed")
            elif isinstance(node, ast.Attribute) and node.attr.startswith("_"):
                errors.append(f"attribute '{node.attr}' is not allowed")
            elif isinstance(node, ast.keyword) and node.arg is None:
                errors.append("keyword argument unpacking is not allowed")
            elif isinstance(node, ast.comprehension) and node.is_async:
                errors.append("async comprehensions are not allowed")
        return list(dict.fromkeys(errors))


class _Interpreter:
    """Evaluates one script invocation; checks the deadline at every step."""

    def __init__(self, deadline, timeout, cancel_event, max_sequence_length, node_id):
        self.deadline = deadline
        self.timeout = timeout
        self.cancel_event = cancel_event
        self.max_sequence_length = max_sequence_length
        self.node_id = node_id

    def tick(self):
        if self.cancel_event is not None and self.cancel_event.is_set():
            raise ExecutionCancelledError("Script cancelled", node_id=self.node_id)
        if time.monotonic() > self.deadline:
            raise ScriptTimeoutError(
                f"Script exceeded its {self.timeout}s timeout", timeout=self.timeout, node_id=self.node_id
            )

    def check_size(self, value):
        if isinstance(value, (str, list, tuple, dict, set)) and len(value) > self.max_sequence_length:
            raise ScriptError(
                f"Value of {len(value)} items exceeds the limit of {self.max_sequence_length}",
                node_id=self.node_id
            )
        if isinstance(value, int) and not isinstance(value, bool) and value.bit_length() > MAX_INT_BITS:
            raise ScriptError(f"Integer exceeds the limit of {MAX_INT_BITS} bits", node_id=self.node_id)
        return value

    def check_rendered(self, value):
        """Reject values whose string form would exceed the sequence limit."""
        if _rendered_size(value, self.max_sequence_length) > self.max_sequence_length:
            raise ScriptError(
                f"Rendered value exceeds the limit of {self.max_sequence_length} characters", node_id=self.node_id
            )
        return value

    def check_format(self, directives):
        for number in _FORMAT_NUMBER.findall(directives):
            if len(number) > 6 or int(number) > MAX_FORMAT_WIDTH:
                raise ScriptError(
                    f"Format width {number} exceeds the limit of {MAX_FORMAT_WIDTH}", node_id=self.node_id
                )

    # statements

    def execute_module(self, tree: ast.Module, scope: Dict[str, Any]) -> Any:
        try:
            self.execute_block(tree.body, scope)
        except _Return as ret:
            return ret.value
        return scope.get("result")

    def execute_block(self, statements, scope):
        for statement in statements:
            self.execute(statement, scope)

    def execute(self, node, scope):
        self.tick()

        if isinstance(node, ast.Expr):
            self.evaluate(node.value, scope)
        elif isinstance(node, ast.Assign):
            value = self.evaluate(node.value, scope)
            for target in node.targets:
                self.assign(target, value, scope)
        elif isinstance(node, ast.AugAssign):
            current = self.evaluate(_as_load(node.target), scope)
            value = self.binary(node.op, current, self.evaluate(node.value, scope))
            self.assign(node.target, value, scope)
        elif isinstance(node, ast.If):
            branch = node.body if self.evaluate(node.test, scope) else node.orelse
            self.execute_block(branch, scope)
        elif isinstance(node, ast.For):
            self.execute_for(node, scope)
        elif isinstance(node, ast.While):
            self.execute_while(node, scope)
        elif isinstance(node, ast.Break):
            raise _Break()
        elif isinstance(node, ast.Continue):
            raise _Continue()
        elif isinstance(node, ast.Pass):
            pass
        elif isinstance(node, ast.Return):
            raise _Return(self.evaluate(node.value, scope) if node.value is not None else None)
        else:
            raise ScriptError(f"{type(node).__name__} is not allowed", node_id=self.node_id)

    def execute_for(self, node, scope):
        iterable = self.evaluate(node.iter, scope)
        for item in iterable:
            self.tick()
            self.assign(node.target, item, scope)
            try:
                self.execute_block(node.body, scope)
            except _Continue:
                continue
            except _Break:
                return
        self.execute_block(node.orelse, scope)

    def execute_while(self, node, scope):
        while self.evaluate(node.test, scope):
            self.tick()
            try:
                self.execute_block(node.body, scope)
            except _Continue:
                continue
            except _Break:
                return
        self.execute_block(node.orelse, scope)

    def assign(self, target, value, scope):
        if isinstance(target, ast.Name):
            scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ScriptError(
                    f"Cannot unpack {len(values)} values into {len(target.elts)} names", node_id=self.node_id
                )
            for element, item in zip(target.elts, values):
                self.assign(element, item, scope)
        elif isinstance(target, ast.Subscript):
            container = self.evaluate(target.value, scope)
            container[self.evaluate(target.slice, scope)] = value
        elif isinstance(target, ast.Attribute):
            container = self.evaluate(target.value, scope)
            if not isinstance(container, dict):
                raise ScriptError("Attribute assignment is only supported on dicts", node_id=self.node_id)
            container[target.attr] = value
        else:
            raise ScriptError(f"Cannot assign to {type(target).__name__}", node_id=self.node_id)

    # expressions

    def evaluate(self, node, scope):
        self.tick()

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in scope:
                return scope[node.id]
            if node.id in _NAME_ALIASES:
                return _NAME_ALIASES[node.id]
            if node.id in SAFE_BUILTINS:
                return SAFE_BUILTINS[node.id]
            raise ScriptError(f"name '{node.id}' is not defined", node_id=self.node_id)

        if isinstance(node, ast.Attribute):
            value = self.evaluate(node.value, scope)
            if isinstance(value, dict) and node.attr not in SAFE_METHODS[dict]:
                return value.get(node.attr)
            allowed = SAFE_METHODS.get(type(value), set())
            if node.attr in allowed:
                return getattr(value, node.attr)
            raise ScriptError(
                f"'{type(value).__name__}' has no allowed attribute '{node.attr}'", node_id=self.node_id
            )

        if isinstance(node, ast.Subscript):
            value = self.evaluate(node.value, scope)
            return value[self.evaluate(node.slice, scope)]

        if isinstance(node, ast.Slice):
            return slice(
                self.evaluate(node.lower, scope) if node.lower is not None else None,
                self.evaluate(node.upper, scope) if node.upper is not None else None,
                self.evaluate(node.step, scope) if node.step is not None else None,
            )

        if isinstance(node, ast.BinOp):
            left = self.evaluate(node.left, scope)
            right = self.evaluate(node.right, scope)
            return self.binary(node.op, left, right)

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPS[type(node.op)](self.evaluate(node.operand, scope))

        if isinstance(node, ast.BoolOp):
            result = None
            for value_node in node.values:
                result = self.evaluate(value_node, scope)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.Compare):
            left = self.evaluate(node.left, scope)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.evaluate(comparator, scope)
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self.evaluate(node.test, scope):
                return self.evaluate(node.body, scope)
            return self.evaluate(node.orelse, scope)

        if isinstance(node, ast.List):
            return self.check_size([self.evaluate(element, scope) for element in node.elts])

        if isinstance(node, ast.Tuple):
            return tuple(self.evaluate(element, scope) for element in node.elts)

        if isinstance(node, ast.Set):
            return {self.evaluate(element, scope) for element in node.elts}

        if isinstance(node, ast.Dict):
            result = {}
            for key_node, value_node in zip(node.keys, node.values):
                if key_node is None:
                    result.update(self.evaluate(value_node, scope))
                else:
                    result[self.evaluate(key_node, scope)] = self.evaluate(value_node, scope)
            return result

        if isinstance(node, ast.JoinedStr):
            return self.check_size("".join(str(self.evaluate(part, scope)) for part in node.values))

        if isinstance(node, ast.FormattedValue):
            value = self.check_rendered(self.evaluate(node.value, scope))
            if node.conversion == ord("r"):
                value = repr(value)
            elif node.conversion in (ord("s"), ord("a")):
                value = str(value)
            spec = self.evaluate(node.format_spec, scope) if node.format_spec is not None else ""
            self.check_format(spec)
            return format(value, spec)

        if isinstance(node, ast.Call):
            return self.call(node, scope)

        if isinstance(node, (ast.ListComp, ast.SetComp, ast.GeneratorExp)):
            items = []
            for inner in self.comprehension_scopes(node.generators, scope):
                items.append(self.evaluate(node.elt, inner))
                self.check_size(items)
            return set(items) if isinstance(node, ast.SetComp) else items

        if isinstance(node, ast.DictComp):
            result = {}
            for inner in self.comprehension_scopes(node.generators, scope):
                result[self.evaluate(node.key, inner)] = self.evaluate(node.value, inner)
                self.check_size(result)
            return result

        raise ScriptError(f"{type(node).__name__} is not allowed", node_id=self.node_id)

    def binary(self, op, left, right):
        if isinstance(op, ast.Pow) and isinstance(right, (int, float)):
            if abs(right) > MAX_EXPONENT:
                raise ScriptError(f"Exponent {right} exceeds the limit of {MAX_EXPONENT}", node_id=self.node_id)
            if _is_int(left) and _is_int(right) and right > 0 and left.bit_length() * right > MAX_INT_BITS:
                raise ScriptError(f"Power exceeds the limit of {MAX_INT_BITS} bits", node_id=self.node_id)
        if isinstance(op, ast.Mult):
            if _is_int(left) and _is_int(right) and left.bit_length() + right.bit_length() > MAX_INT_BITS:
                raise ScriptError(f"Product exceeds the limit of {MAX_INT_BITS} bits", node_id=self.node_id)
            for sequence, count in ((left, right), (right, left)):
                if isinstance(sequence, (str, list, tuple)) and isinstance(count, int):
                    if len(sequence) * count > self.max_sequence_length:
                        raise ScriptError("Repeated sequence exceeds the size limit", node_id=self.node_id)
        if isinstance(op, ast.Mod) and isinstance(left, str):
            # printf-style formatting
            for directive in re.findall(r"%[^a-zA-Z%]*", left):
                self.check_format(directive)
            self.check_rendered(right)
        operation = _BIN_OPS.get(type(op))
        if operation is None:
            raise ScriptError(f"Operator {type(op).__name__} is not allowed", node_id=self.node_id)
        return self.check_size(operation(left, right))

    def call(self, node, scope):
        function = self.evaluate(node.func, scope)
        if not _is_allowed_callable(function):
            raise ScriptError("Only whitelisted builtins and methods may be called", node_id=self.node_id)

        args = []
        for argument in node.args:
            if isinstance(argument, ast.Starred):
                args.extend(self.evaluate(argument.value, scope))
            else:
                args.append(self.evaluate(argument, scope))
        kwargs = {keyword.arg: self.evaluate(keyword.value, scope) for keyword in node.keywords}

        for value in kwargs.values():
            if callable(value) and not _is_allowed_callable(value):
                raise ScriptError("Only whitelisted callables may be passed", node_id=self.node_id)

        self.check_call(function, args, kwargs)
        result = function(*args, **kwargs)
        if isinstance(result, (enumerate, zip)):
            result = list(result)
        return self.check_size(result)

    def check_call(self, function, args, kwargs):
        """Reject calls whose output would grow past the size limits before making them."""
        limit = self.max_sequence_length
        owner = getattr(function, "__self__", None)
        name = getattr(function, "__name__", None)

        if function is str or function is _to_json:
            for value in args:
                self.check_rendered(value)
        elif function is sum and len(args) > 1 and not isinstance(args[1], (int, float)):
            raise ScriptError("sum() only accepts a numeric start value", node_id=self.node_id)
        elif isinstance(owner, str):
            if name == "zfill" and args and isinstance(args[0], int) and args[0] > limit:
                raise ScriptError(f"zfill() width exceeds the limit of {limit}", node_id=self.node_id)
            if name == "join" and args:
                self.check_rendered(list(args[0]) if not isinstance(args[0], str) else args[0])
            if name == "replace" and len(args) >= 2 and isinstance(args[0], str) and isinstance(args[1], str):
                old, new = args[0], args[1]
                hits = owner.count(old) if old else len(owner) + 1
                if len(owner) + hits * max(len(new) - len(old), 0) > limit:
                    raise ScriptError(f"replace() result exceeds the limit of {limit}", node_id=self.node_id)
        elif isinstance(owner, list) and name == "extend" and args:
            added = len(args[0]) if hasattr(args[0], "__len__") else 0
            if len(owner) + added > limit:
                raise ScriptError(f"List grows beyond the limit of {limit} items", node_id=self.node_id)
        elif isinstance(owner, (list, dict)) and name in ("append", "insert", "update", "setdefault"):
            if len(owner) >= limit:
                raise ScriptError(f"Container grows beyond the limit of {limit} items", node_id=self.node_id)

    def comprehension_scopes(self, generators, scope):
        """Yield one child scope per combination of comprehension bindings."""
        def _walk(index, current):
            if index == len(generators):
                yield current
                return
            generator = generators[index]
            for item in self.evaluate(generator.iter, current):
                self.tick()
                inner = dict(current)
                self.assign(generator.target, item, inner)
                if all(self.evaluate(condition, inner) for condition in generator.ifs):
                    yield from _walk(index + 1, inner)

        return _walk(0, dict(scope))


def _is_allowed_callable(function) -> bool:
    if any(function is builtin for builtin in SAFE_BUILTINS.values()):
        return True
    owner = getattr(function, "__self__", None)
    name = getattr(function, "__name__", None)
    allowed = SAFE_METHODS.get(type(owner))
    return allowed is not None and name in allowed


def _is_int(value) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _rendered_size(value, limit: int) -> int:
    """Approximate length of ``str(value)``, giving up once ``limit`` is passed."""
    total = 0
    pending = [value]
    while pending and total <= limit:
        item = pending.pop()
        if isinstance(item, str):
            total += len(item)
        elif isinstance(item, dict):
            total += 2 + len(item)
            pending.extend(item.keys())
            pending.extend(item.values())
        elif isinstance(item, (list, tuple, set, frozenset)):
            total += 2 + len(item)
            pending.extend(item)
        elif _is_int(item):
            total += item.bit_length() // 3 + 1
        else:
            total += 8
    return total


def _as_load(target):
    if isinstance(target, ast.Name):
        return ast.Name(id=target.id, ctx=ast.Load())
    if isinstance(target, ast.Subscript):
        return ast.Subscript(value=target.value, slice=target.slice, ctx=ast.Load())
    if isinstance(target, ast.Attribute):
        return ast.Attribute(value=target.value, attr=target.attr, ctx=ast.Load())
    raise ScriptError(f"Cannot augment-assign to {type(target).__name__}")


def _to_plain(value):
    """Convert script results to JSON-compatible containers."""
    if isinstance(value, dict):
        return {key: _to_plain(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, range)) or type(value).__name__ in ("dict_keys", "dict_values", "dict_items"):
        return [_to_plain(item) for item in value]
    return value


_KILL_GRACE = 1.0
_PIPE_POLL_INTERVAL = 0.05


def _child_main(connection, script, bindings, timeout, max_sequence_length, node_id):
    """Entry point of the script worker process; reports one outcome over ``connection``."""
    runner = SandboxedScriptRunner(default_timeout=timeout, max_sequence_length=max_sequence_length)
    try:
        outcome = ("ok", runner.run(script, bindings, timeout=timeout, node_id=node_id))
    except ScriptTimeoutError as e:
        outcome = ("timeout", e.message)
    except ScriptError as e:
        outcome = ("error", e.message)
    try:
        connection.send(outcome)
    except Exception as e:
        connection.send(("error", f"Script result cannot be returned: {e}"))
    finally:
        connection.close()


class IsolatedScriptRunner(ScriptRunner):
    """
    Runs each script in a worker process that is killed at its deadline.

    The in-process interpreter checks its deadline between steps, so a single
    long native operation could hold the worker thread past it. Here the parent
    only waits on a pipe, and terminates the child once the timeout plus a short
    grace period has passed or the run is cancelled.
    """

    def __init__(self, default_timeout: float = DEFAULT_SCRIPT_TIMEOUT, max_sequence_length: int = MAX_SEQUENCE_LENGTH):
        self.default_timeout = default_timeout
        self.max_sequence_length = max_sequence_length
        self._checker = SandboxedScriptRunner(default_timeout, max_sequence_length)
        methods = multiprocessing.get_all_start_methods()
        self._context = multiprocessing.get_context("forkserver" if "forkserver" in methods else "spawn")

    def check(self, script: str) -> List[str]:
        return self._checker.check(script)

    def run(
        self,
        script: str,
        bindings: Dict[str, Any],
        timeout: Optional[float] = None,
        cancel_event: Optional[threading.Event] = None,
        node_id: Optional[str] = None
    ) -> Any:
        tree = self._checker._parse(script, node_id)
        errors = self._checker._grammar_errors(tree)
        if errors:
            raise ScriptError(f"Script rejected: {'; '.join(errors)}", node_id=node_id)

        timeout = timeout if timeout is not None else self.default_timeout
        receiver, sender = self._context.Pipe(duplex=False)
        process = self._context.Process(
            target=_child_main,
            args=(sender, script, dict(bindings), timeout, self.max_sequence_length, node_id),
            daemon=True
        )
        try:
            process.start()
        finally:
            sender.close()
        deadline = time.monotonic() + timeout + _KILL_GRACE

        try:
            while not receiver.poll(_PIPE_POLL_INTERVAL):
                if cancel_event is not None and cancel_event.is_set():
                    raise ExecutionCancelledError("Script cancelled", node_id=node_id)
                if time.monotonic() > deadline:
                    logger.warning(f"Killing script worker for node '{node_id}' after {timeout}s")
                    raise ScriptTimeoutError(
                        f"Script exceeded its {timeout}s timeout", timeout=timeout, node_id=node_id
                    )
                if not process.is_alive() and not receiver.poll():
                    raise ScriptError(
                        f"Script worker exited with code {process.exitcode}", node_id=node_id
                    )
            try:
                status, payload = receiver.recv()
            except EOFError as e:
                raise ScriptError("Script worker exited without a result", node_id=node_id) from e
        finally:
            receiver.close()
            if process.is_alive():
                process.terminate()
            process.join(_KILL_GRACE)

        if status == "ok":
            return payload
        if status == "timeout":
            raise ScriptTimeoutError(payload, timeout=timeout, node_id=node_id)
        raise ScriptError(payload, node_id=node_id)
