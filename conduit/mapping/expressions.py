"""Sandboxed expression evaluation for the ``function`` transform.

Expressions use a restricted subset of Python expression syntax and are
evaluated by walking the parsed AST; nothing is ever passed to ``eval``.
Only the variables handed in by the caller are visible. Supported:

* literals, lists, tuples and dicts
* arithmetic, comparison, boolean and conditional (``a if c else b``) operators
* subscripts (``data["key"]``, ``items[0]``, ``items[1:3]``)
* attribute access as key lookup on mappings (``data.user.name``)
* calls to the whitelisted functions in ``SAFE_FUNCTIONS``
* the whitelisted string and mapping methods in ``SAFE_METHODS``
"""

from __future__ import annotations

import ast
import json
import operator
from collections.abc import ItemsView, KeysView, ValuesView
from typing import Any, Callable, Mapping

from ..errors import ExpressionError

MAX_EXPRESSION_LENGTH = 2000
MAX_SEQUENCE_LENGTH = 100_000
MAX_EXPONENT = 100

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def _joined_length(items: Any, separator_length: int) -> int:
    if isinstance(items, str):
        count = text = len(items)
    elif isinstance(items, (list, tuple)) and len(items) <= MAX_SEQUENCE_LENGTH:
        count = len(items)
        text = sum(len(item) if isinstance(item, str) else len(str(item)) for item in items)
    else:
        return len(items) if hasattr(items, "__len__") else 0
    return text + separator_length * max(count - 1, 0)


def _join(items: Any, separator: str = ",") -> str:
    return separator.join(str(item) for item in items)


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "round": round,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "sorted": sorted,
    "list": list,
    "upper": lambda s: str(s).upper(),
    "lower": lambda s: str(s).lower(),
    "trim": lambda s: str(s).strip(),
    "join": _join,
    "split": lambda s, sep=",": str(s).split(sep),
    "json_parse": json.loads,
    "json_stringify": json.dumps,
    "coalesce": lambda *args: next((a for a in args if a is not None), None),
}

SAFE_METHODS: dict[type, frozenset[str]] = {
    str: frozenset(
        {
            "upper",
            "lower",
            "strip",
            "lstrip",
            "rstrip",
            "title",
            "capitalize",
            "split",
            "replace",
            "startswith",
            "endswith",
            "find",
            "count",
            "join",
            "zfill",
        }
    ),
    dict: frozenset({"get", "keys", "values", "items"}),
    list: frozenset({"index", "count"}),
}


class SafeEvaluator:
    """Evaluate a restricted expression against a fixed set of variables."""

    def __init__(self, variables: Mapping[str, Any]) -> None:
        self._variables = dict(variables)

    def evaluate(self, expression: str) -> Any:
        if len(expression) > MAX_EXPRESSION_LENGTH:
            raise ExpressionError("Expression is too long")
        try:
            tree = ast.parse(expression.strip(), mode="eval")
        except SyntaxError as exc:
            raise ExpressionError(f"Invalid expression syntax: {exc.msg}") from exc
        try:
            return self._eval(tree.body)
        except ExpressionError:
            raise
        except (ArithmeticError, LookupError, TypeError, ValueError) as exc:
            raise ExpressionError(f"Expression evaluation failed: {exc}") from exc

    # ------------------------------------------------------------------
    def _eval(self, node: ast.AST) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")
        return handler(node)

    def _eval_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name) -> Any:
        if node.id in self._variables:
            return self._variables[node.id]
        if node.id in ("true", "false", "null"):
            return {"true": True, "false": False, "null": None}[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def _eval_List(self, node: ast.List) -> list:
        return [self._eval(item) for item in node.elts]

    def _eval_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self._eval(item) for item in node.elts)

    def _eval_Dict(self, node: ast.Dict) -> dict:
        if any(key is None for key in node.keys):
            raise ExpressionError("Dict unpacking is not supported")
        return {self._eval(k): self._eval(v) for k, v in zip(node.keys, node.values)}

    def _eval_BinOp(self, node: ast.BinOp) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        left = self._eval(node.left)
        right = self._eval(node.right)
        if isinstance(node.op, ast.Pow):
            if abs(right) > MAX_EXPONENT or (
                isinstance(left, int) and left.bit_length() > 1024
            ):
                raise ExpressionError("Exponent is too large")
        if isinstance(node.op, ast.Mult):
            self._check_repeat(left, right)
        return self._check_size(op(left, right))

    def _eval_UnaryOp(self, node: ast.UnaryOp) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return op(self._eval(node.operand))

    def _eval_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self._eval(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self._eval(value)
            if result:
                return result
        return result

    def _eval_Compare(self, node: ast.Compare) -> bool:
        left = self._eval(node.left)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self._eval(comparator)
            if not op(left, right):
                return False
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp) -> Any:
        return self._eval(node.body) if self._eval(node.test) else self._eval(node.orelse)

    def _eval_Subscript(self, node: ast.Subscript) -> Any:
        container = self._eval(node.value)
        if isinstance(node.slice, ast.Slice):
            lower = self._eval(node.slice.lower) if node.slice.lower else None
            upper = self._eval(node.slice.upper) if node.slice.upper else None
            step = self._eval(node.slice.step) if node.slice.step else None
            return container[lower:upper:step]
        key = self._eval(node.slice)
        if isinstance(container, dict):
            return container.get(key)
        return container[key]

    def _eval_Attribute(self, node: ast.Attribute) -> Any:
        target = self._eval(node.value)
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to {node.attr!r} is not allowed")
        if isinstance(target, dict):
            return target.get(node.attr)
        raise ExpressionError(
            f"Attribute access is only supported on objects, not {type(target).__name__}"
        )

    def _eval_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ExpressionError("Keyword arguments are not supported")
        args = [self._eval(arg) for arg in node.args]
        func = node.func
        if isinstance(func, ast.Name):
            function = SAFE_FUNCTIONS.get(func.id)
            if function is None:
                raise ExpressionError(f"Unknown function: {func.id}")
            self._guard_call(func.id, None, args)
            return self._check_size(function(*args))
        if isinstance(func, ast.Attribute):
            target = self._eval(func.value)
            allowed = SAFE_METHODS.get(type(target), frozenset())
            if func.attr not in allowed:
                raise ExpressionError(
                    f"Method {func.attr!r} is not allowed on {type(target).__name__}"
                )
            self._guard_call(func.attr, target, args)
            result = getattr(target, func.attr)(*args)
            if isinstance(result, (KeysView, ValuesView, ItemsView)):
                result = list(result)
            return self._check_size(result)
        raise ExpressionError("Only named functions and whitelisted methods may be called")

    @staticmethod
    def _guard_call(name: str, target: Any, args: list) -> None:
        """Refuse calls whose result would exceed the size limit before making them."""
        estimate = 0
        if isinstance(target, str):
            if name == "replace" and len(args) >= 2:
                old, new = str(args[0]), str(args[1])
                count = target.count(old) if old else len(target) + 1
                if len(args) > 2 and isinstance(args[2], int) and args[2] >= 0:
                    count = min(count, args[2])
                estimate = len(target) + count * max(len(new) - len(old), 0)
            elif name == "zfill" and args and isinstance(args[0], int):
                estimate = args[0]
            elif name == "join" and args:
                estimate = _joined_length(args[0], len(target))
        elif target is None:
            if name == "join" and args:
                separator = args[1] if len(args) > 1 else ","
                estimate = _joined_length(args[0], len(str(separator)))
            elif name in ("sorted", "list", "split", "sum", "min", "max") and args:
                estimate = len(args[0]) if hasattr(args[0], "__len__") else 0
        if estimate > MAX_SEQUENCE_LENGTH:
            raise ExpressionError("Result is too large")

    # ------------------------------------------------------------------
    @staticmethod
    def _check_repeat(left: Any, right: Any) -> None:
        for seq, times in ((left, right), (right, left)):
            if isinstance(seq, (str, list, tuple)) and isinstance(times, int):
                if len(seq) * times > MAX_SEQUENCE_LENGTH:
                    raise ExpressionError("Result is too large")

    @staticmethod
    def _check_size(value: Any) -> Any:
        if isinstance(value, (str, list, tuple, dict)) and len(value) > MAX_SEQUENCE_LENGTH:
            raise ExpressionError("Result is too large")
        return value


def evaluate_expression(expression: str, variables: Mapping[str, Any]) -> Any:
    """Evaluate ``expression`` with only ``variables`` in scope."""
    if not isinstance(expression, str) or not expression.strip():
        raise ExpressionError("Expression must be a non-empty string")
    text = expression.strip().rstrip(";").strip()
    if text.startswith("return "):
        text = text[len("return ") :]
    return SafeEvaluator(variables).evaluate(text)
