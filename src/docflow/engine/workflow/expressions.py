"""Safe boolean expressions for loop conditions.

`while` / `do_while` loop rules carry a condition such as
``retries < 3 and document.status != "approved"``. Expressions are parsed with
the `ast` module and evaluated against the run context in a restricted
sandbox: comparisons, boolean logic, literals, dotted/subscript access and
`len()`. Anything else is rejected.

`&&`, `||`, `!` and `true`/`false`/`null` are accepted, since definitions are
usually authored in a JSON editor. Operators inside string literals are left
alone.
"""

from __future__ import annotations

import ast
import operator
import re
from collections.abc import Mapping
from typing import Any

MAX_EXPRESSION_LENGTH = 500

_COMPARE_OPS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_CONSTANT_NAMES: dict[str, Any] = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
}

_ALLOWED_CALLS = {"len": len}

# String literals are matched first so operators inside them are kept as-is.
_ALIAS_RE = re.compile(r"""("(?:\\.|[^"\\])*"|'(?:\\.|[^'\\])*')|&&|\|\||!(?!=)""")
_ALIASES = {"&&": " and ", "||": " or ", "!": " not "}


class ExpressionError(Exception):
    """The expression is invalid or could not be evaluated."""


class UnresolvedNameError(ExpressionError):
    """The expression refers to a context path that does not exist."""

    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown name in expression: '{name}'")


def _normalize(expression: str) -> str:
    def swap(match: re.Match[str]) -> str:
        return match.group(1) or _ALIASES[match.group(0)]

    return _ALIAS_RE.sub(swap, expression).strip()


def _parse(expression: str) -> ast.Expression:
    if not expression or not expression.strip():
        raise ExpressionError("Expression cannot be empty")
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(
            f"Expression too long ({len(expression)} chars, max {MAX_EXPRESSION_LENGTH})"
        )
    try:
        return ast.parse(_normalize(expression), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e


def evaluate_expression(expression: str, context: Mapping[str, Any]) -> Any:
    """Evaluate `expression` against `context`.

    Raises:
        UnresolvedNameError: a referenced name or key is missing.
        ExpressionError: the expression is invalid or unsupported.
    """

    tree = _parse(expression)
    try:
        return _eval(tree.body, context)
    except ExpressionError:
        raise
    except Exception as e:
        raise ExpressionError(f"Evaluation error: {e}") from e


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    return bool(evaluate_expression(expression, context))


def validate_expression(expression: str) -> list[str]:
    """Check an expression without evaluating it. Returns error messages."""

    try:
        tree = _parse(expression)
    except ExpressionError as e:
        return [str(e)]

    errors: list[str] = []
    for node in ast.walk(tree):
        if isinstance(node, ast.Call):
            if not (isinstance(node.func, ast.Name) and node.func.id in _ALLOWED_CALLS):
                errors.append("Only len() may be called in conditions")
        elif isinstance(node, ast.Lambda):
            errors.append("Lambda expressions are not allowed")
        elif isinstance(node, ast.ListComp | ast.SetComp | ast.DictComp | ast.GeneratorExp):
            errors.append("Comprehensions are not allowed")
        elif isinstance(node, ast.Starred):
            errors.append("Star expressions are not allowed")
    return errors


def _eval(node: ast.AST, context: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        if node.id in context:
            return context[node.id]
        if node.id in _CONSTANT_NAMES:
            return _CONSTANT_NAMES[node.id]
        raise UnresolvedNameError(node.id)

    if isinstance(node, ast.Compare):
        left = _eval(node.left, context)
        for op, comparator in zip(node.ops, node.comparators):
            op_func = _COMPARE_OPS.get(type(op))
            if op_func is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            right = _eval(comparator, context)
            if not op_func(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            return all(_eval(v, context) for v in node.values)
        if isinstance(node.op, ast.Or):
            return any(_eval(v, context) for v in node.values)
        raise ExpressionError(f"Unsupported boolean op: {type(node.op).__name__}")

    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            return not _eval(node.operand, context)
        if isinstance(node.op, ast.USub):
            return -_eval(node.operand, context)
        raise ExpressionError(f"Unsupported unary op: {type(node.op).__name__}")

    if isinstance(node, ast.Attribute):
        value = _eval(node.value, context)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            raise UnresolvedNameError(node.attr)
        raise ExpressionError("Attribute access only supported on mappings")

    if isinstance(node, ast.Subscript):
        value = _eval(node.value, context)
        key = _eval(node.slice, context)
        try:
            return value[key]
        except (KeyError, IndexError) as e:
            raise UnresolvedNameError(str(key)) from e
        except TypeError as e:
            raise ExpressionError(f"Subscript access failed: {e}") from e

    if isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id in _ALLOWED_CALLS and not node.keywords:
            args = [_eval(a, context) for a in node.args]
            return _ALLOWED_CALLS[node.func.id](*args)
        raise ExpressionError("Only len() may be called in conditions")

    if isinstance(node, ast.List):
        return [_eval(elt, context) for elt in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_eval(elt, context) for elt in node.elts)

    raise ExpressionError(f"Unsupported expression type: {type(node).__name__}")
