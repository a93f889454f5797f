"""Safe Condition Evaluator for Logic Routing

Parses a Logic edge condition with Python's ast module and evaluates it
against a read-only context built from the Logic node's input. Only
comparisons, boolean logic, literals, arithmetic and field access are
allowed: no calls, no comprehensions, no imports.

Examples:
- score > 80
- status == "approved" and not flagged
- lead.country in ["DE", "FR"]
- qualify["tier"] != "free"

Name and field lookups are lenient: a missing name or key evaluates to
None, so ``status == "approved"`` is simply False when the upstream worker
did not return a status and routing falls through to the default edge.
"""

from __future__ import annotations

import ast
import logging
import operator
from typing import Any, Callable, Dict, Mapping

from .settings import LOGIC_EXPRESSION_MAX_LENGTH

logger = logging.getLogger(__name__)

_COMPARE: Dict[type, Callable[[Any, Any], bool]] = {
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

_BINARY: Dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
}

_UNARY: Dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_NAME_LITERALS = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "null": None,
    "none": None,
    "None": None,
}

_FORBIDDEN = (
    (ast.Call, "Function calls are not allowed in conditions"),
    (ast.Lambda, "Lambda expressions are not allowed"),
    ((ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp), "Comprehensions are not allowed"),
    (ast.Await, "Await expressions are not allowed"),
    (ast.Starred, "Star expressions are not allowed"),
    (ast.NamedExpr, "Assignment expressions are not allowed"),
)


class ConditionError(Exception):
    """Raised when a condition cannot be parsed or evaluated."""
    pass


def _parse(expression: str) -> ast.Expression:
    if not expression or not expression.strip():
        raise ConditionError("Condition cannot be empty")
    expression = expression.strip()
    if len(expression) > LOGIC_EXPRESSION_MAX_LENGTH:
        raise ConditionError(
            f"Condition too long ({len(expression)} chars, max {LOGIC_EXPRESSION_MAX_LENGTH})"
        )
    try:
        return ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition syntax: {e.msg}") from e


def validate_condition_expression(expression: str) -> list[str]:
    """Validate a condition without evaluating it.

    Returns:
        List of validation error strings. Empty if valid.
    """
    try:
        tree = _parse(expression)
    except ConditionError as e:
        return [str(e)]

    errors = []
    for node in ast.walk(tree):
        for node_types, message in _FORBIDDEN:
            if isinstance(node, node_types) and message not in errors:
                errors.append(message)
    return errors


def evaluate_condition(expression: str, context: Mapping[str, Any]) -> bool:
    """Evaluate a routing condition to a boolean.

    Raises:
        ConditionError: unsupported construct or a type error during evaluation
    """
    tree = _parse(expression)
    try:
        return bool(_Evaluator(context).visit(tree.body))
    except ConditionError:
        raise
    except Exception as e:
        raise ConditionError(f"Condition evaluation failed: {e}") from e


def _lookup(container: Any, key: Any) -> Any:
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(container, (list, tuple)) and isinstance(key, int):
        return container[key] if -len(container) <= key < len(container) else None
    return None


class _Evaluator(ast.NodeVisitor):

    def __init__(self, context: Mapping[str, Any]):
        self.context = context

    def generic_visit(self, node: ast.AST) -> Any:
        raise ConditionError(f"Unsupported expression type: {type(node).__name__}")

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in _NAME_LITERALS:
            return _NAME_LITERALS[node.id]
        return self.context.get(node.id)

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        return _lookup(self.visit(node.value), self.visit(node.slice))

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            fn = _COMPARE.get(type(op))
            if fn is None:
                raise ConditionError(f"Unsupported comparison: {type(op).__name__}")
            right = self.visit(comparator)
            if not fn(left, right):
                return False
            left = right
        return True

    def visit_BoolOp(self, node: ast.BoolOp) -> bool:
        if isinstance(node.op, ast.And):
            return all(self.visit(v) for v in node.values)
        return any(self.visit(v) for v in node.values)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        fn = _UNARY.get(type(node.op))
        if fn is None:
            raise ConditionError(f"Unsupported unary op: {type(node.op).__name__}")
        return fn(self.visit(node.operand))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        fn = _BINARY.get(type(node.op))
        if fn is None:
            raise ConditionError(f"Unsupported binary op: {type(node.op).__name__}")
        return fn(self.visit(node.left), self.visit(node.right))

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_Dict(self, node: ast.Dict) -> dict:
        return {self.visit(k): self.visit(v) for k, v in zip(node.keys, node.values)}
