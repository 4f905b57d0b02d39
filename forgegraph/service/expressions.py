"""Restricted expression evaluation for declarative edge conditions.

Only literals, names supplied by the caller, boolean logic, comparisons,
arithmetic and subscripts are accepted. Attribute access, lambdas and
comprehensions are rejected before evaluation.
"""
from __future__ import annotations

import ast
import operator
from collections.abc import Mapping, Sequence
from typing import Any

from forgegraph.logging import get_logger

logger = get_logger(__name__)

_MAX_REPEAT_LEN = 10_000


def _mul(left: Any, right: Any) -> Any:
    for seq, count in ((left, right), (right, left)):
        if isinstance(seq, (str, bytes, list, tuple)) and isinstance(count, int):
            if len(seq) * count > _MAX_REPEAT_LEN:
                raise ValueError("sequence repetition too large")
    return operator.mul(left, right)


_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: _mul,
    ast.Div: operator.truediv,
    ast.Mod: operator.mod,
    ast.FloorDiv: operator.floordiv,
}

_CMP_OPS = {
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

_DISALLOWED = (
    ast.Attribute,
    ast.Call,
    ast.Lambda,
    ast.ListComp,
    ast.SetComp,
    ast.DictComp,
    ast.GeneratorExp,
    ast.Await,
    ast.Yield,
    ast.YieldFrom,
    ast.NamedExpr,
)

_MAX_DEPTH = 64


def _eval(node: ast.AST, names: Mapping[str, Any], depth: int = 0) -> Any:
    if depth > _MAX_DEPTH:
        raise ValueError("expression too deeply nested")
    nxt = depth + 1

    if isinstance(node, ast.Expression):
        return _eval(node.body, names, nxt)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id in names:
            return names[node.id]
        if node.id in ("true", "false", "null"):
            return {"true": True, "false": False, "null": None}[node.id]
        raise ValueError(f"unknown name {node.id}")

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _eval(value, names, nxt)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _eval(value, names, nxt)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        operand = _eval(node.operand, names, nxt)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ValueError("unsupported unary operator")

    if isinstance(node, ast.BinOp):
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ValueError("unsupported binary operator")
        return op(_eval(node.left, names, nxt), _eval(node.right, names, nxt))

    if isinstance(node, ast.Compare):
        left = _eval(node.left, names, nxt)
        for op_node, comparator in zip(node.ops, node.comparators):
            op = _CMP_OPS.get(type(op_node))
            if op is None:
                raise ValueError("unsupported comparator")
            right = _eval(comparator, names, nxt)
            if not op(left, right):
                return False
            left = right
        return True

    if isinstance(node, ast.IfExp):
        if _eval(node.test, names, nxt):
            return _eval(node.body, names, nxt)
        return _eval(node.orelse, names, nxt)

    if isinstance(node, ast.Subscript):
        target = _eval(node.value, names, nxt)
        index = _eval(node.slice, names, nxt)
        if not isinstance(target, (Mapping, Sequence)):
            raise ValueError("subscript targets must be sequences or mappings")
        try:
            return target[index]
        except (KeyError, IndexError, TypeError) as exc:
            raise ValueError(f"invalid subscript access: {exc}") from exc

    if isinstance(node, (ast.Tuple, ast.List)):
        values = [_eval(elt, names, nxt) for elt in node.elts]
        return tuple(values) if isinstance(node, ast.Tuple) else values

    raise ValueError(f"unsupported expression node: {type(node).__name__}")


def safe_eval_expr(expr: str, names: Mapping[str, Any]) -> Any:
    """Evaluate ``expr`` against ``names`` using the AST allowlist above.

    Raises ValueError for syntax errors, disallowed constructs, unknown
    names or failed lookups.
    """
    try:
        parsed = ast.parse(expr.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError("invalid expression") from exc
    for node in ast.walk(parsed):
        if isinstance(node, _DISALLOWED):
            raise ValueError("disallowed syntax in expression")
    return _eval(parsed, names)


def evaluate_condition(expr: str, state: Mapping[str, Any]) -> bool:
    """Evaluate a string edge condition; evaluation errors count as false."""
    try:
        return bool(safe_eval_expr(expr, {"state": state}))
    except (ValueError, TypeError, ZeroDivisionError, OverflowError, MemoryError) as exc:
        logger.warning("edge_condition_eval_failed", condition=expr, error=str(exc))
        return False
