"""
Restricted predicate expressions for conditional and loop steps.

Expressions are parsed with :mod:`ast` and interpreted over a whitelist of
node types; nothing is ever handed to ``eval``. The names visible to an
expression are fixed:

- ``data``          current payload
- ``result``        last step result (``None`` before the first step)
- ``step_results``  all step results so far (alias ``stepResults``)
- ``metadata``      run metadata
- ``iteration``     zero-based loop iteration (loops only)

JavaScript-style spellings found in pipeline files (``===``, ``!==``,
``&&``, ``||``, ``!``, ``true``, ``false``, ``null``) are accepted.
Referencing a missing field raises ``PredicateEvaluationError``; it never
evaluates to false silently.
"""

import ast
import operator
from collections.abc import Callable, Mapping, Sequence
from functools import lru_cache
from typing import Any

from .context import PipelineContext
from .errors import PredicateEvaluationError

Predicate = str | Callable[[dict[str, Any]], Any]

_CONSTANT_NAMES = {"true": True, "false": False, "null": None, "undefined": None}

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
}

_COMPARE_OPS = {
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

_BIN_OPS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}


def _normalize(expr: str) -> str:
    """Rewrite JS-style operators outside of string literals."""
    out: list[str] = []
    i, quote = 0, None
    while i < len(expr):
        ch = expr[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(expr):
                out.append(expr[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in "'\"":
            quote = ch
            out.append(ch)
            i += 1
            continue
        for token, replacement in (
            ("===", "=="),
            ("!==", "!="),
            ("&&", " and "),
            ("||", " or "),
        ):
            if expr.startswith(token, i):
                out.append(replacement)
                i += len(token)
                break
        else:
            if ch == "!" and not expr.startswith("!=", i):
                out.append(" not ")
            else:
                out.append(ch)
            i += 1
    return "".join(out)


@lru_cache(maxsize=256)
def parse_expression(expr: str) -> ast.Expression:
    """Parse and validate an expression; raises PredicateEvaluationError on bad syntax."""
    try:
        tree = ast.parse(_normalize(expr).strip(), mode="eval")
    except SyntaxError as e:
        raise PredicateEvaluationError(f"invalid expression {expr!r}: {e.msg}") from e
    return tree


class _Evaluator:
    def __init__(self, scope: Mapping[str, Any], source: str):
        self.scope = scope
        self.source = source

    def fail(self, message: str) -> PredicateEvaluationError:
        return PredicateEvaluationError(f"{message} in {self.source!r}")

    def eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.eval(node.body)
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            if node.id in self.scope:
                return self.scope[node.id]
            if node.id in _CONSTANT_NAMES:
                return _CONSTANT_NAMES[node.id]
            raise self.fail(f"unknown name '{node.id}'")
        if isinstance(node, ast.BoolOp):
            # Short-circuit like Python: return the deciding operand
            result: Any = isinstance(node.op, ast.And)
            for value in node.values:
                result = self.eval(value)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.Not):
            return not self.eval(node.operand)
        if isinstance(node, ast.UnaryOp) and isinstance(node.op, ast.USub):
            return -self.eval(node.operand)
        if isinstance(node, ast.Compare):
            return self._compare(node)
        if isinstance(node, ast.BinOp) and type(node.op) in _BIN_OPS:
            try:
                return _BIN_OPS[type(node.op)](self.eval(node.left), self.eval(node.right))
            except (TypeError, ZeroDivisionError) as e:
                raise self.fail(str(e)) from e
        if isinstance(node, ast.Attribute):
            return self.access(self.eval(node.value), node.attr)
        if isinstance(node, ast.Subscript):
            return self.access(self.eval(node.value), self.eval(node.slice))
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self.eval(e) for e in node.elts]
        if (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in _FUNCTIONS
            and not node.keywords
        ):
            try:
                return _FUNCTIONS[node.func.id](*(self.eval(a) for a in node.args))
            except (TypeError, ValueError) as e:
                raise self.fail(f"{node.func.id}() failed: {e}") from e
        raise self.fail(f"unsupported syntax '{type(node).__name__}'")

    def _compare(self, node: ast.Compare) -> bool:
        current = self.eval(node.left)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = self.eval(comparator)
            try:
                ok = _COMPARE_OPS[type(op)](current, right)
            except TypeError as e:
                raise self.fail(f"cannot compare: {e}") from e
            if not ok:
                return False
            current = right
        return True

    def access(self, target: Any, key: Any) -> Any:
        if isinstance(key, str) and key.startswith("_"):
            raise self.fail(f"private field '{key}' is not accessible")
        if isinstance(target, Mapping):
            if key in target:
                return target[key]
            raise self.fail(f"missing field '{key}'")
        if key == "length" and isinstance(target, Sequence):
            return len(target)
        if isinstance(key, int) and isinstance(target, Sequence):
            try:
                return target[key]
            except IndexError as e:
                raise self.fail(f"index {key} out of range") from e
        if isinstance(key, str) and target is not None and hasattr(target, key):
            value = getattr(target, key)
            if callable(value):
                raise self.fail(f"method '{key}' is not accessible")
            return value
        raise self.fail(f"missing field '{key}' on {type(target).__name__}")


def build_scope(context: PipelineContext, iteration: int | None = None) -> dict[str, Any]:
    scope = {
        "data": context.data,
        "result": context.last_result,
        "step_results": list(context.step_results),
        "stepResults": list(context.step_results),
        "metadata": dict(context.metadata),
    }
    if iteration is not None:
        scope["iteration"] = iteration
    return scope


def evaluate_expression(expr: str, scope: Mapping[str, Any]) -> Any:
    return _Evaluator(scope, expr).eval(parse_expression(expr))


def evaluate_predicate(
    predicate: Predicate, context: PipelineContext, iteration: int | None = None
) -> bool:
    """Evaluate a predicate (expression string or callable) against a context."""
    scope = build_scope(context, iteration)
    if isinstance(predicate, str):
        return bool(evaluate_expression(predicate, scope))
    try:
        return bool(predicate(scope))
    except PredicateEvaluationError:
        raise
    except Exception as e:
        raise PredicateEvaluationError(f"predicate raised {type(e).__name__}: {e}") from e
