"""Expression evaluation for conditions, loop items, wait deadlines and assignees.

The scheduler treats expressions as opaque: it hands the expression text
and an evaluation context to an injected ``ExpressionEvaluator`` and uses
whatever comes back. ``SimpleEvaluator`` is the default and deliberately
small: path lookups, JSON literals, ``not`` and binary comparisons. Plug in
a real expression engine by implementing the protocol.

Evaluation context layout:
    {
        "params": {...},           # global parameters overridden by input
        "steps": {step_id: output},
        "vars": {...},             # loop bindings (also copied to top level)
        "<item_variable>": item,
        "index": 2,
    }
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any, Protocol, runtime_checkable

from pytaxis.core.errors import ExpressionError

__all__ = ["ExpressionEvaluator", "SimpleEvaluator", "MISSING", "lookup_path"]

# Sentinel for "path does not resolve", distinct from a resolved None.
MISSING = object()

_COMPARISONS = ("==", "!=", ">=", "<=", ">", "<")


@runtime_checkable
class ExpressionEvaluator(Protocol):
    """Evaluates an expression against an evaluation context."""

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any: ...


def lookup_path(context: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path such as ``steps.fetch.items.0``.

    A bare first segment that is not a top-level key is looked up in
    ``params``, so ``{{region}}`` and ``{{params.region}}`` are equivalent.

    Returns:
        The resolved value, or MISSING
    """
    parts = [p for p in path.strip().split(".") if p]
    if not parts:
        return MISSING

    head, rest = parts[0], parts[1:]
    if head in context:
        current: Any = context[head]
    else:
        params = context.get("params") or {}
        if head not in params:
            return MISSING
        current = params[head]

    for part in rest:
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list | tuple):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return MISSING
        else:
            current = getattr(current, part, MISSING)
            if current is MISSING:
                return MISSING
    return current


class SimpleEvaluator:
    """Minimal evaluator: lookups, literals, ``not`` and comparisons.

    Examples:
        evaluator.evaluate("params.enabled", ctx)
        evaluator.evaluate("steps.check.status == 'ok'", ctx)
        evaluator.evaluate("not steps.check.flagged", ctx)
        evaluator.evaluate("[1, 2, 3]", ctx)
    """

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        text = _unwrap(expression)
        if not text:
            raise ExpressionError("Empty expression")

        if text.startswith("not "):
            return not self.evaluate(text[4:], context)

        for op in _COMPARISONS:
            token = f" {op} "
            if token in text:
                left, right = text.split(token, 1)
                return _compare(
                    self._operand(left, context), op, self._operand(right, context), text
                )

        return self._operand(text, context)

    def _operand(self, text: str, context: Mapping[str, Any]) -> Any:
        text = text.strip()
        if text.startswith("'") and text.endswith("'") and len(text) >= 2:
            return text[1:-1]
        try:
            return json.loads(text)
        except ValueError:
            pass

        value = lookup_path(context, text)
        if value is MISSING:
            raise ExpressionError(f"Cannot resolve '{text}'")
        return value

    def __repr__(self) -> str:
        return "SimpleEvaluator()"


def _unwrap(expression: str) -> str:
    text = expression.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[2:-2].strip()
    return text


def _compare(left: Any, op: str, right: Any, text: str) -> bool:
    try:
        if op == "==":
            return left == right
        if op == "!=":
            return left != right
        if op == ">=":
            return left >= right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left < right
    except TypeError as e:
        raise ExpressionError(f"Cannot compare in '{text}': {e}") from e
