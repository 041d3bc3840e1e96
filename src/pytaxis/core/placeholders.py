"""``{{name}}`` placeholder substitution.

Used twice: at run time to resolve a step's static input against
parameters and upstream outputs, and at template instantiation to apply
parameter overrides. Both are best-effort: a placeholder that cannot be
resolved is left untouched.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from typing import Any

from pytaxis.core.expressions import MISSING, lookup_path

__all__ = ["PLACEHOLDER", "substitute", "resolve_input", "placeholder_names"]

PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")

Lookup = Callable[[str], Any]


def substitute(value: Any, lookup: Lookup) -> Any:
    """Recursively replace placeholders in ``value``.

    A string that is exactly one placeholder is replaced by the looked-up
    object itself (keeping its type). Placeholders embedded in a longer
    string are interpolated with ``str()``. Dicts, lists and tuples are
    walked; other values are returned unchanged.

    Args:
        value: Value to substitute into
        lookup: Returns the replacement for a placeholder name, or MISSING

    Example:
        ```python
        substitute({"id": "{{order}}", "msg": "order {{order}}"},
                   lambda name: {"order": 42}.get(name, MISSING))
        # {"id": 42, "msg": "order 42"}
        ```
    """
    if isinstance(value, str):
        whole = PLACEHOLDER.fullmatch(value.strip())
        if whole:
            found = lookup(whole.group(1))
            return value if found is MISSING else found

        def interpolate(match: re.Match[str]) -> str:
            found = lookup(match.group(1))
            return match.group(0) if found is MISSING else str(found)

        return PLACEHOLDER.sub(interpolate, value)

    if isinstance(value, Mapping):
        return {k: substitute(v, lookup) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute(v, lookup) for v in value]
    if isinstance(value, tuple):
        return tuple(substitute(v, lookup) for v in value)
    return value


def resolve_input(static_input: Mapping[str, Any], context: Mapping[str, Any]) -> dict[str, Any]:
    """Resolve a step's static input against an evaluation context."""
    return substitute(dict(static_input), lambda name: lookup_path(context, name))


def placeholder_names(value: Any) -> list[str]:
    """Names of all placeholders found in ``value``, in order, without duplicates."""
    names: list[str] = []

    def collect(v: Any) -> None:
        if isinstance(v, str):
            for match in PLACEHOLDER.finditer(v):
                if match.group(1) not in names:
                    names.append(match.group(1))
        elif isinstance(v, Mapping):
            for item in v.values():
                collect(item)
        elif isinstance(v, list | tuple):
            for item in v:
                collect(item)

    collect(value)
    return names

