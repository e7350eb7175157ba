"""Substitution of symbolic variables inside call arguments.

Symbolic variables may appear anywhere inside the argument structure of a
call: directly, or nested in lists, tuples, dicts, sets and frozensets.
User callbacks never need to know about this walk; the runners resolve
arguments before handing them to preconditions, postconditions, state
transitions and implementations.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from statecheck.common import UnboundVariable, Var


def resolve(value: Any, env: Mapping[Any, Any]) -> Any:
    """Replace every :class:`Var` in ``value`` by its binding in ``env``.

    Raises:
        UnboundVariable: if a variable has no binding.
    """
    if isinstance(value, Var):
        try:
            return env[value.index]
        except KeyError:
            raise UnboundVariable(f"{value!r} is not bound") from None
    if isinstance(value, tuple):
        if hasattr(value, "_fields"):  # namedtuple
            return type(value)(*(resolve(v, env) for v in value))
        return tuple(resolve(v, env) for v in value)
    if isinstance(value, list):
        return [resolve(v, env) for v in value]
    if isinstance(value, dict):
        return {resolve(k, env): resolve(v, env) for k, v in value.items()}
    if isinstance(value, frozenset):
        return frozenset(resolve(v, env) for v in value)
    if isinstance(value, set):
        return {resolve(v, env) for v in value}
    return value


def referenced_vars(value: Any) -> set[Var]:
    """Collect every :class:`Var` mentioned anywhere inside ``value``."""
    found: set[Var] = set()
    stack = [value]
    while stack:
        item = stack.pop()
        if isinstance(item, Var):
            found.add(item)
        elif isinstance(item, (tuple, list, set, frozenset)):
            stack.extend(item)
        elif isinstance(item, dict):
            stack.extend(item.keys())
            stack.extend(item.values())
    return found
