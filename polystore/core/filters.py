"""
Structured filter expressions shared by every store adapter.

Callers describe filters as plain mappings (the shape request handlers
receive) or as explicit expressions:

- ``{"severity": "high"}``             -> ``Eq("severity", "high")``
- ``{"severity": ["high", "low"]}``    -> ``In("severity", ("high", "low"))``
- ``{"score": {"min": 5, "max": 9}}``  -> ``Range("score", 5, 9)``

Each adapter translates the resulting tuple of ``FilterExpr`` into its own
native query form. ``matches_all`` is the reference semantics that in-process
adapters evaluate directly.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from typing import Any

from .errors import ValidationError

_MISSING = object()


@dataclass(frozen=True, slots=True)
class Eq:
    """Field equals value (list-valued fields match if they contain it)."""

    field: str
    value: Any


@dataclass(frozen=True, slots=True)
class In:
    """Field value is one of ``values``."""

    field: str
    values: tuple[Any, ...]


@dataclass(frozen=True, slots=True)
class Range:
    """Inclusive range; either bound may be omitted but not both."""

    field: str
    min: Any = None
    max: Any = None

    def __post_init__(self) -> None:
        if self.min is None and self.max is None:
            raise ValidationError(f"Range filter on '{self.field}' needs min or max")
        if (
            self.min is not None
            and self.max is not None
            and isinstance(self.min, str) != isinstance(self.max, str)
        ):
            raise ValidationError(f"Range filter on '{self.field}' mixes text and numeric bounds")


type FilterExpr = Eq | In | Range


def _dedupe(values: Iterable[Any]) -> tuple[Any, ...]:
    seen: list[Any] = []
    for value in values:
        if value not in seen:
            seen.append(value)
    return tuple(seen)


def parse_filter(field: str, value: Any) -> FilterExpr:
    """Translate one ``field -> value`` pair into a filter expression."""
    if isinstance(value, list | tuple | set | frozenset):
        return In(field, _dedupe(value))
    if isinstance(value, Mapping) and ("min" in value or "max" in value):
        return Range(field, value.get("min"), value.get("max"))
    return Eq(field, value)


def parse_filters(
    filters: Mapping[str, Any] | Iterable[FilterExpr] | None,
) -> tuple[FilterExpr, ...]:
    """Normalise caller filters into a tuple of filter expressions."""
    if filters is None:
        return ()
    if isinstance(filters, Mapping):
        return tuple(parse_filter(str(key), value) for key, value in filters.items())
    parsed: list[FilterExpr] = []
    for expr in filters:
        if not isinstance(expr, Eq | In | Range):
            raise ValidationError(f"Unsupported filter expression: {expr!r}")
        parsed.append(expr)
    return tuple(parsed)


def resolve_field(document: Mapping[str, Any], field: str) -> Any:
    """Look up a dotted field path, returning ``_MISSING`` when absent."""
    current: Any = document
    for part in field.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def _eq(actual: Any, expected: Any) -> bool:
    if isinstance(actual, list) and not isinstance(expected, list):
        return expected in actual
    return actual == expected


def _in(actual: Any, values: tuple[Any, ...]) -> bool:
    if isinstance(actual, list):
        return any(item in values for item in actual)
    return actual in values


def _in_range(actual: Any, low: Any, high: Any) -> bool:
    if actual is None or isinstance(actual, bool):
        return False
    try:
        if low is not None and actual < low:
            return False
        if high is not None and actual > high:
            return False
    except TypeError:
        return False
    return True


def matches(document: Mapping[str, Any], expr: FilterExpr) -> bool:
    """Evaluate a single filter expression against a document."""
    actual = resolve_field(document, expr.field)
    if actual is _MISSING:
        return False
    match expr:
        case Eq(value=value):
            return _eq(actual, value)
        case In(values=values):
            return _in(actual, values)
        case Range(min=low, max=high):
            return _in_range(actual, low, high)
    return False


def matches_all(document: Mapping[str, Any], exprs: Iterable[FilterExpr]) -> bool:
    """Conjunction of all expressions (empty means match everything)."""
    return all(matches(document, expr) for expr in exprs)
