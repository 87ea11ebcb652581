"""Filter expression types for tablekit queries.

Expressions are plain values. Store clients compile them to their native
filter language; the repository layer only forwards them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Union

TRUE_EQ_ERROR = "Use .is_true() instead of == True in tablekit query expressions."
FALSE_EQ_ERROR = "Use .is_false() instead of == False in tablekit query expressions."
NULL_EQ_ERROR = "Comparisons against None are not supported by table stores."

COMPARISON_OPS = ("==", "!=", ">", ">=", "<", "<=", "STARTSWITH", "IN")


class FilterExpression:
    """Base class for filter expressions."""

    def __and__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="AND", children=[self, other])

    def __or__(self, other: FilterExpression) -> LogicalExpression:
        return LogicalExpression(op="OR", children=[self, other])

    def __invert__(self) -> LogicalExpression:
        return LogicalExpression(op="NOT", children=[self])


@dataclass
class ComparisonExpression(FilterExpression):
    """A comparison between an entity field and a value.

    ``field_name`` is the Python attribute name (``partition_key``,
    ``row_key``, ``timestamp`` or a declared field); store clients map it to
    their stored property name.
    """

    field_name: str
    op: str  # one of COMPARISON_OPS
    value: Any = None

    def __post_init__(self) -> None:
        if self.op not in COMPARISON_OPS:
            raise ValueError(f"Unsupported comparison operator '{self.op}'")

    def __hash__(self) -> int:
        v = self.value
        if isinstance(v, list):
            v = tuple(v)
        return hash((self.field_name, self.op, v))

    def __eq__(self, other: object) -> bool:  # type: ignore[override]
        if not isinstance(other, ComparisonExpression):
            return NotImplemented
        return (
            self.field_name == other.field_name
            and self.op == other.op
            and self.value == other.value
        )


@dataclass
class LogicalExpression(FilterExpression):
    """A logical combination of filter expressions."""

    op: str  # "AND", "OR", "NOT"
    children: list[FilterExpression] = field(default_factory=list)


# A query predicate is either an expression, a store-native filter string or
# None (match everything).
QueryFilter = Union[FilterExpression, str, None]


class FieldProxy:
    """Proxy that generates FilterExpression from field operations."""

    def __init__(self, field_name: str) -> None:
        self._field_name = field_name

    def __eq__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_EQ_ERROR)
        if other is True:
            raise TypeError(TRUE_EQ_ERROR)
        if other is False:
            raise TypeError(FALSE_EQ_ERROR)
        return ComparisonExpression(self._field_name, "==", other)

    def __ne__(self, other: object) -> ComparisonExpression:  # type: ignore[override]
        if other is None:
            raise TypeError(NULL_EQ_ERROR)
        return ComparisonExpression(self._field_name, "!=", other)

    def __gt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, ">", other)

    def __ge__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, ">=", other)

    def __lt__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "<", other)

    def __le__(self, other: Any) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "<=", other)

    def __hash__(self) -> int:
        return hash(self._field_name)

    def startswith(self, prefix: str) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "STARTSWITH", prefix)

    def in_(self, values: list[Any]) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "IN", list(values))

    def is_true(self) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "==", True)

    def is_false(self) -> ComparisonExpression:
        return ComparisonExpression(self._field_name, "==", False)


def compare_value(value: Any, op: str, rhs: Any) -> bool:
    """Compare a single value against an operator and right-hand side."""
    if op == "==":
        return value == rhs
    elif op == "!=":
        return value != rhs
    elif op == ">":
        return value is not None and value > rhs
    elif op == ">=":
        return value is not None and value >= rhs
    elif op == "<":
        return value is not None and value < rhs
    elif op == "<=":
        return value is not None and value <= rhs
    elif op == "IN":
        return value in rhs
    elif op == "STARTSWITH":
        return isinstance(value, str) and value.startswith(rhs)
    return False


def matches_filter(data: dict[str, Any], expr: FilterExpression | None) -> bool:
    """Evaluate a FilterExpression against a dict of field values."""
    if expr is None:
        return True
    if isinstance(expr, ComparisonExpression):
        return compare_value(data.get(expr.field_name), expr.op, expr.value)
    if isinstance(expr, LogicalExpression):
        if expr.op == "AND":
            return all(matches_filter(data, c) for c in expr.children)
        if expr.op == "OR":
            return any(matches_filter(data, c) for c in expr.children)
        if expr.op == "NOT":
            return not matches_filter(data, expr.children[0])
    raise ValueError(f"Unknown filter expression type: {type(expr)}")


def prefix_upper_bound(prefix: str) -> str:
    """Smallest string greater than every string starting with ``prefix``."""
    if not prefix:
        raise ValueError("startswith() requires a non-empty prefix")
    return prefix[:-1] + chr(ord(prefix[-1]) + 1)
