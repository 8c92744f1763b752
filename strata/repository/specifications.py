"""Query Specification Pattern Implementation.

Provides composable predicates for ``Repository.find``:
- Field comparisons evaluated in Python (``is_satisfied_by``)
- Logical operators (AND, OR, NOT) via ``&``, ``|`` and ``~``
- SQLAlchemy ``WHERE`` clauses for stores that push filters down
- A stable dictionary form used to derive cache keys
"""

import hashlib
import json
import re
from abc import ABC, abstractmethod
from enum import Enum
from functools import cached_property

import typing as t
from sqlalchemy import and_, not_, or_
from sqlalchemy.sql.elements import ColumnElement


class ComparisonOperator(Enum):
    """Comparison operators for specifications."""

    EQUALS = "eq"
    NOT_EQUALS = "ne"
    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    IN = "in"
    NOT_IN = "not_in"
    LIKE = "like"
    CONTAINS = "contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    BETWEEN = "between"


_ORDERED = {
    ComparisonOperator.GREATER_THAN,
    ComparisonOperator.GREATER_THAN_OR_EQUAL,
    ComparisonOperator.LESS_THAN,
    ComparisonOperator.LESS_THAN_OR_EQUAL,
    ComparisonOperator.BETWEEN,
}


class Specification(ABC):
    """Abstract base class for query specifications.

    Specifications are callables over an entity, so they can be passed
    anywhere a plain predicate is accepted.
    """

    @abstractmethod
    def is_satisfied_by(self, entity: t.Any) -> bool:
        """Evaluate the specification against an entity."""

    @abstractmethod
    def to_clause(self, model: type) -> ColumnElement[bool]:
        """Convert the specification to a SQLAlchemy boolean clause.

        Args:
            model: Mapped class whose attributes are referenced by field name

        Returns:
            Clause suitable for ``select(model).where(...)``
        """

    @abstractmethod
    def to_dict(self) -> dict[str, t.Any]:
        """Convert specification to dictionary representation."""

    def cache_token(self) -> str:
        """Stable digest of ``to_dict()``; equal specifications share a token."""
        payload = json.dumps(self.to_dict(), sort_keys=True, default=repr)
        return hashlib.md5(payload.encode(), usedforsecurity=False).hexdigest()

    def __call__(self, entity: t.Any) -> bool:
        return self.is_satisfied_by(entity)

    def __and__(self, other: "Specification") -> "AndSpecification":
        return AndSpecification([self, other])

    def __or__(self, other: "Specification") -> "OrSpecification":
        return OrSpecification([self, other])

    def __invert__(self) -> "NotSpecification":
        return NotSpecification(self)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.to_dict()!r})"


class FieldSpecification(Specification):
    """Specification for field-based queries."""

    def __init__(self, field: str, operator: ComparisonOperator, value: t.Any) -> None:
        self.field = field
        self.operator = operator
        self.value = value

    @cached_property
    def _like_pattern(self) -> re.Pattern[str]:
        parts = (
            ".*" if ch == "%" else "." if ch == "_" else re.escape(ch)
            for ch in str(self.value)
        )
        return re.compile("".join(parts), re.DOTALL)

    def is_satisfied_by(self, entity: t.Any) -> bool:  # noqa: C901
        actual = getattr(entity, self.field, None)

        match self.operator:
            case ComparisonOperator.IS_NULL:
                return actual is None
            case ComparisonOperator.IS_NOT_NULL:
                return actual is not None
            case ComparisonOperator.EQUALS:
                return actual == self.value
            case ComparisonOperator.NOT_EQUALS:
                return actual != self.value
            case ComparisonOperator.IN:
                return actual in self.value
            case ComparisonOperator.NOT_IN:
                return actual not in self.value

        if actual is None:
            return False
        if self.operator in _ORDERED:
            return self._compare(actual)

        text = str(actual)
        match self.operator:
            case ComparisonOperator.LIKE:
                return self._like_pattern.fullmatch(text) is not None
            case ComparisonOperator.CONTAINS:
                return str(self.value) in text
            case ComparisonOperator.STARTS_WITH:
                return text.startswith(str(self.value))
            case ComparisonOperator.ENDS_WITH:
                return text.endswith(str(self.value))

        msg = f"Unsupported operator: {self.operator}"
        raise ValueError(msg)

    def _compare(self, actual: t.Any) -> bool:
        match self.operator:
            case ComparisonOperator.GREATER_THAN:
                return actual > self.value
            case ComparisonOperator.GREATER_THAN_OR_EQUAL:
                return actual >= self.value
            case ComparisonOperator.LESS_THAN:
                return actual < self.value
            case ComparisonOperator.LESS_THAN_OR_EQUAL:
                return actual <= self.value
            case _:
                low, high = self.value
                return low <= actual <= high

    def to_clause(self, model: type) -> ColumnElement[bool]:  # noqa: C901
        column = getattr(model, self.field)

        match self.operator:
            case ComparisonOperator.EQUALS:
                return column == self.value
            case ComparisonOperator.NOT_EQUALS:
                return column != self.value
            case ComparisonOperator.GREATER_THAN:
                return column > self.value
            case ComparisonOperator.GREATER_THAN_OR_EQUAL:
                return column >= self.value
            case ComparisonOperator.LESS_THAN:
                return column < self.value
            case ComparisonOperator.LESS_THAN_OR_EQUAL:
                return column <= self.value
            case ComparisonOperator.IN:
                return column.in_(list(self.value))
            case ComparisonOperator.NOT_IN:
                return column.not_in(list(self.value))
            case ComparisonOperator.LIKE:
                return column.like(self.value)
            case ComparisonOperator.CONTAINS:
                return column.contains(self.value, autoescape=True)
            case ComparisonOperator.STARTS_WITH:
                return column.startswith(self.value, autoescape=True)
            case ComparisonOperator.ENDS_WITH:
                return column.endswith(self.value, autoescape=True)
            case ComparisonOperator.IS_NULL:
                return column.is_(None)
            case ComparisonOperator.IS_NOT_NULL:
                return column.is_not(None)
            case ComparisonOperator.BETWEEN:
                low, high = self.value
                return column.between(low, high)

        msg = f"Unsupported operator: {self.operator}"
        raise ValueError(msg)

    def to_dict(self) -> dict[str, t.Any]:
        value = self.value
        if isinstance(value, set | frozenset):
            value = sorted(value, key=repr)
        elif isinstance(value, tuple):
            value = list(value)
        return {
            "type": "field",
            "field": self.field,
            "operator": self.operator.value,
            "value": value,
        }


class AndSpecification(Specification):
    """Specification for AND operations."""

    def __init__(self, specifications: list[Specification]) -> None:
        self.specifications = specifications

    def is_satisfied_by(self, entity: t.Any) -> bool:
        return all(spec.is_satisfied_by(entity) for spec in self.specifications)

    def to_clause(self, model: type) -> ColumnElement[bool]:
        return and_(*(spec.to_clause(model) for spec in self.specifications))

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "and",
            "specifications": [spec.to_dict() for spec in self.specifications],
        }


class OrSpecification(Specification):
    """Specification for OR operations."""

    def __init__(self, specifications: list[Specification]) -> None:
        self.specifications = specifications

    def is_satisfied_by(self, entity: t.Any) -> bool:
        return any(spec.is_satisfied_by(entity) for spec in self.specifications)

    def to_clause(self, model: type) -> ColumnElement[bool]:
        return or_(*(spec.to_clause(model) for spec in self.specifications))

    def to_dict(self) -> dict[str, t.Any]:
        return {
            "type": "or",
            "specifications": [spec.to_dict() for spec in self.specifications],
        }


class NotSpecification(Specification):
    """Specification for NOT operations."""

    def __init__(self, specification: Specification) -> None:
        self.specification = specification

    def is_satisfied_by(self, entity: t.Any) -> bool:
        return not self.specification.is_satisfied_by(entity)

    def to_clause(self, model: type) -> ColumnElement[bool]:
        return not_(self.specification.to_clause(model))

    def to_dict(self) -> dict[str, t.Any]:
        return {"type": "not", "specification": self.specification.to_dict()}


# Convenience functions for creating specifications
def equals(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.EQUALS, value)


def not_equals(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.NOT_EQUALS, value)


def greater_than(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.GREATER_THAN, value)


def greater_than_or_equal(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.GREATER_THAN_OR_EQUAL, value)


def less_than(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.LESS_THAN, value)


def less_than_or_equal(field: str, value: t.Any) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.LESS_THAN_OR_EQUAL, value)


def in_values(field: str, values: t.Iterable[t.Any]) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.IN, list(values))


def not_in_values(field: str, values: t.Iterable[t.Any]) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.NOT_IN, list(values))


def like(field: str, pattern: str) -> FieldSpecification:
    """SQL ``LIKE`` semantics: ``%`` matches any run, ``_`` one character."""
    return FieldSpecification(field, ComparisonOperator.LIKE, pattern)


def contains(field: str, value: str) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.CONTAINS, value)


def starts_with(field: str, value: str) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.STARTS_WITH, value)


def ends_with(field: str, value: str) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.ENDS_WITH, value)


def is_null(field: str) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.IS_NULL, None)


def is_not_null(field: str) -> FieldSpecification:
    return FieldSpecification(field, ComparisonOperator.IS_NOT_NULL, None)


def between(field: str, start: t.Any, end: t.Any) -> FieldSpecification:
    """Inclusive range on both ends."""
    return FieldSpecification(field, ComparisonOperator.BETWEEN, [start, end])


def and_specs(*specifications: Specification) -> AndSpecification:
    return AndSpecification(list(specifications))


def or_specs(*specifications: Specification) -> OrSpecification:
    return OrSpecification(list(specifications))


def not_spec(specification: Specification) -> NotSpecification:
    return NotSpecification(specification)
