"""Condition expression trees for gating middleware processing.

A condition is an immutable tree of :class:`Compare` leaves combined with
:class:`And`, :class:`Or` and :class:`Not`. Trees are evaluated against a
:class:`~docchain.events.DocumentEvent` and serialize to plain dicts, so they
can be stored, compared and tested without executing arbitrary code.

Example:
    >>> condition = when("type").equals("document-created") & when("document.type").media_type("image/*")
    >>> condition.evaluate(event)
    True
    >>> Condition.from_dict(condition.to_dict()) == condition
    True

Evaluation rules:
    - ``And`` and ``Or`` evaluate children left to right and stop at the
      first conclusive result.
    - A leaf referencing a field the event does not carry raises
      ``ConditionEvaluationError``; :meth:`Condition.evaluate` logs it and
      returns False for the whole tree.
    - ``Always`` (the empty condition) is true for every event.
"""

from __future__ import annotations

import fnmatch
import logging
import re
from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any

from docchain.errors import ConditionEvaluationError, ConfigurationError
from docchain.events.media_types import InvalidMediaTypeError, MediaType, media_type_matches
from docchain.pipeline.predicates import MISSING, get_nested_value, match_value, translate_path

if TYPE_CHECKING:
    from docchain.events.types import DocumentEvent

logger = logging.getLogger(__name__)


class Comparator(str, Enum):
    """Comparison applied by a :class:`Compare` leaf."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    IN = "in"
    MATCHES = "matches"
    GLOB = "glob"
    MEDIA_TYPE = "media_type"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    EXISTS = "exists"
    PATTERN = "pattern"


_NUMERIC = {Comparator.GT, Comparator.GTE, Comparator.LT, Comparator.LTE}
_SEQUENCE_OPERANDS = {Comparator.IN, Comparator.MEDIA_TYPE}


def _as_text(value: Any) -> str:
    if isinstance(value, Enum) and isinstance(value.value, str):
        return value.value
    return str(value)


def _freeze(value: Any) -> Any:
    if isinstance(value, list | tuple):
        return tuple(_freeze(v) for v in value)
    return value


def _thaw(value: Any) -> Any:
    if isinstance(value, tuple):
        return [_thaw(v) for v in value]
    return value


class Condition(ABC):
    """Base class for condition tree nodes."""

    def evaluate(self, event: DocumentEvent) -> bool:
        """Return whether *event* satisfies this condition.

        Missing fields make the condition false instead of raising.
        """
        try:
            return self.test(event)
        except ConditionEvaluationError as exc:
            logger.debug("Condition treated as false for chain %s: %s", event.chain_id, exc)
            return False

    @abstractmethod
    def test(self, event: DocumentEvent) -> bool:
        """Evaluate strictly, raising ``ConditionEvaluationError`` on missing fields."""

    @abstractmethod
    def to_dict(self) -> dict[str, Any]:
        """Return a JSON-serializable representation."""

    def and_(self, other: Condition) -> Condition:
        """Return the conjunction of this condition and *other*."""
        if isinstance(self, Always):
            return other
        if isinstance(other, Always):
            return self
        left = self.conditions if isinstance(self, And) else (self,)
        right = other.conditions if isinstance(other, And) else (other,)
        return And((*left, *right))

    def or_(self, other: Condition) -> Condition:
        """Return the disjunction of this condition and *other*."""
        left = self.conditions if isinstance(self, Or) else (self,)
        right = other.conditions if isinstance(other, Or) else (other,)
        return Or((*left, *right))

    def not_(self) -> Condition:
        """Return the negation of this condition."""
        if isinstance(self, Not):
            return self.condition
        return Not(self)

    def __and__(self, other: Condition) -> Condition:
        return self.and_(other)

    def __or__(self, other: Condition) -> Condition:
        return self.or_(other)

    def __invert__(self) -> Condition:
        return self.not_()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Condition:
        """Create a condition tree from its dictionary form.

        Raises:
            ConfigurationError: If the dictionary does not describe a condition
        """
        if not isinstance(data, Mapping):
            raise ConfigurationError(f"Condition must be a mapping, got {type(data).__name__}")
        op = data.get("op")
        if op == "always":
            return Always()
        if op == "compare":
            return Compare(
                field=data.get("field", ""),
                comparator=data.get("comparator", ""),
                operand=data.get("operand"),
            )
        if op in ("and", "or"):
            children = data.get("conditions")
            if not isinstance(children, list):
                raise ConfigurationError(f"'{op}' condition requires a 'conditions' list")
            parsed = tuple(cls.from_dict(child) for child in children)
            return And(parsed) if op == "and" else Or(parsed)
        if op == "not":
            return Not(cls.from_dict(data.get("condition", {})))
        raise ConfigurationError(f"Unknown condition op: {op!r}")


@dataclass(frozen=True)
class Always(Condition):
    """The empty condition: true for every event."""

    def test(self, event: DocumentEvent) -> bool:  # noqa: ARG002
        return True

    def to_dict(self) -> dict[str, Any]:
        return {"op": "always"}


@dataclass(frozen=True)
class Compare(Condition):
    """Leaf comparing one event field against a literal operand.

    Attributes:
        field: Dot-separated field path (wire-format aliases accepted)
        comparator: Comparison to apply
        operand: Literal to compare with (sequence for ``in``/``media_type``)
    """

    field: str
    comparator: Comparator
    operand: Any = None

    def __post_init__(self) -> None:
        """Validate the leaf and freeze its operand."""
        if not self.field:
            raise ConfigurationError("Condition field cannot be empty")
        try:
            comparator = Comparator(self.comparator)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown comparator: {self.comparator!r}") from exc
        object.__setattr__(self, "comparator", comparator)

        operand = self.operand
        if comparator in _SEQUENCE_OPERANDS and isinstance(operand, str):
            operand = [operand]
        operand = _freeze(operand)
        object.__setattr__(self, "operand", operand)

        if comparator in _SEQUENCE_OPERANDS and not isinstance(operand, tuple):
            raise ConfigurationError(f"'{comparator.value}' requires a list operand")
        if comparator == Comparator.MEDIA_TYPE:
            for pattern in operand:
                try:
                    MediaType.parse(pattern, allow_wildcard=True)
                except InvalidMediaTypeError as exc:
                    raise ConfigurationError(str(exc)) from exc
        elif comparator == Comparator.MATCHES:
            try:
                re.compile(operand)
            except (re.error, TypeError) as exc:
                raise ConfigurationError(f"Invalid regular expression {operand!r}: {exc}") from exc
        elif comparator in _NUMERIC and (isinstance(operand, bool) or not isinstance(operand, int | float)):
            raise ConfigurationError(f"'{comparator.value}' requires a numeric operand")

    def test(self, event: DocumentEvent) -> bool:
        value = get_nested_value(event, translate_path(self.field))

        if self.comparator == Comparator.EXISTS:
            expected = True if self.operand is None else bool(self.operand)
            return (value is not MISSING) == expected
        if value is MISSING:
            raise ConditionEvaluationError(self.field)

        if self.comparator == Comparator.EQUALS:
            return bool(value == self.operand)
        if self.comparator == Comparator.NOT_EQUALS:
            return bool(value != self.operand)
        if self.comparator == Comparator.IN:
            return value in self.operand
        if self.comparator == Comparator.MATCHES:
            return re.search(self.operand, _as_text(value)) is not None
        if self.comparator == Comparator.GLOB:
            return fnmatch.fnmatchcase(_as_text(value), str(self.operand))
        if self.comparator == Comparator.MEDIA_TYPE:
            return isinstance(value, str) and media_type_matches(value, self.operand)
        if self.comparator == Comparator.PATTERN:
            return match_value(self.operand, value)

        try:
            number = float(value)
        except (TypeError, ValueError) as exc:
            raise ConditionEvaluationError(self.field, f"value {value!r} is not numeric") from exc
        if self.comparator == Comparator.GT:
            return number > self.operand
        if self.comparator == Comparator.GTE:
            return number >= self.operand
        if self.comparator == Comparator.LT:
            return number < self.operand
        return number <= self.operand

    def to_dict(self) -> dict[str, Any]:
        return {
            "op": "compare",
            "field": self.field,
            "comparator": self.comparator.value,
            "operand": _thaw(self.operand),
        }


@dataclass(frozen=True)
class And(Condition):
    """Conjunction of child conditions, evaluated left to right."""

    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "conditions", tuple(self.conditions))

    def test(self, event: DocumentEvent) -> bool:
        return all(condition.test(event) for condition in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"op": "and", "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class Or(Condition):
    """Disjunction of child conditions, evaluated left to right."""

    conditions: tuple[Condition, ...]

    def __post_init__(self) -> None:
        object.__setattr__(self, "conditions", tuple(self.conditions))

    def test(self, event: DocumentEvent) -> bool:
        return any(condition.test(event) for condition in self.conditions)

    def to_dict(self) -> dict[str, Any]:
        return {"op": "or", "conditions": [c.to_dict() for c in self.conditions]}


@dataclass(frozen=True)
class Not(Condition):
    """Negation of a child condition."""

    condition: Condition

    def test(self, event: DocumentEvent) -> bool:
        return not self.condition.test(event)

    def to_dict(self) -> dict[str, Any]:
        return {"op": "not", "condition": self.condition.to_dict()}


class FieldCondition:
    """Fluent builder for :class:`Compare` leaves on one field.

    Example:
        >>> when("type").equals("document-created")
        Compare(field='type', comparator=<Comparator.EQUALS: 'equals'>, operand='document-created')
    """

    def __init__(self, field: str) -> None:
        self.field = field

    def _compare(self, comparator: Comparator, operand: Any = None) -> Compare:
        return Compare(field=self.field, comparator=comparator, operand=operand)

    def equals(self, value: Any) -> Compare:
        return self._compare(Comparator.EQUALS, value)

    def not_equals(self, value: Any) -> Compare:
        return self._compare(Comparator.NOT_EQUALS, value)

    def is_in(self, values: Iterable[Any]) -> Compare:
        return self._compare(Comparator.IN, list(values))

    def matches(self, regex: str) -> Compare:
        return self._compare(Comparator.MATCHES, regex)

    def glob(self, pattern: str) -> Compare:
        return self._compare(Comparator.GLOB, pattern)

    def media_type(self, *patterns: str) -> Compare:
        return self._compare(Comparator.MEDIA_TYPE, list(patterns))

    def gt(self, value: float) -> Compare:
        return self._compare(Comparator.GT, value)

    def gte(self, value: float) -> Compare:
        return self._compare(Comparator.GTE, value)

    def lt(self, value: float) -> Compare:
        return self._compare(Comparator.LT, value)

    def lte(self, value: float) -> Compare:
        return self._compare(Comparator.LTE, value)

    def exists(self, present: bool = True) -> Compare:
        return self._compare(Comparator.EXISTS, present)

    def pattern(self, pattern: Any) -> Compare:
        return self._compare(Comparator.PATTERN, pattern)


def when(field: str) -> FieldCondition:
    """Start a condition on *field*."""
    return FieldCondition(field)


def condition_from_mapping(predicate: Mapping[str, Any] | None) -> Condition:
    """Compile a mapping predicate into a condition tree.

    Each key is a field path and each value a pattern (see
    :mod:`docchain.pipeline.predicates`). Keys are AND'd together and an
    empty or missing predicate compiles to :class:`Always`.

    Example:
        >>> condition_from_mapping({"document.type": "image/*", "metadata.lang": ["en", "fr"]})
        And(conditions=(Compare(field='document.type', ...), Compare(field='metadata.lang', ...)))
    """
    if not predicate:
        return Always()
    leaves = tuple(
        Compare(field=field, comparator=Comparator.PATTERN, operand=pattern) for field, pattern in predicate.items()
    )
    if len(leaves) == 1:
        return leaves[0]
    return And(leaves)


__all__ = [
    "Comparator",
    "Condition",
    "Always",
    "Compare",
    "And",
    "Or",
    "Not",
    "FieldCondition",
    "when",
    "condition_from_mapping",
]
