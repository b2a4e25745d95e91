"""Field lookup and pattern matching used by condition trees.

Field paths use dot notation over event attributes (``event_type``,
``document.type``, ``metadata.language``). Paths written against the wire
format (``type``, ``data.document.type``, ``data.metadata.language``) are
translated first.

Pattern language used by the ``pattern`` comparator and by
:func:`docchain.pipeline.conditions.condition_from_mapping`:

    - Exact match: ``"image/png"``
    - Glob pattern: ``"image/*"``
    - Negation: ``"!image/*"``
    - Numeric comparison: ``">1048576"``
    - Array (OR): ``["en", "fr"]``
"""

from __future__ import annotations

import fnmatch
import operator
import re
from collections.abc import Callable, Mapping
from typing import Any, Final

# Pattern for numeric comparisons: operator followed by number
_NUMERIC_PATTERN = re.compile(r"^(>=|<=|>|<|==|!=)\s*(-?\d+(?:\.\d+)?)$")

_NUMERIC_OPERATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

# Wire-format prefixes and their attribute equivalents, longest first
_WIRE_ALIASES: tuple[tuple[str, str], ...] = (
    ("data.document.", "document."),
    ("data.source.", "source."),
    ("data.metadata.", "metadata."),
    ("data.", ""),
)

_WIRE_FIELDS: dict[str, str] = {
    "type": "event_type",
    "chainId": "chain_id",
    "callStack": "call_stack",
}


class _Missing:
    """Sentinel for a field path that does not resolve."""

    _instance: _Missing | None = None

    def __new__(cls) -> _Missing:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "MISSING"

    def __bool__(self) -> bool:
        return False


MISSING: Final = _Missing()


def translate_path(path: str) -> str:
    """Translate a wire-format field path to the attribute path.

    Examples:
        >>> translate_path("type")
        "event_type"
        >>> translate_path("data.document.type")
        "document.type"
        >>> translate_path("data.chainId")
        "chain_id"
        >>> translate_path("metadata.language")
        "metadata.language"
    """
    for prefix, replacement in _WIRE_ALIASES:
        if path.startswith(prefix):
            path = replacement + path[len(prefix) :]
            break
    head, dot, rest = path.partition(".")
    return _WIRE_FIELDS.get(head, head) + dot + rest


def get_nested_value(obj: Any, path: str) -> Any:
    """Get a value from a nested object using dot notation.

    Mappings are indexed by key and other objects by attribute, so this
    works on events, document refs and plain dicts alike.

    Args:
        obj: The object to extract from
        path: Dot-separated path (e.g., "document.type")

    Returns:
        The value at the path, or ``MISSING`` if any segment does not exist
    """
    current = obj
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif part and not part.startswith("_") and hasattr(current, part):
            current = getattr(current, part)
        else:
            return MISSING
    return current


def match_value(pattern: Any, value: Any) -> bool:
    """Match a single value against a pattern.

    Args:
        pattern: The pattern to match against
        value: The value to test

    Returns:
        True if the value matches the pattern
    """
    if pattern is None:
        return True
    if value is None or value is MISSING:
        return False

    if isinstance(pattern, list | tuple):
        return any(match_value(p, value) for p in pattern)

    if isinstance(pattern, bool):
        if isinstance(value, str):
            return value.lower() in (("true", "1", "yes") if pattern else ("false", "0", "no"))
        return bool(value) == pattern

    if isinstance(pattern, int | float):
        try:
            return float(value) == float(pattern)
        except (ValueError, TypeError):
            return False

    if not isinstance(pattern, str):
        return False

    # Numeric comparison first, since "!=" would otherwise read as negation
    numeric = _NUMERIC_PATTERN.match(pattern)
    if numeric:
        try:
            number = float(value)
        except (ValueError, TypeError):
            return False
        return _NUMERIC_OPERATORS[numeric.group(1)](number, float(numeric.group(2)))

    if pattern.startswith("!"):
        return not match_value(pattern[1:], value)

    if isinstance(value, bool):
        lowered = pattern.lower()
        if lowered in ("true", "1", "yes"):
            return value is True
        if lowered in ("false", "0", "no"):
            return value is False

    text = value.value if hasattr(value, "value") and isinstance(value.value, str) else str(value)
    if any(c in pattern for c in "*?["):
        return fnmatch.fnmatchcase(text, pattern)
    return text == pattern


__all__ = [
    "MISSING",
    "translate_path",
    "get_nested_value",
    "match_value",
]
