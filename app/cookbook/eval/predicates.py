"""
Declarative field predicates for result rows.

A predicate is a mapping of operator name to operand, e.g.
``{"gte": 1, "lt": 10}`` or ``{"in": ["France", "United States"]}``.
Several operators in one mapping must all hold. Field names are dotted
paths into the document: ``geo.alt`` or ``schedule.0.day``.
"""

import re
from typing import Any, Callable, Mapping

from cookbook.core.frozen import thaw

MISSING = object()

JSON_TYPES = {
    "string": lambda v: isinstance(v, str),
    "number": lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
    "boolean": lambda v: isinstance(v, bool),
    "null": lambda v: v is None,
    "object": lambda v: isinstance(v, Mapping),
    "array": lambda v: isinstance(v, list),
}


def resolve_path(row: Mapping[str, Any], path: str) -> Any:
    """Walk a dotted path through nested objects and arrays; MISSING if absent."""
    if path in row:
        return row[path]
    current: Any = row
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return MISSING
            current = current[part]
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            if not -len(current) <= index < len(current):
                return MISSING
            current = current[index]
        else:
            return MISSING
    return current


def _compare(op: Callable[[Any, Any], bool]) -> Callable[[Any, Any], bool]:
    def check(value: Any, operand: Any) -> bool:
        try:
            return op(value, operand)
        except TypeError:
            return False
    return check


def _contains(value: Any, operand: Any) -> bool:
    if isinstance(value, str):
        return isinstance(operand, str) and operand in value
    if isinstance(value, (list, Mapping)):
        try:
            return operand in value
        except TypeError:
            # unhashable operand tested against an object's keys
            return False
    return False


def _matches(value: Any, operand: Any) -> bool:
    return isinstance(value, str) and re.search(operand, value) is not None


def _length(value: Any, operand: Any) -> bool:
    if not isinstance(value, (str, list, Mapping)):
        return False
    if isinstance(operand, Mapping):
        return evaluate(len(value), operand)
    return len(value) == operand


def _type(value: Any, operand: Any) -> bool:
    names = [operand] if isinstance(operand, str) else list(operand)
    return any(JSON_TYPES[name](value) for name in names)


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "eq": lambda value, operand: value == operand,
    "ne": lambda value, operand: value != operand,
    "gt": _compare(lambda value, operand: value > operand),
    "gte": _compare(lambda value, operand: value >= operand),
    "lt": _compare(lambda value, operand: value < operand),
    "lte": _compare(lambda value, operand: value <= operand),
    "in": lambda value, operand: value in operand,
    "not_in": lambda value, operand: value not in operand,
    "contains": _contains,
    "matches": _matches,
    "length": _length,
    "type": _type,
}


def validate_predicate(predicate: Mapping[str, Any]) -> None:
    """Raise ValueError for unknown operators or malformed operands."""
    if not isinstance(predicate, Mapping) or not predicate:
        raise ValueError("predicate must be a non-empty mapping of operator to operand")
    for name, operand in predicate.items():
        if name == "exists":
            if not isinstance(operand, bool):
                raise ValueError("'exists' takes true or false")
            continue
        if name not in OPERATORS:
            raise ValueError(f"unknown operator '{name}'")
        if name in ("in", "not_in") and not isinstance(operand, list):
            raise ValueError(f"'{name}' takes a list")
        if name == "matches":
            try:
                re.compile(operand)
            except (re.error, TypeError) as e:
                raise ValueError(f"invalid regular expression {operand!r}: {e}") from e
        if name == "type":
            names = [operand] if isinstance(operand, str) else operand
            unknown = [n for n in names if n not in JSON_TYPES]
            if unknown:
                raise ValueError(f"unknown JSON type(s) {unknown}")
        if name == "length" and isinstance(operand, Mapping):
            validate_predicate(operand)


def evaluate(value: Any, predicate: Mapping[str, Any]) -> bool:
    """True when every operator of the predicate holds for the value."""
    for name, operand in predicate.items():
        if name == "exists":
            if (value is not MISSING) != operand:
                return False
            continue
        if value is MISSING:
            return False
        if not OPERATORS[name](value, thaw(operand)):
            return False
    return True


def describe(predicate: Mapping[str, Any]) -> str:
    return ", ".join(f"{name} {thaw(operand)!r}" for name, operand in predicate.items())
