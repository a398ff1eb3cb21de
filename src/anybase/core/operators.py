"""Backend-neutral query and update vocabulary.

Filters and updates are plain ``dict`` values shaped like MongoDB's query
language. This module is the public wire contract: every filter and update
is checked here before either adapter talks to its backend, so an unknown
operator fails the whole call with ``UnsupportedOperationError`` and no
partial mutation is ever applied.

Vocabulary
──────────
Comparison : ``$eq $ne $gt $gte $lt $lte $in $nin $exists $regex`` (+ ``$options``)
Logical    : ``$and $or`` (top level) and ``$not`` (field level only)
Update     : ``$set $unset $inc $push $pull $addToSet`` (+ ``$each``)

Shapes rejected on both backends because their meaning cannot be kept
identical:

- ``$not`` at the top level of a filter
- ``$pull`` with a condition document or a non-scalar value
- ``$regex`` options other than ``i``
- updates that touch layer-managed system fields
- update paths with a numeric (array position) segment
"""

from __future__ import annotations

from collections.abc import Mapping
from decimal import Decimal
from typing import Any

from anybase.core.errors import UnsupportedOperationError
from anybase.core.types import SYSTEM_FIELDS

COMPARISON_OPERATORS = frozenset(
    {"$eq", "$ne", "$gt", "$gte", "$lt", "$lte", "$in", "$nin", "$exists", "$regex", "$options", "$not"}
)
LOGICAL_OPERATORS = frozenset({"$and", "$or"})
UPDATE_OPERATORS = frozenset({"$set", "$unset", "$inc", "$push", "$pull", "$addToSet"})


def is_operator(key: Any) -> bool:
    return isinstance(key, str) and key.startswith("$")


def is_operator_doc(value: Any) -> bool:
    """True for ``{"$gt": 1, ...}``-style operand documents."""
    return isinstance(value, Mapping) and bool(value) and all(is_operator(k) for k in value)


def split_path(field: str) -> list[str]:
    """``"a.b.c"`` -> ``["a", "b", "c"]``."""
    return field.split(".")


def _unsupported(message: str, operator: str | None = None) -> UnsupportedOperationError:
    return UnsupportedOperationError(message, operator=operator)


def _check_field(field: Any) -> None:
    if not isinstance(field, str) or not field:
        raise _unsupported(f"field names must be non-empty strings, got {field!r}")
    for segment in split_path(field):
        if not segment or segment.startswith("$"):
            raise _unsupported(f"invalid field path {field!r}")


# =============================================================================
# FILTERS
# =============================================================================


def validate_filter(filter: Mapping[str, Any] | None) -> dict[str, Any]:
    """Validate a filter document and return it as a plain ``dict``.

    ``None`` is the empty filter (matches everything).

    Raises:
        UnsupportedOperationError: unknown operator or untranslatable shape.
    """
    if filter is None:
        return {}
    if not isinstance(filter, Mapping):
        raise _unsupported(f"filter must be a mapping, got {type(filter).__name__}")
    for key, value in filter.items():
        if is_operator(key):
            if key == "$not":
                raise _unsupported("$not is only supported at field level", operator=key)
            if key not in LOGICAL_OPERATORS:
                raise _unsupported(f"unsupported query operator {key}", operator=key)
            if not isinstance(value, (list, tuple)) or not value:
                raise _unsupported(f"{key} requires a non-empty list of filters", operator=key)
            for clause in value:
                if not isinstance(clause, Mapping):
                    raise _unsupported(f"{key} clauses must be filter documents", operator=key)
                validate_filter(clause)
        else:
            _check_field(key)
            _validate_condition(key, value)
    return dict(filter)


def _validate_condition(field: str, value: Any) -> None:
    if not isinstance(value, Mapping):
        return
    operator_keys = [k for k in value if is_operator(k)]
    if not operator_keys:
        # equality against an embedded document
        return
    if len(operator_keys) != len(value):
        raise _unsupported(f"cannot mix operators and fields in condition on {field!r}")
    _validate_operator_doc(field, value)


def _validate_operator_doc(field: str, doc: Mapping[str, Any]) -> None:
    for op, operand in doc.items():
        if op not in COMPARISON_OPERATORS:
            raise _unsupported(f"unsupported query operator {op}", operator=op)
        if op in ("$in", "$nin"):
            if not isinstance(operand, (list, tuple)):
                raise _unsupported(f"{op} on {field!r} requires a list", operator=op)
        elif op == "$exists":
            if not isinstance(operand, (bool, int)):
                raise _unsupported(f"$exists on {field!r} requires a boolean", operator=op)
        elif op == "$regex":
            if not isinstance(operand, str):
                raise _unsupported(f"$regex on {field!r} requires a pattern string", operator=op)
        elif op == "$options":
            if "$regex" not in doc:
                raise _unsupported("$options requires $regex", operator=op)
            if not isinstance(operand, str) or operand not in ("", "i"):
                raise _unsupported(f"unsupported $regex options {operand!r}", operator=op)
        elif op == "$not":
            if not is_operator_doc(operand):
                raise _unsupported(f"$not on {field!r} requires an operator document", operator=op)
            _validate_operator_doc(field, operand)


# =============================================================================
# UPDATES
# =============================================================================


def normalize_update(update: Mapping[str, Any]) -> dict[str, dict[str, Any]]:
    """Validate an update and return it in operator form.

    A plain document (no ``$`` keys) is shorthand for ``{"$set": document}``.

    Raises:
        UnsupportedOperationError: unknown operator, system-field write,
            conflicting paths or untranslatable operand.
    """
    if not isinstance(update, Mapping) or not update:
        raise _unsupported("update must be a non-empty mapping")

    operator_keys = [k for k in update if is_operator(k)]
    if not operator_keys:
        update = {"$set": dict(update)}
    elif len(operator_keys) != len(update):
        raise _unsupported("cannot mix update operators and plain fields")

    normalized: dict[str, dict[str, Any]] = {}
    touched: list[str] = []
    for op, fields in update.items():
        if op not in UPDATE_OPERATORS:
            raise _unsupported(f"unsupported update operator {op}", operator=op)
        if not isinstance(fields, Mapping) or not fields:
            raise _unsupported(f"{op} requires a non-empty field document", operator=op)
        for field, value in fields.items():
            _check_field(field)
            if any(segment.isdigit() for segment in split_path(field)):
                raise _unsupported(f"{op} cannot address array positions ({field!r})", operator=op)
            if split_path(field)[0] in SYSTEM_FIELDS:
                raise _unsupported(f"{op} cannot modify system field {field!r}", operator=op)
            _validate_update_operand(op, field, value)
            touched.append(field)
        normalized[op] = dict(fields)

    _check_conflicts(touched)
    return normalized


def _validate_update_operand(op: str, field: str, value: Any) -> None:
    if op == "$inc":
        if isinstance(value, bool) or not isinstance(value, (int, float, Decimal)):
            raise _unsupported(f"$inc on {field!r} requires a number", operator=op)
    elif op in ("$push", "$addToSet"):
        if isinstance(value, Mapping) and any(is_operator(k) for k in value):
            if set(value) != {"$each"}:
                raise _unsupported(f"{op} on {field!r} only supports the $each modifier", operator=op)
            if not isinstance(value["$each"], (list, tuple)):
                raise _unsupported(f"$each on {field!r} requires a list", operator=op)
    elif op == "$pull":
        if isinstance(value, (Mapping, list, tuple)):
            raise _unsupported(
                f"$pull on {field!r} only supports removing equal scalar values", operator=op
            )


def _check_conflicts(fields: list[str]) -> None:
    seen: list[list[str]] = []
    for field in fields:
        path = split_path(field)
        for other in seen:
            shortest = min(len(path), len(other))
            if path[:shortest] == other[:shortest]:
                raise _unsupported(f"update paths conflict at {field!r}")
        seen.append(path)


def push_values(value: Any) -> list[Any]:
    """Elements appended by a ``$push``/``$addToSet`` operand."""
    if isinstance(value, Mapping) and "$each" in value:
        return list(value["$each"])
    return [value]


__all__ = [
    "COMPARISON_OPERATORS",
    "LOGICAL_OPERATORS",
    "UPDATE_OPERATORS",
    "is_operator",
    "is_operator_doc",
    "split_path",
    "validate_filter",
    "normalize_update",
    "push_values",
]
