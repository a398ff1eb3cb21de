"""Neutral filter/update -> PostgreSQL JSONB translation.

Every collection table stores the caller's document in a ``data JSONB``
column next to typed system columns. This module turns the neutral
vocabulary (see ``anybase.core.operators``) into SQL fragments over that
layout, with named ``%(pN)s`` parameters collected in a ``Params`` object.

Matching rules mirror the document store:

- scalar equality matches the field itself or any element of an array field
- ranges compare only values of the same JSON type (numbers, strings,
  booleans), also element-wise inside arrays
- missing fields never satisfy ``$eq``/ranges and always satisfy ``$ne``/``$nin``
- ``{field: null}`` matches both a JSON ``null`` and a missing field
- dotted paths reach into arrays of subdocuments at every step
  (``items.sku`` matches ``{"items": [{"sku": ...}]}``); they are expanded with
  a lax jsonpath query. Paths with a numeric segment keep the plain
  path lookup.

Datetimes are stored in the payload as UTC ISO-8601 strings, so they
compare correctly as strings.

Guardrails:
    ❌ Interpolating field names or values into SQL text
    ✅ Paths and values always travel as parameters
    ❌ Translating after a statement has started
    ✅ Translate first; ``UnsupportedOperationError`` aborts before any SQL runs
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable, Mapping
from datetime import date, datetime, timezone
from decimal import Decimal
from typing import Any

from bson import ObjectId

from anybase.core.errors import UnsupportedOperationError
from anybase.core.ids import ID
from anybase.core.operators import is_operator, is_operator_doc, push_values, split_path
from anybase.core.types import DatabaseType

# System columns that filters and sorts address directly.
SYSTEM_COLUMNS: dict[str, str] = {
    "_id": "uuid",
    "_created_at": "timestamptz",
    "_updated_at": "timestamptz",
    "_version": "integer",
    "_created_by": "text",
    "_updated_by": "text",
}

_RANGE_OPERATORS = {"$gt": ">", "$gte": ">=", "$lt": "<", "$lte": "<="}


class Params:
    """Collects named query parameters as SQL fragments are built."""

    def __init__(self) -> None:
        self.values: dict[str, Any] = {}

    def add(self, value: Any) -> str:
        name = f"p{len(self.values)}"
        self.values[name] = value
        return f"%({name})s"

    def jsonb(self, value: Any) -> str:
        return f"{self.add(encode_json(value))}::jsonb"

    def path(self, field: str) -> str:
        return f"{self.add(split_path(field))}::text[]"


# =============================================================================
# JSON ENCODING
# =============================================================================


def _jsonb_default(value: Any) -> Any:
    if isinstance(value, ID):
        return value.to_json()
    if isinstance(value, (ObjectId, uuid.UUID)):
        return str(value)
    if isinstance(value, datetime):
        return encode_datetime(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def encode_datetime(value: datetime) -> str:
    """UTC ISO-8601 text; naive datetimes are taken to be UTC."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def encode_json(value: Any) -> str:
    """Serialize a payload value for a ``::jsonb`` parameter."""
    return json.dumps(value, default=_jsonb_default, separators=(",", ":"))


def _nest(segments: list[str], leaf: Any) -> Any:
    for segment in reversed(segments):
        leaf = {segment: leaf}
    return leaf


# =============================================================================
# FILTERS
# =============================================================================


def translate_filter(filter: Mapping[str, Any], params: Params) -> str:
    """SQL predicate for a validated neutral filter (``TRUE`` when empty)."""
    clauses = []
    for key, value in filter.items():
        if key == "$and":
            clauses.append(_join([translate_filter(c, params) for c in value], "AND"))
        elif key == "$or":
            clauses.append(_join([translate_filter(c, params) for c in value], "OR"))
        elif is_operator(key):
            raise UnsupportedOperationError(f"unsupported query operator {key}", operator=key)
        elif key in SYSTEM_COLUMNS:
            clauses.append(_column_condition(key, value, params))
        else:
            clauses.append(_field_condition(key, value, params))
    return _join(clauses, "AND")


def _join(clauses: list[str], glue: str) -> str:
    if not clauses:
        return "TRUE" if glue == "AND" else "FALSE"
    if len(clauses) == 1:
        return clauses[0]
    return "(" + f" {glue} ".join(clauses) + ")"


def _conditions(value: Any) -> list[tuple[str, Any]]:
    if is_operator_doc(value):
        return list(value.items())
    return [("$eq", value)]


# -- system columns -------------------------------------------------------


def _column_value(column: str, value: Any, params: Params) -> str:
    kind = SYSTEM_COLUMNS[column]
    if kind == "uuid":
        identifier = ID.coerce(value, DatabaseType.POSTGRES)
        return f"{params.add(str(identifier) or None)}::uuid"
    return f"{params.add(value)}::{kind}"


def _column_condition(column: str, value: Any, params: Params) -> str:
    col = f'"{column}"'
    clauses = []
    for op, operand in _conditions(value):
        if op == "$eq":
            if operand is None:
                clauses.append(f"{col} IS NULL")
            else:
                clauses.append(f"{col} = {_column_value(column, operand, params)}")
        elif op == "$ne":
            if operand is None:
                clauses.append(f"{col} IS NOT NULL")
            else:
                clauses.append(f"{col} IS DISTINCT FROM {_column_value(column, operand, params)}")
        elif op in _RANGE_OPERATORS:
            clauses.append(f"{col} {_RANGE_OPERATORS[op]} {_column_value(column, operand, params)}")
        elif op in ("$in", "$nin"):
            members = [f"{col} = {_column_value(column, v, params)}" for v in operand if v is not None]
            if None in operand:
                members.append(f"{col} IS NULL")
            clause = _join(members, "OR")
            clauses.append(clause if op == "$in" else f"NOT ({clause})")
        elif op == "$exists":
            clauses.append(f"{col} IS NOT NULL" if operand else f"{col} IS NULL")
        elif op == "$regex":
            regex_op = "~*" if value.get("$options") == "i" else "~"
            clauses.append(f"COALESCE({col}::text {regex_op} {params.add(operand)}, FALSE)")
        elif op == "$options":
            continue
        elif op == "$not":
            clauses.append(f"NOT COALESCE({_column_condition(column, operand, params)}, FALSE)")
        else:
            raise UnsupportedOperationError(f"unsupported query operator {op}", operator=op)
    return _join(clauses, "AND")


# -- payload fields -------------------------------------------------------


def _field_condition(field: str, value: Any, params: Params) -> str:
    clauses = []
    conditions = _conditions(value)
    for op, operand in conditions:
        if op == "$eq":
            clauses.append(_equals(field, operand, params))
        elif op == "$ne":
            clauses.append(f"NOT ({_equals(field, operand, params)})")
        elif op in _RANGE_OPERATORS:
            clauses.append(_range(field, _RANGE_OPERATORS[op], operand, params))
        elif op in ("$in", "$nin"):
            clause = _join([_equals(field, v, params) for v in operand], "OR")
            clauses.append(clause if op == "$in" else f"NOT ({clause})")
        elif op == "$exists":
            clauses.append(_exists(field, bool(operand), params))
        elif op == "$regex":
            options = value.get("$options", "") if isinstance(value, Mapping) else ""
            clauses.append(_regex(field, operand, options, params))
        elif op == "$options":
            continue
        elif op == "$not":
            clauses.append(f"NOT ({_field_condition(field, operand, params)})")
        else:
            raise UnsupportedOperationError(f"unsupported query operator {op}", operator=op)
    return _join(clauses, "AND")


# -- paths through arrays -------------------------------------------------


def _reaches_into_arrays(segments: list[str]) -> bool:
    """Dotted paths may cross arrays of subdocuments; numeric segments index arrays."""
    return len(segments) > 1 and not any(segment.isdigit() for segment in segments)


def jsonpath(segments: list[str]) -> str:
    """Lax SQL/JSON path; member access unwraps an array at every step."""
    return "lax $" + "".join("." + json.dumps(segment) for segment in segments)


def _path_values(path: str) -> str:
    return f"jsonb_path_query(data, {path}) AS _v(value)"


def _any_value(field: str, params: Params, predicate: Callable[[str], str]) -> str:
    """``predicate`` over the value(s) a field path reaches.

    A plain field is one ``#>`` lookup. A dotted path is expanded with a
    jsonpath query so ``items.sku`` reaches ``sku`` inside every element of
    an ``items`` array.
    """
    segments = split_path(field)
    if not _reaches_into_arrays(segments):
        return predicate(f"(data #> {params.path(field)})")
    path = f"{params.add(jsonpath(segments))}::jsonpath"
    return f"EXISTS (SELECT 1 FROM {_path_values(path)} WHERE {predicate('_v.value')})"


def _equals(field: str, operand: Any, params: Params) -> str:
    segments = split_path(field)
    if _reaches_into_arrays(segments):
        return _equals_through_arrays(segments, operand, params)
    if operand is None:
        path = params.path(field)
        return f"((data #> {path}) IS NULL OR (data #> {path}) = 'null'::jsonb)"
    if isinstance(operand, (Mapping, list, tuple)):
        return f"((data #> {params.path(field)}) IS NOT DISTINCT FROM {params.jsonb(operand)})"
    # containment matches the value itself or an array holding it
    direct = params.jsonb(_nest(segments, operand))
    in_array = params.jsonb(_nest(segments, [operand]))
    return f"(data @> {direct} OR data @> {in_array})"


def _equals_through_arrays(segments: list[str], operand: Any, params: Params) -> str:
    path = f"{params.add(jsonpath(segments))}::jsonpath"
    if operand is None:
        return (
            f"(NOT jsonb_path_exists(data, {path}) OR EXISTS ("
            f"SELECT 1 FROM {_path_values(path)} WHERE _v.value = 'null'::jsonb))"
        )
    value = params.jsonb(operand)
    return (
        f"EXISTS (SELECT 1 FROM {_path_values(path)} WHERE _v.value = {value} "
        f"OR (jsonb_typeof(_v.value) = 'array' AND EXISTS ("
        f"SELECT 1 FROM jsonb_array_elements(_v.value) AS _el(value) WHERE _el.value = {value})))"
    )


def _exists(field: str, present: bool, params: Params) -> str:
    segments = split_path(field)
    if _reaches_into_arrays(segments):
        clause = f"jsonb_path_exists(data, {params.add(jsonpath(segments))}::jsonpath)"
        return clause if present else f"NOT {clause}"
    null_test = "IS NOT NULL" if present else "IS NULL"
    return f"(data #> {params.path(field)}) {null_test}"


def _typed(operand: Any, params: Params) -> tuple[str, str, str]:
    """(jsonb type, SQL cast applied to the element, parameter) for a range operand."""
    if isinstance(operand, bool):
        return "boolean", "({e})::boolean", f"{params.add(operand)}::boolean"
    if isinstance(operand, (int, float, Decimal)):
        return "number", "({e})::numeric", f"{params.add(operand)}::numeric"
    if isinstance(operand, datetime):
        return "string", '({e} #>> \'{{}}\') COLLATE "C"', f"{params.add(encode_datetime(operand))}::text"
    if isinstance(operand, str):
        return "string", '({e} #>> \'{{}}\') COLLATE "C"', f"{params.add(operand)}::text"
    raise UnsupportedOperationError(
        f"range comparison against {type(operand).__name__} is not supported"
    )


def _element_match(expr: str, json_type: str, predicate: str) -> str:
    """``predicate`` (over ``{e}``) on the value or on any element of an array value."""
    on_value = predicate.format(e=expr)
    on_element = predicate.format(e="_el.value")
    return (
        f"(CASE WHEN jsonb_typeof({expr}) = '{json_type}' THEN {on_value} "
        f"WHEN jsonb_typeof({expr}) = 'array' THEN EXISTS ("
        f"SELECT 1 FROM jsonb_array_elements({expr}) AS _el(value) "
        f"WHERE jsonb_typeof(_el.value) = '{json_type}' AND {on_element}) "
        f"ELSE FALSE END)"
    )


def _range(field: str, sql_op: str, operand: Any, params: Params) -> str:
    json_type, cast, param = _typed(operand, params)
    return _any_value(field, params, lambda expr: _element_match(expr, json_type, f"{cast} {sql_op} {param}"))


def _regex(field: str, pattern: str, options: str, params: Params) -> str:
    regex_op = "~*" if options == "i" else "~"

    def predicate(expr: str) -> str:
        # pattern placeholder follows the path placeholder
        return _element_match(expr, "string", "({e} #>> '{{}}') " + f"{regex_op} {params.add(pattern)}")

    return _any_value(field, params, predicate)


# =============================================================================
# SORTING
# =============================================================================


def order_by(sort: Mapping[str, int], params: Params) -> str:
    """``ORDER BY`` body; missing fields sort first ascending, last descending."""
    terms = []
    for field, direction in sort.items():
        if direction not in (1, -1):
            raise UnsupportedOperationError(f"sort direction for {field!r} must be 1 or -1")
        expr = f'"{field}"' if field in SYSTEM_COLUMNS else f"(data #> {params.path(field)})"
        terms.append(f"{expr} ASC NULLS FIRST" if direction == 1 else f"{expr} DESC NULLS LAST")
    return ", ".join(terms)


# =============================================================================
# UPDATES
# =============================================================================


class _UpdateBuilder:
    """Chains one sub-select per update step so each step references the
    previous document once, whatever the path depth."""

    def __init__(self, params: Params, source: str = "data"):
        self._params = params
        self._expr = source
        self._depth = 0

    @property
    def expression(self) -> str:
        return self._expr

    def step(self, build: Any) -> None:
        alias = f"_d{self._depth}"
        self._depth += 1
        self._expr = f"(SELECT {build(alias + '.doc')} FROM (SELECT {self._expr} AS doc) AS {alias})"

    def set_path(self, doc: str, segments: list[str], value: str) -> str:
        head = self._params.add([segments[0]])
        if len(segments) == 1:
            return f"jsonb_set({doc}, {head}::text[], {value}, true)"
        child = f"COALESCE({doc} -> {self._params.add(segments[0])}::text, '{{}}'::jsonb)"
        return f"jsonb_set({doc}, {head}::text[], {self.set_path(child, segments[1:], value)}, true)"


def translate_update(update: Mapping[str, Mapping[str, Any]], params: Params, source: str = "data") -> str:
    """New ``data`` expression for a normalized update (see ``normalize_update``)."""
    builder = _UpdateBuilder(params, source)
    for op, fields in update.items():
        for field, value in fields.items():
            segments = split_path(field)
            if op == "$set":
                param = params.jsonb(value)
                builder.step(lambda d, s=segments, p=param: builder.set_path(d, s, p))
            elif op == "$unset":
                path = params.path(field)
                builder.step(lambda d, p=path: f"({d} #- {p})")
            elif op == "$inc":
                path = params.path(field)
                amount = f"{params.add(value)}::numeric"
                builder.step(
                    lambda d, s=segments, p=path, a=amount: builder.set_path(
                        d, s, f"to_jsonb(COALESCE(({d} #>> {p})::numeric, 0) + {a})"
                    )
                )
            elif op == "$push":
                path = params.path(field)
                items = params.jsonb(push_values(value))
                builder.step(
                    lambda d, s=segments, p=path, i=items: builder.set_path(
                        d, s, f"(COALESCE({d} #> {p}, '[]'::jsonb) || {i})"
                    )
                )
            elif op == "$addToSet":
                for item in push_values(value):
                    path = params.path(field)
                    candidate = params.jsonb(item)
                    builder.step(
                        lambda d, s=segments, p=path, c=candidate: builder.set_path(
                            d,
                            s,
                            f"(CASE WHEN EXISTS (SELECT 1 FROM jsonb_array_elements("
                            f"COALESCE({d} #> {p}, '[]'::jsonb)) AS _el(value) WHERE _el.value = {c}) "
                            f"THEN COALESCE({d} #> {p}, '[]'::jsonb) "
                            f"ELSE COALESCE({d} #> {p}, '[]'::jsonb) || jsonb_build_array({c}) END)",
                        )
                    )
            elif op == "$pull":
                path = params.path(field)
                candidate = params.jsonb(value)
                builder.step(
                    lambda d, s=segments, p=path, c=candidate: (
                        f"(CASE WHEN jsonb_typeof({d} #> {p}) = 'array' THEN "
                        + builder.set_path(
                            d,
                            s,
                            f"COALESCE((SELECT jsonb_agg(_el.value ORDER BY _el.ord) "
                            f"FROM jsonb_array_elements({d} #> {p}) WITH ORDINALITY AS _el(value, ord) "
                            f"WHERE _el.value <> {c}), '[]'::jsonb)",
                        )
                        + f" ELSE {d} END)"
                    )
                )
            else:
                raise UnsupportedOperationError(f"unsupported update operator {op}", operator=op)
    return builder.expression


def upsert_seed(filter: Mapping[str, Any]) -> tuple[dict[str, Any], Any]:
    """Document an upsert starts from: the filter's equality fields.

    Returns ``(payload, _id value or None)``.
    """
    payload: dict[str, Any] = {}
    identifier = None
    clauses: list[Mapping[str, Any]] = [filter]
    while clauses:
        clause = clauses.pop(0)
        for key, value in clause.items():
            if key == "$and":
                clauses.extend(value)
                continue
            if is_operator(key):
                continue
            if is_operator_doc(value):
                if set(value) != {"$eq"}:
                    continue
                value = value["$eq"]
            if key == "_id":
                identifier = value
                continue
            if key in SYSTEM_COLUMNS:
                continue
            target = payload
            segments = split_path(key)
            for segment in segments[:-1]:
                target = target.setdefault(segment, {})
            target[segments[-1]] = value
    return payload, identifier


# =============================================================================
# PROJECTION
# =============================================================================


def apply_projection(document: dict[str, Any], projection: Mapping[str, Any] | None) -> dict[str, Any]:
    """Apply a ``{field: 1}`` / ``{field: 0}`` projection to a decoded document."""
    if not projection:
        return document
    include_id = bool(projection.get("_id", 1))
    includes = [f for f, v in projection.items() if f != "_id" and v]
    excludes = [f for f, v in projection.items() if f != "_id" and not v]
    if includes and excludes:
        raise UnsupportedOperationError("projection cannot mix inclusion and exclusion")

    if includes:
        result: dict[str, Any] = {}
        for field in includes:
            _copy_path(document, result, split_path(field))
    else:
        result = _deep_copy(document)
        for field in excludes:
            _remove_path(result, split_path(field))

    if include_id and "_id" in document:
        result["_id"] = document["_id"]
    else:
        result.pop("_id", None)
    return result


def _deep_copy(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _deep_copy(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_deep_copy(v) for v in value]
    return value


def _copy_path(source: dict[str, Any], target: dict[str, Any], segments: list[str]) -> None:
    head = segments[0]
    if head not in source:
        return
    if len(segments) == 1:
        target[head] = _deep_copy(source[head])
    elif isinstance(source[head], dict):
        child = target.setdefault(head, {})
        if isinstance(child, dict):
            _copy_path(source[head], child, segments[1:])


def _remove_path(target: dict[str, Any], segments: list[str]) -> None:
    head = segments[0]
    if len(segments) == 1:
        target.pop(head, None)
    elif isinstance(target.get(head), dict):
        _remove_path(target[head], segments[1:])


__all__ = [
    "SYSTEM_COLUMNS",
    "Params",
    "encode_json",
    "encode_datetime",
    "jsonpath",
    "translate_filter",
    "translate_update",
    "order_by",
    "upsert_seed",
    "apply_projection",
]
