"""Best-effort recovery of index descriptors from ``pg_indexes.indexdef``.

PostgreSQL only hands back the index definition as deparsed SQL text, e.g.::

    CREATE UNIQUE INDEX users__email_1 ON public.users
        USING btree (COALESCE((data -> 'email'::text), 'null'::jsonb))
        WHERE (_deleted_at IS NULL)

``parse_index_definition`` turns that text back into an ``Index``:

1. JSON-path expressions: keys after ``->`` (``'email'::text``, chained
   accessors) and path arrays after ``#>`` (``'{address,city}'::text[]``)
   become dotted field names, honoring ``DESC``; the casts are optional
2. plain columns after ``USING <method> (`` are taken as-is, honoring ``DESC``
3. otherwise a single field is inferred from conventional name suffixes
   (``_pkey``, ``created_at``, ``updated_at``, ``deleted_at``, ``_data``)

``CREATE UNIQUE INDEX`` sets ``unique``; an ``IS NOT NULL`` predicate
on a payload path sets ``sparse``. Definitions none of the rules
understand (indexes created outside this layer with arbitrary expressions)
come back with empty keys and ``partial=True`` instead of failing the
listing.
"""

from __future__ import annotations

import re

from anybase.core.logging import get_logger
from anybase.core.types import Index

logger = get_logger(__name__)

_UNIQUE = re.compile(r"^\s*CREATE\s+UNIQUE\s+INDEX\b", re.IGNORECASE)
_USING = re.compile(r"\bUSING\s+(\w+)\s*\(", re.IGNORECASE)
_DIRECTION = re.compile(r"\s+(ASC|DESC)(\s+NULLS\s+(FIRST|LAST))?\s*$", re.IGNORECASE)
_NULLS = re.compile(r"\s+NULLS\s+(FIRST|LAST)\s*$", re.IGNORECASE)
_PATH_ARRAY = re.compile(r"#>\s*'\{((?:[^']|'')*)\}'(?:::text\[\])?")
_JSON_KEY = re.compile(r"->\s*'((?:[^']|'')*)'(?:::text)?")
_COLUMN = re.compile(r'^"?([A-Za-z_][A-Za-z0-9_$]*)"?$')
_SPARSE = re.compile(r"\(?\s*data\s*(->|#>).*?\)?\s*IS\s+NOT\s+NULL", re.IGNORECASE | re.DOTALL)

_NAME_SUFFIXES: tuple[tuple[str, str], ...] = (
    ("_pkey", "_id"),
    ("created_at", "_created_at"),
    ("updated_at", "_updated_at"),
    ("deleted_at", "_deleted_at"),
    ("_data", "data"),
)


def _balanced(text: str, start: int) -> tuple[str, int] | None:
    """Content of the parenthesised group opening at ``text[start]``."""
    depth = 0
    quoted = False
    for position in range(start, len(text)):
        char = text[position]
        if char == "'":
            quoted = not quoted
        elif quoted:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
            if depth == 0:
                return text[start + 1 : position], position
    return None


def _split_top_level(text: str) -> list[str]:
    parts: list[str] = []
    depth = 0
    quoted = False
    current: list[str] = []
    for char in text:
        if char == "'":
            quoted = not quoted
        elif not quoted and char == "(":
            depth += 1
        elif not quoted and char == ")":
            depth -= 1
        elif not quoted and depth == 0 and char == ",":
            parts.append("".join(current).strip())
            current = []
            continue
        current.append(char)
    if current:
        parts.append("".join(current).strip())
    return [part for part in parts if part]


def _unquote_path_item(item: str) -> str:
    item = item.strip()
    if len(item) >= 2 and item[0] == '"' and item[-1] == '"':
        item = item[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return item


def element_field(element: str) -> str | None:
    """Field addressed by one index element (column or JSON-path expression)."""
    paths = _PATH_ARRAY.findall(element)
    if paths:
        items = paths[0].replace("''", "'").split(",")
        return ".".join(_unquote_path_item(item) for item in items)
    keys = _JSON_KEY.findall(element)
    if keys:
        return ".".join(key.replace("''", "'") for key in keys)
    column = _COLUMN.match(element.strip().strip("()").strip())
    if column:
        return column.group(1)
    return None


def _split_predicate(definition: str) -> tuple[str, str]:
    """Split off a top-level ``WHERE`` predicate (partial index)."""
    depth = 0
    quoted = False
    upper = definition.upper()
    for position, char in enumerate(definition):
        if char == "'":
            quoted = not quoted
        elif quoted:
            continue
        elif char == "(":
            depth += 1
        elif char == ")":
            depth -= 1
        elif depth == 0 and upper.startswith(" WHERE ", position):
            return definition[:position], definition[position + len(" WHERE ") :]
    return definition, ""


def _infer_from_name(name: str) -> str | None:
    for suffix, field in _NAME_SUFFIXES:
        if name.endswith(suffix):
            return field
    return None


def parse_index_definition(name: str, definition: str) -> Index:
    """Rebuild an ``Index`` from its ``pg_indexes.indexdef`` text.

    Never raises: unparseable definitions yield an empty-keys descriptor
    with ``partial=True``.
    """
    unique = bool(_UNIQUE.match(definition))
    body, predicate = _split_predicate(definition)
    sparse = bool(predicate and _SPARSE.search(predicate))

    keys: dict[str, int] = {}
    using = _USING.search(body)
    if using:
        group = _balanced(body, using.end() - 1)
        if group is not None:
            for element in _split_top_level(group[0]):
                direction = 1
                match = _DIRECTION.search(element)
                if match:
                    direction = -1 if match.group(1).upper() == "DESC" else 1
                    element = element[: match.start()]
                else:
                    element = _NULLS.sub("", element)
                field = element_field(element)
                if field is None:
                    keys = {}
                    break
                keys[field] = direction

    if not keys:
        inferred = _infer_from_name(name)
        if inferred is not None:
            keys = {inferred: 1}

    if not keys:
        logger.warning("index_definition_unparsed", index=name, definition=definition)
        return Index(name=name, keys={}, unique=unique, sparse=sparse, partial=True)

    return Index(name=name, keys=keys, unique=unique, sparse=sparse)


__all__ = [
    "element_field",
    "parse_index_definition",
]
