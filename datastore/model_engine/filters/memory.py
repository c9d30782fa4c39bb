"""
In-process evaluation of filter trees, ordering and grouping.

Used by the embedded local backend, which stores records as JSON payloads
and cannot push predicates down to its storage.

The semantics follow the document store:
    - Missing fields behave like null
    - Equality against an array field matches any element
    - Ordering against null or an incomparable type is false
    - Negated predicates match whatever the positive predicate does not,
      including missing fields

Grouping understands the subset of aggregation expressions the engine
itself produces: "$field" references, {"$dateToString": {...}} and the
$sum / $max / $min / $avg / $first / $last accumulators.
"""

from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from ..errors import UnsupportedFilterError
from ..values import format_date_pattern
from .tree import Combinator, Node, Op, Predicate, Relation

_MISSING = object()

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


def lookup(record: Mapping[str, Any], path: str) -> Any:
    """Resolve a dotted path, returning _MISSING when absent."""
    current: Any = record
    for part in path.split("."):
        if isinstance(current, Mapping) and part in current:
            current = current[part]
        else:
            return _MISSING
    return current


def _compare(left: Any, op: Op, right: Any) -> bool:
    if left is None or left is _MISSING or right is None:
        return False
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    try:
        if op == Op.LT:
            return left < right
        if op == Op.LTE:
            return left <= right
        if op == Op.GT:
            return left > right
        return left >= right
    except TypeError:
        return False


def _equals(stored: Any, operand: Any) -> bool:
    if operand is None:
        return stored is None or stored is _MISSING
    if stored is _MISSING:
        return False
    if isinstance(stored, list) and not isinstance(operand, list):
        return any(_equals(item, operand) for item in stored)
    if isinstance(stored, bool) != isinstance(operand, bool):
        return False
    return stored == operand


def _matches_type(value: Any, type_name: Any) -> bool:
    name = str(type_name).lower()
    if name == "date":
        return isinstance(value, datetime)
    if name == "string":
        return isinstance(value, str)
    if name in ("number", "double", "int", "long", "decimal"):
        return isinstance(value, (int, float)) and not isinstance(value, bool)
    if name == "bool":
        return isinstance(value, bool)
    if name == "array":
        return isinstance(value, list)
    if name == "object":
        return isinstance(value, Mapping)
    if name == "null":
        return value is None
    return False


def _positive(predicate: Predicate, stored: Any) -> bool:
    op = predicate.op
    value = predicate.value
    if op == Op.EQ:
        return _equals(stored, value)
    if op == Op.NE:
        return not _equals(stored, value)
    if op in (Op.LT, Op.LTE, Op.GT, Op.GTE):
        if isinstance(stored, list):
            return any(_compare(item, op, value) for item in stored)
        return _compare(stored, op, value)
    if op == Op.IN:
        return any(_equals(stored, v) for v in value)
    if op == Op.NIN:
        return not any(_equals(stored, v) for v in value)
    if op == Op.ALL:
        return isinstance(stored, list) and all(v in stored for v in value)
    if op == Op.EXISTS:
        present = stored is not _MISSING and stored is not None
        return present if value else not present
    if op == Op.REGEX:
        flags = 0
        for ch in predicate.options:
            flags |= _REGEX_FLAGS.get(ch, 0)
        if not isinstance(stored, str):
            return False
        return re.search(value, stored, flags) is not None
    if op == Op.TYPE:
        return stored is not _MISSING and _matches_type(stored, value)
    raise UnsupportedFilterError(f"Operator '{op.value}' is not supported", operator=op.value)


def evaluate(node: Node, record: Mapping[str, Any]) -> bool:
    """Whether a record matches a filter tree."""
    if isinstance(node, Predicate):
        result = _positive(node, lookup(record, node.field))
        return not result if node.negated else result
    if isinstance(node, Relation):
        raise UnsupportedFilterError(f"Unresolved relationship '{node.relationship.alias}'")
    if node.kind == Combinator.AND:
        return all(evaluate(child, record) for child in node.children)
    if node.kind == Combinator.OR:
        return any(evaluate(child, record) for child in node.children)
    return not any(evaluate(child, record) for child in node.children)


def matcher(node: Node) -> Callable[[Mapping[str, Any]], bool]:
    return lambda record: evaluate(node, record)


def _type_rank(value: Any) -> int:
    # Null < numbers < strings < objects < arrays < bool < dates
    if value is None or value is _MISSING:
        return 0
    if isinstance(value, bool):
        return 5
    if isinstance(value, (int, float)):
        return 1
    if isinstance(value, str):
        return 2
    if isinstance(value, Mapping):
        return 3
    if isinstance(value, list):
        return 4
    if isinstance(value, datetime):
        return 6
    return 7


class _SortKey:
    __slots__ = ("rank", "value")

    def __init__(self, value: Any) -> None:
        self.rank = _type_rank(value)
        self.value = value

    def __lt__(self, other: _SortKey) -> bool:
        if self.rank != other.rank:
            return self.rank < other.rank
        if self.rank in (0, 3):
            return False
        try:
            return self.value < other.value
        except TypeError:
            return str(self.value) < str(other.value)


def sort_records(records: List[Dict[str, Any]], order: Sequence[Tuple[str, int]]) -> List[Dict[str, Any]]:
    """Stable multi-key sort; direction is 1 (ascending) or -1 (descending)."""
    result = list(records)
    for field, direction in reversed(list(order)):
        result.sort(key=lambda r: _SortKey(lookup(r, field)), reverse=direction < 0)
    return result


def _expression(expr: Any, record: Mapping[str, Any]) -> Any:
    if isinstance(expr, str) and expr.startswith("$"):
        value = lookup(record, expr[1:])
        return None if value is _MISSING else value
    if isinstance(expr, Mapping):
        if "$dateToString" in expr:
            spec = expr["$dateToString"]
            value = _expression(spec.get("date"), record)
            if not isinstance(value, datetime):
                return None
            return format_date_pattern(value, spec.get("format", "%Y-%m-%dT%H:%M:%S.%LZ"))
        return {k: _expression(v, record) for k, v in expr.items()}
    return expr


def _hashable(value: Any) -> Any:
    if isinstance(value, Mapping):
        return tuple(sorted((k, _hashable(v)) for k, v in value.items()))
    if isinstance(value, list):
        return tuple(_hashable(v) for v in value)
    return value


def _accumulate(spec: Mapping[str, Any], records: List[Mapping[str, Any]]) -> Any:
    if len(spec) != 1:
        raise UnsupportedFilterError(f"Unsupported accumulator {dict(spec)!r}")
    name, expr = next(iter(spec.items()))
    values = [_expression(expr, r) for r in records]
    numbers = [v for v in values if isinstance(v, (int, float)) and not isinstance(v, bool)]
    if name == "$sum":
        return sum(numbers) if numbers else 0
    if name == "$avg":
        return sum(numbers) / len(numbers) if numbers else None
    present = [v for v in values if v is not None]
    if name in ("$max", "$min"):
        if not present:
            return None
        keys = sorted(present, key=_SortKey)
        return keys[-1] if name == "$max" else keys[0]
    if name == "$first":
        return values[0] if values else None
    if name == "$last":
        return values[-1] if values else None
    raise UnsupportedFilterError(f"Unsupported accumulator '{name}'", operator=name)


def group_records(
    records: Iterable[Mapping[str, Any]],
    group_by: Sequence[str] = (),
    group_raw: Optional[Mapping[str, Any]] = None,
) -> List[Dict[str, Any]]:
    """Group records the way a document-store $group stage would.

    The group key is built from ``group_by`` fields, unless ``group_raw``
    provides its own "_id" expression. Other ``group_raw`` entries are
    accumulators. Without accumulators each row carries a "count".
    Grouped key fields are flattened into the output row.
    """
    raw = dict(group_raw or {})
    id_expr: Any = raw.pop("_id", None)
    if id_expr is None and group_by:
        id_expr = {name: f"${name}" for name in group_by}

    buckets: Dict[Any, Tuple[Any, List[Mapping[str, Any]]]] = {}
    for record in records:
        key = _expression(id_expr, record)
        bucket = buckets.setdefault(_hashable(key), (key, []))
        bucket[1].append(record)

    rows = []
    for key, members in buckets.values():
        row: Dict[str, Any] = {}
        if isinstance(key, Mapping):
            row.update(key)
        elif key is not None:
            row["_id"] = key
        if raw:
            for name, spec in raw.items():
                row[name] = _accumulate(spec, members)
        else:
            row["count"] = len(members)
        rows.append(row)
    return rows


__all__ = ["evaluate", "matcher", "sort_records", "group_records", "lookup"]
