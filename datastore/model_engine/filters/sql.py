"""
Filter tree -> parameterized SQL WHERE clause.

Null handling mirrors the document store so the same filter matches the
same rows on every backend:
    - equalTo null        -> col IS NULL
    - notEqualTo v        -> (col IS NULL OR col <> ?)
    - notIn [...]         -> (col IS NULL OR col NOT IN (...))
    - not<ordering> v     -> (col IS NULL OR NOT (col < ?))
    - in []               -> 1 = 0,  notIn [] -> 1 = 1
    - NOR [a, b]          -> NOT ((a) OR (b))

Invariants:
    - Parameters are appended in exactly the order their placeholders are
      emitted; callers must never reorder fragments
    - Only known columns are emitted; identifiers go through dialect.quote
    - "all" and "$type" are not expressible and raise UnsupportedFilterError
"""

from __future__ import annotations

from typing import Any, Collection, List, Optional, Tuple

from ..errors import UnsupportedFilterError
from .tree import Combinator, Group, Node, Op, Predicate, Relation

_COMPARATORS = {
    Op.LT: "<",
    Op.LTE: "<=",
    Op.GT: ">",
    Op.GTE: ">=",
}


class SqlFilterCompiler:
    """Compile filter trees for one SQL dialect.

    Args:
        dialect: SqlDialect providing quoting, placeholders and regex syntax
        columns: Known columns; None disables the check

    Example:
        >>> sql, params = SqlFilterCompiler(dialect, {"status"}).compile(tree)
        >>> sql
        '"status" = ?'
    """

    def __init__(self, dialect: Any, columns: Optional[Collection[str]] = None) -> None:
        self.dialect = dialect
        self.columns = set(columns) if columns is not None else None

    def compile(self, node: Node) -> Tuple[str, List[Any]]:
        """Compile a tree into (sql, params). Empty tree gives ("", [])."""
        params: List[Any] = []
        sql = self._node(node, params)
        return sql, params

    def _node(self, node: Node, params: List[Any]) -> str:
        if isinstance(node, Predicate):
            return self._predicate(node, params)
        if isinstance(node, Relation):
            raise UnsupportedFilterError(
                f"Unresolved relationship '{node.relationship.alias}'",
                backend=self.dialect.name,
            )
        return self._group(node, params)

    def _group(self, group: Group, params: List[Any]) -> str:
        parts = []
        for child in group.children:
            fragment = self._node(child, params)
            if fragment:
                parts.append(fragment)
        if not parts:
            return ""
        if group.kind == Combinator.AND:
            if len(parts) == 1:
                return parts[0]
            return " AND ".join(f"({p})" for p in parts)
        joined = " OR ".join(f"({p})" for p in parts)
        if group.kind == Combinator.NOR:
            return f"NOT ({joined})"
        return joined

    def _column(self, field: str) -> str:
        if self.columns is not None and field not in self.columns:
            raise UnsupportedFilterError(
                f"Unknown column '{field}'", backend=self.dialect.name
            )
        return self.dialect.quote(field)

    def _bind(self, value: Any, params: List[Any]) -> str:
        params.append(self.dialect.adapt(value))
        return self.dialect.placeholder

    def _in_list(self, column: str, values: list, params: List[Any], negate: bool) -> str:
        present = [v for v in values if v is not None]
        has_null = len(present) != len(values)
        keyword = "NOT IN" if negate else "IN"
        clause = ""
        if present:
            placeholders = ", ".join(self._bind(v, params) for v in present)
            clause = f"{column} {keyword} ({placeholders})"
        if negate:
            if has_null:
                return f"({column} IS NOT NULL AND {clause})" if clause else f"{column} IS NOT NULL"
            return f"({column} IS NULL OR {clause})" if clause else "1 = 1"
        if has_null:
            return f"({clause} OR {column} IS NULL)" if clause else f"{column} IS NULL"
        return clause or "1 = 0"

    def _positive(self, predicate: Predicate, column: str, params: List[Any]) -> str:
        op = predicate.op
        value = predicate.value
        if op == Op.EQ:
            if value is None:
                return f"{column} IS NULL"
            return f"{column} = {self._bind(value, params)}"
        if op == Op.NE:
            if value is None:
                return f"{column} IS NOT NULL"
            return f"({column} IS NULL OR {column} <> {self._bind(value, params)})"
        if op in _COMPARATORS:
            if value is None:
                return "1 = 0"
            return f"{column} {_COMPARATORS[op]} {self._bind(value, params)}"
        if op == Op.IN:
            return self._in_list(column, list(value), params, negate=False)
        if op == Op.NIN:
            return self._in_list(column, list(value), params, negate=True)
        if op == Op.EXISTS:
            return f"{column} IS NOT NULL" if value else f"{column} IS NULL"
        if op == Op.REGEX:
            fragment, regex_params = self.dialect.regex(column, value, predicate.options)
            params.extend(regex_params)
            return fragment
        raise UnsupportedFilterError(
            f"Operator '{op.value}' is not supported by {self.dialect.name}",
            operator=op.value,
            backend=self.dialect.name,
        )

    def _predicate(self, predicate: Predicate, params: List[Any]) -> str:
        column = self._column(predicate.field)
        fragment = self._positive(predicate, column, params)
        if predicate.negated:
            return f"({column} IS NULL OR NOT ({fragment}))"
        return fragment
