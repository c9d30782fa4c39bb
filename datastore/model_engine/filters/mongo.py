"""
Filter tree -> MongoDB query document.

Exists semantics match the other backends: ``exists: true`` means present
and not null, ``exists: false`` means absent or null.
"""

from __future__ import annotations

from typing import Any, Dict

from ..errors import UnsupportedFilterError
from .tree import Combinator, Node, Op, Predicate, Relation

_OPERATOR_NAMES = {
    Op.EQ: "$eq",
    Op.NE: "$ne",
    Op.LT: "$lt",
    Op.LTE: "$lte",
    Op.GT: "$gt",
    Op.GTE: "$gte",
    Op.IN: "$in",
    Op.NIN: "$nin",
    Op.ALL: "$all",
    Op.TYPE: "$type",
}

_COMBINATOR_NAMES = {
    Combinator.AND: "$and",
    Combinator.OR: "$or",
    Combinator.NOR: "$nor",
}


def _operator_doc(predicate: Predicate) -> Dict[str, Any]:
    op = predicate.op
    if op == Op.EXISTS:
        if predicate.value:
            return {"$exists": True, "$nin": [None]}
        return {"$eq": None}
    if op == Op.REGEX:
        doc: Dict[str, Any] = {"$regex": predicate.value}
        if predicate.options:
            doc["$options"] = predicate.options
        return doc
    return {_OPERATOR_NAMES[op]: predicate.value}


def compile_predicate(predicate: Predicate) -> Dict[str, Any]:
    doc = _operator_doc(predicate)
    if predicate.negated:
        doc = {"$not": doc}
    return {predicate.field: doc}


def compile_filter(node: Node) -> Dict[str, Any]:
    """Compile a filter tree into a MongoDB filter document.

    Returns:
        Filter document; {} when the tree is empty
    """
    if isinstance(node, Predicate):
        return compile_predicate(node)
    if isinstance(node, Relation):
        raise UnsupportedFilterError(
            f"Unresolved relationship '{node.relationship.alias}'", backend="mongodb"
        )

    parts = [compile_filter(child) for child in node.children]
    parts = [p for p in parts if p]
    if not parts:
        return {}
    if node.kind == Combinator.AND:
        if len(parts) == 1:
            return parts[0]
        return {"$and": parts}
    return {_COMBINATOR_NAMES[node.kind]: parts}


def is_empty_filter(document: Dict[str, Any]) -> bool:
    return not document


__all__ = ["compile_filter", "compile_predicate", "is_empty_filter"]
