"""
Filter compilation.

One parser builds a backend-agnostic tree from the wire format; one
emitter per backend family turns it into the native predicate:
- mongo: MongoDB filter documents
- sql: parameterized WHERE clauses for any SqlDialect
- memory: in-process evaluation for the embedded store
"""

from .memory import evaluate, group_records, sort_records
from .mongo import compile_filter as compile_mongo
from .sql import SqlFilterCompiler
from .tree import (
    EMPTY,
    OPERATORS,
    Combinator,
    Group,
    Node,
    Op,
    Predicate,
    Relation,
    conjoin,
    is_empty,
    is_operator_map,
    iter_predicates,
    parse_where,
    resolve_relations,
)

__all__ = [
    "EMPTY",
    "OPERATORS",
    "Combinator",
    "Group",
    "Node",
    "Op",
    "Predicate",
    "Relation",
    "conjoin",
    "is_empty",
    "is_operator_map",
    "iter_predicates",
    "parse_where",
    "resolve_relations",
    "compile_mongo",
    "SqlFilterCompiler",
    "evaluate",
    "group_records",
    "sort_records",
]
