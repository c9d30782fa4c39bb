"""
Backend-agnostic filter tree.

A where map in wire format is parsed once into a small tree of
Group / Predicate / Relation nodes. Each backend then emits its native
predicate from the same tree, so operator semantics live here and only
the spelling differs per backend.

Wire format:
    {
        "status": "active",                         # implicit equalTo
        "amount": {"greaterThan": 10, "lessThan": 50},
        "clientId": {"in": ["a", "b"]},
        "client": {"name": {"matchesRegex": "^Ac", "options": "i"}},
        "OR": [{"kind": "x"}, {"kind": "y"}],
    }

Invariants:
    - A field with several operators is the AND of its predicates
    - Empty combinator arms are dropped; a combinator without arms vanishes
    - "NULL" / "Null" / "null" operands mean None
    - A map without operator keys is a literal only on object and array
      fields; anywhere else it raises UnsupportedFilterError
    - Ordering operands go through to_calculated_value
    - Relation nodes never reach an emitter; resolve_relations rewrites
      them into "in" predicates first

How to change safely:
    - New operators need an Op member, an entry in OPERATORS and support
      (or an explicit UnsupportedFilterError) in every emitter
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Iterator, Mapping, Optional, Tuple, Union

from ..errors import UnsupportedFilterError
from ..schema.types import PRIMARY_KEY, PUBLIC_ID, FieldKind, Model, Relationship
from ..values import coerce_bool, normalize_null, to_calculated_value


class Op(Enum):
    """Filter operators."""

    EQ = "equalTo"
    NE = "notEqualTo"
    LT = "lessThan"
    LTE = "lessThanOrEqualTo"
    GT = "greaterThan"
    GTE = "greaterThanOrEqualTo"
    IN = "in"
    NIN = "notIn"
    ALL = "all"
    EXISTS = "exists"
    REGEX = "matchesRegex"
    TYPE = "$type"


ORDERING_OPS = frozenset({Op.LT, Op.LTE, Op.GT, Op.GTE})
SET_OPS = frozenset({Op.IN, Op.NIN, Op.ALL})

# wire key -> (operator, negated)
OPERATORS: dict[str, Tuple[Op, bool]] = {
    "equalTo": (Op.EQ, False),
    "notEqualTo": (Op.NE, False),
    "lessThan": (Op.LT, False),
    "notLessThan": (Op.LT, True),
    "lessThanOrEqualTo": (Op.LTE, False),
    "notLessThanOrEqualTo": (Op.LTE, True),
    "greaterThan": (Op.GT, False),
    "notGreaterThan": (Op.GT, True),
    "greaterThanOrEqualTo": (Op.GTE, False),
    "notGreaterThanOrEqualTo": (Op.GTE, True),
    "in": (Op.IN, False),
    "notIn": (Op.NIN, False),
    "all": (Op.ALL, False),
    "exists": (Op.EXISTS, False),
    "matchesRegex": (Op.REGEX, False),
    "$type": (Op.TYPE, False),
    # Document-store spellings
    "$eq": (Op.EQ, False),
    "$ne": (Op.NE, False),
    "$lt": (Op.LT, False),
    "$lte": (Op.LTE, False),
    "$gt": (Op.GT, False),
    "$gte": (Op.GTE, False),
    "$in": (Op.IN, False),
    "$nin": (Op.NIN, False),
    "$all": (Op.ALL, False),
    "$exists": (Op.EXISTS, False),
    "$regex": (Op.REGEX, False),
}

REGEX_OPTION_KEYS = frozenset({"options", "$options"})


class Combinator(Enum):
    AND = "AND"
    OR = "OR"
    NOR = "NOR"


COMBINATOR_KEYS: dict[str, Combinator] = {
    "AND": Combinator.AND,
    "and": Combinator.AND,
    "$and": Combinator.AND,
    "OR": Combinator.OR,
    "or": Combinator.OR,
    "$or": Combinator.OR,
    "NOR": Combinator.NOR,
    "nor": Combinator.NOR,
    "$nor": Combinator.NOR,
}


@dataclass(frozen=True)
class Predicate:
    """A single comparison on one stored field.

    Attributes:
        field: Stored field name ("id" already mapped to "_id")
        op: Operator
        value: Normalized operand
        negated: Wrap the comparison in a negation (not* operators)
        options: Regex flags, only meaningful for REGEX
    """

    field: str
    op: Op
    value: Any = None
    negated: bool = False
    options: str = ""


@dataclass(frozen=True)
class Relation:
    """Filter on a related model, addressed through a relationship alias."""

    relationship: Relationship
    where: Mapping[str, Any]


@dataclass(frozen=True)
class Group:
    """Combinator over child nodes."""

    kind: Combinator
    children: Tuple[Node, ...] = ()


Node = Union[Group, Predicate, Relation]

EMPTY = Group(Combinator.AND, ())


def is_operator_map(value: Any) -> bool:
    """Whether a dict is an operator map rather than a literal object."""
    if not isinstance(value, Mapping) or not value:
        return False
    return any(k in OPERATORS or k in REGEX_OPTION_KEYS for k in value)


def is_empty(node: Node) -> bool:
    return isinstance(node, Group) and not node.children


def _normalize_operand(op: Op, value: Any, strict: bool) -> Any:
    if op in (Op.EQ, Op.NE):
        return normalize_null(value)
    if op in ORDERING_OPS:
        return to_calculated_value(normalize_null(value), strict=strict)
    if op in SET_OPS:
        if isinstance(value, (list, tuple, set, frozenset)):
            return [normalize_null(v) for v in value]
        return [normalize_null(value)]
    if op == Op.EXISTS:
        flag = coerce_bool(value)
        if not isinstance(flag, bool):
            raise UnsupportedFilterError(f"exists expects a boolean, got {value!r}", operator="exists")
        return flag
    if op == Op.REGEX:
        return str(value)
    return value


def _accepts_literal_map(field: str, model: Optional[Model]) -> bool:
    if model is None:
        return False
    field_def = model.get_field(field)
    return field_def is not None and field_def.kind in (FieldKind.OBJECT, FieldKind.ARRAY)


def _parse_field(
    name: str, value: Any, strict: bool, model: Optional[Model] = None
) -> Iterator[Predicate]:
    field = PRIMARY_KEY if name in (PUBLIC_ID, PRIMARY_KEY) else name

    if isinstance(value, Mapping) and not value:
        return
    if not is_operator_map(value):
        # Maps are literals only on object and array fields
        if isinstance(value, Mapping) and not _accepts_literal_map(field, model):
            key = next(iter(value))
            raise UnsupportedFilterError(
                f"Unknown operator '{key}' on field '{field}'", operator=str(key)
            )
        yield Predicate(field, Op.EQ, normalize_null(value))
        return

    options = ""
    for key in REGEX_OPTION_KEYS:
        if value.get(key):
            options = str(value[key])
    has_regex = any(OPERATORS.get(k, (None,))[0] == Op.REGEX for k in value)
    if options and not has_regex:
        raise UnsupportedFilterError(
            f"'options' on field '{field}' requires matchesRegex", operator="options"
        )

    for key, operand in value.items():
        if key in REGEX_OPTION_KEYS:
            continue
        spec = OPERATORS.get(key)
        if spec is None:
            raise UnsupportedFilterError(
                f"Unknown operator '{key}' on field '{field}'", operator=key
            )
        op, negated = spec
        yield Predicate(
            field=field,
            op=op,
            value=_normalize_operand(op, operand, strict),
            negated=negated,
            options=options if op == Op.REGEX else "",
        )


def parse_where(
    where: Optional[Mapping[str, Any]],
    model: Optional[Model] = None,
    strict: bool = False,
) -> Group:
    """Parse a wire-format where map into a filter tree.

    Args:
        where: Where map (None means no filter)
        model: Model used to recognize relationship aliases
        strict: Raise on unparseable ordering operands

    Returns:
        Root AND group (empty when nothing filters)

    Raises:
        UnsupportedFilterError: Unknown operator or malformed combinator
        CoercionError: Unparseable ordering operand in strict mode
    """
    if not where:
        return EMPTY
    if not isinstance(where, Mapping):
        raise UnsupportedFilterError(f"Filter must be a map, got {type(where).__name__}")

    children: list[Node] = []
    for key, value in where.items():
        combinator = COMBINATOR_KEYS.get(key)
        if combinator is not None:
            arms = value if isinstance(value, (list, tuple)) else [value]
            parsed = []
            for arm in arms:
                if arm is None:
                    continue
                if not isinstance(arm, Mapping):
                    raise UnsupportedFilterError(
                        f"{combinator.value} arms must be maps", operator=combinator.value
                    )
                node = parse_where(arm, model, strict)
                if not is_empty(node):
                    parsed.append(node)
            if parsed:
                children.append(Group(combinator, tuple(parsed)))
            continue

        relationship = model.relationship(key) if model is not None else None
        if relationship is not None:
            if not isinstance(value, Mapping):
                raise UnsupportedFilterError(
                    f"Relationship filter '{key}' must be a map of the related model's fields"
                )
            if value:
                children.append(Relation(relationship, value))
            continue

        children.extend(_parse_field(key, value, strict, model))

    return Group(Combinator.AND, tuple(children))


def resolve_relations(node: Node, resolver: Callable[[Relation], Node]) -> Node:
    """Replace every Relation node with the node returned by ``resolver``."""
    if isinstance(node, Relation):
        return resolver(node)
    if isinstance(node, Group):
        return Group(node.kind, tuple(resolve_relations(c, resolver) for c in node.children))
    return node


def conjoin(node: Node, *extra: Node) -> Group:
    """AND extra nodes onto a tree, flattening into a root AND group."""
    if isinstance(node, Group) and node.kind == Combinator.AND:
        return Group(Combinator.AND, node.children + tuple(extra))
    return Group(Combinator.AND, (node,) + tuple(extra))


def iter_predicates(node: Node) -> Iterator[Predicate]:
    """Yield every predicate in the tree, depth first."""
    if isinstance(node, Predicate):
        yield node
    elif isinstance(node, Group):
        for child in node.children:
            yield from iter_predicates(child)
