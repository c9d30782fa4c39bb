"""
Storage backend contract and the shared behaviour every backend inherits.

StorageBackend is the operation contract the query specification talks
to. BaseBackend implements it once on top of a handful of primitives that
each concrete backend provides:

    _find_raw(model, plan)             -> stored rows
    _count_raw(model, tree, distinct)  -> int
    _aggregate_raw(model, tree, op, key)
    _insert_raw(model, docs)
    _update_raw(model, ids, values)
    _delete_raw(model, tree)           -> deleted count

Everything that must behave identically across backends lives here:
relationship traversal, tenant scoping, identity stamping, pagination
math, the empty-delete refusal and post-mutation re-query.

Invariants:
    - Every returned record carries id, _collection and _model
    - delete() with an empty caller filter raises EmptyFilterError
    - Mutations return the stored records, fetched by a new query
      specification scoped to the affected identifiers
    - pagination() sets the query limit to perPage before find()
    - Unexpected driver exceptions surface as BackendError

How to change safely:
    - Backend-specific behaviour goes in the primitives, not here
    - Keep the tenant predicate out of the empty-delete check
"""

from __future__ import annotations

import logging
import math
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Any,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Protocol,
    Sequence,
    Tuple,
)

from ..config import QueryConfig, TenancyConfig
from ..errors import BackendError, EmptyFilterError, EngineError
from ..filters.tree import (
    Group,
    Node,
    Op,
    Predicate,
    Relation,
    conjoin,
    is_empty,
    parse_where,
    resolve_relations,
)
from ..schema.registry import ModelRegistry
from ..schema.types import COLLECTION_KEY, MODEL_KEY, PRIMARY_KEY, PUBLIC_ID, Model

if TYPE_CHECKING:
    from ..query.spec import QuerySpec

logger = logging.getLogger(__name__)

AGGREGATE_OPS = ("max", "min", "sum", "avg")


@dataclass(frozen=True)
class ReadPlan:
    """Everything a backend needs to run one read.

    Attributes:
        tree: Resolved filter tree (relations rewritten, tenant applied)
        order: (field, 1 | -1) pairs
        skip: Rows to skip
        limit: Maximum rows; 0 means unlimited
        group_by: Fields to group on
        group_raw: Raw $group stage entries
        distinct: Fields whose distinct combinations are returned
    """

    tree: Group
    order: Tuple[Tuple[str, int], ...] = ()
    skip: int = 0
    limit: int = 0
    group_by: Tuple[str, ...] = ()
    group_raw: Optional[Mapping[str, Any]] = None
    distinct: Tuple[str, ...] = ()

    @property
    def grouped(self) -> bool:
        return bool(self.group_by or self.group_raw or self.distinct)

    @property
    def group_fields(self) -> Tuple[str, ...]:
        return self.group_by or self.distinct


class StorageBackend(Protocol):
    """Operation contract shared by every storage backend."""

    name: str

    def find_one(self, query: QuerySpec) -> Optional[Dict[str, Any]]: ...

    def find(self, query: QuerySpec) -> List[Dict[str, Any]]: ...

    def pagination(self, query: QuerySpec) -> Dict[str, Any]: ...

    def summary(self, query: QuerySpec, key: Optional[str] = None) -> Dict[str, Any]: ...

    def count(self, query: QuerySpec) -> int: ...

    def max(self, query: QuerySpec, key: str) -> Any: ...

    def min(self, query: QuerySpec, key: str) -> Any: ...

    def sum(self, query: QuerySpec, key: str) -> float: ...

    def average(self, query: QuerySpec, key: str) -> float: ...

    def create(self, query: QuerySpec, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    def create_many(
        self, query: QuerySpec, data: Sequence[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]: ...

    def update(self, query: QuerySpec, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    def update_many(self, query: QuerySpec, data: Mapping[str, Any]) -> List[Dict[str, Any]]: ...

    def delete(self, query: QuerySpec) -> int: ...

    def native_id(self, value: Any) -> Any: ...

    def new_id(self) -> Any: ...


class BaseBackend(ABC):
    """Shared implementation of the StorageBackend contract.

    Args:
        registry: Frozen model registry (for relationship traversal)
        tenancy: Tenant scoping settings
        query_config: Query defaults (page size, strict coercion)
    """

    name = "base"
    # Whether group_by_raw expressions ($group stage entries) are honoured
    supports_raw_grouping = True

    def __init__(
        self,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
    ) -> None:
        self.registry = registry
        self.tenancy = tenancy or TenancyConfig()
        self.query_config = query_config or QueryConfig()

    # ------------------------------------------------------------------
    # Primitives
    # ------------------------------------------------------------------

    @abstractmethod
    def _find_raw(self, model: Model, plan: ReadPlan) -> List[Dict[str, Any]]:
        """Rows as stored (or grouped rows when plan.grouped)."""

    @abstractmethod
    def _count_raw(self, model: Model, tree: Group, distinct: Tuple[str, ...]) -> int:
        """Matching row count, or distinct combination count."""

    @abstractmethod
    def _aggregate_raw(self, model: Model, tree: Group, op: str, key: str) -> Any:
        """max/min/sum/avg of key over matching rows; None when no rows."""

    @abstractmethod
    def _insert_raw(self, model: Model, docs: List[Dict[str, Any]]) -> None:
        """Insert fully formed documents (each carries _id)."""

    @abstractmethod
    def _update_raw(self, model: Model, ids: List[Any], values: Dict[str, Any]) -> None:
        """Set values on the rows whose _id is in ids."""

    @abstractmethod
    def _delete_raw(self, model: Model, tree: Group) -> int:
        """Delete matching rows; returns the deleted count."""

    def native_id(self, value: Any) -> Any:
        """Convert an identifier to the backend's native type."""
        if value is None:
            return None
        return str(value)

    def new_id(self) -> Any:
        return uuid.uuid4().hex

    # ------------------------------------------------------------------
    # Shared helpers
    # ------------------------------------------------------------------

    @contextmanager
    def _driver_errors(self, operation: str, model: Model) -> Iterator[None]:
        try:
            yield
        except EngineError:
            raise
        except Exception as e:
            logger.error(
                f"{self.name} {operation} on {model.collection} failed: {e}",
                extra={"backend": self.name, "operation": operation, "model": model.name},
            )
            raise BackendError(str(e), backend=self.name, operation=operation) from e

    def tenant_value(self, query: QuerySpec) -> Optional[Any]:
        """Tenant id applied to this query, or None when scoping is off."""
        model = query.model
        if not self.tenancy.enabled or not model.tenant_scoped or query.request is None:
            return None
        tenant = query.request.resolve_tenant(self.tenancy.fallback_tenant_id)
        field_def = model.fields.get(self.tenancy.tenant_key)
        if field_def is not None and field_def.is_identifier:
            return self.native_id(tenant)
        return tenant

    def _resolve_relation(self, query: QuerySpec, relation: Relation) -> Node:
        rel = relation.relationship
        related = self.registry.require(rel.model)
        sub = query.new_instance(related)
        sub.where_all(relation.where)
        rows = self.find(sub)

        values: List[Any] = []
        seen = set()
        for row in rows:
            value = row.get(rel.foreign_key)
            if value is None:
                continue
            marker = repr(value)
            if marker not in seen:
                seen.add(marker)
                values.append(value)
        logger.debug(
            f"Resolved {query.model.name}.{rel.alias} to {len(values)} keys",
            extra={"model": query.model.name, "relationship": rel.alias},
        )
        return Predicate(rel.local_key, Op.IN, values)

    def _caller_tree(self, query: QuerySpec) -> Group:
        tree = parse_where(
            query.where_clause,
            query.model,
            strict=self.query_config.strict_calculated_values,
        )
        resolved = resolve_relations(tree, lambda rel: self._resolve_relation(query, rel))
        return resolved if isinstance(resolved, Group) else conjoin(resolved)

    def _scope(self, query: QuerySpec, tree: Group) -> Group:
        tenant = self.tenant_value(query)
        if tenant is None:
            return tree
        return conjoin(tree, Predicate(self.tenancy.tenant_key, Op.EQ, tenant))

    def build_tree(self, query: QuerySpec) -> Group:
        """Caller filter with relationships resolved and tenant scope applied."""
        return self._scope(query, self._caller_tree(query))

    @staticmethod
    def _storage_order(query: QuerySpec) -> Tuple[Tuple[str, int], ...]:
        """Sort keys with the public "id" spelled as the storage key."""
        order: Dict[str, int] = {}
        for field, direction in query.order:
            order.setdefault(PRIMARY_KEY if field == PUBLIC_ID else field, direction)
        return tuple(order.items())

    def _plan(self, query: QuerySpec, limit: Optional[int] = None) -> ReadPlan:
        group_raw = dict(query.group_raw) if query.group_raw else None
        if group_raw and not self.supports_raw_grouping:
            logger.warning(
                f"{self.name} ignores raw grouping on {query.model.collection}",
                extra={"backend": self.name, "model": query.model.name},
            )
            group_raw = None
        return ReadPlan(
            tree=self.build_tree(query),
            order=self._storage_order(query),
            skip=query.offset,
            limit=query.limit if limit is None else limit,
            group_by=tuple(query.group_fields),
            group_raw=group_raw,
            distinct=tuple(query.distinct_fields),
        )

    def stamp(self, model: Model, row: Mapping[str, Any], grouped: bool = False) -> Dict[str, Any]:
        """Attach identity metadata to a row leaving the backend."""
        record = dict(row)
        if not grouped:
            record[PUBLIC_ID] = record.get(PRIMARY_KEY)
        record[COLLECTION_KEY] = model.collection
        record[MODEL_KEY] = model.name
        return record

    def _requery(self, query: QuerySpec, ids: List[Any]) -> List[Dict[str, Any]]:
        if not ids:
            return []
        sub = query.new_instance()
        sub.where(PRIMARY_KEY, {"in": list(ids)})
        rows = self.find(sub)
        position = {repr(i): n for n, i in enumerate(ids)}
        return sorted(rows, key=lambda r: position.get(repr(r.get(PRIMARY_KEY)), len(ids)))

    def _matching_ids(self, query: QuerySpec, limit: int) -> List[Any]:
        model = query.model
        plan = ReadPlan(tree=self.build_tree(query), order=self._storage_order(query), limit=limit)
        with self._driver_errors("select_ids", model):
            rows = self._find_raw(model, plan)
        return [row[PRIMARY_KEY] for row in rows if row.get(PRIMARY_KEY) is not None]

    def _prepare_insert(self, query: QuerySpec, data: Mapping[str, Any]) -> Dict[str, Any]:
        doc = {k: v for k, v in data.items() if k not in (PUBLIC_ID, COLLECTION_KEY, MODEL_KEY)}
        raw_id = doc.get(PRIMARY_KEY, data.get(PUBLIC_ID))
        doc[PRIMARY_KEY] = self.native_id(raw_id) if raw_id not in (None, "") else self.new_id()
        tenant = self.tenant_value(query)
        if tenant is not None:
            doc[self.tenancy.tenant_key] = tenant
        return doc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, query: QuerySpec) -> List[Dict[str, Any]]:
        model = query.model
        plan = self._plan(query)
        with self._driver_errors("find", model):
            rows = self._find_raw(model, plan)
        return [self.stamp(model, row, grouped=plan.grouped) for row in rows]

    def find_one(self, query: QuerySpec) -> Optional[Dict[str, Any]]:
        model = query.model
        plan = self._plan(query, limit=1)
        with self._driver_errors("find_one", model):
            rows = self._find_raw(model, plan)
        if not rows:
            return None
        return self.stamp(model, rows[0], grouped=plan.grouped)

    def count(self, query: QuerySpec) -> int:
        model = query.model
        tree = self.build_tree(query)
        with self._driver_errors("count", model):
            return int(self._count_raw(model, tree, tuple(query.distinct_fields)))

    def _aggregate(self, query: QuerySpec, op: str, key: str) -> Any:
        model = query.model
        column = PRIMARY_KEY if key == PUBLIC_ID else key
        tree = self.build_tree(query)
        with self._driver_errors(op, model):
            return self._aggregate_raw(model, tree, op, column)

    def max(self, query: QuerySpec, key: str) -> Any:
        return self._aggregate(query, "max", key)

    def min(self, query: QuerySpec, key: str) -> Any:
        return self._aggregate(query, "min", key)

    def sum(self, query: QuerySpec, key: str) -> float:
        value = self._aggregate(query, "sum", key)
        return float(value) if value is not None else 0.0

    def average(self, query: QuerySpec, key: str) -> float:
        value = self._aggregate(query, "avg", key)
        return float(value) if value is not None else 0.0

    def pagination(self, query: QuerySpec) -> Dict[str, Any]:
        """Page of records plus paging metadata.

        Example:
            25 records, limit 10, page 2 ->
            {"total": 25, "perPage": 10, "currentPage": 2, "lastPage": 3,
             "from": 11, "to": 20, "data": [...]}
        """
        total = self.count(query)
        per_page = query.limit or self.query_config.default_per_page
        current_page = query.current_page
        if current_page is None:
            current_page = query.offset // per_page + 1 if query.offset else 1

        # Intentional: the page fetched must match the metadata computed here
        query.take(per_page)
        query.page(current_page)

        offset = (current_page - 1) * per_page
        last_page = math.ceil(total / per_page) if total else 0
        if offset < total:
            first, last = offset + 1, min(offset + per_page, total)
        else:
            first, last = 0, 0

        return {
            "total": total,
            "perPage": per_page,
            "currentPage": current_page,
            "lastPage": last_page,
            "from": first,
            "to": last,
            "data": self.find(query),
        }

    def summary(self, query: QuerySpec, key: Optional[str] = None) -> Dict[str, Any]:
        """count plus sum/max/min of key; graph is filled by chart formatting."""
        result: Dict[str, Any] = {"count": self.count(query), "sum": 0, "max": 0, "min": 0, "graph": {}}
        if key:
            result["sum"] = self.sum(query, key)
            result["max"] = self.max(query, key)
            result["min"] = self.min(query, key)
        return result

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def create(self, query: QuerySpec, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        created = self.create_many(query, [data])
        return created[0] if created else None

    def create_many(
        self, query: QuerySpec, data: Sequence[Mapping[str, Any]]
    ) -> List[Dict[str, Any]]:
        model = query.model
        docs = [self._prepare_insert(query, item) for item in data]
        if not docs:
            return []
        with self._driver_errors("create", model):
            self._insert_raw(model, docs)
        logger.debug(f"Inserted {len(docs)} rows into {model.collection}")
        return self._requery(query, [doc[PRIMARY_KEY] for doc in docs])

    def _update_values(self, query: QuerySpec, data: Mapping[str, Any]) -> Dict[str, Any]:
        values = {
            k: v
            for k, v in data.items()
            if k not in (PUBLIC_ID, PRIMARY_KEY, COLLECTION_KEY, MODEL_KEY)
        }
        if self.tenant_value(query) is not None:
            values.pop(self.tenancy.tenant_key, None)
        return values

    def update(self, query: QuerySpec, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        ids = self._matching_ids(query, limit=1)
        if not ids:
            return None
        values = self._update_values(query, data)
        if values:
            with self._driver_errors("update", query.model):
                self._update_raw(query.model, ids, values)
        updated = self._requery(query, ids)
        return updated[0] if updated else None

    def update_many(self, query: QuerySpec, data: Mapping[str, Any]) -> List[Dict[str, Any]]:
        ids = self._matching_ids(query, limit=0)
        if not ids:
            return []
        values = self._update_values(query, data)
        if values:
            with self._driver_errors("update_many", query.model):
                self._update_raw(query.model, ids, values)
        return self._requery(query, ids)

    def delete(self, query: QuerySpec) -> int:
        """Delete matching records.

        Raises:
            EmptyFilterError: If the caller supplied no filter
        """
        model = query.model
        caller_tree = self._caller_tree(query)
        if is_empty(caller_tree):
            logger.warning(f"Refused delete without filter on {model.collection}")
            raise EmptyFilterError(model.name)
        tree = self._scope(query, caller_tree)
        with self._driver_errors("delete", model):
            deleted = self._delete_raw(model, tree)
        logger.debug(f"Deleted {deleted} rows from {model.collection}")
        return int(deleted)
