"""
Document-store backend on pymongo.

Reads compile the filter tree with filters.mongo. Grouped reads
(group_by, group_by_raw, distinct) run an aggregation pipeline:

    $match -> $group -> $sort -> $skip -> $limit

Group keys come back under "_id" and are flattened into the row, so a
group on ("status",) yields {"status": ..., "count": ...}.

Identifiers are ObjectIds. Strings that are valid ObjectId hex are
promoted; anything else passes through unchanged.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Mapping, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from ..config import QueryConfig, TenancyConfig
from ..filters.mongo import compile_filter
from ..filters.tree import Group
from ..schema.registry import ModelRegistry
from ..schema.types import PRIMARY_KEY, Model
from .base import BaseBackend, ReadPlan

logger = logging.getLogger(__name__)

_ACCUMULATORS = {"max": "$max", "min": "$min", "sum": "$sum", "avg": "$avg"}


class MongoBackend(BaseBackend):
    """Storage backend for a MongoDB database.

    Args:
        database: pymongo Database handle
        registry: Frozen model registry
        tenancy: Tenant scoping settings
        query_config: Query defaults
    """

    name = "mongodb"

    def __init__(
        self,
        database: Database,
        registry: ModelRegistry,
        tenancy: Optional[TenancyConfig] = None,
        query_config: Optional[QueryConfig] = None,
    ) -> None:
        super().__init__(registry, tenancy=tenancy, query_config=query_config)
        self.database = database

    def native_id(self, value: Any) -> Any:
        if value is None or isinstance(value, ObjectId):
            return value
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        return value

    def new_id(self) -> Any:
        return ObjectId()

    def _collection(self, model: Model):
        return self.database[model.collection]

    def _group_stage(self, plan: ReadPlan) -> Dict[str, Any]:
        raw = dict(plan.group_raw or {})
        stage: Dict[str, Any] = {}
        if "_id" in raw:
            stage["_id"] = raw.pop("_id")
        elif plan.group_fields:
            stage["_id"] = {name: f"${name}" for name in plan.group_fields}
        else:
            stage["_id"] = None
        if raw:
            stage.update(raw)
        else:
            stage["count"] = {"$sum": 1}
        return stage

    def _pipeline(self, plan: ReadPlan) -> List[Dict[str, Any]]:
        pipeline: List[Dict[str, Any]] = [{"$match": compile_filter(plan.tree)}]
        pipeline.append({"$group": self._group_stage(plan)})
        if plan.order:
            keyed = set(plan.group_fields)
            sort = {}
            for field, direction in plan.order:
                sort[f"_id.{field}" if field in keyed else field] = direction
            pipeline.append({"$sort": sort})
        if plan.skip:
            pipeline.append({"$skip": plan.skip})
        if plan.limit:
            pipeline.append({"$limit": plan.limit})
        return pipeline

    @staticmethod
    def _flatten(row: Mapping[str, Any]) -> Dict[str, Any]:
        result = {k: v for k, v in row.items() if k != PRIMARY_KEY}
        key = row.get(PRIMARY_KEY)
        if isinstance(key, Mapping):
            result.update(key)
        elif key is not None:
            result[PRIMARY_KEY] = key
        return result

    def _find_raw(self, model: Model, plan: ReadPlan) -> List[Dict[str, Any]]:
        collection = self._collection(model)
        if plan.grouped:
            pipeline = self._pipeline(plan)
            logger.debug(f"Aggregating {model.collection}: {pipeline}")
            return [self._flatten(row) for row in collection.aggregate(pipeline)]

        cursor = collection.find(compile_filter(plan.tree))
        if plan.order:
            cursor = cursor.sort(list(plan.order))
        if plan.skip:
            cursor = cursor.skip(plan.skip)
        if plan.limit:
            cursor = cursor.limit(plan.limit)
        return list(cursor)

    def _count_raw(self, model: Model, tree: Group, distinct: Tuple[str, ...]) -> int:
        collection = self._collection(model)
        query = compile_filter(tree)
        if not distinct:
            return collection.count_documents(query)
        pipeline = [
            {"$match": query},
            {"$group": {"_id": {name: f"${name}" for name in distinct}}},
            {"$count": "total"},
        ]
        rows = list(collection.aggregate(pipeline))
        return rows[0]["total"] if rows else 0

    def _aggregate_raw(self, model: Model, tree: Group, op: str, key: str) -> Any:
        pipeline = [
            {"$match": compile_filter(tree)},
            {"$group": {"_id": None, "aggregateValue": {_ACCUMULATORS[op]: f"${key}"}}},
        ]
        rows = list(self._collection(model).aggregate(pipeline))
        return rows[0]["aggregateValue"] if rows else None

    def _insert_raw(self, model: Model, docs: List[Dict[str, Any]]) -> None:
        self._collection(model).insert_many(docs)

    def _update_raw(self, model: Model, ids: List[Any], values: Dict[str, Any]) -> None:
        self._collection(model).update_many({PRIMARY_KEY: {"$in": ids}}, {"$set": values})

    def _delete_raw(self, model: Model, tree: Group) -> int:
        return self._collection(model).delete_many(compile_filter(tree)).deleted_count
