"""
Fluent query specification.

A QuerySpec is built for exactly one operation and discarded afterwards.
Builder calls only mutate the builder itself; I/O happens in the terminal
calls, which all follow the same pipeline:

    merge where -> before-triggers (all tier, then per-model tier)
    -> backend -> after-triggers (all tier, then per-model tier)
    -> change notification (mutations) -> redaction

Invariants:
    - Builder calls never perform I/O
    - Values filtered on identifier fields are promoted to the backend's
      native id type; "NULL" / "Null" / "null" become None
    - A before-trigger returning False vetoes the operation; the terminal
      returns None (0 for count/sum/average) and records the veto
    - Protected fields never leave a terminal call
    - A QuerySpec is never shared between threads

How to change safely:
    - New terminals go through _run_before/_run_after so triggers and
      redaction apply uniformly
    - Keep page()/skip() last-writer-wins; pagination depends on it
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..aggregation import build_graph
from ..context import QueryContext, RequestContext
from ..errors import EngineError, TriggerError, TriggerVetoError
from ..filters.tree import COMBINATOR_KEYS, OPERATORS, REGEX_OPTION_KEYS, Op
from ..notify import ChangeNotifier, NullNotifier, emit_change
from ..schema.types import COLLECTION_KEY, IDENTITY_KEYS, MODEL_KEY, PRIMARY_KEY, PUBLIC_ID, FieldDef, Model
from ..triggers import Stage, TriggerAction, TriggerRegistry
from ..values import coerce_field_value, is_null_sentinel

if TYPE_CHECKING:
    from ..backends.base import BaseBackend

logger = logging.getLogger(__name__)

CREATE_INPUT = "create"
UPDATE_INPUT = "update"
IMPORT_INPUT = "import"

# Operators whose operands are patterns, never identifiers
_UNPROMOTED_OPERATORS = {k for k, (op, _) in OPERATORS.items() if op in (Op.REGEX, Op.TYPE, Op.EXISTS)}


def _direction(value: Any) -> int:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return -1 if value < 0 else 1
    text = str(value).strip().upper()
    return -1 if text in ("DESC", "DESCENDING", "-1") else 1


def _is_blank(value: Any) -> bool:
    return value is None or value == "" or (isinstance(value, (list, dict)) and not value)


class QuerySpec:
    """Per-operation query builder bound to one model and backend.

    Args:
        model: Target model
        backend: Storage backend executing terminal calls
        triggers: Trigger registry (None disables triggers)
        notifier: Change notifier for mutations
        request: Caller context (tenant, token)
        context: Trigger-visible operation state
        limit: Initial limit; 0 means unlimited

    Example:
        >>> q = engine.query("Invoice", request)
        >>> q.where("status", {"in": ["open", "overdue"]}).order_by("dueAt", "DESC").take(20)
        >>> q.find()
    """

    def __init__(
        self,
        model: Model,
        backend: BaseBackend,
        triggers: Optional[TriggerRegistry] = None,
        notifier: Optional[ChangeNotifier] = None,
        request: Optional[RequestContext] = None,
        context: Optional[QueryContext] = None,
        limit: int = 10,
    ) -> None:
        self.model = model
        self.backend = backend
        self.triggers = triggers
        self.notifier = notifier or NullNotifier()
        self.request = request
        self.context = context or QueryContext()
        self.vetoed: Optional[TriggerAction] = None

        self._where: Dict[str, Any] = {}
        self._order: Dict[str, int] = {}
        self._group_by: List[str] = []
        self._group_raw: Dict[str, Any] = {}
        self._distinct: List[str] = []
        self._limit = limit
        self._page: Optional[int] = None
        self._skip: Optional[int] = None

    def new_instance(self, model: Optional[Model] = None) -> QuerySpec:
        """Fresh, unlimited query sharing this query's backend and caller.

        Used for relationship subqueries and post-mutation re-queries.
        """
        return QuerySpec(
            model or self.model,
            self.backend,
            triggers=self.triggers,
            notifier=self.notifier,
            request=self.request,
            context=QueryContext(access_role=self.context.access_role, route=self.context.route),
            limit=0,
        )

    # ------------------------------------------------------------------
    # State read by backends
    # ------------------------------------------------------------------

    @property
    def where_clause(self) -> Dict[str, Any]:
        return self._where

    @property
    def order(self) -> List[Tuple[str, int]]:
        return list(self._order.items())

    @property
    def group_fields(self) -> List[str]:
        return list(self._group_by)

    @property
    def group_raw(self) -> Dict[str, Any]:
        return self._group_raw

    @property
    def distinct_fields(self) -> List[str]:
        return list(self._distinct)

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def current_page(self) -> Optional[int]:
        return self._page

    @property
    def offset(self) -> int:
        """Effective skip: explicit skip, else derived from page and limit."""
        if self._skip is not None:
            return self._skip
        if self._page and self._limit:
            return self._limit * (self._page - 1)
        return 0

    # ------------------------------------------------------------------
    # Builder
    # ------------------------------------------------------------------

    def _native(self, value: Any) -> Any:
        if is_null_sentinel(value):
            return None
        if isinstance(value, list):
            return [self._native(v) for v in value]
        if isinstance(value, str):
            return self.backend.native_id(value)
        return value

    def _promote(self, name: str, value: Any) -> Any:
        if isinstance(value, (str, list)):
            return self._native(value)
        if isinstance(value, Mapping):
            promoted = {}
            for key, operand in value.items():
                if key in _UNPROMOTED_OPERATORS or key in REGEX_OPTION_KEYS:
                    promoted[key] = operand
                elif isinstance(operand, (str, list)):
                    promoted[key] = self._native(operand)
                else:
                    promoted[key] = operand
            return promoted
        return value

    def _promote_arm(self, arm: Any) -> Any:
        if not isinstance(arm, Mapping):
            return arm
        promoted: Dict[str, Any] = {}
        for name, value in arm.items():
            if name in COMBINATOR_KEYS:
                arms = value if isinstance(value, (list, tuple)) else [value]
                promoted[name] = [self._promote_arm(a) for a in arms]
                continue
            if name in (PUBLIC_ID, PRIMARY_KEY):
                name = PRIMARY_KEY
            if self.model.is_identifier_field(name):
                value = self._promote(name, value)
            promoted[name] = value
        return promoted

    def where(self, name: str, value: Any) -> QuerySpec:
        """Add a filter on one field, relationship alias or combinator.

        Operator maps for the same field are merged (field-level AND);
        combinator arms for the same key are concatenated; anything else
        overwrites.
        """
        if name in COMBINATOR_KEYS:
            arms = value if isinstance(value, (list, tuple)) else [value]
            arms = [self._promote_arm(a) for a in arms]
            existing = self._where.get(name)
            self._where[name] = (list(existing) if isinstance(existing, list) else []) + arms
            return self

        if name in (PUBLIC_ID, PRIMARY_KEY):
            name = PRIMARY_KEY
        if self.model.is_identifier_field(name):
            value = self._promote(name, value)

        existing = self._where.get(name)
        if isinstance(existing, Mapping) and isinstance(value, Mapping):
            merged = dict(existing)
            merged.update(value)
            self._where[name] = merged
        else:
            self._where[name] = dict(value) if isinstance(value, Mapping) else value
        return self

    def where_many(self, where: Optional[Mapping[str, Any]]) -> QuerySpec:
        if isinstance(where, Mapping):
            for name, value in where.items():
                self.where(name, value)
        return self

    def where_all(self, where: Optional[Mapping[str, Any]]) -> QuerySpec:
        """Merge a whole where map (incoming filters, trigger rewrites)."""
        return self.where_many(where)

    def order_by(self, name: str, direction: Any = "ASC") -> QuerySpec:
        self._order[name] = _direction(direction)
        return self

    def order_by_all(self, values: Optional[Sequence[Mapping[str, Any]]]) -> QuerySpec:
        for entry in values or ():
            for name, direction in entry.items():
                self.order_by(name, direction)
        return self

    def group_by(self, name: str) -> QuerySpec:
        self._group_by.append(name)
        return self

    def group_by_raw(self, key: str, value: Any) -> QuerySpec:
        self._group_raw[key] = value
        return self

    def distinct(self, name: str) -> QuerySpec:
        self._distinct.append(name)
        return self

    def distinct_all(self, names: Sequence[str]) -> QuerySpec:
        self._distinct.extend(names)
        return self

    def take(self, value: int) -> QuerySpec:
        self._limit = max(int(value), 0)
        return self

    def page(self, value: int) -> QuerySpec:
        self._page = max(int(value), 1)
        self._skip = None
        return self

    def skip(self, value: int) -> QuerySpec:
        self._skip = max(int(value), 0)
        return self

    # ------------------------------------------------------------------
    # Trigger pipeline
    # ------------------------------------------------------------------

    def _dispatch(self, action: TriggerAction) -> Any:
        if self.triggers is None:
            return None
        try:
            return self.triggers.dispatch(action, self.model, self.request, self.context)
        except EngineError:
            raise
        except Exception as e:
            logger.error(
                f"Trigger {action.value} on {self.model.name} failed: {e}",
                extra={"model": self.model.name, "action": action.value},
            )
            raise TriggerError(self.model.name, action.value, e) from e

    def _run_before(self, stage: Stage, payload: Any = None) -> Tuple[bool, Any]:
        filters_stage = stage in (Stage.FIND, Stage.DELETE)
        for all_models in (True, False):
            action = TriggerAction.of(stage, before=True, all_models=all_models)
            if filters_stage:
                self.context.filters = dict(self._where)
            else:
                self.context.input = payload
            result = self._dispatch(action)
            if result is False:
                self.vetoed = action
                logger.info(
                    f"{action.value} vetoed {self.model.name}",
                    extra={"model": self.model.name, "action": action.value},
                )
                return False, payload
            if filters_stage:
                if isinstance(result, Mapping):
                    self.where_all(result)
            elif isinstance(payload, list):
                if isinstance(result, list):
                    payload = result
            elif isinstance(result, Mapping):
                payload = dict(result)
        return True, payload

    def _run_after(self, stage: Stage, result: Any) -> Any:
        for all_models in (True, False):
            action = TriggerAction.of(stage, before=False, all_models=all_models)
            self.context.data = result
            replaced = self._dispatch(action)
            if isinstance(replaced, (Mapping, list)):
                result = replaced
        return result

    def raise_if_vetoed(self) -> None:
        """Raise TriggerVetoError if the last terminal call was vetoed."""
        if self.vetoed is not None:
            raise TriggerVetoError(self.model.name, self.vetoed.value)

    def _notify(self, action: str) -> None:
        emit_change(self.notifier, action, self.model.name)

    # ------------------------------------------------------------------
    # Input and output shaping
    # ------------------------------------------------------------------

    def _coerce_input(self, field_def: FieldDef, value: Any) -> Any:
        if field_def.is_identifier:
            return self._native(value)
        return coerce_field_value(field_def.kind.value, value)

    def format_input(self, data: Mapping[str, Any], action: str = CREATE_INPUT) -> Dict[str, Any]:
        """Shape a mutation payload for storage.

        Create and import take every declared field, from the input or
        its default, and assign "_id" from the input id or a new one.
        Update takes only the declared fields that were provided and
        never touches the id.
        """
        result: Dict[str, Any] = {}
        for name, field_def in self.model.fields.items():
            if name in IDENTITY_KEYS:
                continue
            if name in data:
                value = data[name]
            elif action == UPDATE_INPUT:
                continue
            else:
                value = field_def.default_for_input()
            result[name] = self._coerce_input(field_def, value)

        if action != UPDATE_INPUT:
            raw_id = data.get(PRIMARY_KEY, data.get(PUBLIC_ID))
            if _is_blank(raw_id):
                result[PRIMARY_KEY] = self.backend.new_id()
            else:
                result[PRIMARY_KEY] = self.backend.native_id(raw_id)
        return result

    def _redact_record(self, record: Any) -> Any:
        protected = self.model.protected_fields
        if not protected or not isinstance(record, Mapping):
            return record
        return {k: v for k, v in record.items() if k not in protected}

    def redact(self, result: Any) -> Any:
        """Remove protected fields from a record, a list, or a page."""
        if isinstance(result, list):
            return [self._redact_record(r) for r in result]
        if isinstance(result, Mapping) and "data" in result and MODEL_KEY not in result:
            page = dict(result)
            page["data"] = self.redact(page["data"])
            return page
        return self._redact_record(result)

    # ------------------------------------------------------------------
    # Read terminals
    # ------------------------------------------------------------------

    def find_one(self, where: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        result = self.backend.find_one(self)
        return self.redact(self._run_after(Stage.FIND, result))

    def first(self, where: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        return self.find_one(where)

    def exist(self, where: Optional[Mapping[str, Any]] = None) -> bool:
        return self.find_one(where) is not None

    def value(self, key: str, where: Optional[Mapping[str, Any]] = None) -> Any:
        """Single field of the first matching record, or None."""
        record = self.find_one(where)
        if not record:
            return None
        return record.get(key)

    def find(self, where: Optional[Mapping[str, Any]] = None) -> Optional[List[Dict[str, Any]]]:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        result = self.backend.find(self)
        return self.redact(self._run_after(Stage.FIND, result))

    def paginate(self, where: Optional[Mapping[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """Page of records with total/perPage/currentPage/lastPage/from/to."""
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        result = self.backend.pagination(self)
        return self.redact(self._run_after(Stage.FIND, result))

    def summary(
        self, where: Optional[Mapping[str, Any]] = None, key: Optional[str] = None
    ) -> Optional[Dict[str, Any]]:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        return self.backend.summary(self, key)

    def count(self, where: Optional[Mapping[str, Any]] = None) -> int:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return 0
        return self.backend.count(self)

    def sum(self, key: str, where: Optional[Mapping[str, Any]] = None) -> float:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return 0.0
        return self.backend.sum(self, key)

    def average(self, key: str, where: Optional[Mapping[str, Any]] = None) -> float:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return 0.0
        return self.backend.average(self, key)

    def max(self, key: str, where: Optional[Mapping[str, Any]] = None) -> Any:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        return self.backend.max(self, key)

    def min(self, key: str, where: Optional[Mapping[str, Any]] = None) -> Any:
        self.where_all(where)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        return self.backend.min(self, key)

    def graph(
        self,
        where: Optional[Mapping[str, Any]] = None,
        params: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Dict[str, Any]]:
        """Chart data (labels and datasets) bucketed by the chart params.

        Raises:
            ConfigurationError: If the chart params do not fit the model
        """
        self.where_all(where)
        if params:
            self.context.params.update(params)
        proceed, _ = self._run_before(Stage.FIND)
        if not proceed:
            return None
        return build_graph(self, self.context.params, where or {})

    # ------------------------------------------------------------------
    # Mutation terminals
    # ------------------------------------------------------------------

    def create(self, data: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        proceed, payload = self._run_before(Stage.CREATE, dict(data))
        if not proceed:
            return None
        result = self.backend.create(self, self.format_input(payload, CREATE_INPUT))
        result = self._run_after(Stage.CREATE, result)
        self._notify("create")
        return self.redact(result)

    def create_many(self, data: Sequence[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        """Create several records; vetoed records are skipped."""
        formatted = []
        for item in data:
            proceed, payload = self._run_before(Stage.CREATE, dict(item))
            if proceed:
                formatted.append(self.format_input(payload, CREATE_INPUT))
        if not formatted:
            return []
        result = self.backend.create_many(self, formatted)
        result = self._run_after(Stage.CREATE, result)
        self._notify("create")
        return self.redact(result)

    def update(
        self, data: Mapping[str, Any], where: Optional[Mapping[str, Any]] = None
    ) -> Optional[Dict[str, Any]]:
        self.where_all(where)
        proceed, payload = self._run_before(Stage.UPDATE, dict(data))
        if not proceed:
            return None
        result = self.backend.update(self, self.format_input(payload, UPDATE_INPUT))
        result = self._run_after(Stage.UPDATE, result)
        self._notify("update")
        return self.redact(result)

    def update_many(
        self, data: Mapping[str, Any], where: Optional[Mapping[str, Any]] = None
    ) -> Optional[List[Dict[str, Any]]]:
        self.where_all(where)
        proceed, payload = self._run_before(Stage.UPDATE, dict(data))
        if not proceed:
            return None
        result = self.backend.update_many(self, self.format_input(payload, UPDATE_INPUT))
        result = self._run_after(Stage.UPDATE, result)
        self._notify("update")
        return self.redact(result)

    def delete(self, where: Optional[Mapping[str, Any]] = None) -> Optional[Union[int, Any]]:
        """Delete matching records.

        Returns:
            Deleted count (or an after-trigger replacement), None on veto

        Raises:
            EmptyFilterError: If no filter was supplied
        """
        self.where_all(where)
        proceed, _ = self._run_before(Stage.DELETE)
        if not proceed:
            return None
        result = self.backend.delete(self)
        result = self._run_after(Stage.DELETE, result)
        self._notify("delete")
        return result

    def import_records(
        self, data: Sequence[Mapping[str, Any]], unique_keys: Sequence[str] = ()
    ) -> Optional[Dict[str, Any]]:
        """Upsert records, matching existing ones on unique keys or "_id".

        A record whose unique key is present but blank is ignored.

        Returns:
            {"message", "status", "deleted", "ignored", "imported",
             "updated", "data"}, or None when vetoed
        """
        proceed, records = self._run_before(Stage.CREATE, list(data))
        if not proceed:
            return None

        keys = list(unique_keys) + [PRIMARY_KEY]
        ignored = imported = updated = 0
        to_create: List[Dict[str, Any]] = []
        to_update: List[Dict[str, Any]] = []
        output: List[Dict[str, Any]] = []

        for item in records:
            if not isinstance(item, Mapping):
                ignored += 1
                continue
            record = {k: v for k, v in item.items() if k not in (COLLECTION_KEY, MODEL_KEY)}
            if PUBLIC_ID in record and PRIMARY_KEY not in record:
                record[PRIMARY_KEY] = record.pop(PUBLIC_ID)

            lookup: Dict[str, Any] = {}
            blank = False
            for key in keys:
                if key in record:
                    if _is_blank(record[key]):
                        blank = True
                        break
                    lookup[key] = record[key]
            if blank:
                ignored += 1
                continue

            existing = self.new_instance().find_one(lookup) if lookup else None
            if existing:
                record[PRIMARY_KEY] = existing[PRIMARY_KEY]
                to_update.append(record)
            else:
                to_create.append(self.format_input(record, IMPORT_INPUT))

        if to_create:
            try:
                created = self.backend.create_many(self, to_create)
            except EngineError as e:
                logger.error(f"Import into {self.model.collection} failed: {e}")
                created = []
            imported = len(created)
            output.extend(created)
            self._run_after(Stage.CREATE, created)

        for record in to_update:
            changed = self.new_instance().where(PUBLIC_ID, record[PRIMARY_KEY]).update(record)
            if changed is not None:
                updated += 1
                output.append(changed)
            else:
                ignored += 1

        status = bool(imported or updated)
        self._notify("import")
        logger.info(
            f"Imported into {self.model.collection}: {imported} created, "
            f"{updated} updated, {ignored} ignored",
        )
        return {
            "message": "SUCCESS" if status else "FAIL",
            "status": status,
            "deleted": 0,
            "ignored": ignored,
            "imported": imported,
            "updated": updated,
            "data": self.redact(output),
        }
