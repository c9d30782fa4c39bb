"""
Trigger pipeline: before/after hooks around every terminal operation.

Two dispatch tiers:
- all-models hooks, one per action, called as fn(model, request, context)
- per-model hooks, keyed by (model name, action, AccessKey), called as
  fn(request, context)

Hook results:
- before-hooks: False vetoes the operation, a mapping (or a list for
  bulk payloads) replaces the input/filter, anything else is ignored
- after-hooks: a mapping or list replaces the result, anything else is
  ignored

Invariants:
    - A lookup miss is the normal case and returns None
    - Registering twice under the same key raises DuplicateTriggerError
    - The registration maps are guarded by one reader/writer lock; hooks
      are invoked outside the lock so they may register further hooks

How to change safely:
    - Add actions in pairs (all-models and per-model)
    - Keep AccessKey normalization stable; registered keys depend on it
"""

from __future__ import annotations

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Iterator, Optional, Tuple

from .context import QueryContext, RequestContext
from .errors import DuplicateTriggerError
from .schema.naming import slugify
from .schema.types import Model

logger = logging.getLogger(__name__)

AllModelsTrigger = Callable[[Model, Optional[RequestContext], QueryContext], Any]
ModelTrigger = Callable[[Optional[RequestContext], QueryContext], Any]


class Stage(Enum):
    """Operation families that triggers attach to."""

    FIND = "Find"
    CREATE = "Create"
    UPDATE = "Update"
    DELETE = "Delete"


class TriggerAction(Enum):
    """Trigger points, per tier."""

    ALL_BEFORE_FIND = "AllBeforeFind"
    ALL_AFTER_FIND = "AllAfterFind"
    ALL_BEFORE_CREATE = "AllBeforeCreate"
    ALL_AFTER_CREATE = "AllAfterCreate"
    ALL_BEFORE_UPDATE = "AllBeforeUpdate"
    ALL_AFTER_UPDATE = "AllAfterUpdate"
    ALL_BEFORE_DELETE = "AllBeforeDelete"
    ALL_AFTER_DELETE = "AllAfterDelete"
    BEFORE_FIND = "BeforeFind"
    AFTER_FIND = "AfterFind"
    BEFORE_CREATE = "BeforeCreate"
    AFTER_CREATE = "AfterCreate"
    BEFORE_UPDATE = "BeforeUpdate"
    AFTER_UPDATE = "AfterUpdate"
    BEFORE_DELETE = "BeforeDelete"
    AFTER_DELETE = "AfterDelete"

    @property
    def all_models(self) -> bool:
        return self.name.startswith("ALL_")

    @property
    def before(self) -> bool:
        return "BEFORE_" in self.name

    @classmethod
    def of(cls, stage: Stage, before: bool, all_models: bool = False) -> TriggerAction:
        """Action for a stage/timing/tier combination.

        Example:
            >>> TriggerAction.of(Stage.CREATE, before=True)
            <TriggerAction.BEFORE_CREATE: 'BeforeCreate'>
        """
        prefix = "ALL_" if all_models else ""
        timing = "BEFORE_" if before else "AFTER_"
        return cls[f"{prefix}{timing}{stage.name}"]

    @classmethod
    def from_str(cls, value: str) -> TriggerAction:
        """Accepts the value ("BeforeCreate") or the member name ("BEFORE_CREATE")."""
        for action in cls:
            if value in (action.value, action.name):
                return action
        valid = [a.value for a in cls]
        raise ValueError(f"Invalid trigger action '{value}'. Valid actions: {valid}")


@dataclass(frozen=True)
class AccessKey:
    """Composite per-model trigger key.

    Both parts are slug-normalized, so "Admin Panel" and "admin-panel"
    address the same hook. Kept as two fields so ("a_b", "") and ("a", "b")
    never collide.
    """

    access_role: str = ""
    route: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "access_role", slugify(self.access_role or ""))
        object.__setattr__(self, "route", slugify(self.route or ""))

    @classmethod
    def from_context(cls, context: QueryContext) -> AccessKey:
        return cls(context.access_role, context.route)

    def __str__(self) -> str:
        return f"{self.access_role}:{self.route}"


class ReadWriteLock:
    """Many readers or one writer."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._readers:
                self._cond.wait()
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class TriggerRegistry:
    """Registry and dispatcher of trigger hooks.

    Thread-safety:
        - Registration may happen at any time, including after startup
        - Dispatch takes the read lock only for the lookup

    Example:
        >>> triggers = TriggerRegistry()
        >>> @triggers.on("Invoice", TriggerAction.BEFORE_CREATE)
        ... def stamp(request, context):
        ...     return {**context.input, "status": "draft"}
    """

    def __init__(self) -> None:
        self._lock = ReadWriteLock()
        self._all: Dict[TriggerAction, AllModelsTrigger] = {}
        self._per_model: Dict[Tuple[str, TriggerAction], Dict[AccessKey, ModelTrigger]] = {}

    def register_all(self, action: TriggerAction, fn: AllModelsTrigger) -> None:
        """Register an all-models hook.

        Raises:
            ValueError: If action is a per-model action
            DuplicateTriggerError: If a hook is already registered for action
        """
        if not action.all_models:
            raise ValueError(f"{action.value} is a per-model action; use register()")
        with self._lock.write():
            if action in self._all:
                raise DuplicateTriggerError(action.value)
            self._all[action] = fn
        logger.info(f"Registered trigger {action.value} for all models")

    def register(
        self,
        model: str,
        action: TriggerAction,
        fn: ModelTrigger,
        access_role: str = "",
        route: str = "",
    ) -> AccessKey:
        """Register a per-model hook.

        Args:
            model: Model name
            action: Per-model action
            fn: Hook called as fn(request, context)
            access_role: Optional access role the hook is limited to
            route: Optional route the hook is limited to

        Returns:
            The normalized key the hook is registered under

        Raises:
            ValueError: If action is an all-models action
            DuplicateTriggerError: If the key is already taken
        """
        if action.all_models:
            raise ValueError(f"{action.value} is an all-models action; use register_all()")
        key = AccessKey(access_role, route)
        with self._lock.write():
            hooks = self._per_model.setdefault((model, action), {})
            if key in hooks:
                raise DuplicateTriggerError(action.value, model=model, key=str(key))
            hooks[key] = fn
        logger.info(f"Registered trigger {model} -> {action.value} -> {key}")
        return key

    def on(
        self, model: str, action: TriggerAction, access_role: str = "", route: str = ""
    ) -> Callable[[ModelTrigger], ModelTrigger]:
        """Decorator form of register()."""

        def decorator(fn: ModelTrigger) -> ModelTrigger:
            self.register(model, action, fn, access_role=access_role, route=route)
            return fn

        return decorator

    def on_all(self, action: TriggerAction) -> Callable[[AllModelsTrigger], AllModelsTrigger]:
        """Decorator form of register_all()."""

        def decorator(fn: AllModelsTrigger) -> AllModelsTrigger:
            self.register_all(action, fn)
            return fn

        return decorator

    def lookup(self, model: str, action: TriggerAction, key: AccessKey) -> Optional[ModelTrigger]:
        with self._lock.read():
            hooks = self._per_model.get((model, action))
            if not hooks:
                return None
            return hooks.get(key)

    def lookup_all(self, action: TriggerAction) -> Optional[AllModelsTrigger]:
        with self._lock.read():
            return self._all.get(action)

    def dispatch(
        self,
        action: TriggerAction,
        model: Model,
        request: Optional[RequestContext],
        context: QueryContext,
    ) -> Any:
        """Run the hook registered for action, if any.

        Returns:
            The hook's result, or None when no hook is registered
        """
        if action.all_models:
            all_hook = self.lookup_all(action)
            if all_hook is None:
                return None
            return all_hook(model, request, context)

        hook = self.lookup(model.name, action, AccessKey.from_context(context))
        if hook is None:
            return None
        return hook(request, context)

    def clear(self) -> None:
        with self._lock.write():
            self._all.clear()
            self._per_model.clear()

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._all) + sum(len(h) for h in self._per_model.values())
