"""
Error types for the model engine.

This module defines every exception the engine raises on purpose:
- EngineError: Base exception
- ConfigurationError: Malformed model structure or settings
- BackendError: Storage driver failure
- PolicyError: Deliberate refusal (empty delete, veto, duplicate registration)
- TriggerError: A trigger hook failed
- UnsupportedFilterError: Filter a backend cannot express
- CoercionError: Operand that cannot be coerced (strict mode only)

Invariants:
    - All errors inherit from EngineError
    - Errors carry a stable code for programmatic handling
    - Secrets never appear in messages or details

How to change safely:
    - Add new subclasses rather than changing existing codes
    - Callers match on class or code, never on message text
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EngineError(Exception):
    """Base exception for all model engine errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "ENGINE_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "message": self.message,
            "details": dict(self.details),
        }


class ConfigurationError(EngineError):
    """Model structure or engine settings are malformed.

    Raised when:
    - A field declares an unknown type
    - A foreign key declaration cannot be parsed
    - A backend is selected without its connection settings
    """

    def __init__(
        self,
        message: str,
        model: Optional[str] = None,
        field_name: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="CONFIGURATION_ERROR",
            details={"model": model, "field": field_name},
        )
        self.model = model
        self.field_name = field_name


class BackendError(EngineError):
    """Storage driver failed.

    The operation is aborted and no partial state is assumed.
    No retry is attempted at this layer.
    """

    def __init__(
        self,
        message: str,
        backend: Optional[str] = None,
        operation: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="BACKEND_ERROR",
            details={"backend": backend, "operation": operation},
        )
        self.backend = backend
        self.operation = operation


class PolicyError(EngineError):
    """Base class for deliberate refusals."""

    def __init__(
        self,
        message: str,
        code: str = "POLICY_ERROR",
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code=code, details=details)


class EmptyFilterError(PolicyError):
    """Delete was requested without any filter."""

    def __init__(self, model: str) -> None:
        super().__init__(
            f"Refusing to delete from '{model}': filter is empty",
            code="EMPTY_FILTER",
            details={"model": model},
        )
        self.model = model


class TriggerVetoError(PolicyError):
    """A before-trigger vetoed the operation.

    Terminal operations return None on veto. This error exists for callers
    that want to turn a veto into an exception at their own boundary.
    """

    def __init__(self, model: str, action: str) -> None:
        super().__init__(
            f"Operation '{action}' on '{model}' was vetoed by a trigger",
            code="TRIGGER_VETO",
            details={"model": model, "action": action},
        )
        self.model = model
        self.action = action


class TriggerError(EngineError):
    """A trigger hook raised while the engine dispatched it.

    The original exception is chained as __cause__. Engine errors raised
    by a hook pass through unchanged.
    """

    def __init__(self, model: str, action: str, cause: BaseException) -> None:
        super().__init__(
            f"Trigger {action} on '{model}' failed: {type(cause).__name__}: {cause}",
            code="TRIGGER_ERROR",
            details={"model": model, "action": action, "error": type(cause).__name__},
        )
        self.model = model
        self.action = action


class DuplicateTriggerError(PolicyError):
    """A trigger is already registered under the same key."""

    def __init__(self, action: str, model: Optional[str] = None, key: Optional[str] = None) -> None:
        target = f"'{model}' " if model else "all models "
        super().__init__(
            f"Trigger {action} for {target}already registered (key={key!r})",
            code="DUPLICATE_TRIGGER",
            details={"action": action, "model": model, "key": key},
        )
        self.action = action
        self.model = model
        self.key = key


class RegistryFrozenError(PolicyError):
    """Raised when attempting to modify a frozen model registry."""

    def __init__(self, message: str) -> None:
        super().__init__(message, code="REGISTRY_FROZEN")


class DuplicateModelError(ConfigurationError):
    """Raised when two models share a name or collection."""


class UnsupportedFilterError(EngineError):
    """Filter operator or shape cannot be expressed by a backend."""

    def __init__(
        self,
        message: str,
        operator: Optional[str] = None,
        backend: Optional[str] = None,
    ) -> None:
        super().__init__(
            message,
            code="UNSUPPORTED_FILTER",
            details={"operator": operator, "backend": backend},
        )
        self.operator = operator
        self.backend = backend


class CoercionError(EngineError):
    """Operand could not be coerced to a number or timestamp.

    Only raised when strict calculated values are enabled. Otherwise the
    value silently becomes the current time.
    """

    def __init__(self, value: Any) -> None:
        super().__init__(
            f"Cannot coerce {value!r} to a number or timestamp",
            code="COERCION_ERROR",
            details={"value": repr(value)},
        )
        self.value = value
