"""
Post-mutation change notifications.

After every create/update/delete/import the engine announces
("database", {"action": ..., "model": ...}) to a notifier, typically a
WebSocket hub owned by the surrounding application.

Invariants:
    - Notification never blocks or fails the mutation that caused it
    - Notifier exceptions are logged and dropped
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Dict, List, Protocol, Tuple, runtime_checkable

logger = logging.getLogger(__name__)

DATABASE_EVENT = "database"


@runtime_checkable
class ChangeNotifier(Protocol):
    """Receiver of change events."""

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        """Deliver one event. Must not block for long."""
        ...


class NullNotifier:
    """Notifier that discards every event."""

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        return None


class CollectingNotifier:
    """Keeps events in memory. Useful in tests and for local tooling."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[Tuple[str, Dict[str, Any]]] = []

    def notify(self, event: str, payload: Dict[str, Any]) -> None:
        with self._lock:
            self._events.append((event, dict(payload)))

    @property
    def events(self) -> List[Tuple[str, Dict[str, Any]]]:
        with self._lock:
            return list(self._events)

    def clear(self) -> None:
        with self._lock:
            self._events.clear()


def emit_change(notifier: ChangeNotifier, action: str, model: str) -> None:
    """Fire-and-forget a database change event."""
    try:
        notifier.notify(DATABASE_EVENT, {"action": action, "model": model})
    except Exception as e:
        logger.warning(
            f"Change notification failed for {model} ({action}): {e}",
            extra={"model": model, "action": action},
        )
