"""
Observer registry for provider events.

Listeners are kept per category in subscription order. ``subscribe``
returns a ``Subscription`` handle; unsubscribing is idempotent and never
affects other listeners of the same category.
"""
from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Dict

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]


class Subscription:
    """Removable handle returned by ``CallbackRegistry.subscribe``."""

    __slots__ = ("_registry", "_category", "_token")

    def __init__(self, registry: "CallbackRegistry", category: str, token: int) -> None:
        self._registry = registry
        self._category = category
        self._token = token

    @property
    def active(self) -> bool:
        return self._registry is not None and self._registry._has(self._category, self._token)

    def unsubscribe(self) -> None:
        registry = self._registry
        if registry is None:
            return
        self._registry = None
        registry._remove(self._category, self._token)

    # Handles can be called directly: ``unsubscribe = provider.on_results(cb); unsubscribe()``
    __call__ = unsubscribe


class CallbackRegistry:
    """
    Category -> ordered listeners.

    Args:
        safe_mode: When True a raising listener is logged and the remaining
            listeners still run. When False the exception propagates to the
            caller of ``emit``.
    """

    def __init__(self, safe_mode: bool = False) -> None:
        self.safe_mode = safe_mode
        self._listeners: Dict[str, Dict[int, Callback]] = {}
        self._tokens = itertools.count(1)

    def subscribe(self, category: str, callback: Callback) -> Subscription:
        if not callable(callback):
            raise TypeError(f"callback for {category} must be callable")
        token = next(self._tokens)
        self._listeners.setdefault(category, {})[token] = callback
        return Subscription(self, category, token)

    def emit(self, category: str, value: Any) -> None:
        listeners = self._listeners.get(category)
        if not listeners:
            return
        # Snapshot so listeners may unsubscribe while being notified
        for callback in list(listeners.values()):
            if not self.safe_mode:
                callback(value)
                continue
            try:
                callback(value)
            except Exception:
                logger.exception(f"Listener for {category} raised; continuing with remaining listeners")

    def count(self, category: str) -> int:
        return len(self._listeners.get(category, {}))

    def clear(self) -> None:
        self._listeners.clear()

    def _has(self, category: str, token: int) -> bool:
        return token in self._listeners.get(category, {})

    def _remove(self, category: str, token: int) -> None:
        listeners = self._listeners.get(category)
        if listeners is None:
            return
        listeners.pop(token, None)
        if not listeners:
            del self._listeners[category]


__all__ = ["Callback", "Subscription", "CallbackRegistry"]
