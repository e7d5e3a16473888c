"""
Scoreboard engine: binds a provider to the reconciliation reducer.

The engine owns the scoreboard state exclusively. Consumers read immutable
``ScoreboardSnapshot`` copies via ``snapshot()`` or ``on_change``
listeners. Events are reduced one at a time in arrival order.
"""
from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, List, Optional

from .best_run import BestRunResolver, ResultsLookup
from .callbacks import CallbackRegistry, Subscription
from .config import EngineConfig
from .errors import ScoreboardError
from .events import (
    CONFIG,
    CONNECTION,
    ERROR,
    EVENT_INFO,
    ON_COURSE,
    RESULTS,
    VISIBILITY,
    ConnectionStatusEvent,
    Event,
    ResultsEvent,
)
from .providers import DataProvider
from .scoreboard import (
    ReconcileOutcome,
    apply_event,
    build_snapshot,
    default_state,
    expire_transients,
    upgrade_results,
)
from .types import ScoreboardSnapshot, ScoreboardState

logger = logging.getLogger(__name__)

CHANGE = "change"

# Fire expiry timers slightly late so the clock is past the boundary
_TIMER_SLACK = 0.01

_PROVIDER_CATEGORIES = (RESULTS, ON_COURSE, EVENT_INFO, CONFIG, VISIBILITY, CONNECTION, ERROR)


class ScoreboardEngine:
    """
    Reconciled scoreboard state for one provider.

    Args:
        provider: Source of events
        config: Highlight/departing windows and error log size
        lookup: Results-lookup collaborator; enables best-of-two merge
        clock: Wall clock in seconds (injectable for tests)
    """

    def __init__(
        self,
        provider: DataProvider,
        config: Optional[EngineConfig] = None,
        lookup: Optional[ResultsLookup] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.provider = provider
        self.config = config or EngineConfig()
        self._clock = clock
        self._state: ScoreboardState = default_state(provider.status)
        self._listeners = CallbackRegistry(safe_mode=True)
        self._subscriptions: List[Subscription] = []
        self._timers: List[asyncio.TimerHandle] = []
        self._resolver = (
            BestRunResolver(lookup, self._on_first_run_resolved, self.config.best_run_refresh)
            if lookup is not None
            else None
        )
        self._last_results: Optional[ResultsEvent] = None

    # ==================== LIFECYCLE ====================

    @property
    def attached(self) -> bool:
        return bool(self._subscriptions)

    def attach(self) -> None:
        """Subscribe to every provider category. Idempotent."""
        if self._subscriptions:
            return
        self._subscriptions = [self.provider.subscribe(category, self.handle) for category in _PROVIDER_CATEGORIES]

    def detach(self) -> None:
        for subscription in self._subscriptions:
            subscription.unsubscribe()
        self._subscriptions = []

    async def start(self) -> None:
        """Attach and connect. A failed first connect is recorded in ``error`` and re-raised."""
        self.attach()
        try:
            await self.provider.connect()
        except ScoreboardError as e:
            self._set_error(e.message)
            raise

    def stop(self) -> None:
        """Disconnect, cancel every timer and pending lookup, stop listening."""
        self.provider.disconnect()
        self.detach()
        self._cancel_timers()
        if self._resolver is not None:
            self._resolver.reset()

    def close(self) -> None:
        self.stop()
        if self._resolver is not None:
            self._resolver.dispose()
        self._listeners.clear()

    async def reconnect(self) -> None:
        """Manual reconnect: clear errors, drop the connection and connect again."""
        self._state["error"] = None
        self._state["providerErrors"] = []
        self._notify()
        self.provider.disconnect()
        try:
            await self.provider.connect()
        except ScoreboardError as e:
            logger.warning(f"Reconnect failed: {e.message}")
            self._set_error(e.message or "Connection failed")

    # ==================== READ SIDE ====================

    def snapshot(self) -> ScoreboardSnapshot:
        return build_snapshot(self._state, self._clock(), self.config)

    def on_change(self, callback: Callable[[ScoreboardSnapshot], None]) -> Subscription:
        return self._listeners.subscribe(CHANGE, callback)

    def clear_provider_errors(self) -> None:
        if self._state.get("providerErrors"):
            self._state["providerErrors"] = []
            self._notify()

    # ==================== WRITE SIDE ====================

    def handle(self, event: Event) -> ReconcileOutcome:
        """Reduce one event into the state and notify listeners on change."""
        if isinstance(event, ResultsEvent):
            self._last_results = event
            if self._resolver is not None:
                event = self._resolver.process(event)
        elif isinstance(event, ConnectionStatusEvent) and event.state in ("reconnecting", "disconnected"):
            if event.state == "reconnecting":
                self._last_results = None
            self._cancel_timers()
            if self._resolver is not None:
                self._resolver.reset()

        outcome = apply_event(self._state, event, now=self._clock(), config=self.config)

        if outcome.highlighted is not None:
            self._schedule_expiry(self.config.highlight_duration)
        if outcome.departed is not None:
            self._schedule_expiry(self.config.departing_timeout)
        if outcome.changed:
            self._notify()
        return outcome

    def _on_first_run_resolved(self, class_id: str) -> None:
        latest = self._last_results
        if latest is None or self._resolver is None:
            return
        merged = self._resolver.apply(latest)
        if merged is latest:
            return
        # Upgrade the rows currently shown; later Results already replaced older ones
        if upgrade_results(self._state, merged.race_id, merged.rows):
            logger.debug(f"Best-run data applied for {class_id}")
            self._notify()

    def _set_error(self, message: str) -> None:
        self._state["error"] = message
        self._notify()

    def _notify(self) -> None:
        if self._listeners.count(CHANGE):
            self._listeners.emit(CHANGE, self.snapshot())

    # ==================== TIMERS ====================

    def _schedule_expiry(self, delay: float) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop (synchronous use): snapshots still expire lazily
            return
        self._timers.append(loop.call_later(delay + _TIMER_SLACK, self._on_expiry_timer))

    def _on_expiry_timer(self) -> None:
        loop = asyncio.get_running_loop()
        self._timers = [h for h in self._timers if not h.cancelled() and h.when() > loop.time()]
        if expire_transients(self._state, self._clock(), self.config):
            self._notify()

    def _cancel_timers(self) -> None:
        timers, self._timers = self._timers, []
        for handle in timers:
            handle.cancel()

    @property
    def pending_timers(self) -> int:
        return len(self._timers)

    @property
    def resolver(self) -> Optional[BestRunResolver]:
        return self._resolver


__all__ = ["CHANGE", "ScoreboardEngine"]
