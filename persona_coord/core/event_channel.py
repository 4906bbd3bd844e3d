"""
Explicit publish/subscribe channel for registry events.

Every registry owns its own channel; there is no module-level listener state.

Events and payloads:
    service-registered       ServiceEndpoint snapshot (new id)
    service-updated          ServiceEndpoint snapshot (re-registration of a known id)
    service-unregistered     ServiceEndpoint snapshot (as it was when removed)
    service-heartbeat        ServiceEndpoint snapshot (after the heartbeat)
    service-status-changed   ServiceStatusChange
    health-check-result      HealthCheckResult (every probe, transition or not)
    shutdown                 None

Handlers may be plain callables or coroutine functions. A handler that raises
is logged and does not affect the emitter or other handlers.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections import defaultdict
from enum import Enum
from typing import Any, Callable, Dict, List, Set, Union

logger = logging.getLogger(__name__)


class ServiceEvent(str, Enum):
    REGISTERED = "service-registered"
    UPDATED = "service-updated"
    UNREGISTERED = "service-unregistered"
    STATUS_CHANGED = "service-status-changed"
    HEARTBEAT = "service-heartbeat"
    HEALTH_CHECK_RESULT = "health-check-result"
    SHUTDOWN = "shutdown"


EventHandler = Callable[[Any], Any]


class EventChannel:
    """Named-event fan-out to registered handlers."""

    def __init__(self):
        self._handlers: Dict[ServiceEvent, List[EventHandler]] = defaultdict(list)
        self._pending: Set[asyncio.Task] = set()

    @staticmethod
    def _coerce(event: Union[ServiceEvent, str]) -> ServiceEvent:
        # Raises ValueError for names outside the documented set
        return event if isinstance(event, ServiceEvent) else ServiceEvent(event)

    def subscribe(self, event: Union[ServiceEvent, str], handler: EventHandler) -> Callable[[], None]:
        """Register ``handler`` for ``event``. Returns a callable that unsubscribes it."""
        name = self._coerce(event)
        self._handlers[name].append(handler)

        def _unsubscribe() -> None:
            self.unsubscribe(name, handler)

        return _unsubscribe

    def unsubscribe(self, event: Union[ServiceEvent, str], handler: EventHandler) -> bool:
        handlers = self._handlers.get(self._coerce(event), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    def subscriber_count(self, event: Union[ServiceEvent, str]) -> int:
        return len(self._handlers.get(self._coerce(event), []))

    def emit(self, event: Union[ServiceEvent, str], payload: Any = None) -> None:
        name = self._coerce(event)
        for handler in list(self._handlers.get(name, [])):
            try:
                result = handler(payload)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._pending.add(task)
                    task.add_done_callback(self._on_task_done)
            except Exception as e:
                logger.error(f"[EventChannel] Handler for {name.value} failed: {e}")

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"[EventChannel] Async handler failed: {exc}")

    async def drain(self) -> None:
        """Wait for async handlers scheduled so far to finish."""
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
