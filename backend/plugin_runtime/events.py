"""
Event Dispatcher — fire-and-forget delivery of storefront events to plugins.
"""

import asyncio
import logging

from config import EVENT_HANDLER_TIMEOUT, EVENT_MAX_CONCURRENCY
from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import PluginRuntimeError
from plugin_runtime.store import ManifestStore, plugin_from_row
from plugin_runtime.tenant import TenantContext

logger = logging.getLogger(__name__)


class EventDispatcher:
    """Schedules every registered handler for an event and returns immediately.

    Handlers run concurrently under a semaphore; a failing handler is logged
    and never affects its siblings. No retries, no ordering guarantees.
    """

    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector,
                 handler_timeout: float = EVENT_HANDLER_TIMEOUT,
                 max_concurrency: int = EVENT_MAX_CONCURRENCY):
        self.store = store
        self.engine = engine
        self.injector = injector
        self.handler_timeout = handler_timeout
        self._max_concurrency = max(1, max_concurrency)
        self._semaphore = None
        self._tasks: set[asyncio.Task] = set()
        self.delivered = 0
        self.failed = 0

    def _slots(self) -> asyncio.Semaphore:
        if self._semaphore is None:
            self._semaphore = asyncio.Semaphore(self._max_concurrency)
        return self._semaphore

    def emit(self, store_id: str, event_name: str, payload) -> int:
        """Schedule handlers for one event. Must be called from a running loop."""
        tenant = TenantContext.resolve(store_id)
        rows = self.store.list_active_artifacts(tenant.store_id, "event", event_name)
        for row in rows:
            task = asyncio.create_task(self._deliver(tenant, event_name, row, payload))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        if rows:
            logger.debug("Event %s for store %s: %d handler(s) scheduled",
                         event_name, tenant.store_id, len(rows))
        return len(rows)

    async def _deliver(self, tenant: TenantContext, event_name: str, row: dict, payload):
        async with self._slots():
            try:
                unit = self.engine.compile(row)
                capset = self.injector.for_event(tenant, plugin_from_row(row), event_name, payload)
                await self.engine.invoke(unit, capset, timeout=self.handler_timeout)
                self.delivered += 1
            except PluginRuntimeError as e:
                self.failed += 1
                logger.error("Event %s: handler from '%s' failed: %s",
                             event_name, row["plugin_slug"], e)
            except Exception:
                self.failed += 1
                logger.exception("Event %s: delivery to '%s' crashed", event_name, row["plugin_slug"])

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def drain(self):
        """Wait for every in-flight delivery (shutdown and tests)."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
