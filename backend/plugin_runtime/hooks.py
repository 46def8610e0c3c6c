"""
Hook Dispatcher — runs filter chains over a fixed set of storefront hook points.

A chain threads one value through every handler registered for the hook by
plugins installed and enabled for the store, in install order then artifact
creation order. A failing handler never breaks the chain: errors, timeouts and
compile failures make that handler an identity step, and unusable return
values are recorded as contract violations and the previous value is kept.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Optional

from config import HOOK_CHAIN_BUDGET, HOOK_HANDLER_TIMEOUT, HOOK_MAX_CHAIN_LENGTH
from plugin_runtime.capabilities import CapabilityInjector
from plugin_runtime.engine import ExecutionEngine
from plugin_runtime.errors import (
    CompileError, ExecutionTimeout, HookContractViolation, PluginRuntimeError,
)
from plugin_runtime.store import ManifestStore, plugin_from_row
from plugin_runtime.tenant import TenantContext

logger = logging.getLogger(__name__)

# Hook point -> basic JSON type of the value threaded through it
HOOK_POINTS = {
    "cart.processLoadedItems": "array",
    "cart.beforeLoadItems": "boolean",
    "cart.getCurrencySymbol": "string",
    "cart.beforeUpdateQuantity": "boolean",
    "cart.validateQuantity": "number",
    "cart.beforeRemoveItem": "boolean",
    "cart.beforeCheckout": "object",
    "cart.getCheckoutUrl": "string",
}


def is_known_hook(name: str) -> bool:
    return name in HOOK_POINTS


def json_kind(value) -> str:
    """Basic JSON type of a value; ints and floats are both 'number'."""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


@dataclass
class HookExecution:
    plugin: str
    artifact_id: str
    status: str  # applied | error | timeout | compile_error | contract_violation | skipped
    duration_ms: int = 0
    error: Optional[str] = None

    def to_dict(self) -> dict:
        return {"plugin": self.plugin, "artifactId": self.artifact_id, "status": self.status,
                "durationMs": self.duration_ms, "error": self.error}


@dataclass
class HookResult:
    value: object
    executions: list = field(default_factory=list)
    violations: list = field(default_factory=list)

    @property
    def executed(self) -> int:
        return sum(1 for e in self.executions if e.status != "skipped")

    @property
    def skipped(self) -> list:
        return [e for e in self.executions if e.status == "skipped"]


class HookDispatcher:
    def __init__(self, store: ManifestStore, engine: ExecutionEngine, injector: CapabilityInjector,
                 max_chain_length: int = HOOK_MAX_CHAIN_LENGTH,
                 handler_timeout: float = HOOK_HANDLER_TIMEOUT,
                 chain_budget: float = HOOK_CHAIN_BUDGET):
        self.store = store
        self.engine = engine
        self.injector = injector
        self.max_chain_length = max_chain_length
        self.handler_timeout = handler_timeout
        self.chain_budget = chain_budget

    def handlers(self, store_id: str, hook_name: str) -> list[dict]:
        tenant = TenantContext.resolve(store_id)
        return self.store.list_active_artifacts(tenant.store_id, "hook", hook_name)

    async def apply(self, store_id: str, hook_name: str, value, data: Optional[dict] = None) -> HookResult:
        """Run the filter chain for one hook and return the final value."""
        tenant = TenantContext.resolve(store_id)
        rows = self.store.list_active_artifacts(tenant.store_id, "hook", hook_name)
        result = HookResult(value=value)
        if not rows:
            return result

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.chain_budget
        current = value

        for index, row in enumerate(rows):
            remaining = deadline - loop.time()
            if index >= self.max_chain_length or remaining <= 0:
                reason = "chain length limit" if index >= self.max_chain_length else "chain time budget"
                result.executions.append(HookExecution(row["plugin_slug"], row["id"], "skipped",
                                                       error=f"Skipped: {reason} reached"))
                continue
            current = await self._run_handler(tenant, hook_name, row, current, data,
                                              min(self.handler_timeout, remaining), result)

        skipped = len(result.skipped)
        if skipped:
            logger.warning("Hook %s for store %s: %d handler(s) skipped by chain bounds",
                           hook_name, tenant.store_id, skipped)
        result.value = current
        return result

    async def _run_handler(self, tenant: TenantContext, hook_name: str, row: dict, current,
                           data: Optional[dict], timeout: float, result: HookResult):
        slug = row["plugin_slug"]
        started = time.monotonic()

        def record(status: str, error: Optional[str] = None):
            result.executions.append(HookExecution(
                slug, row["id"], status, int((time.monotonic() - started) * 1000), error))

        try:
            unit = self.engine.compile(row)
            capset = self.injector.for_hook(tenant, plugin_from_row(row), hook_name, current, data)
            outcome = await self.engine.invoke(unit, capset, timeout=timeout)
        except CompileError as e:
            logger.error("Hook %s: handler from '%s' does not compile: %s", hook_name, slug, e)
            record("compile_error", str(e))
            return current
        except ExecutionTimeout as e:
            logger.error("Hook %s: handler from '%s' timed out: %s", hook_name, slug, e)
            record("timeout", str(e))
            return current
        except PluginRuntimeError as e:
            logger.error("Hook %s: handler from '%s' failed: %s", hook_name, slug, e)
            record("error", str(e))
            return current

        new_value = outcome.value
        violation = self._check_contract(hook_name, slug, current, new_value)
        if violation:
            logger.warning("%s", violation)
            result.violations.append(violation)
            record("contract_violation", str(violation))
            return current
        record("applied")
        return new_value

    @staticmethod
    def _check_contract(hook_name: str, slug: str, before, after) -> Optional[HookContractViolation]:
        if after is None:
            return HookContractViolation(f"Hook {hook_name}: handler from '{slug}' returned nothing")
        expected = json_kind(before)
        if expected != "null" and json_kind(after) != expected:
            return HookContractViolation(
                f"Hook {hook_name}: handler from '{slug}' returned {json_kind(after)}, expected {expected}"
            )
        return None
