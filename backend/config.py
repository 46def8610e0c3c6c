"""
Configuration — centralized settings for the entire backend.
All operator-configurable values come from runtime.yaml via get_settings().
Protocol limits and internal constants remain as code constants.
"""

import os
import sys

from settings import get_settings

_settings = get_settings()

SYSTEM_NAME = _settings.system.name
VERSION = "1.0.0"

# ── Storage ──
PLATFORM_DB_PATH = _settings.resolve_path(_settings.storage.platform_db)
TENANT_DB_DIR = _settings.resolve_path(_settings.storage.tenant_dir)

# ── Sandbox ──
SANDBOX_PYTHON = _settings.sandbox.python or sys.executable
SANDBOX_WORKERS = max(1, _settings.sandbox.workers)
INVOKE_TIMEOUT = _settings.sandbox.invoke_timeout_seconds
SANDBOX_MEMORY_LIMIT_MB = _settings.sandbox.memory_limit_mb
MAX_MESSAGE_BYTES = _settings.sandbox.max_message_bytes

# ── Execution Limits (code constants — not operator config) ──
MAX_SOURCE_BYTES = 200_000
MAX_TIMEOUT = 600
COMPILE_CACHE_SIZE = 512

# ── Hooks ──
HOOK_MAX_CHAIN_LENGTH = _settings.hooks.max_chain_length
HOOK_HANDLER_TIMEOUT = _settings.hooks.handler_timeout_seconds
HOOK_CHAIN_BUDGET = _settings.hooks.chain_budget_seconds

# ── Events ──
EVENT_HANDLER_TIMEOUT = _settings.events.handler_timeout_seconds
EVENT_MAX_CONCURRENCY = max(1, _settings.events.max_concurrency)

# ── Scheduler ──
SCHEDULER_ENABLED = _settings.scheduler.enabled
SCHEDULER_TICK_INTERVAL = _settings.scheduler.tick_interval_seconds
DEFAULT_JOB_TIMEOUT = _settings.scheduler.default_job_timeout_seconds
DEFAULT_MAX_FAILURES = _settings.scheduler.default_max_failures

# ── Tenant-scoped HTTP client ──
API_BASE_URL = _settings.http.api_base_url
HTTP_TIMEOUT = _settings.http.timeout_seconds
STORE_HEADER = "x-store-id"

# ── Web ──
CORS_ORIGINS = _settings.web.cors_origins

# ── Data access limits ──
MAX_SELECT_ROWS = 500
MAX_QUERY_LENGTH = 5000

# ── Widget placement ──
GLOBAL_WIDGET_CATEGORIES = frozenset({"support", "floating", "chat", "global"})

DEBUG_SANDBOX = os.environ.get("PLUGIN_HOST_DEBUG_SANDBOX", "false").lower() == "true"
