"""
Settings System — loads runtime.yaml and provides validated configuration.

The settings file is the single source of truth for all operator-configurable
values: storage locations, sandbox limits, hook chain bounds, scheduler cadence,
the storefront API base URL and CORS origins.

Usage:
    from settings import get_settings
    settings = get_settings()
    print(settings.sandbox.workers)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

logger = logging.getLogger(__name__)

# ── Settings Path Resolution ──
_PROJECT_ROOT = Path(__file__).parent.parent
_DEFAULT_SETTINGS_PATH = _PROJECT_ROOT / "runtime.yaml"


# ── Dataclasses ──

@dataclass
class SystemConfig:
    name: str = "Storefront Plugin Host"
    description: str = ""


@dataclass
class WebConfig:
    cors_origins: list[str] = field(default_factory=lambda: [
        "http://localhost:3000",
        "http://127.0.0.1:3000",
        "http://localhost:5173",
    ])


@dataclass
class StorageConfig:
    platform_db: str = "data/platform.db"
    tenant_dir: str = "data/tenants"


@dataclass
class SandboxConfig:
    python: str = ""  # empty -> interpreter running the host
    workers: int = 4
    invoke_timeout_seconds: float = 5.0
    memory_limit_mb: int = 512  # 0 disables the rlimit
    max_message_bytes: int = 4 * 1024 * 1024


@dataclass
class HooksConfig:
    max_chain_length: int = 25
    handler_timeout_seconds: float = 2.0
    chain_budget_seconds: float = 8.0


@dataclass
class EventsConfig:
    handler_timeout_seconds: float = 5.0
    max_concurrency: int = 8


@dataclass
class SchedulerConfig:
    enabled: bool = True
    tick_interval_seconds: int = 30
    default_job_timeout_seconds: int = 300
    default_max_failures: int = 5


@dataclass
class HttpConfig:
    api_base_url: str = "http://localhost:8000"
    timeout_seconds: float = 10.0


@dataclass
class Settings:
    system: SystemConfig = field(default_factory=SystemConfig)
    web: WebConfig = field(default_factory=WebConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    sandbox: SandboxConfig = field(default_factory=SandboxConfig)
    hooks: HooksConfig = field(default_factory=HooksConfig)
    events: EventsConfig = field(default_factory=EventsConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)
    http: HttpConfig = field(default_factory=HttpConfig)

    def resolve_path(self, value: str) -> Path:
        """Resolve a storage path relative to the project root."""
        p = Path(value).expanduser()
        return p if p.is_absolute() else _PROJECT_ROOT / p


# ── Parsing ──

def _parse_dict(data: dict, cls, **overrides):
    """Create a dataclass instance from a dict, ignoring unknown keys."""
    import dataclasses
    field_names = {f.name for f in dataclasses.fields(cls)}
    filtered = {k: v for k, v in data.items() if k in field_names}
    filtered.update(overrides)
    return cls(**filtered)


_SECTIONS = {
    "system": SystemConfig,
    "web": WebConfig,
    "storage": StorageConfig,
    "sandbox": SandboxConfig,
    "hooks": HooksConfig,
    "events": EventsConfig,
    "scheduler": SchedulerConfig,
    "http": HttpConfig,
}


def _load_settings_from_dict(raw: dict) -> Settings:
    """Parse a raw YAML dict into a Settings dataclass."""
    settings = Settings()

    for section, cls in _SECTIONS.items():
        if section in raw and isinstance(raw[section], dict):
            setattr(settings, section, _parse_dict(raw[section], cls))

    # Environment overrides for values that differ per deployment
    api_base = os.environ.get("PLUGIN_HOST_API_BASE_URL")
    if api_base:
        settings.http.api_base_url = api_base
    sandbox_python = os.environ.get("PLUGIN_HOST_SANDBOX_PYTHON")
    if sandbox_python:
        settings.sandbox.python = sandbox_python

    return settings


def _settings_path() -> Path:
    env_path = os.environ.get("PLUGIN_HOST_SETTINGS")
    return Path(env_path) if env_path else _DEFAULT_SETTINGS_PATH


def _load_settings() -> Settings:
    """Load settings from YAML file. Falls back to defaults if missing."""
    settings_path = _settings_path()

    if not settings_path.exists():
        logger.info("No runtime.yaml found at %s — using defaults", settings_path)
        return _load_settings_from_dict({})

    try:
        raw = yaml.safe_load(settings_path.read_text()) or {}
        if not isinstance(raw, dict):
            logger.warning("runtime.yaml is not a valid YAML mapping — using defaults")
            return _load_settings_from_dict({})
        settings = _load_settings_from_dict(raw)
        logger.info("Settings loaded: system=%s, sandbox_workers=%d, scheduler=%s",
                    settings.system.name, settings.sandbox.workers,
                    "on" if settings.scheduler.enabled else "off")
        return settings
    except Exception as e:
        logger.error("Failed to load runtime.yaml: %s — using defaults", e)
        return _load_settings_from_dict({})


# ── Singleton ──

_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Return the validated settings singleton. Loads on first call."""
    global _settings
    if _settings is None:
        _settings = _load_settings()
    return _settings


def reload_settings() -> Settings:
    """Force reload of the settings from disk."""
    global _settings
    _settings = _load_settings()
    return _settings
