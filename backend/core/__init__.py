"""
Core package — composition of the plugin extension runtime.

Structure:
    runtime_core.py — PluginRuntime: wires store, sandbox and dispatchers,
                      owns startup and shutdown

Usage:
    from core import PluginRuntime
"""

from core.runtime_core import PluginRuntime

__all__ = [
    "PluginRuntime",
]
