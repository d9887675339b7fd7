"""Plugin registry and management."""

from plugbus.core.registry.data import PluginData, is_valid_config
from plugbus.core.registry.entry import PluginEntry
from plugbus.core.registry.invoke import (
    PluginInvokeEvent,
    PluginInvokeSupport,
    invoke_async_event,
    invoke_sync_event,
)
from plugbus.core.registry.loader import LoadResult, ModuleLoader, resolve_module
from plugbus.core.registry.manager import PluginManager

__all__ = [
    "LoadResult",
    "ModuleLoader",
    "PluginData",
    "PluginEntry",
    "PluginInvokeEvent",
    "PluginInvokeSupport",
    "PluginManager",
    "invoke_async_event",
    "invoke_sync_event",
    "is_valid_config",
    "resolve_module",
]
