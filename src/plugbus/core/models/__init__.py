"""Core data models."""

from plugbus.core.models.config import LogConfig, PlugbusConfig, PluginConfig, PluginManagerOptions

__all__ = [
    "LogConfig",
    "PlugbusConfig",
    "PluginConfig",
    "PluginManagerOptions",
]
