"""Core interfaces (protocols) for the eventbus and plugins."""

from plugbus.core.interfaces.eventbus import IEventbus, ITriggerable
from plugbus.core.interfaces.plugin import IPlugin, IPluginSupport

__all__ = [
    "IEventbus",
    "IPlugin",
    "IPluginSupport",
    "ITriggerable",
]
