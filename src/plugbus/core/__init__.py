"""Core module - eventbus, plugin manager, interfaces and models."""

from plugbus.core.events.bus import Eventbus
from plugbus.core.events.proxy import EventbusProxy
from plugbus.core.events.secure import EventbusSecure
from plugbus.core.registry.invoke import PluginInvokeSupport
from plugbus.core.registry.manager import PluginManager

__all__ = [
    "Eventbus",
    "EventbusProxy",
    "EventbusSecure",
    "PluginInvokeSupport",
    "PluginManager",
]
