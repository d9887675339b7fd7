"""Event bus for decoupled in-process communication."""

from plugbus.core.events.bus import Eventbus, Listening, Registration
from plugbus.core.events.buses import eventbus, plugin_eventbus, test_eventbus
from plugbus.core.events.proxy import EventbusProxy
from plugbus.core.events.secure import EventbusSecure, EventbusSecureHandle
from plugbus.core.events.types import ALL_EVENTS, LogEvent, ManagerEvent

__all__ = [
    "ALL_EVENTS",
    "Eventbus",
    "EventbusProxy",
    "EventbusSecure",
    "EventbusSecureHandle",
    "Listening",
    "LogEvent",
    "ManagerEvent",
    "Registration",
    "eventbus",
    "plugin_eventbus",
    "test_eventbus",
]
