"""Per-plugin record held by the plugin manager."""

from __future__ import annotations

import contextlib
from typing import TYPE_CHECKING, Any

from plugbus.core.events.utils import rebind_exhausted

if TYPE_CHECKING:
    from plugbus.core.events.proxy import EventbusProxy
    from plugbus.core.registry.data import PluginData

# (name, callback, context, options) as yielded by EventbusProxy.proxy_entries()
HeldEvent = tuple[str, Any, Any, dict[str, Any]]


class PluginEntry:
    """
    Identity, metadata, instance, enabled flag and proxy of one plugin.

    Disabling an entry moves every registration made through its proxy into a
    held list and removes them from the eventbus. Enabling replays the held
    registrations, in their original order, on the current proxy.
    """

    def __init__(
        self,
        name: str,
        data: PluginData,
        instance: Any,
        eventbus_proxy: EventbusProxy | None = None,
    ) -> None:
        self._name = name
        self._data = data
        self._instance = instance
        self._eventbus_proxy = eventbus_proxy
        self._enabled = True
        self._events: list[HeldEvent] | None = None

    @property
    def name(self) -> str:
        return self._name

    @property
    def data(self) -> PluginData:
        return self._data

    @data.setter
    def data(self, data: PluginData) -> None:
        self._data = data

    @property
    def instance(self) -> Any:
        return self._instance

    @instance.setter
    def instance(self, instance: Any) -> None:
        self._instance = instance

    @property
    def eventbus_proxy(self) -> EventbusProxy | None:
        return self._eventbus_proxy

    @eventbus_proxy.setter
    def eventbus_proxy(self, eventbus_proxy: EventbusProxy | None) -> None:
        self._eventbus_proxy = eventbus_proxy

    @property
    def held_events(self) -> list[HeldEvent]:
        """Registrations captured while the entry is disabled."""
        return list(self._events or ())

    @property
    def enabled(self) -> bool:
        return self._enabled

    @enabled.setter
    def enabled(self, enabled: bool) -> None:
        if enabled == self._enabled:
            return

        self._enabled = enabled

        if enabled:
            self.restore_events()
        else:
            self.hold_events()

    def hold_events(self) -> None:
        """Capture the proxy registrations and remove them from the eventbus."""
        if self._eventbus_proxy is None:
            return

        self._events = [*(self._events or ()), *self._eventbus_proxy.proxy_entries()]
        self._eventbus_proxy.off()

    def restore_events(self) -> None:
        """Replay the held registrations on the current proxy."""
        if self._eventbus_proxy is None or self._events is None:
            return

        events, self._events = self._events, None
        for name, callback, context, options in events:
            rebind_exhausted(callback, self._eventbus_proxy)
            self._eventbus_proxy.on(name, callback, context, options)

    def reset(self) -> None:
        """Drop held registrations and any proxy reference stored on the instance."""
        self._events = None
        self.clear_instance_eventbus()

    def clear_instance_eventbus(self) -> None:
        with contextlib.suppress(AttributeError, TypeError):
            del self._instance._eventbus
