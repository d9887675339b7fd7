"""Plugin interface definitions."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from plugbus.core.registry.invoke import PluginInvokeEvent


@runtime_checkable
class IPlugin(Protocol):
    """
    Contract for plugin instances managed by `PluginManager`.

    `on_plugin_load` receives a `PluginInvokeEvent` whose `eventbus` is the
    plugin's private proxy. A plugin may also define `on_plugin_unload`; a
    value stored in `ev.data["state"]` there is handed to the next
    `on_plugin_load` after a reload. Either hook can be a coroutine function.
    """

    def on_plugin_load(self, ev: PluginInvokeEvent) -> Any:
        """Register the plugin's callbacks."""
        ...


@runtime_checkable
class IPluginSupport(Protocol):
    """Contract for manager extensions passed as `plugin_support`."""

    async def destroy(self, eventbus: Any, event_prepend: str) -> None:
        """Unregister the extension's commands from `eventbus`."""
        ...

    def set_eventbus(
        self, old_eventbus: Any, new_eventbus: Any, old_prepend: str, new_prepend: str
    ) -> None:
        """Move the extension's commands to another eventbus."""
        ...

    def set_options(self, options: Any) -> None:
        """React to updated manager options."""
        ...
