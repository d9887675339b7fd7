"""Plugin manager implementation."""

from __future__ import annotations

import os
import re
from collections.abc import Iterable, Mapping
from typing import Any

import structlog

from plugbus.core.errors import DestroyedError, PluginLoadError
from plugbus.core.events.bus import Eventbus
from plugbus.core.events.proxy import EventbusProxy
from plugbus.core.events.secure import EventbusSecure, EventbusSecureHandle
from plugbus.core.events.types import LogEvent, ManagerEvent
from plugbus.core.interfaces.eventbus import IEventbus
from plugbus.core.interfaces.plugin import IPluginSupport
from plugbus.core.models.config import PlugbusConfig, PluginManagerOptions
from plugbus.core.registry.data import PluginData, is_valid_config
from plugbus.core.registry.entry import PluginEntry
from plugbus.core.registry.invoke import check_plugins, invoke_async_event, iter_plugin_names
from plugbus.core.registry.loader import ModuleLoader, resolve_module

logger = structlog.get_logger(__name__)


class PluginManager:
    """
    Loads, enables, reloads and removes plugins.

    Every plugin receives its own `EventbusProxy` in `on_plugin_load`, so all
    of its registrations can be suspended while disabled and are removed when
    the plugin is removed. The manager's own operations are registered as
    guarded commands on the eventbus under `<event_prepend>:`.

    Usage:
        manager = PluginManager()
        await manager.add({"name": "p1", "instance": MyPlugin()})
        manager.get_eventbus().trigger_sync("plugins:get:plugin:names")
    """

    def __init__(
        self,
        eventbus: IEventbus | None = None,
        event_prepend: str = "plugins",
        options: PluginManagerOptions | Mapping[str, Any] | None = None,
        plugin_support: type | Iterable[type] | None = None,
    ) -> None:
        """
        Initialize the plugin manager.

        Args:
            eventbus: Eventbus to use; a new `Eventbus` when None
            event_prepend: Prefix of the manager's command channels
            options: Initial `PluginManagerOptions`
            plugin_support: Extension class, or classes, constructed with the manager
        """
        if eventbus is not None and not isinstance(eventbus, IEventbus):
            raise TypeError("'eventbus' is not an Eventbus.")

        if not isinstance(event_prepend, str):
            raise TypeError("'event_prepend' is not a string.")

        if options is not None and not isinstance(options, (Mapping, PluginManagerOptions)):
            raise TypeError("'options' is not a mapping.")

        if plugin_support is None:
            support_classes: list[type] = []
        elif isinstance(plugin_support, type):
            support_classes = [plugin_support]
        elif isinstance(plugin_support, Iterable):
            support_classes = list(plugin_support)
        else:
            raise TypeError("'plugin_support' must be a class or iterable of classes.")

        self._eventbus: IEventbus | None = None
        self._event_prepend = event_prepend
        self._eventbus_proxies: list[EventbusProxy] = []
        self._eventbus_secure: list[EventbusSecureHandle] = []
        self._options = PluginManagerOptions()
        self._plugin_add_set: set[str] = set()
        self._plugin_map: dict[str, PluginEntry] | None = {}

        self._plugin_support: list[IPluginSupport] = []
        for support_class in support_classes:
            self._plugin_support.append(support_class(self))

        self.set_options(options if options is not None else {})
        self._bind_eventbus(eventbus if eventbus is not None else Eventbus(), event_prepend)

    @classmethod
    def from_config(
        cls,
        config: PlugbusConfig,
        eventbus: IEventbus | None = None,
        plugin_support: type | Iterable[type] | None = None,
    ) -> PluginManager:
        """
        Create a manager using the prepend and options of a `PlugbusConfig`.

        Plugins listed in the config are not added; pass
        `config.plugin_configs()` to `add_all` once an event loop is running.
        """
        return cls(
            eventbus=eventbus,
            event_prepend=config.event_prepend,
            options=config.manager,
            plugin_support=plugin_support,
        )

    def _check_destroyed(self) -> dict[str, PluginEntry]:
        if self._plugin_map is None:
            raise DestroyedError("PluginManager")
        return self._plugin_map

    def _eventbus_or_raise(self) -> IEventbus:
        self._check_destroyed()
        if self._eventbus is None:
            raise DestroyedError("PluginManager")
        return self._eventbus

    @property
    def is_destroyed(self) -> bool:
        return self._plugin_map is None

    async def add(
        self, config: Mapping[str, Any], module_data: Mapping[str, Any] | None = None
    ) -> PluginData:
        """
        Add a plugin.

        Args:
            config: `name` plus either `instance` (object or class) or an
                optional `target` module name / path / file URL; optional `options`
            module_data: Extra data stored under `PluginData.module`

        Returns:
            The frozen `PluginData` of the new plugin

        Raises:
            PluginLoadError: If the name is taken or still loading, or the module fails to load
        """
        plugin_map = self._check_destroyed()

        if not isinstance(config, Mapping):
            raise TypeError("'config' is not a mapping.")

        name = config.get("name")
        if not isinstance(name, str):
            raise TypeError(f"'config.name' is not a string for entry: {config!r}")

        target = config.get("target")
        if target is not None and not isinstance(target, (str, os.PathLike)):
            raise TypeError(f"'config.target' is not a string or path for entry: {config!r}")

        plugin_options = config.get("options")
        if plugin_options is not None and not isinstance(plugin_options, Mapping):
            raise TypeError(f"'config.options' is not a mapping for entry: {config!r}")

        if module_data is not None and not isinstance(module_data, Mapping):
            raise TypeError(f"'module_data' is not a mapping for entry: {config!r}")

        if name in plugin_map:
            raise PluginLoadError(f"A plugin already exists with name: {name}", name)

        if name in self._plugin_add_set:
            raise PluginLoadError(f"A plugin is already being loaded with name: {name}", name)

        self._plugin_add_set.add(name)

        try:
            instance = config.get("instance")

            if instance is not None:
                target = name
                plugin_type = "instance"
            else:
                target = target or name

                try:
                    result = await ModuleLoader.load(target, resolve_module=resolve_module)
                except Exception as e:
                    logger.error("Failed to load plugin", plugin=name, target=str(target), error=str(e))
                    raise PluginLoadError(f"Could not load target: {target} for plugin: {name}\n{e}", name) from e

                eventbus = self._eventbus_or_raise()
                eventbus.trigger(LogEvent.DEBUG.value, f"plugbus - import: {result.loadpath}")

                instance = result.instance
                plugin_type = result.type

            eventbus = self._eventbus_or_raise()

            data = PluginData.create(
                name=name,
                target=os.fspath(target),
                plugin_type=plugin_type,
                event_prepend=self._event_prepend,
                options=plugin_options,
                module=module_data,
            )

            entry = PluginEntry(name, data, instance, EventbusProxy(eventbus))
            self._check_destroyed()[name] = entry
        finally:
            self._plugin_add_set.discard(name)

        try:
            await invoke_async_event(
                "on_plugin_load", self, plugins=name, error_check=False, enabled_only=False
            )
        except Exception as e:
            logger.error("Plugin failed to load", plugin=name, error=str(e), exc_info=e)

        logger.info("Plugin added", plugin=name, type=plugin_type)

        await eventbus.trigger_async(ManagerEvent.PLUGIN_ADDED.value, data)

        return data

    async def add_all(
        self,
        configs: Iterable[Mapping[str, Any]],
        module_data: Mapping[str, Any] | None = None,
    ) -> list[PluginData]:
        """Add several plugins in order."""
        self._check_destroyed()

        if isinstance(configs, (str, Mapping)) or not isinstance(configs, Iterable):
            raise TypeError("'configs' is not iterable.")

        results = []
        for config in configs:
            results.append(await self.add(config, module_data))
        return results

    def create_eventbus_proxy(self) -> EventbusProxy:
        """Create a proxy over the manager's eventbus, destroyed with the manager."""
        eventbus_proxy = EventbusProxy(self._eventbus_or_raise())
        self._eventbus_proxies.append(eventbus_proxy)
        return eventbus_proxy

    def create_eventbus_secure(self, name: str | None = None) -> EventbusSecure:
        """
        Create a trigger-only view of the manager's eventbus.

        It follows the manager to a new eventbus on `set_eventbus` and is
        destroyed with the manager.
        """
        handle = EventbusSecure.initialize(self._eventbus_or_raise(), name)
        self._eventbus_secure.append(handle)
        return handle.eventbus_secure

    async def destroy(self) -> list[dict[str, Any]]:
        """
        Remove all plugins and release everything the manager owns.

        Returns:
            The removal results of the plugins
        """
        self._check_destroyed()

        results = await self.remove_all()

        for handle in self._eventbus_secure:
            handle.destroy()
        self._eventbus_secure = []

        for eventbus_proxy in self._eventbus_proxies:
            eventbus_proxy.destroy()
        self._eventbus_proxies = []

        if self._eventbus is not None:
            for suffix, callback in self._commands():
                self._eventbus.off(f"{self._event_prepend}:{suffix}", callback, self)

        for support in self._plugin_support:
            await support.destroy(self._eventbus, self._event_prepend)
        self._plugin_support = []

        self._plugin_map = None
        self._eventbus = None

        logger.info("Plugin manager destroyed", removed=len(results))
        return results

    def get_enabled(
        self, plugins: str | Iterable[str] | None = None
    ) -> bool | list[dict[str, Any]]:
        """
        Report enabled state.

        Args:
            plugins: A name returns a bool; names return
                `[{"plugin", "enabled", "loaded"}]`; None or empty covers all plugins
        """
        plugin_map = self._check_destroyed()
        check_plugins(plugins)

        if isinstance(plugins, str):
            entry = plugin_map.get(plugins)
            return entry is not None and entry.enabled

        names = list(plugins) if plugins is not None else []
        if not names:
            names = list(plugin_map)

        results = []
        for name in names:
            entry = plugin_map.get(name)
            loaded = entry is not None
            results.append({"plugin": name, "enabled": loaded and entry.enabled, "loaded": loaded})
        return results

    def get_eventbus(self) -> IEventbus | None:
        self._check_destroyed()
        return self._eventbus

    def get_options(self) -> PluginManagerOptions:
        """Return a copy of the manager options."""
        self._check_destroyed()
        return self._options.model_copy()

    def get_plugin_by_event(self, event: str | re.Pattern[str]) -> list[str]:
        """Return the names of plugins registered on `event` (a name or pattern)."""
        self._check_destroyed()

        if not isinstance(event, (str, re.Pattern)):
            raise TypeError("'event' is not a string or compiled regular expression.")

        results = []
        for entry in self.get_plugin_events():
            if isinstance(event, str):
                if event in entry["events"]:
                    results.append(entry["plugin"])
            elif any(event.search(name) for name in entry["events"]):
                results.append(entry["plugin"])
        return results

    def get_plugin_data(
        self, plugins: str | Iterable[str] | None = None
    ) -> dict[str, Any] | list[dict[str, Any]] | None:
        """
        Return plain copies of plugin data.

        Args:
            plugins: A name returns one dict (or None); names return a list;
                None or empty covers all plugins
        """
        plugin_map = self._check_destroyed()
        check_plugins(plugins)

        if isinstance(plugins, str):
            entry = plugin_map.get(plugins)
            return entry.data.to_dict() if entry is not None else None

        names = list(plugins) if plugins is not None else []
        entries = [plugin_map.get(name) for name in names] if names else list(plugin_map.values())

        return [entry.data.to_dict() for entry in entries if entry is not None]

    def get_plugin_entry(self, plugin: str) -> PluginEntry | None:
        return self._check_destroyed().get(plugin)

    def get_plugin_events(self, plugins: str | Iterable[str] | None = None) -> list[dict[str, Any]]:
        """Return `[{"plugin", "events"}]` with the sorted event names each plugin registered."""
        plugin_map = self._check_destroyed()
        check_plugins(plugins)

        if isinstance(plugins, str):
            names = [plugins]
        else:
            names = list(plugins) if plugins is not None else []
            if not names:
                names = list(plugin_map)

        results = []
        for name in names:
            entry = plugin_map.get(name)
            if entry is None:
                continue

            events = sorted(entry.eventbus_proxy.proxy_keys()) if entry.eventbus_proxy else []
            results.append({"plugin": name, "events": events})
        return results

    def get_plugin_map_keys(self) -> list[str]:
        return list(self._check_destroyed().keys())

    def get_plugin_map_values(self) -> list[PluginEntry]:
        return list(self._check_destroyed().values())

    def get_plugin_names(self, enabled: bool | None = None) -> list[str]:
        """Return sorted plugin names, optionally filtered by enabled state."""
        plugin_map = self._check_destroyed()

        if enabled is not None and not isinstance(enabled, bool):
            raise TypeError("'enabled' is not a boolean.")

        return sorted(
            entry.name for entry in plugin_map.values() if enabled is None or entry.enabled == enabled
        )

    def has_plugins(self, plugins: str | Iterable[str] | None = None) -> bool:
        """
        Check whether plugins are loaded.

        With no names, True when any plugin is loaded.
        """
        plugin_map = self._check_destroyed()
        check_plugins(plugins)

        if isinstance(plugins, str):
            return plugins in plugin_map

        names = list(plugins) if plugins is not None else []
        if not names:
            return len(plugin_map) > 0

        return all(name in plugin_map for name in names)

    def is_valid_config(self, config: Any) -> bool:
        return is_valid_config(config)

    async def reload(self, plugin: str, instance: Any = None, silent: bool = False) -> bool:
        """
        Unload and load a plugin again, optionally with a new instance.

        A value stored in `ev.data["state"]` by `on_plugin_unload` is passed
        to `on_plugin_load` as `ev.data["state"]`. The first error raised by
        the unload hook, load hook or notification is re-raised after the
        reload has completed.

        Returns:
            False when no plugin is loaded with that name
        """
        plugin_map = self._check_destroyed()

        if not isinstance(plugin, str):
            raise TypeError("'plugin' is not a string.")

        if not isinstance(silent, bool):
            raise TypeError("'silent' is not a boolean.")

        entry = plugin_map.get(plugin)
        if entry is None:
            return False

        state = None
        error: Exception | None = None

        try:
            unload_data = await invoke_async_event(
                "on_plugin_unload", self, plugins=plugin, error_check=False, enabled_only=False
            )
            state = unload_data.get("state")
        except Exception as e:
            error = e

        entry.reset()
        if entry.eventbus_proxy is not None:
            entry.eventbus_proxy.off()

        if instance is not None:
            entry.instance = instance

        try:
            await invoke_async_event(
                "on_plugin_load",
                self,
                passthru_props={"state": state},
                plugins=plugin,
                error_check=False,
                enabled_only=False,
            )
        except Exception as e:
            if error is None:
                error = e

        # A disabled plugin keeps its new registrations suspended.
        if not entry.enabled:
            entry.hold_events()

        try:
            if self._eventbus is not None and not silent:
                await self._eventbus.trigger_async(ManagerEvent.PLUGIN_RELOADED.value, entry.data)
        except Exception as e:
            if error is None:
                error = e

        if error is not None:
            logger.error("Plugin reload failed", plugin=plugin, error=str(error))
            raise error

        logger.info("Plugin reloaded", plugin=plugin)
        return True

    async def remove(self, plugins: str | Iterable[str]) -> list[dict[str, Any]]:
        """
        Remove plugins.

        Each plugin is handled independently; hook and notification errors
        are collected instead of stopping the batch.

        Returns:
            `[{"plugin", "success", "errors"}]` for every plugin found
        """
        plugin_map = self._check_destroyed()

        if not isinstance(plugins, (str, Iterable)):
            raise TypeError("'plugins' is not a string or iterable.")

        results = []
        for name in list(iter_plugin_names(plugins)):
            entry = plugin_map.get(name)
            if entry is not None:
                results.append(await self._remove_entry(entry))
        return results

    async def _remove_entry(self, entry: PluginEntry) -> dict[str, Any]:
        errors: list[Exception] = []
        name = entry.name

        try:
            await invoke_async_event(
                "on_plugin_unload", self, plugins=name, error_check=False, enabled_only=False
            )
        except Exception as e:
            errors.append(e)

        entry.reset()
        if entry.eventbus_proxy is not None:
            entry.eventbus_proxy.destroy()

        self._check_destroyed().pop(name, None)

        try:
            if self._eventbus is not None:
                await self._eventbus.trigger_async(ManagerEvent.PLUGIN_REMOVED.value, entry.data)
        except Exception as e:
            errors.append(e)

        if errors:
            logger.warning("Plugin removed with errors", plugin=name, errors=[str(e) for e in errors])
        else:
            logger.info("Plugin removed", plugin=name)

        return {"plugin": name, "success": not errors, "errors": errors}

    async def remove_all(self) -> list[dict[str, Any]]:
        """Remove every plugin."""
        return await self.remove(list(self._check_destroyed()))

    def set_enabled(self, enabled: bool, plugins: str | Iterable[str] | None = None) -> None:
        """
        Enable or disable plugins.

        Disabling suspends a plugin's registrations; enabling restores them in
        their original order.

        Args:
            enabled: New enabled state
            plugins: Plugin name or names; None or empty covers all plugins
        """
        plugin_map = self._check_destroyed()
        check_plugins(plugins)

        if not isinstance(enabled, bool):
            raise TypeError("'enabled' is not a boolean.")

        names = list(iter_plugin_names(plugins)) if plugins is not None else []
        entries = [plugin_map.get(name) for name in names] if names else list(plugin_map.values())

        for entry in entries:
            if entry is None:
                continue

            entry.enabled = enabled
            logger.debug("Plugin enabled state set", plugin=entry.name, enabled=enabled)

            if self._eventbus is not None:
                self._eventbus.trigger(
                    ManagerEvent.PLUGIN_ENABLED.value, {"enabled": enabled, **entry.data.to_dict()}
                )

    async def set_eventbus(self, eventbus: IEventbus, event_prepend: str = "plugins") -> None:
        """
        Move the manager and all plugins to another eventbus.

        Enabled plugins are unloaded from the old eventbus and loaded on the
        new one. Disabled plugins keep their suspended registrations, which
        are restored on the new eventbus when enabled.
        """
        plugin_map = self._check_destroyed()

        if not isinstance(eventbus, IEventbus):
            raise TypeError("'eventbus' is not an Eventbus.")

        if not isinstance(event_prepend, str):
            raise TypeError("'event_prepend' is not a string.")

        if eventbus is self._eventbus:
            return

        old_prepend = self._event_prepend
        error: Exception | None = None

        if plugin_map:
            try:
                await invoke_async_event("on_plugin_unload", self, error_check=False)
            except Exception as e:
                error = e

            for entry in list(plugin_map.values()):
                entry.clear_instance_eventbus()
                entry.data = entry.data.with_manager(event_prepend)

                if entry.eventbus_proxy is not None:
                    entry.eventbus_proxy.destroy()
                entry.eventbus_proxy = EventbusProxy(eventbus)

                if entry.enabled:
                    try:
                        await invoke_async_event(
                            "on_plugin_load", self, plugins=entry.name, error_check=False
                        )
                    except Exception as e:
                        if error is None:
                            error = e

        self._event_prepend = event_prepend
        self._bind_eventbus(eventbus, old_prepend)

        if error is not None:
            logger.error("Plugin manager eventbus set with errors", eventbus=eventbus.name, error=str(error))
            raise error

        logger.info("Plugin manager eventbus set", eventbus=eventbus.name, event_prepend=event_prepend)

    def _bind_eventbus(self, eventbus: IEventbus, old_prepend: str) -> None:
        """Move the manager and support commands and secure handles to `eventbus`."""
        if self._eventbus is not None:
            for suffix, callback in self._commands():
                self._eventbus.off(f"{old_prepend}:{suffix}", callback, self)

        for suffix, callback in self._commands():
            eventbus.on(f"{self._event_prepend}:{suffix}", callback, self, {"guard": True})

        for support in self._plugin_support:
            support.set_eventbus(self._eventbus, eventbus, old_prepend, self._event_prepend)

        for handle in self._eventbus_secure:
            handle.set_eventbus(eventbus)

        self._eventbus = eventbus

    def set_options(self, options: PluginManagerOptions | Mapping[str, Any]) -> None:
        """
        Update manager options.

        Unknown keys and non-boolean values are ignored.
        """
        self._check_destroyed()

        if isinstance(options, PluginManagerOptions):
            options = options.model_dump()

        if not isinstance(options, Mapping):
            raise TypeError("'options' is not a mapping.")

        self._options = self._options.merged(dict(options))

        for support in self._plugin_support:
            support.set_options(options)

    def _commands(self) -> list[tuple[str, Any]]:
        return [
            ("async:add", self._add_eventbus),
            ("async:add:all", self._add_all_eventbus),
            ("async:destroy:manager", self._destroy_eventbus),
            ("async:remove", self._remove_eventbus),
            ("async:remove:all", self._remove_all_eventbus),
            ("get:enabled", self.get_enabled),
            ("get:options", self.get_options),
            ("get:plugin:by:event", self.get_plugin_by_event),
            ("get:plugin:data", self.get_plugin_data),
            ("get:plugin:events", self.get_plugin_events),
            ("get:plugin:names", self.get_plugin_names),
            ("has:plugin", self.has_plugins),
            ("is:valid:config", self.is_valid_config),
            ("set:enabled", self._set_enabled_eventbus),
            ("set:options", self._set_options_eventbus),
        ]

    async def _add_eventbus(
        self, config: Mapping[str, Any], module_data: Mapping[str, Any] | None = None
    ) -> PluginData | None:
        self._check_destroyed()
        return None if self._options.no_event_add else await self.add(config, module_data)

    async def _add_all_eventbus(
        self,
        configs: Iterable[Mapping[str, Any]],
        module_data: Mapping[str, Any] | None = None,
    ) -> list[PluginData]:
        self._check_destroyed()
        return [] if self._options.no_event_add else await self.add_all(configs, module_data)

    async def _destroy_eventbus(self) -> list[dict[str, Any]]:
        self._check_destroyed()
        return [] if self._options.no_event_destroy else await self.destroy()

    async def _remove_eventbus(self, plugins: str | Iterable[str]) -> list[dict[str, Any]]:
        self._check_destroyed()
        return [] if self._options.no_event_removal else await self.remove(plugins)

    async def _remove_all_eventbus(self) -> list[dict[str, Any]]:
        self._check_destroyed()
        return [] if self._options.no_event_removal else await self.remove_all()

    def _set_enabled_eventbus(
        self, enabled: bool, plugins: str | Iterable[str] | None = None
    ) -> None:
        self._check_destroyed()
        if not self._options.no_event_set_enabled:
            self.set_enabled(enabled, plugins)

    def _set_options_eventbus(self, options: Mapping[str, Any]) -> None:
        self._check_destroyed()
        if not self._options.no_event_set_options:
            self.set_options(options)
