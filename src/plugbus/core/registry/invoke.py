"""Direct method invocation across plugins."""

from __future__ import annotations

import asyncio
import copy
from collections.abc import Iterable, Iterator, Mapping
from typing import TYPE_CHECKING, Any

import structlog

from plugbus.core.errors import DestroyedError, PluginInvokeError
from plugbus.core.events.utils import collapse, resolve

if TYPE_CHECKING:
    from plugbus.core.events.proxy import EventbusProxy
    from plugbus.core.interfaces.eventbus import IEventbus
    from plugbus.core.models.config import PluginManagerOptions
    from plugbus.core.registry.entry import PluginEntry
    from plugbus.core.registry.manager import PluginManager

logger = structlog.get_logger(__name__)

PLUGIN_INVOKE_COUNT = "$$plugin_invoke_count"
PLUGIN_INVOKE_NAMES = "$$plugin_invoke_names"


class PluginInvokeEvent:
    """
    Event object shared by every plugin invoked in one `invoke_*_event` call.

    `data` starts as a deep copy of `copy_props` updated with `passthru_props`
    (passed by reference). Before each plugin is invoked `eventbus`,
    `plugin_name` and `plugin_options` are set to that plugin's values, so
    plugins can accumulate results in `data`.
    """

    def __init__(
        self,
        copy_props: Mapping[str, Any] | None = None,
        passthru_props: Mapping[str, Any] | None = None,
    ) -> None:
        self.data: dict[str, Any] = copy.deepcopy(dict(copy_props or {}))
        self.data.update(passthru_props or {})
        self.eventbus: EventbusProxy | None = None
        self.plugin_name = ""
        self.plugin_options: Mapping[str, Any] = {}


def _check_event_args(method: Any, copy_props: Any, passthru_props: Any, plugins: Any) -> None:
    if not isinstance(method, str):
        raise TypeError("'method' is not a string.")
    if copy_props is not None and not isinstance(copy_props, Mapping):
        raise TypeError("'copy_props' is not a mapping.")
    if passthru_props is not None and not isinstance(passthru_props, Mapping):
        raise TypeError("'passthru_props' is not a mapping.")
    check_plugins(plugins)


def check_plugins(plugins: Any) -> None:
    if plugins is not None and not isinstance(plugins, (str, Iterable)):
        raise TypeError("'plugins' is not a string or iterable.")


def iter_plugin_names(plugins: str | Iterable[str]) -> Iterable[str]:
    return (plugins,) if isinstance(plugins, str) else plugins


def _iter_event_targets(
    manager: PluginManager,
    method: str,
    plugins: str | Iterable[str] | None,
    enabled_only: bool,
    found: dict[str, bool],
) -> Iterator[tuple[PluginEntry, Any]]:
    if plugins is None:
        plugins = list(manager.get_plugin_map_keys())

    for name in iter_plugin_names(plugins):
        entry = manager.get_plugin_entry(name)
        if entry is None or entry.instance is None or (enabled_only and not entry.enabled):
            continue

        found["plugin"] = True

        target = getattr(entry.instance, method, None)
        if callable(target):
            found["method"] = True
            yield entry, target


def _finish_event(
    ev: PluginInvokeEvent,
    method: str,
    names: list[str],
    found: dict[str, bool],
    options: PluginManagerOptions,
    error_check: bool,
) -> dict[str, Any]:
    if error_check and options.throw_no_plugin and not found["plugin"]:
        raise PluginInvokeError("PluginManager failed to find any target plugins.")

    if error_check and options.throw_no_method and not found["method"]:
        raise PluginInvokeError(f"PluginManager failed to invoke '{method}'.")

    ev.data[PLUGIN_INVOKE_COUNT] = len(names)
    ev.data[PLUGIN_INVOKE_NAMES] = names
    return ev.data


def invoke_sync_event(
    method: str,
    manager: PluginManager,
    copy_props: Mapping[str, Any] | None = None,
    passthru_props: Mapping[str, Any] | None = None,
    plugins: str | Iterable[str] | None = None,
    options: PluginManagerOptions | None = None,
    error_check: bool = True,
    enabled_only: bool = True,
) -> dict[str, Any]:
    """
    Invoke `method` on each target plugin with a shared `PluginInvokeEvent`.

    Args:
        method: Method name to invoke
        manager: Owning plugin manager
        copy_props: Data deep copied into the event
        passthru_props: Data passed by reference into the event
        plugins: Plugin name or names; all plugins when None
        options: Manager options; read from the manager when None
        error_check: Honor `throw_no_plugin` / `throw_no_method`
        enabled_only: Skip disabled plugins

    Returns:
        The event data with invocation count and names added
    """
    _check_event_args(method, copy_props, passthru_props, plugins)

    if options is None:
        options = manager.get_options()

    ev = PluginInvokeEvent(copy_props, passthru_props)
    found = {"plugin": False, "method": False}
    names: list[str] = []

    for entry, target in _iter_event_targets(manager, method, plugins, enabled_only, found):
        ev.eventbus = entry.eventbus_proxy
        ev.plugin_name = entry.name
        ev.plugin_options = entry.data.options
        target(ev)
        names.append(entry.name)

    return _finish_event(ev, method, names, found, options, error_check)


async def invoke_async_event(
    method: str,
    manager: PluginManager,
    copy_props: Mapping[str, Any] | None = None,
    passthru_props: Mapping[str, Any] | None = None,
    plugins: str | Iterable[str] | None = None,
    options: PluginManagerOptions | None = None,
    error_check: bool = True,
    enabled_only: bool = True,
) -> dict[str, Any]:
    """
    Async variant of `invoke_sync_event`.

    Every target is invoked in order; awaitable results are then awaited
    together before the event data is returned. A failing target does not
    stop the others: once every hook has run and settled, the first error
    raised while calling a hook (or else the first failed awaitable) is
    re-raised.
    """
    _check_event_args(method, copy_props, passthru_props, plugins)

    if options is None:
        options = manager.get_options()

    ev = PluginInvokeEvent(copy_props, passthru_props)
    found = {"plugin": False, "method": False}
    names: list[str] = []
    results = []
    errors: list[BaseException] = []

    for entry, target in _iter_event_targets(manager, method, plugins, enabled_only, found):
        ev.eventbus = entry.eventbus_proxy
        ev.plugin_name = entry.name
        ev.plugin_options = entry.data.options
        names.append(entry.name)
        try:
            result = target(ev)
        except Exception as e:
            logger.debug("Plugin hook raised", method=method, plugin=entry.name, error=str(e))
            errors.append(e)
            continue
        if result is not None:
            results.append(result)

    outcomes = await asyncio.gather(
        *(resolve(result) for result in results), return_exceptions=True
    )
    errors.extend(outcome for outcome in outcomes if isinstance(outcome, BaseException))

    if errors:
        raise errors[0]

    return _finish_event(ev, method, names, found, options, error_check)


def _method_names(instance: Any) -> Iterable[str]:
    declared = getattr(instance, "plugin_methods", None)
    if declared is not None and not isinstance(declared, str):
        return declared

    return (
        name
        for name in dir(instance)
        if not name.startswith("_") and callable(getattr(instance, name, None))
    )


class PluginInvokeSupport:
    """
    Manager extension invoking plugin methods by name.

    Pass the class as `plugin_support` when creating a `PluginManager`:

        manager = PluginManager(plugin_support=PluginInvokeSupport)
        manager.get_eventbus().trigger_sync("plugins:sync:invoke", "ping", plugins="p1")
    """

    def __init__(self, plugin_manager: PluginManager) -> None:
        self._plugin_manager: PluginManager | None = plugin_manager

    def _commands(self) -> list[tuple[str, Any]]:
        return [
            ("async:invoke", self.invoke_async),
            ("async:invoke:event", self.invoke_async_event),
            ("get:method:names", self.get_method_names),
            ("has:method", self.has_method),
            ("invoke", self.invoke),
            ("sync:invoke", self.invoke_sync),
            ("sync:invoke:event", self.invoke_sync_event),
        ]

    @property
    def is_destroyed(self) -> bool:
        return self._plugin_manager is None or self._plugin_manager.is_destroyed

    @property
    def plugin_manager(self) -> PluginManager:
        if self._plugin_manager is None or self._plugin_manager.is_destroyed:
            raise DestroyedError("PluginManager")
        return self._plugin_manager

    def _check_destroyed(self) -> None:
        if self.is_destroyed:
            raise DestroyedError("PluginManager")

    @property
    def options(self) -> PluginManagerOptions:
        return self.plugin_manager.get_options()

    async def destroy(self, eventbus: IEventbus | None, event_prepend: str) -> None:
        """Unregister the invoke commands and detach from the manager."""
        if eventbus is not None:
            for suffix, callback in self._commands():
                eventbus.off(f"{event_prepend}:{suffix}", callback, self)

        self._plugin_manager = None

    def set_eventbus(
        self,
        old_eventbus: IEventbus | None,
        new_eventbus: IEventbus | None,
        old_prepend: str,
        new_prepend: str,
    ) -> None:
        """Move the invoke commands from the old eventbus to the new one."""
        self._check_destroyed()

        if old_eventbus is not None:
            for suffix, callback in self._commands():
                old_eventbus.off(f"{old_prepend}:{suffix}", callback, self)

        if new_eventbus is not None:
            for suffix, callback in self._commands():
                new_eventbus.on(f"{new_prepend}:{suffix}", callback, self, {"guard": True})

    def set_options(self, options: Any) -> None:
        self._check_destroyed()

    def get_method_names(
        self, enabled: bool | None = None, plugins: str | Iterable[str] | None = None
    ) -> list[str]:
        """
        Return the sorted method names exposed by plugins.

        A plugin declaring `plugin_methods` contributes exactly those names;
        otherwise its public callables are used.

        Args:
            enabled: Only consider plugins with this enabled state
            plugins: Plugin name or names; all plugins when None or empty
        """
        manager = self.plugin_manager

        if enabled is not None and not isinstance(enabled, bool):
            raise TypeError("'enabled' is not a boolean.")
        check_plugins(plugins)

        names = list(iter_plugin_names(plugins)) if plugins is not None else []
        entries = (
            [manager.get_plugin_entry(name) for name in names]
            if names
            else list(manager.get_plugin_map_values())
        )

        results: set[str] = set()
        for entry in entries:
            if entry is None or entry.instance is None:
                continue
            if enabled is not None and entry.enabled != enabled:
                continue
            results.update(_method_names(entry.instance))

        return sorted(results)

    def has_method(self, method: str, plugins: str | Iterable[str] | None = None) -> bool:
        """
        Check whether plugins implement `method`.

        A single name checks that plugin. Several names, or none for all
        plugins, require every loaded plugin among them to implement it.
        """
        manager = self.plugin_manager

        if not isinstance(method, str):
            raise TypeError("'method' is not a string.")
        check_plugins(plugins)

        if isinstance(plugins, str):
            entry = manager.get_plugin_entry(plugins)
            return entry is not None and callable(getattr(entry.instance, method, None))

        names = list(plugins) if plugins is not None else []
        entries = (
            [manager.get_plugin_entry(name) for name in names]
            if names
            else list(manager.get_plugin_map_values())
        )

        return all(
            callable(getattr(entry.instance, method, None)) for entry in entries if entry is not None
        )

    def _call(
        self,
        method: str,
        args: list[Any] | tuple[Any, ...] | None,
        kwargs: Mapping[str, Any] | None,
        plugins: str | Iterable[str] | None,
    ) -> list[Any]:
        manager = self.plugin_manager

        if not isinstance(method, str):
            raise TypeError("'method' is not a string.")
        if args is not None and not isinstance(args, (list, tuple)):
            raise TypeError("'args' is not a list.")
        if kwargs is not None and not isinstance(kwargs, Mapping):
            raise TypeError("'kwargs' is not a mapping.")
        check_plugins(plugins)

        if plugins is None:
            plugins = list(manager.get_plugin_map_keys())

        has_plugin = False
        has_method = False
        results = []

        for name in iter_plugin_names(plugins):
            entry = manager.get_plugin_entry(name)
            if entry is None or not entry.enabled or entry.instance is None:
                continue

            has_plugin = True

            target = getattr(entry.instance, method, None)
            if callable(target):
                result = target(*(args or ()), **(kwargs or {}))
                if result is not None:
                    results.append(result)
                has_method = True

        options = manager.get_options()

        if options.throw_no_plugin and not has_plugin:
            raise PluginInvokeError("PluginManager failed to find any target plugins.")

        if options.throw_no_method and not has_method:
            raise PluginInvokeError(f"PluginManager failed to invoke '{method}'.")

        return results

    def invoke(
        self,
        method: str,
        args: list[Any] | tuple[Any, ...] | None = None,
        kwargs: Mapping[str, Any] | None = None,
        plugins: str | Iterable[str] | None = None,
    ) -> None:
        """Invoke `method` on enabled plugins, discarding results."""
        self._call(method, args, kwargs, plugins)

    def invoke_sync(
        self,
        method: str,
        args: list[Any] | tuple[Any, ...] | None = None,
        kwargs: Mapping[str, Any] | None = None,
        plugins: str | Iterable[str] | None = None,
    ) -> Any:
        """
        Invoke `method` on enabled plugins and aggregate the results.

        Returns:
            None for no results, the bare value for one, a list for more
        """
        return collapse(self._call(method, args, kwargs, plugins))

    async def invoke_async(
        self,
        method: str,
        args: list[Any] | tuple[Any, ...] | None = None,
        kwargs: Mapping[str, Any] | None = None,
        plugins: str | Iterable[str] | None = None,
    ) -> Any:
        """Invoke `method` on enabled plugins and await the aggregated results."""
        results = self._call(method, args, kwargs, plugins)

        values = await asyncio.gather(*(resolve(result) for result in results))
        return collapse([value for value in values if value is not None])

    def invoke_sync_event(
        self,
        method: str,
        copy_props: Mapping[str, Any] | None = None,
        passthru_props: Mapping[str, Any] | None = None,
        plugins: str | Iterable[str] | None = None,
    ) -> dict[str, Any]:
        return invoke_sync_event(
            method, self.plugin_manager, copy_props, passthru_props, plugins
        )

    async def invoke_async_event(
        self,
        method: str,
        copy_props: Mapping[str, Any] | None = None,
        passthru_props: Mapping[str, Any] | None = None,
        plugins: str | Iterable[str] | None = None,
    ) -> dict[str, Any]:
        return await invoke_async_event(
            method, self.plugin_manager, copy_props, passthru_props, plugins
        )
