"""Scoped view of an Eventbus that only ever removes its own registrations."""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any

import structlog

from plugbus.core.errors import DestroyedError
from plugbus.core.events.bus import Eventbus, Registration
from plugbus.core.events.utils import (
    before_map,
    callback_matches,
    check_count,
    check_options,
    check_regex,
    events_api,
    normalize_options,
)

logger = structlog.get_logger(__name__)


class EventbusProxy:
    """
    Registers on a backing eventbus while keeping a shadow copy of every entry.

    Each registration is made with the proxy as context unless the caller
    supplied one, and `off()` forwards the exact name / callback / context of
    shadowed entries. Two proxies over the same bus therefore never remove each
    other's registrations even when the event names collide.

    Plugins receive a dedicated proxy so the manager can strip everything a
    plugin registered by destroying it.
    """

    def __init__(self, eventbus: Eventbus) -> None:
        self._eventbus: Eventbus | None = eventbus
        self._events: dict[str, list[Registration]] | None = None

        # listen_to() on a proxy stores its identifier here.
        self._listen_id: str | None = None

    def _target(self) -> Eventbus:
        if self._eventbus is None:
            raise DestroyedError("EventbusProxy")
        return self._eventbus

    @property
    def is_destroyed(self) -> bool:
        return self._eventbus is None

    def create_proxy(self) -> EventbusProxy:
        """Create a sibling proxy over the same backing eventbus."""
        return EventbusProxy(self._target())

    def destroy(self) -> None:
        """Remove every registration made through this proxy and detach it."""
        if self._eventbus is not None:
            self.off()

        self._events = None
        self._eventbus = None

    def on(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> EventbusProxy:
        eventbus = self._target()
        options = check_options(options)

        data: dict[str, Any] = {}
        if eventbus.is_guarded(name, data):
            logger.warning(
                "on() failed as event names are guarded", eventbus=self.name, names=data["names"]
            )
            return self

        opts = {"context": context, "ctx": self, "options": options}
        self._events = events_api(_on_api, self._events or {}, name, callback, opts)

        eventbus.on(name, callback, opts["ctx"], options)
        return self

    def once(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> EventbusProxy:
        return self._before("once", 1, name, callback, context, options)

    def before(
        self,
        count: int,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> EventbusProxy:
        self._target()
        check_count(count)
        return self._before("before", count, name, callback, context, options)

    def _before(
        self,
        method: str,
        count: int,
        name: Any,
        callback: Any,
        context: Any,
        options: dict[str, Any] | None,
    ) -> EventbusProxy:
        eventbus = self._target()

        data: dict[str, Any] = {}
        if eventbus.is_guarded(name, data):
            logger.warning(
                f"{method}() failed as event names are guarded",
                eventbus=self.name,
                names=data["names"],
            )
            return self

        events = events_api(before_map, {}, name, callback, {"count": count, "after": self.off})

        if isinstance(name, str) and context is None:
            callback = None

        return self.on(events, callback, context, options)

    def off(self, name: Any = None, callback: Any = None, context: Any = None) -> EventbusProxy:
        """Remove matching registrations owned by this proxy."""
        eventbus = self._target()

        self._events = events_api(
            _off_api,
            self._events or {},
            name,
            callback,
            {"context": context, "eventbus": eventbus, "proxy": self},
        )
        return self

    def trigger(self, name: Any, *args: Any, **kwargs: Any) -> EventbusProxy:
        self._target().trigger(name, *args, **kwargs)
        return self

    def trigger_sync(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        return self._target().trigger_sync(name, *args, **kwargs)

    async def trigger_async(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        return await self._target().trigger_async(name, *args, **kwargs)

    def trigger_defer(self, name: Any, *args: Any, **kwargs: Any) -> EventbusProxy:
        self._target().trigger_defer(name, *args, **kwargs)
        return self

    @property
    def name(self) -> str:
        return f"proxy-{self._target().name}"

    @property
    def event_count(self) -> int:
        return self._target().event_count

    @property
    def callback_count(self) -> int:
        return self._target().callback_count

    def entries(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, Any, Any, dict[str, Any]]]:
        return self._target().entries(regex)

    def keys(self, regex: re.Pattern[str] | None = None) -> Iterator[str]:
        return self._target().keys(regex)

    def keys_with_options(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        return self._target().keys_with_options(regex)

    def get_options(self, name: Any) -> dict[str, Any]:
        return self._target().get_options(name)

    def get_type(self, name: Any) -> str | None:
        return self._target().get_type(name)

    def is_guarded(self, name: Any, data: dict[str, Any] | None = None) -> bool:
        return self._target().is_guarded(name, data)

    @property
    def proxy_event_count(self) -> int:
        self._target()
        return len(self._events) if self._events else 0

    @property
    def proxy_callback_count(self) -> int:
        self._target()
        if not self._events:
            return 0
        return sum(len(handlers) for handlers in self._events.values())

    def proxy_entries(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, Any, Any, dict[str, Any]]]:
        """
        Iterate `(name, callback, context, options)` for this proxy's registrations.

        `context` is the caller supplied context (None when the proxy itself
        was used) so each tuple can be replayed with `on()`.
        """
        self._target()
        check_regex(regex)
        return self._iter_proxy_entries(regex)

    def _iter_proxy_entries(
        self, regex: re.Pattern[str] | None
    ) -> Iterator[tuple[str, Any, Any, dict[str, Any]]]:
        if not self._events:
            return

        for name, handlers in list(self._events.items()):
            if regex is None or regex.search(name):
                for handler in handlers:
                    yield name, handler.callback, handler.context, dict(handler.options)

    def proxy_keys(self, regex: re.Pattern[str] | None = None) -> Iterator[str]:
        self._target()
        check_regex(regex)
        return self._iter_proxy_keys(regex)

    def _iter_proxy_keys(self, regex: re.Pattern[str] | None) -> Iterator[str]:
        if not self._events:
            return

        for name in list(self._events):
            if regex is None or regex.search(name):
                yield name

    def proxy_keys_with_options(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        eventbus = self._target()
        check_regex(regex)
        return ((name, eventbus.get_options(name)) for name in self._iter_proxy_keys(regex))


def _on_api(
    events: dict[str, list[Registration]], name: Any, callback: Any, opts: dict[str, Any]
) -> dict[str, list[Registration]]:
    if callback is not None:
        context = opts["context"]

        # The context handed to the backing eventbus.
        opts["ctx"] = context if context is not None else opts["ctx"]

        registration = Registration(
            callback=callback,
            context=context,
            options=normalize_options(opts["options"], callback),
        )
        events[name] = [*events.get(name, ()), registration]

    return events


def _off_api(
    events: dict[str, list[Registration]], name: Any, callback: Any, opts: dict[str, Any]
) -> dict[str, list[Registration]]:
    context = opts["context"]
    eventbus: Eventbus = opts["eventbus"]

    names = [name] if name else list(events)
    for event_name in names:
        handlers = events.get(event_name)
        if not handlers:
            continue

        remaining = []
        for handler in handlers:
            if (callback is not None and not callback_matches(callback, handler.callback)) or (
                context is not None and context is not handler.context
            ):
                remaining.append(handler)
                continue

            # Remove by the stored triple so registrations made by others survive.
            ctx = handler.context if handler.context is not None else opts["proxy"]
            eventbus.off(event_name, handler.callback, ctx)

        if remaining:
            events[event_name] = remaining
        else:
            del events[event_name]

    return events
