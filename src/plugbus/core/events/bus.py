"""In-process event bus with guarded registration and result aggregation.

Usage:
    bus = Eventbus("main")

    bus.on("ping", lambda: "pong")
    bus.trigger_sync("ping")  # -> "pong"

    async def fetch(key):
        return await storage.get(key)

    bus.on("storage:get", fetch)
    await bus.trigger_async("storage:get", "user:1")
"""

from __future__ import annotations

import asyncio
import functools
import inspect
import itertools
import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

import structlog

from plugbus.core.events.types import ALL_EVENTS
from plugbus.core.events.utils import (
    RANK_TYPE,
    TYPE_RANK,
    before_map,
    callback_matches,
    check_count,
    check_options,
    check_regex,
    collapse,
    events_api,
    normalize_options,
    resolve,
    results_target_api,
)

logger = structlog.get_logger(__name__)

EventMap = dict[str, list["Registration"]]


@dataclass
class Registration:
    """One callback bound to one event name."""

    callback: Callable[..., Any]
    context: Any
    options: dict[str, Any]
    listening: Listening | None = None


class Listening:
    """
    Tracks one listener's subscriptions to one target object.

    A target `Eventbus` keeps a reference count of the registrations made
    through `listen_to`. Any other object with `on` / `off` is tracked by
    mirroring the registrations locally (interop mode). Once the last
    subscription is removed both back-references are deleted.
    """

    def __init__(self, listener: Eventbus, obj: Any) -> None:
        self._id: str = listener._listen_id  # type: ignore[assignment]
        self._listener = listener
        self._obj = obj
        self._interop = True
        self._count = 0
        self._events: EventMap | None = None

    @property
    def id(self) -> str:
        return self._id

    @property
    def interop(self) -> bool:
        return self._interop

    @interop.setter
    def interop(self, value: bool) -> None:
        if not isinstance(value, bool):
            raise TypeError("'value' is not a boolean.")
        self._interop = value

    @property
    def obj(self) -> Any:
        return self._obj

    @property
    def count(self) -> int:
        return self._count

    def increment_count(self) -> None:
        self._count += 1

    def cleanup(self) -> None:
        """Delete the references between the listener and the target."""
        listening_to = self._listener._listening_to
        if listening_to is not None:
            listening_to.pop(getattr(self._obj, "_listen_id", None), None)

        if not self._interop:
            listeners = getattr(self._obj, "_listeners", None)
            if listeners is not None:
                listeners.pop(self._id, None)

    def on(self, name: Any, callback: Any) -> Listening:
        self._events = events_api(
            Eventbus._on_api,
            self._events or {},
            name,
            callback,
            {"context": None, "options": {}, "listening": None},
        )
        return self

    def off(self, name: Any, callback: Any) -> None:
        if self._interop:
            if self._events is not None:
                self._events = events_api(
                    Eventbus._off_api,
                    self._events,
                    name,
                    callback,
                    {"context": None, "listeners": None},
                )
            cleanup = not self._events
        else:
            self._count -= 1
            cleanup = self._count == 0

        if cleanup:
            self.cleanup()


class Eventbus:
    """
    Publish / subscribe registry keyed by event name.

    Callbacks fire in registration order. Registrations on the `all`
    channel receive every trigger with the event name prepended. A guarded
    registration locks its event name against any further registration.
    """

    _id_counter = itertools.count(1)

    def __init__(self, name: str = "") -> None:
        """
        Initialize the eventbus.

        Args:
            name: Optional name used in diagnostics
        """
        if not isinstance(name, str):
            raise TypeError("'name' is not a string.")

        self._name = name
        self._events: EventMap | None = None

        # listen_to bookkeeping; `_listeners` holds listenings targeting this bus.
        self._listen_id: str | None = None
        self._listeners: dict[str, Listening] | None = None
        self._listening_to: dict[str, Listening] | None = None

        self._background_tasks: set[asyncio.Future[Any]] = set()

    @property
    def name(self) -> str:
        return self._name

    @property
    def event_count(self) -> int:
        """Number of event names with at least one registration."""
        return len(self._events) if self._events else 0

    @property
    def callback_count(self) -> int:
        """Total number of registrations across all event names."""
        if not self._events:
            return 0
        return sum(len(handlers) for handlers in self._events.values())

    def entries(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, Callable[..., Any], Any, dict[str, Any]]]:
        """
        Iterate `(name, callback, context, options)` for every registration.

        Args:
            regex: Optional pattern filtering event names

        Returns:
            A fresh generator; call again to restart
        """
        check_regex(regex)
        return self._iter_entries(regex)

    def _iter_entries(
        self, regex: re.Pattern[str] | None
    ) -> Iterator[tuple[str, Callable[..., Any], Any, dict[str, Any]]]:
        if not self._events:
            return

        for name, handlers in list(self._events.items()):
            if regex is None or regex.search(name):
                for handler in handlers:
                    yield name, handler.callback, handler.context, dict(handler.options)

    def keys(self, regex: re.Pattern[str] | None = None) -> Iterator[str]:
        """Iterate the registered event names, optionally filtered by `regex`."""
        check_regex(regex)
        return self._iter_keys(regex)

    def _iter_keys(self, regex: re.Pattern[str] | None) -> Iterator[str]:
        if not self._events:
            return

        for name in list(self._events):
            if regex is None or regex.search(name):
                yield name

    def keys_with_options(
        self, regex: re.Pattern[str] | None = None
    ) -> Iterator[tuple[str, dict[str, Any]]]:
        """Iterate `(name, options)` with the aggregated options of each name."""
        check_regex(regex)
        return ((name, self.get_options(name)) for name in self._iter_keys(regex))

    def get_options(self, name: Any) -> dict[str, Any]:
        """
        Aggregate the options of every registration for `name`.

        Returns:
            `{"guard": bool, "type": None | "sync" | "async"}` where `guard` is
            True if any registration is guarded and `type` is the strongest
            type hint present.
        """
        result = events_api(
            _get_options_api, {"guard": False, "type": 0}, name, None, {"events": self._events}
        )
        return {"guard": result["guard"], "type": RANK_TYPE[result["type"]]}

    def get_type(self, name: Any) -> str | None:
        """Return the strongest type hint registered for `name`."""
        result = events_api(
            _get_options_api, {"guard": False, "type": 0}, name, None, {"events": self._events}
        )
        return RANK_TYPE[result["type"]]

    def is_guarded(self, name: Any, data: dict[str, Any] | None = None) -> bool:
        """
        Check whether any of the given event names is guarded.

        Args:
            name: Event name(s)
            data: Optional dict receiving `names` (the guarded names) and `guarded`

        Returns:
            True if at least one name is guarded
        """
        if data is None:
            data = {}
        data["names"] = []
        data["guarded"] = False

        events_api(_is_guarded_api, data, name, None, {"events": self._events})
        return data["guarded"]

    def on(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Eventbus:
        """
        Register a callback.

        Args:
            name: Event name, space separated names or a name -> callback mapping
            callback: Callback, or the context when `name` is a mapping
            context: Context used to identify the registration in `off`
            options: `{"guard": bool, "type": "sync" | "async"}`

        Returns:
            This eventbus
        """
        return self._on(name, callback, context, options, None)

    def _on(
        self,
        name: Any,
        callback: Any,
        context: Any,
        options: dict[str, Any] | None,
        listening: Listening | None,
    ) -> Eventbus:
        options = check_options(options)

        data: dict[str, Any] = {}
        if self.is_guarded(name, data):
            logger.warning(
                "on() failed as event names are guarded", eventbus=self._name, names=data["names"]
            )
            return self

        self._events = events_api(
            Eventbus._on_api,
            self._events or {},
            name,
            callback,
            {"context": context, "options": options, "listening": listening},
        )

        if listening is not None:
            if self._listeners is None:
                self._listeners = {}
            self._listeners[listening.id] = listening
            # Eventbus targets are tracked by count instead of mirrored registrations.
            listening.interop = False

        return self

    def once(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Eventbus:
        """Register a callback that is removed after it fires once."""
        return self._before("once", 1, name, callback, context, options)

    def before(
        self,
        count: int,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Eventbus:
        """Register a callback that is removed after it fires `count` times."""
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
    ) -> Eventbus:
        data: dict[str, Any] = {}
        if self.is_guarded(name, data):
            logger.warning(
                f"{method}() failed as event names are guarded",
                eventbus=self._name,
                names=data["names"],
            )
            return self

        events = events_api(before_map, {}, name, callback, {"count": count, "after": self.off})

        if isinstance(name, str) and context is None:
            callback = None

        return self.on(events, callback, context, options)

    def off(self, name: Any = None, callback: Any = None, context: Any = None) -> Eventbus:
        """
        Remove registrations.

        Matching is conjunctive over the arguments supplied; calling without
        arguments removes every registration.

        Args:
            name: Event name(s) to remove
            callback: Callback to remove
            context: Context to remove

        Returns:
            This eventbus
        """
        if self._events is None:
            return self

        self._events = events_api(
            Eventbus._off_api,
            self._events,
            name,
            callback,
            {"context": context, "listeners": self._listeners},
        )
        return self

    def listen_to(self, obj: Any, name: Any, callback: Any = None) -> Eventbus:
        """
        Register `callback` on another eventbus (or compatible object).

        The registration can later be removed in bulk with `stop_listening`.
        """
        if obj is None:
            return self

        data: dict[str, Any] = {}
        if _target_is_guarded(obj, name, data):
            logger.warning(
                "listen_to() failed as event names are guarded for target object",
                eventbus=self._name,
                names=data["names"],
            )
            return self

        obj_id = getattr(obj, "_listen_id", None)
        if obj_id is None:
            obj_id = _unique_id("l")
            obj._listen_id = obj_id

        if self._listening_to is None:
            self._listening_to = {}

        listening = self._listening_to.get(obj_id)
        created = listening is None
        if listening is None:
            if self._listen_id is None:
                self._listen_id = _unique_id("l")
            listening = self._listening_to[obj_id] = Listening(self, obj)

        try:
            if isinstance(obj, Eventbus):
                obj._on(name, callback, self, None, listening)
            else:
                obj.on(name, callback, self)
        except Exception:
            if created:
                self._listening_to.pop(obj_id, None)
            raise

        if listening.interop:
            listening.on(name, callback)

        return self

    def listen_to_before(self, count: int, obj: Any, name: Any, callback: Any = None) -> Eventbus:
        """`listen_to` for at most `count` invocations."""
        check_count(count)

        events = events_api(
            before_map,
            {},
            name,
            callback,
            {"count": count, "after": functools.partial(self.stop_listening, obj)},
        )
        return self.listen_to(obj, events)

    def listen_to_once(self, obj: Any, name: Any, callback: Any = None) -> Eventbus:
        """`listen_to` for a single invocation."""
        events = events_api(
            before_map,
            {},
            name,
            callback,
            {"count": 1, "after": functools.partial(self.stop_listening, obj)},
        )
        return self.listen_to(obj, events)

    def stop_listening(self, obj: Any = None, name: Any = None, callback: Any = None) -> Eventbus:
        """
        Remove registrations made with `listen_to`.

        Args:
            obj: Target to stop listening to; all targets when None
            name: Event name(s) to remove
            callback: Callback to remove
        """
        if not self._listening_to:
            return self

        ids = [getattr(obj, "_listen_id", None)] if obj is not None else list(self._listening_to)

        for listen_id in ids:
            listening = self._listening_to.get(listen_id) if self._listening_to else None
            if listening is None:
                continue

            listening.obj.off(name, callback, self)
            if listening.interop:
                listening.off(name, callback)

        return self

    def trigger(self, name: Any, *args: Any, **kwargs: Any) -> Eventbus:
        """
        Invoke every callback for `name`; results are discarded.

        Awaitables returned by async callbacks are scheduled on the running loop.
        """
        if not self._events:
            return self

        events = self._events

        def target(single: str) -> None:
            for result in _invoke(events, single, args, kwargs):
                self._schedule(result)

        results_target_api(target, name)
        return self

    def trigger_sync(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Invoke every callback for `name` and aggregate the results.

        Returns:
            None for no results, the bare value for one, a list for more
        """
        if not self._events:
            return None

        events = self._events
        return results_target_api(lambda single: collapse(_invoke(events, single, args, kwargs)), name)

    async def trigger_async(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """
        Invoke every callback for `name` and await all results together.

        Every callback is called in registration order before anything is
        awaited. The awaited results are flattened, None values dropped, and
        aggregated with the same rule as `trigger_sync`.
        """
        if not self._events:
            return None

        events = self._events
        result = results_target_api(
            lambda single: _async_results(_invoke(events, single, args, kwargs)), name
        )

        if result is None:
            return None

        if not isinstance(result, list):
            return await resolve(result)

        values = await asyncio.gather(*(resolve(entry) for entry in result))

        all_results: list[Any] = []
        for value in values:
            if isinstance(value, list):
                all_results.extend(value)
            elif value is not None:
                all_results.append(value)

        return collapse(all_results)

    def trigger_defer(self, name: Any, *args: Any, **kwargs: Any) -> Eventbus:
        """
        Schedule `trigger` on the running event loop and return immediately.

        Raises:
            RuntimeError: If called outside a running event loop
        """
        loop = asyncio.get_running_loop()
        loop.call_soon(functools.partial(self.trigger, name, *args, **kwargs))
        return self

    def _schedule(self, result: Any) -> None:
        if not inspect.isawaitable(result):
            return

        try:
            asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("No running event loop, discarding async callback result", eventbus=self._name)
            if inspect.iscoroutine(result):
                result.close()
            return

        task = asyncio.ensure_future(result)
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)
        task.add_done_callback(self._log_task_exception)

    def _log_task_exception(self, task: asyncio.Future[Any]) -> None:
        if task.cancelled():
            return

        error = task.exception()
        if error is not None:
            logger.error(
                "Async callback failed", eventbus=self._name, error=str(error), exc_info=error
            )

    @staticmethod
    def _on_api(events: EventMap, name: Any, callback: Any, opts: dict[str, Any]) -> EventMap:
        if callback is not None:
            listening = opts["listening"]
            if listening is not None:
                listening.increment_count()

            registration = Registration(
                callback=callback,
                context=opts["context"],
                options=normalize_options(opts["options"], callback),
                listening=listening,
            )
            # Copy on write so a dispatch in progress keeps its own list.
            events[name] = [*events.get(name, ()), registration]

        return events

    @staticmethod
    def _off_api(
        events: EventMap | None, name: Any, callback: Any, opts: dict[str, Any]
    ) -> EventMap | None:
        if events is None:
            return None

        context = opts["context"]
        listeners = opts["listeners"]

        if not name and callback is None and context is None:
            for listening in list((listeners or {}).values()):
                listening.cleanup()
            return None

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
                elif handler.listening is not None:
                    handler.listening.off(event_name, callback)

            if remaining:
                events[event_name] = remaining
            else:
                del events[event_name]

        return events


def _invoke(
    events: EventMap, name: str, args: tuple[Any, ...], kwargs: dict[str, Any]
) -> list[Any]:
    """Call the registrations for `name` then `all`, collecting non-None results."""
    results = []

    handlers = events.get(name)
    if handlers:
        for handler in handlers:
            result = handler.callback(*args, **kwargs)
            if result is not None:
                results.append(result)

    all_handlers = events.get(ALL_EVENTS)
    if all_handlers:
        for handler in all_handlers:
            result = handler.callback(name, *args, **kwargs)
            if result is not None:
                results.append(result)

    return results


def _async_results(results: list[Any]) -> Any:
    if len(results) > 1:
        return _gather(results)
    if len(results) == 1:
        return results[0]
    return None


async def _gather(results: list[Any]) -> Any:
    values = await asyncio.gather(*(resolve(result) for result in results))
    return collapse([value for value in values if value is not None])


def _get_options_api(
    output: dict[str, Any], name: Any, callback: Any, opts: dict[str, Any]
) -> dict[str, Any]:
    events = opts["events"]
    if events:
        for handler in events.get(name, ()):
            if handler.options["guard"]:
                output["guard"] = True
            rank = TYPE_RANK[handler.options["type"]]
            if rank > output["type"]:
                output["type"] = rank
    return output


def _is_guarded_api(
    output: dict[str, Any], name: Any, callback: Any, opts: dict[str, Any]
) -> dict[str, Any]:
    events = opts["events"]
    if events:
        for handler in events.get(name, ()):
            if handler.options["guard"]:
                output["names"].append(name)
                output["guarded"] = True
                break
    return output


def _target_is_guarded(obj: Any, name: Any, data: dict[str, Any]) -> bool:
    is_guarded = getattr(obj, "is_guarded", None)
    if not callable(is_guarded):
        return False

    result = is_guarded(name, data)
    return result if isinstance(result, bool) else False


def _unique_id(prefix: str = "") -> str:
    return f"{prefix}{next(Eventbus._id_counter)}"
