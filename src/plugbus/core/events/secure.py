"""Trigger-only wrapper exposing an eventbus without registration rights."""

from __future__ import annotations

import re
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Union

from plugbus.core.errors import DestroyedError
from plugbus.core.events.bus import Eventbus
from plugbus.core.events.proxy import EventbusProxy

AnyEventbus = Union[Eventbus, EventbusProxy]


@dataclass
class EventbusSecureHandle:
    """Returned by `EventbusSecure.initialize`; only the owner keeps this."""

    destroy: Callable[[], None]
    set_eventbus: Callable[..., None]
    eventbus_secure: EventbusSecure


class EventbusSecure:
    """
    Exposes the trigger and read-only query methods of a wrapped eventbus.

    Consumers holding an `EventbusSecure` cannot register or remove callbacks.
    The owner can swap the wrapped eventbus at any time, keeping the identity
    of the secure object, or destroy it permanently.
    """

    def __init__(self) -> None:
        self._eventbus: AnyEventbus | None = None
        self._name = ""

    @staticmethod
    def initialize(eventbus: AnyEventbus, name: str | None = None) -> EventbusSecureHandle:
        """
        Wrap `eventbus` in a new secure object.

        Args:
            eventbus: Eventbus or proxy to wrap
            name: Optional name; defaults to the name of the wrapped eventbus

        Returns:
            Handle holding `destroy`, `set_eventbus` and `eventbus_secure`
        """
        if name is not None and not isinstance(name, str):
            raise TypeError("'name' is not a string.")

        secure = EventbusSecure()
        secure._eventbus = eventbus
        secure._name = eventbus.name if name is None else name

        def destroy() -> None:
            secure._eventbus = None

        def set_eventbus(new_eventbus: AnyEventbus, new_name: str | None = None) -> None:
            if new_name is not None and not isinstance(new_name, str):
                raise TypeError("'name' is not a string.")

            if secure._eventbus is None:
                return

            # An unpinned name follows the wrapped eventbus.
            if new_name is None and secure._name == secure._eventbus.name:
                secure._name = new_eventbus.name
            elif new_name is not None:
                secure._name = new_name

            secure._eventbus = new_eventbus

        return EventbusSecureHandle(destroy=destroy, set_eventbus=set_eventbus, eventbus_secure=secure)

    def _target(self) -> AnyEventbus:
        if self._eventbus is None:
            raise DestroyedError("EventbusSecure")
        return self._eventbus

    @property
    def is_destroyed(self) -> bool:
        return self._eventbus is None

    @property
    def name(self) -> str:
        self._target()
        return self._name

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

    def trigger(self, name: Any, *args: Any, **kwargs: Any) -> EventbusSecure:
        self._target().trigger(name, *args, **kwargs)
        return self

    def trigger_sync(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        return self._target().trigger_sync(name, *args, **kwargs)

    async def trigger_async(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        return await self._target().trigger_async(name, *args, **kwargs)

    def trigger_defer(self, name: Any, *args: Any, **kwargs: Any) -> EventbusSecure:
        self._target().trigger_defer(name, *args, **kwargs)
        return self
