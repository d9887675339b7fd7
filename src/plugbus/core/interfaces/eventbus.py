"""Eventbus interface definitions."""

from __future__ import annotations

import re
from collections.abc import Iterator
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class ITriggerable(Protocol):
    """Contract shared by every object that can dispatch events."""

    @property
    def name(self) -> str:
        """Eventbus name used in diagnostics."""
        ...

    def get_options(self, name: Any) -> dict[str, Any]:
        """Aggregated `guard` / `type` options for an event name."""
        ...

    def get_type(self, name: Any) -> str | None:
        """Strongest type hint registered for an event name."""
        ...

    def keys(self, regex: re.Pattern[str] | None = None) -> Iterator[str]:
        """Iterate registered event names."""
        ...

    def trigger(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke callbacks and discard the results."""
        ...

    def trigger_sync(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke callbacks and aggregate the results."""
        ...

    async def trigger_async(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke callbacks and await the aggregated results."""
        ...

    def trigger_defer(self, name: Any, *args: Any, **kwargs: Any) -> Any:
        """Invoke callbacks on the next loop iteration."""
        ...


@runtime_checkable
class IEventbus(ITriggerable, Protocol):
    """Contract for objects that also accept registrations."""

    def on(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Any:
        """
        Register a callback.

        Args:
            name: Event name, space separated names or a name -> callback mapping
            callback: Callback to register
            context: Context identifying the registration
            options: `{"guard": bool, "type": "sync" | "async"}`
        """
        ...

    def once(
        self,
        name: Any,
        callback: Any = None,
        context: Any = None,
        options: dict[str, Any] | None = None,
    ) -> Any:
        """Register a callback removed after its first invocation."""
        ...

    def off(self, name: Any = None, callback: Any = None, context: Any = None) -> Any:
        """Remove registrations."""
        ...

    def is_guarded(self, name: Any, data: dict[str, Any] | None = None) -> bool:
        """Check whether any of the event names is guarded."""
        ...
