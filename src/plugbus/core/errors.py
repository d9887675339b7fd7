"""Exception types raised by the event bus and plugin manager."""

from __future__ import annotations


class PlugbusError(Exception):
    """Base class for all plugbus errors."""


class DestroyedError(PlugbusError, ReferenceError):
    """Raised when a destroyed proxy, secure handle or manager is used."""

    def __init__(self, kind: str) -> None:
        super().__init__(f"This {kind} instance has been destroyed.")
        self.kind = kind


class PluginLoadError(PlugbusError):
    """Raised when a plugin cannot be added."""

    def __init__(self, message: str, name: str | None = None) -> None:
        super().__init__(message)
        self.name = name


class PluginInvokeError(PlugbusError):
    """Raised when an invocation finds no plugin or no method to call."""


class ModuleLoadError(PlugbusError):
    """Raised by the module loader; `code` distinguishes the failure kind."""

    def __init__(self, message: str, code: str) -> None:
        super().__init__(f"[{code}] {message}")
        self.code = code
