"""Frozen plugin metadata and plugin config helpers."""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from types import MappingProxyType
from typing import Any
from urllib.parse import urlparse

_PLAIN_SCALARS = (str, int, float, bool, type(None))

_ESCAPE_RELATIVE = re.compile(r"^([.]{1,2}[\\|/])+")
_STRING_URL = re.compile(r"^(https?|file):")


def deep_freeze(data: Any) -> Any:
    """
    Return a structurally frozen copy of plain data.

    Mappings become read-only `MappingProxyType` views over a private dict,
    lists and tuples become tuples and sets become frozensets.

    Raises:
        TypeError: If a value is not plain data (e.g. a function or class instance)
    """
    if isinstance(data, _PLAIN_SCALARS):
        return data

    if isinstance(data, Mapping):
        frozen = {}
        for key, value in data.items():
            if not isinstance(key, str):
                raise TypeError(f"Mapping key {key!r} is not a string.")
            frozen[key] = deep_freeze(value)
        return MappingProxyType(frozen)

    if isinstance(data, (list, tuple)):
        return tuple(deep_freeze(value) for value in data)

    if isinstance(data, (set, frozenset)):
        return frozenset(deep_freeze(value) for value in data)

    raise TypeError(f"'{type(data).__name__}' value is not plain data and cannot be frozen.")


def thaw(data: Any) -> Any:
    """Return a mutable deep copy of data produced by `deep_freeze`."""
    if isinstance(data, Mapping):
        return {key: thaw(value) for key, value in data.items()}
    if isinstance(data, tuple):
        return [thaw(value) for value in data]
    if isinstance(data, frozenset):
        return {thaw(value) for value in data}
    return data


def escape_target(target: str | os.PathLike[str]) -> str:
    """
    Normalize a plugin target for display and lookup.

    URLs are reduced to their path, leading `./` and `../` segments are
    stripped and backslashes are doubled.

    Args:
        target: Module name, filesystem path or URL

    Returns:
        The escaped target
    """
    if isinstance(target, os.PathLike):
        target = os.fspath(target)

    if not isinstance(target, str):
        raise TypeError("'target' is not a string or path.")

    escaped = urlparse(target).path if _STRING_URL.match(target) else target

    escaped = _ESCAPE_RELATIVE.sub("", escaped)
    return escaped.replace("\\", "\\\\")


def is_valid_config(config: Any) -> bool:
    """
    Check the shape of a plugin config.

    A valid config is a mapping with a string `name`, an optional `target`
    (string or path) and optional `options` mapping.
    """
    if not isinstance(config, Mapping):
        return False

    if not isinstance(config.get("name"), str):
        return False

    target = config.get("target")
    if target is not None and not isinstance(target, (str, os.PathLike)):
        return False

    options = config.get("options")
    if options is not None and not isinstance(options, Mapping):
        return False

    return True


def manager_section(event_prepend: str, name: str) -> dict[str, str]:
    return {"event_prepend": event_prepend, "scoped_name": f"{event_prepend}:{name}"}


@dataclass(frozen=True)
class PluginData:
    """
    Immutable snapshot describing a loaded plugin.

    Attributes:
        manager: `event_prepend` and `scoped_name` of the owning manager
        module: Caller supplied module data
        plugin: `name`, `target`, `target_escaped`, `type` and `options`
    """

    manager: Mapping[str, Any]
    module: Mapping[str, Any]
    plugin: Mapping[str, Any]

    @classmethod
    def create(
        cls,
        *,
        name: str,
        target: str,
        plugin_type: str,
        event_prepend: str,
        options: Mapping[str, Any] | None = None,
        module: Mapping[str, Any] | None = None,
    ) -> PluginData:
        """Build and freeze the snapshot for a newly added plugin."""
        return cls(
            manager=deep_freeze(manager_section(event_prepend, name)),
            module=deep_freeze(module or {}),
            plugin=deep_freeze(
                {
                    "name": name,
                    "target": target,
                    "target_escaped": escape_target(target),
                    "type": plugin_type,
                    "options": options or {},
                }
            ),
        )

    @property
    def name(self) -> str:
        return self.plugin["name"]

    @property
    def options(self) -> Mapping[str, Any]:
        return self.plugin["options"]

    def with_manager(self, event_prepend: str) -> PluginData:
        """Return a copy scoped to a different event prepend."""
        return PluginData(
            manager=deep_freeze(manager_section(event_prepend, self.name)),
            module=self.module,
            plugin=self.plugin,
        )

    def to_dict(self) -> dict[str, Any]:
        """Return a plain, mutable deep copy."""
        return {
            "manager": thaw(self.manager),
            "module": thaw(self.module),
            "plugin": thaw(self.plugin),
        }
