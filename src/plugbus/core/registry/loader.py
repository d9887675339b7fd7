"""Resolves a module name, path or file URL to a loaded plugin module."""

from __future__ import annotations

import asyncio
import importlib
import importlib.util
import os
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from types import ModuleType
from typing import Any
from urllib.parse import urlparse
from urllib.request import url2pathname

import structlog

from plugbus.core.errors import ModuleLoadError
from plugbus.core.interfaces.plugin import IPlugin

logger = structlog.get_logger(__name__)

_URL_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.-]*://")

MODULE_PREFIX = "plugbus_plugin_"


@dataclass
class LoadResult:
    """Outcome of `ModuleLoader.load`."""

    instance: Any
    loadpath: str
    module: ModuleType
    modulepath: str | os.PathLike[str]
    type: str


def resolve_module(module: ModuleType) -> Any:
    """
    Pick the plugin instance exported by a module.

    A module defining `on_plugin_load` is the plugin itself. Otherwise a module
    level `plugin` attribute is used, falling back to the module.
    """
    if isinstance(module, IPlugin):
        return module

    plugin = getattr(module, "plugin", None)
    if plugin is not None:
        return plugin

    return module


class ModuleLoader:
    """Imports plugin modules for the plugin manager."""

    @staticmethod
    async def load(
        modulepath: str | os.PathLike[str],
        resolve_module: Callable[[ModuleType], Any] | None = None,
    ) -> LoadResult:
        """
        Import a plugin module.

        Args:
            modulepath: Dotted module name, path to a `.py` file or package
                directory, or a `file://` URL
            resolve_module: Optional callable selecting the instance from the module

        Returns:
            LoadResult with the module and resolved instance

        Raises:
            ModuleLoadError: `ERR_MODULE_NOT_FOUND` if nothing exists at
                `modulepath`, `ERR_UNSUPPORTED_URL` for non file URLs
        """
        if not isinstance(modulepath, (str, os.PathLike)):
            raise TypeError("'modulepath' is not a string or path.")

        if resolve_module is not None and not callable(resolve_module):
            raise TypeError("'resolve_module' is not callable.")

        loadpath = os.fspath(modulepath)

        if _URL_SCHEME.match(loadpath):
            url = urlparse(loadpath)
            if url.scheme != "file":
                raise ModuleLoadError(
                    f"Cannot load {loadpath}; only file URLs are supported", "ERR_UNSUPPORTED_URL"
                )

            load_type = "import-url"
            path = Path(url2pathname(url.path))
            module = await asyncio.to_thread(_import_path, path, loadpath)
        elif isinstance(modulepath, os.PathLike) or _looks_like_path(loadpath):
            load_type = "import-path"
            module = await asyncio.to_thread(_import_path, Path(loadpath), loadpath)
        else:
            load_type = "import-module"
            module = await asyncio.to_thread(_import_module, loadpath)

        logger.debug("Plugin module imported", loadpath=loadpath, type=load_type)

        instance = resolve_module(module) if resolve_module is not None else module

        return LoadResult(
            instance=instance,
            loadpath=loadpath,
            module=module,
            modulepath=modulepath,
            type=load_type,
        )


def _looks_like_path(value: str) -> bool:
    return value.endswith(".py") or "/" in value or os.sep in value or Path(value).exists()


def _import_module(name: str) -> ModuleType:
    try:
        return importlib.import_module(name)
    except ModuleNotFoundError as e:
        # Only a missing target counts; a missing dependency of the plugin propagates.
        if e.name is not None and (name == e.name or name.startswith(f"{e.name}.")):
            raise ModuleLoadError(f"import failed to load {name}", "ERR_MODULE_NOT_FOUND") from e
        raise


def _import_path(path: Path, loadpath: str) -> ModuleType:
    if path.is_dir():
        init = path / "__init__.py"
        if not init.exists():
            raise ModuleLoadError(f"import failed to load {loadpath}", "ERR_MODULE_NOT_FOUND")
        location, search = init, [str(path)]
    elif path.is_file():
        location, search = path, None
    else:
        raise ModuleLoadError(f"import failed to load {loadpath}", "ERR_MODULE_NOT_FOUND")

    module_name = f"{MODULE_PREFIX}{path.stem if path.is_file() else path.name}"

    spec = importlib.util.spec_from_file_location(
        module_name, location, submodule_search_locations=search
    )
    if spec is None or spec.loader is None:
        raise ModuleLoadError(f"Cannot create an import spec for {loadpath}", "ERR_MODULE_NOT_FOUND")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
    except BaseException:
        sys.modules.pop(module_name, None)
        raise

    return module
