"""Global test fixtures for plugbus."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from plugbus.core.events.bus import Eventbus
from plugbus.core.registry.invoke import PluginInvokeSupport
from plugbus.core.registry.manager import PluginManager

# ============================================================================
# PLUGIN DOUBLES
# ============================================================================


class HelloPlugin:
    """Registers `hello` -> "world" on load."""

    def __init__(self) -> None:
        self.loads = 0
        self.unloads = 0

    def on_plugin_load(self, ev: Any) -> None:
        self.loads += 1
        ev.eventbus.on("hello", self.hello)

    def on_plugin_unload(self, ev: Any) -> None:
        self.unloads += 1

    def hello(self) -> str:
        return "world"


PLUGIN_SOURCE = '''
class FilePlugin:
    def on_plugin_load(self, ev):
        ev.eventbus.on("file:ping", lambda: "file:pong")


plugin = FilePlugin()
'''


# ============================================================================
# FIXTURES
# ============================================================================


@pytest.fixture
def bus() -> Eventbus:
    """Fresh eventbus."""
    return Eventbus("test")


@pytest.fixture
def manager(bus: Eventbus) -> PluginManager:
    """Plugin manager with invoke support over the `bus` fixture."""
    return PluginManager(eventbus=bus, plugin_support=PluginInvokeSupport)


@pytest.fixture
def hello_plugin() -> HelloPlugin:
    return HelloPlugin()


@pytest.fixture
def plugin_file(tmp_path: Path) -> Path:
    """A plugin module written to disk."""
    path = tmp_path / "file_plugin.py"
    path.write_text(PLUGIN_SOURCE)
    return path
