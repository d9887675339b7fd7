"""Tests for EventbusSecure and the shared buses."""

from __future__ import annotations

import pytest

from plugbus.core.errors import DestroyedError
from plugbus.core.events import buses
from plugbus.core.events.bus import Eventbus
from plugbus.core.events.proxy import EventbusProxy
from plugbus.core.events.secure import EventbusSecure


class TestEventbusSecure:
    """Tests for the trigger-only wrapper."""

    def test_triggers_reach_wrapped_bus(self, bus):
        """Test that trigger_sync goes to the wrapped bus."""
        bus.on("ping", lambda: "pong")
        secure = EventbusSecure.initialize(bus).eventbus_secure

        assert secure.trigger_sync("ping") == "pong"
        assert list(secure.keys()) == ["ping"]
        assert secure.get_options("ping") == {"guard": False, "type": None}

    def test_no_registration_methods(self, bus):
        """Test that the wrapper cannot register or remove callbacks."""
        secure = EventbusSecure.initialize(bus).eventbus_secure
        for method in ("on", "off", "once", "before", "listen_to"):
            assert not hasattr(secure, method)

    def test_name_defaults_to_bus_name(self, bus):
        """Test the default name."""
        assert EventbusSecure.initialize(bus).eventbus_secure.name == "test"

    def test_unpinned_name_follows_new_bus(self, bus):
        """Test that set_eventbus adopts the new bus name when none was pinned."""
        handle = EventbusSecure.initialize(bus)
        other = Eventbus("other")
        other.on("ping", lambda: "other")

        handle.set_eventbus(other)

        assert handle.eventbus_secure.name == "other"
        assert handle.eventbus_secure.trigger_sync("ping") == "other"

    def test_pinned_name_survives_swap(self, bus):
        """Test that an explicit name is kept on set_eventbus."""
        handle = EventbusSecure.initialize(bus, "pinned")
        handle.set_eventbus(Eventbus("other"))
        assert handle.eventbus_secure.name == "pinned"

    def test_set_eventbus_with_name(self, bus):
        """Test that set_eventbus can rename."""
        handle = EventbusSecure.initialize(bus)
        handle.set_eventbus(Eventbus("other"), "renamed")
        assert handle.eventbus_secure.name == "renamed"

    def test_wraps_a_proxy(self, bus):
        """Test that a proxy can be wrapped."""
        proxy = EventbusProxy(bus)
        proxy.on("a", lambda: 1)
        secure = EventbusSecure.initialize(proxy).eventbus_secure

        assert secure.name == "proxy-test"
        assert secure.trigger_sync("a") == 1

    def test_non_string_name_raises(self, bus):
        """Test name validation."""
        with pytest.raises(TypeError):
            EventbusSecure.initialize(bus, 1)

        handle = EventbusSecure.initialize(bus)
        with pytest.raises(TypeError):
            handle.set_eventbus(Eventbus(), 1)

    def test_destroy_is_permanent(self, bus):
        """Test that a destroyed wrapper raises and cannot be revived."""
        handle = EventbusSecure.initialize(bus)
        secure = handle.eventbus_secure

        handle.destroy()
        handle.set_eventbus(Eventbus("other"))

        assert secure.is_destroyed
        with pytest.raises(DestroyedError):
            secure.trigger_sync("a")
        with pytest.raises(DestroyedError):
            _ = secure.name

    @pytest.mark.asyncio
    async def test_trigger_async(self, bus):
        """Test that trigger_async is delegated."""

        async def handler():
            return "async"

        bus.on("a", handler)
        assert await EventbusSecure.initialize(bus).eventbus_secure.trigger_async("a") == "async"


class TestSharedBuses:
    """Tests for the module level eventbus instances."""

    def test_names(self):
        """Test the shared bus names."""
        assert buses.eventbus.name == "mainEventbus"
        assert buses.plugin_eventbus.name == "pluginEventbus"
        assert buses.test_eventbus.name == "testEventbus"

    def test_buses_are_distinct(self):
        """Test that each shared bus is its own instance."""
        assert len({id(buses.eventbus), id(buses.plugin_eventbus), id(buses.test_eventbus)}) == 3
