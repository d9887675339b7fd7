"""Shared eventbus instances."""

from plugbus.core.events.bus import Eventbus

# Main eventbus for an application.
eventbus = Eventbus("mainEventbus")

# Eventbus for a plugin system.
plugin_eventbus = Eventbus("pluginEventbus")

# Eventbus for use in tests.
test_eventbus = Eventbus("testEventbus")
