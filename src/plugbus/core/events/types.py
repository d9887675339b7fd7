"""Event channel name definitions."""

from enum import Enum


class ManagerEvent(str, Enum):
    """Notifications triggered by the plugin manager on its eventbus."""

    PLUGIN_ADDED = "plugbus:manager:plugin:added"
    PLUGIN_ENABLED = "plugbus:manager:plugin:enabled"
    PLUGIN_RELOADED = "plugbus:manager:plugin:reloaded"
    PLUGIN_REMOVED = "plugbus:manager:plugin:removed"


class LogEvent(str, Enum):
    """Log channels a plugin may listen on to receive manager diagnostics."""

    DEBUG = "log:debug"
    INFO = "log:info"
    WARN = "log:warn"
    ERROR = "log:error"


# Registrations on this channel receive every trigger with the name prepended.
ALL_EVENTS = "all"
