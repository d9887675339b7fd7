"""Configuration models using Pydantic."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class PluginManagerOptions(BaseModel):
    """Flags controlling the manager's bus commands and invocation errors."""

    model_config = ConfigDict(extra="ignore", validate_assignment=True)

    no_event_add: bool = False
    no_event_destroy: bool = True
    no_event_removal: bool = False
    no_event_set_enabled: bool = True
    no_event_set_options: bool = True
    throw_no_method: bool = False
    throw_no_plugin: bool = False

    def merged(self, options: dict[str, Any]) -> PluginManagerOptions:
        """Return a copy updated with the known boolean values in `options`."""
        updates = {
            key: value
            for key, value in options.items()
            if key in type(self).model_fields and isinstance(value, bool)
        }
        return self.model_copy(update=updates)


class LogConfig(BaseModel):
    """Logging configuration."""

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    structured: bool = False
    file: Path | None = None


class PluginConfig(BaseModel):
    """A plugin to add at startup."""

    name: str
    target: str | None = None
    options: dict[str, Any] = Field(default_factory=dict)

    def to_plugin_config(self) -> dict[str, Any]:
        """Return the mapping accepted by `PluginManager.add`."""
        return self.model_dump(exclude_none=True)


class PlugbusConfig(BaseSettings):
    """Main configuration."""

    model_config = SettingsConfigDict(
        env_prefix="PLUGBUS_",
        env_nested_delimiter="__",
        extra="ignore",
    )

    event_prepend: str = "plugins"
    manager: PluginManagerOptions = Field(default_factory=PluginManagerOptions)
    logging: LogConfig = Field(default_factory=LogConfig)
    plugins: list[PluginConfig] = Field(default_factory=list)

    @classmethod
    def from_yaml(cls, path: Path | str) -> PlugbusConfig:
        """Load configuration from YAML file."""
        import yaml

        path = Path(path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open() as f:
            data = yaml.safe_load(f)

        return cls(**data) if data else cls()

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PlugbusConfig:
        """Create configuration from dictionary."""
        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return self.model_dump(mode="json")

    def to_yaml(self, path: Path | str) -> None:
        """Save configuration to YAML file."""
        import yaml

        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)

        with path.open("w") as f:
            yaml.dump(self.to_dict(), f, default_flow_style=False)

    def plugin_configs(self) -> list[dict[str, Any]]:
        """Plugin configs ready for `PluginManager.add_all`."""
        return [plugin.to_plugin_config() for plugin in self.plugins]
