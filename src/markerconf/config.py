"""
Framework configuration for markerconf.

Holds the process-wide settings that the accessor, router and entry layers
consult at runtime. The value is replaced wholesale (it is a frozen dataclass),
so readers never observe a half-updated configuration.

Environment seeding:
- MARKERCONF_STRICT: "1"/"true"/"yes" turns Fatal log lines into raised errors
- MARKERCONF_CONFIG_ROOT: directory used by the default JSON storage
"""

import os
from dataclasses import dataclass, replace
from typing import Any


def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


@dataclass(frozen=True)
class FrameworkConfig:
    """Runtime settings for the markerconf framework.

    Attributes:
        strict: Development mode. Fatal conditions (reentrant get/set, None
            module registration) raise instead of only being logged.
        config_root: Folder the default JSON storage writes into.
        file_suffix: Suffix of per-module storage files.
    """
    strict: bool = False
    config_root: str = "Configs"
    file_suffix: str = ".json"


def _initial_config() -> FrameworkConfig:
    return FrameworkConfig(
        strict=_env_flag("MARKERCONF_STRICT"),
        config_root=os.environ.get("MARKERCONF_CONFIG_ROOT", "Configs"),
    )


_framework_config: FrameworkConfig = _initial_config()


def set_framework_config(config: FrameworkConfig) -> None:
    """Replace the active framework configuration."""
    global _framework_config
    if not isinstance(config, FrameworkConfig):
        raise TypeError(f"Expected FrameworkConfig, got {type(config).__name__}")
    _framework_config = config


def get_framework_config() -> FrameworkConfig:
    """Get the active framework configuration."""
    return _framework_config


def update_framework_config(**changes: Any) -> FrameworkConfig:
    """Replace selected fields of the active configuration and return it."""
    set_framework_config(replace(_framework_config, **changes))
    return _framework_config


def reset_framework_config() -> None:
    """Restore the environment-seeded configuration."""
    set_framework_config(_initial_config())
