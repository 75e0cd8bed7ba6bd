"""Shared configuration helpers and the development stack settings."""

from .errors import ConfigurationError
from .runtime import (
    env_bool,
    env_float,
    env_int,
    env_list,
    env_seconds,
    env_str,
)
from .settings import DevStackSettings, load_settings

__all__ = [
    "ConfigurationError",
    "DevStackSettings",
    "env_bool",
    "env_float",
    "env_int",
    "env_list",
    "env_seconds",
    "env_str",
    "load_settings",
]
