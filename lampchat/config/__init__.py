"""Configuration module for LampChat."""

from lampchat.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings"]
