"""Typed application settings."""

from config.settings import Settings, settings

__all__ = ["Settings", "settings"]
