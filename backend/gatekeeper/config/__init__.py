"""Configuration loaders."""

from gatekeeper.config.settings import GateSettings, get_settings, reset_settings

__all__ = ["GateSettings", "get_settings", "reset_settings"]
