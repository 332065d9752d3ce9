"""Tiller configuration."""

from tiller.core.config.settings import TillerSettings, clear_settings_cache, get_settings

__all__ = ["TillerSettings", "get_settings", "clear_settings_cache"]
