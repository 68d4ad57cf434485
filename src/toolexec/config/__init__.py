"""Configuration for the tool execution engine."""

from .logging_config import configure_logging
from .settings import EngineSettings, get_settings

__all__ = ["EngineSettings", "configure_logging", "get_settings"]
