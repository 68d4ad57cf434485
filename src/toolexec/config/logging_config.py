"""structlog level filtering driven by engine settings."""

import logging

import structlog

from .settings import EngineSettings


def configure_logging(settings: EngineSettings) -> int:
    """
    Filter structlog output below the configured level.

    Only the wrapper class is replaced; processors a host has configured
    stay in place. `debug` forces DEBUG regardless of `log_level`.

    Args:
        settings: Engine settings

    Returns:
        Numeric level now in effect
    """
    level = logging.DEBUG if settings.debug else logging.getLevelName(settings.log_level)
    structlog.configure(wrapper_class=structlog.make_filtering_bound_logger(level))
    return level
