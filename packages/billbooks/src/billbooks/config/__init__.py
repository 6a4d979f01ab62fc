"""Configuration module for billbooks."""

from billbooks.config.logging import configure_logging, get_logger
from billbooks.config.settings import Settings, get_settings

__all__ = ["Settings", "get_settings", "configure_logging", "get_logger"]
