"""Ambient runtime services: configuration, logging, retry and caching."""

from docstate.runtime.config import ClientSettings, ConfigManager, load_settings
from docstate.runtime.observability import Layer, configure_logging, get_logger

__all__ = [
    "ClientSettings",
    "ConfigManager",
    "Layer",
    "configure_logging",
    "get_logger",
    "load_settings",
]
