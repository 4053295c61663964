"""
contact_sync.config - Configuration management module

Contains configuration loading, validation, and connection settings.
"""

from contact_sync.config.connections import ConnectionConfig, load_connections
from contact_sync.config.loader import ConfigError, ConfigLoader

__all__ = [
    "ConfigError",
    "ConfigLoader",
    "ConnectionConfig",
    "load_connections",
]
