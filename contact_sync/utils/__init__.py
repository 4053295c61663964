"""
contact_sync.utils - Utility module

Common utilities including normalization and path resolution.
"""

from contact_sync.utils.normalization import (
    normalize_email,
    normalize_phone,
    normalize_string,
)
from contact_sync.utils.paths import DEFAULT_CONFIG_DIR, resolve_config_dir

__all__ = [
    "normalize_string",
    "normalize_email",
    "normalize_phone",
    "resolve_config_dir",
    "DEFAULT_CONFIG_DIR",
]
