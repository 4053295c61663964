"""CLI package for contact_sync."""

from contact_sync.cli.formatters import (
    print_contact,
    show_conflicts,
    show_merge_result,
    show_pull_result,
    show_push_result,
    show_status,
)
from contact_sync.cli.main import (
    DEFAULT_CONFIG_FILE,
    build_engine,
    cli,
    get_config_dir,
    load_profiles,
)
from contact_sync.utils import DEFAULT_CONFIG_DIR

__all__ = [
    "DEFAULT_CONFIG_DIR",
    "DEFAULT_CONFIG_FILE",
    "build_engine",
    "cli",
    "get_config_dir",
    "load_profiles",
    "print_contact",
    "show_conflicts",
    "show_merge_result",
    "show_pull_result",
    "show_push_result",
    "show_status",
]
