"""
Entry point for running contact_sync as a module.

Usage:
    python -m contact_sync --help
    python -m contact_sync pull home
    python -m contact_sync push home
"""

from contact_sync.cli import cli

if __name__ == "__main__":
    cli()
