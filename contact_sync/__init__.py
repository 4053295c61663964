"""
contact_sync - CardDAV and social-profile contact synchronization
"""

__version__ = "0.1.0"
