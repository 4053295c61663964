"""
contact_sync.storage - Canonical contact store
"""

from contact_sync.storage.db import ContactStore, StoreError, SyncConnection

__all__ = ["ContactStore", "StoreError", "SyncConnection"]
