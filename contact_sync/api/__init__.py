"""
contact_sync.api - Remote address book clients
"""

from contact_sync.api.carddav import (
    CardDAVClient,
    CardDAVError,
    MemberNotFound,
    NotAuthenticated,
    PreconditionFailed,
    RemoteMember,
    TransportError,
)

__all__ = [
    "CardDAVClient",
    "CardDAVError",
    "MemberNotFound",
    "NotAuthenticated",
    "PreconditionFailed",
    "RemoteMember",
    "TransportError",
]
