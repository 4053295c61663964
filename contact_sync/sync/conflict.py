"""
Conflict handling for CardDAV synchronization.

A conflict exists when a contact was changed locally (dirty) and its remote
counterpart changed too since the last pull. Neither side is overwritten
automatically: the remote version is kept as a PendingConflict until a
user picks a side.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Optional

from contact_sync.sync.contact import (
    CARDDAV,
    Contact,
    ContactState,
    SourceRef,
    source_kind,
    utcnow,
)
from contact_sync.sync.normalizer import ContactNormalizer

if TYPE_CHECKING:
    from contact_sync.storage.db import ContactStore

logger = logging.getLogger(__name__)


class ResolutionStrategy(Enum):
    """How a pending conflict is resolved."""

    LOCAL_WINS = "local"  # Keep local fields, overwrite remote on next push
    REMOTE_WINS = "remote"  # Discard local changes, take the remote record


class ConflictNotFoundError(Exception):
    """Raised when resolving a conflict that does not exist."""

    pass


@dataclass
class PendingConflict:
    """
    A remote change that could not be applied because of local edits.

    Attributes:
        contact_id: Local contact the remote record belongs to
        connection_id: Address book connection the record came from
        native_id: Remote href of the record
        remote_token: ETag of the remote version
        raw_record: The remote vCard as fetched
        detected_at: When the conflict was recorded
        id: Store-assigned id, None until recorded
    """

    contact_id: str
    connection_id: str
    native_id: str
    remote_token: Optional[str]
    raw_record: bytes
    detected_at: datetime = field(default_factory=utcnow)
    id: Optional[int] = None

    @property
    def source(self) -> str:
        return source_kind(CARDDAV, self.connection_id)


class ConflictResolver:
    """
    Resolves pending conflicts recorded by the pull and push reconcilers.

    Usage:
        resolver = ConflictResolver(store)

        for conflict in resolver.pending("home"):
            resolver.resolve(conflict.id, ResolutionStrategy.REMOTE_WINS)
    """

    def __init__(
        self,
        store: "ContactStore",
        normalizer: Optional[ContactNormalizer] = None,
    ):
        self.store = store
        self.normalizer = normalizer or ContactNormalizer()

    def pending(self, connection_id: Optional[str] = None) -> list[PendingConflict]:
        return self.store.list_conflicts(connection_id)

    def resolve(self, conflict_id: int, strategy: ResolutionStrategy) -> Contact:
        """
        Resolve a pending conflict.

        LOCAL_WINS adopts the remote ETag while keeping local fields and the
        dirty flag, so the next push overwrites the remote record.
        REMOTE_WINS applies the remote record's fields and clears dirty.

        Args:
            conflict_id: Id of the pending conflict
            strategy: Which side wins

        Returns:
            The contact after resolution

        Raises:
            ConflictNotFoundError: If the conflict or its contact is gone
            ParseError: If REMOTE_WINS and the stored record cannot be parsed
        """
        conflict = self.store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"No pending conflict with id {conflict_id}")

        source = conflict.source
        remote = None
        if strategy == ResolutionStrategy.REMOTE_WINS:
            remote = self.normalizer.parse(conflict.raw_record, source)

        def apply(contact: Contact) -> None:
            ref = contact.source_ref(source) or SourceRef()
            ref.native_id = conflict.native_id
            ref.token = conflict.remote_token

            if remote is not None:
                contact.apply_remote(source, remote, ref)
                ref.content_hash = self.normalizer.content_hash(contact, source)
                contact.dirty = False
            else:
                contact.link(source, ref)
                # Remote differs from local, the next push must write
                ref.content_hash = None
                contact.dirty = True

            if contact.state == ContactState.ORPHANED:
                contact.state = ContactState.ACTIVE
            contact.touch()

        contact = self.store.update_contact(conflict.contact_id, apply)
        if contact is None:
            self.store.delete_conflict(conflict_id)
            raise ConflictNotFoundError(
                f"Contact {conflict.contact_id} for conflict {conflict_id} no longer exists"
            )

        self.store.delete_conflict(conflict_id)
        logger.info(
            f"Resolved conflict {conflict_id} for {contact.display_name!r} "
            f"({strategy.value} wins)"
        )
        return contact

    def __repr__(self) -> str:
        return f"ConflictResolver(store={self.store!r})"
