"""
Push reconciliation from the canonical store to a CardDAV address book.

Writes locally edited (dirty) contacts back to their address book. Each
contact is an independent unit: one contact failing never stops the
others, except for an authentication failure which ends the batch.

Writes are conditional on the last seen ETag. When the server reports that
the member changed in the meantime, nothing is overwritten; the member is
re-fetched and merged like a pull would, which records a pending conflict.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Optional

from contact_sync.api.carddav import (
    CardDAVClient,
    MemberNotFound,
    NotAuthenticated,
    PreconditionFailed,
    TransportError,
)
from contact_sync.storage.db import ContactStore, StoreError, SyncConnection
from contact_sync.sync.conflict import PendingConflict
from contact_sync.sync.contact import (
    CARDDAV,
    Contact,
    ContactState,
    SourceRef,
    source_kind,
    utcnow,
)
from contact_sync.sync.normalizer import ContactNormalizer, content_hash
from contact_sync.sync.pull import DEFAULT_MAX_WORKERS, MemberOutcome, PullReconciler
from contact_sync.sync.results import ItemError

logger = logging.getLogger(__name__)


class PushOutcome(Enum):
    """What happened to one contact during a push."""

    CREATED = "created"
    UPDATED = "updated"
    SKIPPED = "skipped"  # Serialized record identical to the remote one
    CONFLICT = "conflict"
    ORPHANED = "orphaned"  # Member deleted remotely
    FAILED = "failed"


@dataclass
class ContactPushResult:
    contact_id: str
    outcome: PushOutcome
    conflict: Optional[PendingConflict] = None
    error: Optional[ItemError] = None


@dataclass
class PushResult:
    """Result of pushing dirty contacts to one address book."""

    connection_id: str
    created: int = 0
    updated: int = 0
    skipped: int = 0
    orphaned: int = 0
    conflicts: list[PendingConflict] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    @property
    def written(self) -> int:
        """Number of remote writes performed."""
        return self.created + self.updated

    def add(self, item: ContactPushResult) -> None:
        if item.outcome == PushOutcome.CREATED:
            self.created += 1
        elif item.outcome == PushOutcome.UPDATED:
            self.updated += 1
        elif item.outcome == PushOutcome.SKIPPED:
            self.skipped += 1
        elif item.outcome == PushOutcome.ORPHANED:
            self.orphaned += 1
        elif item.outcome == PushOutcome.CONFLICT and item.conflict:
            self.conflicts.append(item.conflict)
        if item.error is not None:
            self.errors.append(item.error)

    def summary(self) -> str:
        return (
            f"Push to {self.connection_id}: {self.created} created, "
            f"{self.updated} updated, {self.skipped} skipped, "
            f"{self.orphaned} orphaned, {len(self.conflicts)} conflicts, "
            f"{len(self.errors)} errors"
        )


class PushReconciler:
    """
    Pushes dirty contacts to their CardDAV address book.

    Usage:
        reconciler = PushReconciler(store)
        result = reconciler.push(connection, client)

        # Only some contacts
        result = reconciler.push(connection, client, contact_ids=["a1b2..."])
    """

    def __init__(
        self,
        store: ContactStore,
        normalizer: Optional[ContactNormalizer] = None,
        puller: Optional[PullReconciler] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.store = store
        self.normalizer = normalizer or ContactNormalizer()
        self.puller = puller or PullReconciler(store, self.normalizer)
        self.max_workers = max(1, max_workers)

    def pending(
        self, connection_id: str, contact_ids: Optional[Iterable[str]] = None
    ) -> list[Contact]:
        """Active dirty contacts linked to a connection, oldest first."""
        source = source_kind(CARDDAV, connection_id)
        wanted = set(contact_ids) if contact_ids is not None else None
        return [
            c
            for c in self.store.list_linked(source)
            if c.dirty
            and c.state == ContactState.ACTIVE
            and (wanted is None or c.id in wanted)
        ]

    def push(
        self,
        connection: SyncConnection,
        client: CardDAVClient,
        contact_ids: Optional[Iterable[str]] = None,
    ) -> PushResult:
        """
        Push dirty contacts of one connection.

        Args:
            connection: Sync state of the connection
            client: CardDAV client for the connection's address book
            contact_ids: Restrict the push to these contacts

        Returns:
            PushResult with per-contact outcomes

        Raises:
            NotAuthenticated: If the server rejects the credentials. Contacts
                              not yet started are not attempted.
        """
        result = PushResult(connection_id=connection.id)
        contacts = self.pending(connection.id, contact_ids)
        if not contacts:
            logger.info(f"Nothing to push to {connection.id}")
            return result

        logger.info(f"Pushing {len(contacts)} contacts to {connection.id}")
        abort = threading.Event()

        def run(contact: Contact) -> Optional[ContactPushResult]:
            if abort.is_set():
                return None
            try:
                return self.push_contact(connection, client, contact)
            except NotAuthenticated:
                abort.set()
                raise

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = [executor.submit(run, contact) for contact in contacts]

        for future in futures:
            item = future.result()
            if item is not None:
                result.add(item)

        connection.last_push_at = utcnow()
        self.store.save_connection_state(connection)

        logger.info(result.summary())
        return result

    def push_contact(
        self, connection: SyncConnection, client: CardDAVClient, contact: Contact
    ) -> ContactPushResult:
        """
        Push one contact.

        Raises:
            NotAuthenticated: If the server rejects the credentials
        """
        source = source_kind(CARDDAV, connection.id)
        ref = contact.source_ref(source) or SourceRef()
        raw = self.normalizer.serialize(contact, source)
        digest = content_hash(raw)

        try:
            if ref.native_id is None:
                try:
                    href, etag = client.create_member(raw)
                except PreconditionFailed as e:
                    logger.warning(
                        f"Create of {contact.display_name!r} rejected by the server: {e}"
                    )
                    return ContactPushResult(
                        contact.id,
                        PushOutcome.FAILED,
                        error=ItemError(
                            ref=contact.id,
                            kind="precondition",
                            message=str(e),
                            contact_id=contact.id,
                        ),
                    )
                self._commit(contact.id, source, digest, href, etag)
                logger.debug(f"Created {href} for {contact.display_name!r}")
                return ContactPushResult(contact.id, PushOutcome.CREATED)

            if digest == ref.content_hash:
                self._commit(contact.id, source, digest, ref.native_id, ref.token)
                logger.debug(f"Skipped {ref.native_id}: remote already up to date")
                return ContactPushResult(contact.id, PushOutcome.SKIPPED)

            try:
                etag = client.update_member(ref.native_id, raw, ref.token)
            except PreconditionFailed:
                return self._handle_stale(connection, client, contact, ref.native_id)

            self._commit(contact.id, source, digest, ref.native_id, etag)
            logger.debug(f"Updated {ref.native_id} for {contact.display_name!r}")
            return ContactPushResult(contact.id, PushOutcome.UPDATED)

        except TransportError as e:
            logger.warning(f"Push of {contact.display_name!r} failed: {e}")
            return ContactPushResult(
                contact.id,
                PushOutcome.FAILED,
                error=ItemError(
                    ref=ref.native_id or contact.id,
                    kind="transport",
                    message=str(e),
                    contact_id=contact.id,
                ),
            )
        except StoreError as e:
            logger.error(f"Could not record push of {contact.display_name!r}: {e}")
            return ContactPushResult(
                contact.id,
                PushOutcome.FAILED,
                error=ItemError(
                    ref=ref.native_id or contact.id,
                    kind="store",
                    message=str(e),
                    contact_id=contact.id,
                ),
            )

    def _handle_stale(
        self,
        connection: SyncConnection,
        client: CardDAVClient,
        contact: Contact,
        href: str,
    ) -> ContactPushResult:
        logger.info(f"{href} changed remotely, merging instead of overwriting")
        try:
            member = client.get_member(href)
        except MemberNotFound:
            self.puller.mark_orphaned(contact.id)
            logger.info(f"{href} was deleted remotely, {contact.display_name!r} orphaned")
            return ContactPushResult(contact.id, PushOutcome.ORPHANED)

        merged = self.puller.merge_member(connection, member)
        if merged.outcome == MemberOutcome.CONFLICT:
            return ContactPushResult(
                contact.id, PushOutcome.CONFLICT, conflict=merged.conflict
            )
        if merged.error is not None:
            return ContactPushResult(contact.id, PushOutcome.FAILED, error=merged.error)
        return ContactPushResult(
            contact.id,
            PushOutcome.FAILED,
            error=ItemError(
                ref=href,
                kind="precondition",
                message="Remote record changed during push; push again",
                contact_id=contact.id,
            ),
        )

    def _commit(
        self,
        contact_id: str,
        source: str,
        digest: str,
        href: str,
        etag: Optional[str],
    ) -> None:
        """Record a successful write and clear dirty unless edited meanwhile."""

        def apply(contact: Contact) -> None:
            ref = contact.source_ref(source) or SourceRef()
            if ref.uid is None:
                ref.uid = contact.id
            ref.native_id = href
            ref.token = etag
            ref.content_hash = digest
            contact.link(source, ref)
            if self.normalizer.content_hash(contact, source) == digest:
                contact.dirty = False

        self.store.update_contact(contact_id, apply)

    def __repr__(self) -> str:
        return f"PushReconciler(store={self.store!r}, max_workers={self.max_workers})"
