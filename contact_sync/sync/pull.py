"""
Pull reconciliation from a CardDAV address book into the canonical store.

Fetches the full member list of one address book, diffs it against the
contacts linked to that connection and applies creates, updates and
orphan marking. Remote changes to locally edited contacts are never
applied silently; they are recorded as pending conflicts.

Failure semantics:
- A failure fetching the member list aborts the pull before any write
- A record that cannot be parsed or stored is reported and skipped
"""

import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from contact_sync.api.carddav import CardDAVClient, RemoteMember, TransportError
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
from contact_sync.sync.matcher import IdentityMatcher
from contact_sync.sync.normalizer import ContactNormalizer, ParseError
from contact_sync.sync.results import ItemError

logger = logging.getLogger(__name__)

DEFAULT_MAX_WORKERS = 4


class MemberOutcome(Enum):
    """What happened to one remote member during a pull."""

    CREATED = "created"
    LINKED = "linked"  # Matched an existing contact not yet linked to the book
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class MemberResult:
    """Outcome of merging one remote member."""

    href: str
    outcome: MemberOutcome
    contact_id: Optional[str] = None
    conflict: Optional[PendingConflict] = None
    error: Optional[ItemError] = None


@dataclass
class PullResult:
    """
    Result of pulling one address book.

    Counts are per remote member, except ``orphaned`` which counts local
    contacts newly marked orphaned by this pull.
    """

    connection_id: str
    created: int = 0
    linked: int = 0
    updated: int = 0
    orphaned: int = 0
    unchanged: int = 0
    conflicts: list[PendingConflict] = field(default_factory=list)
    errors: list[ItemError] = field(default_factory=list)
    aborted: bool = False
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.aborted and not self.errors

    def add(self, member: MemberResult) -> None:
        """Fold one member outcome into the totals."""
        if member.outcome == MemberOutcome.CREATED:
            self.created += 1
        elif member.outcome == MemberOutcome.LINKED:
            self.linked += 1
        elif member.outcome == MemberOutcome.UPDATED:
            self.updated += 1
        elif member.outcome == MemberOutcome.UNCHANGED:
            self.unchanged += 1
        elif member.outcome == MemberOutcome.CONFLICT and member.conflict:
            self.conflicts.append(member.conflict)
        if member.error is not None:
            self.errors.append(member.error)

    def summary(self) -> str:
        if self.aborted:
            return f"Pull of {self.connection_id} aborted: {self.error}"
        return (
            f"Pull of {self.connection_id}: {self.created} created, "
            f"{self.linked} linked, {self.updated} updated, "
            f"{self.unchanged} unchanged, {self.orphaned} orphaned, "
            f"{len(self.conflicts)} conflicts, {len(self.errors)} errors"
        )


def collection_fingerprint(members: Sequence[RemoteMember]) -> str:
    """Fingerprint of an address book's (href, etag) collection."""
    digest = hashlib.sha256()
    for href, etag in sorted((m.href, m.etag or "") for m in members):
        digest.update(f"{href}\0{etag}\n".encode("utf-8"))
    return digest.hexdigest()


class PullReconciler:
    """
    Applies remote address book state to the canonical store.

    Usage:
        reconciler = PullReconciler(store)
        result = reconciler.pull(connection, client)
        print(result.summary())
    """

    def __init__(
        self,
        store: ContactStore,
        normalizer: Optional[ContactNormalizer] = None,
        matcher: Optional[IdentityMatcher] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        self.store = store
        self.normalizer = normalizer or ContactNormalizer()
        self.matcher = matcher or IdentityMatcher()
        self.max_workers = max(1, max_workers)

    def pull(self, connection: SyncConnection, client: CardDAVClient) -> PullResult:
        """
        Pull one address book.

        Args:
            connection: Sync state of the connection being pulled
            client: CardDAV client for the connection's address book

        Returns:
            PullResult with per-member counts, conflicts and errors

        Raises:
            NotAuthenticated: If the server rejects the credentials
        """
        result = PullResult(connection_id=connection.id)
        source = source_kind(CARDDAV, connection.id)

        try:
            members = client.list_members()
        except TransportError as e:
            logger.error(f"Pull of {connection.id} aborted: {e}")
            result.aborted = True
            result.error = str(e)
            return result

        members = self._dedupe(members)
        fingerprint = collection_fingerprint(members)
        if fingerprint == connection.last_sync_token:
            logger.info(f"Address book {connection.id} unchanged since last pull")

        # Contacts a new member may be linked to instead of duplicated. A
        # contact belongs to at most one address book, since dirty is not
        # tracked per book.
        pool = [
            c
            for c in self.store.list_contacts(ContactState.ACTIVE)
            if c.carddav_source() is None
        ]

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            outcomes = list(
                executor.map(
                    lambda member: self.merge_member(connection, member, pool), members
                )
            )
        for outcome in outcomes:
            result.add(outcome)

        result.orphaned = self._mark_orphans(source, {m.href for m in members})

        connection.last_sync_token = fingerprint
        connection.last_pull_at = utcnow()
        connection.member_count = len(members)
        self.store.save_connection_state(connection)

        logger.info(result.summary())
        return result

    def merge_member(
        self,
        connection: SyncConnection,
        member: RemoteMember,
        pool: Optional[Sequence[Contact]] = None,
    ) -> MemberResult:
        """
        Merge one remote member into the store.

        Never raises for per-record problems: parse and store failures are
        returned as FAILED outcomes.

        Args:
            connection: Connection the member belongs to
            member: The remote member
            pool: Unlinked contacts a new member may be matched against.
                  None disables matching.
        """
        source = source_kind(CARDDAV, connection.id)
        try:
            existing = self.store.find_by_source_ref(source, member.href)
            if existing is None:
                return self._add_member(source, member, pool or [])
            return self._refresh_member(connection, source, member, existing)
        except ParseError as e:
            logger.warning(f"Skipping unparseable member {member.href}: {e}")
            return MemberResult(
                href=member.href,
                outcome=MemberOutcome.FAILED,
                error=ItemError(ref=member.href, kind="parse", message=str(e)),
            )
        except StoreError as e:
            logger.error(f"Could not store member {member.href}: {e}")
            return MemberResult(
                href=member.href,
                outcome=MemberOutcome.FAILED,
                error=ItemError(ref=member.href, kind="store", message=str(e)),
            )

    # =========================================================================
    # Per-member logic
    # =========================================================================

    def _add_member(
        self, source: str, member: RemoteMember, pool: Sequence[Contact]
    ) -> MemberResult:
        remote = self.normalizer.parse(member.raw, source)
        ref = SourceRef(
            native_id=member.href,
            token=member.etag,
            uid=remote.source_ref(source).uid,
        )

        matched_id = self.matcher.match(remote, pool) if pool else None
        if matched_id is not None:
            linked = False

            def link(contact: Contact) -> bool:
                nonlocal linked
                # Another member may have claimed this contact meanwhile
                if contact.carddav_source() is not None or contact.is_hidden:
                    return False
                contact.apply_remote(source, remote, ref)
                ref.content_hash = self.normalizer.content_hash(contact, source)
                contact.touch()
                linked = True
                return True

            contact = self.store.update_contact(matched_id, link)
            if contact is not None and linked:
                logger.debug(f"Linked {member.href} to existing contact {contact.id}")
                return MemberResult(
                    href=member.href, outcome=MemberOutcome.LINKED, contact_id=contact.id
                )

        contact = remote
        contact.link(source, ref)
        ref.content_hash = self.normalizer.content_hash(contact, source)
        contact.dirty = False
        self.store.save_contact(contact)
        logger.debug(f"Created contact {contact.id} from {member.href}")
        return MemberResult(
            href=member.href, outcome=MemberOutcome.CREATED, contact_id=contact.id
        )

    def _refresh_member(
        self,
        connection: SyncConnection,
        source: str,
        member: RemoteMember,
        existing: Contact,
    ) -> MemberResult:
        stored = existing.source_ref(source)
        token_changed = (
            member.etag is None
            or stored is None
            or stored.token is None
            or member.etag != stored.token
        )

        remote = None
        remote_hash = None
        if token_changed:
            remote = self.normalizer.parse(member.raw, source)
            remote_hash = self.normalizer.content_hash(remote, source)

        outcome = MemberOutcome.UNCHANGED

        def refresh(contact: Contact) -> bool:
            nonlocal outcome
            ref = contact.source_ref(source) or SourceRef(native_id=member.href)
            changed = False

            if remote is not None:
                if contact.dirty:
                    # Without ETags on both sides only a content change counts
                    has_tokens = member.etag is not None and ref.token is not None
                    if has_tokens or remote_hash != ref.content_hash:
                        outcome = MemberOutcome.CONFLICT
                        return False
                    changed = ref.token != member.etag
                    ref.token = member.etag
                else:
                    new_ref = SourceRef(
                        native_id=member.href, token=member.etag, uid=ref.uid
                    )
                    fields_changed = contact.apply_remote(source, remote, new_ref)
                    new_ref.content_hash = self.normalizer.content_hash(contact, source)
                    changed = fields_changed or ref.token != member.etag
                    ref = new_ref
                    if changed:
                        outcome = MemberOutcome.UPDATED

            if contact.state == ContactState.ORPHANED:
                contact.state = ContactState.ACTIVE
                changed = True

            if not changed:
                return False
            contact.link(source, ref)
            contact.touch()
            return True

        contact = self.store.update_contact(existing.id, refresh)
        if contact is None:
            # Deleted between lookup and update; treat as new on the next pull
            return MemberResult(href=member.href, outcome=MemberOutcome.UNCHANGED)

        if outcome == MemberOutcome.CONFLICT:
            conflict = self.store.record_conflict(
                PendingConflict(
                    contact_id=contact.id,
                    connection_id=connection.id,
                    native_id=member.href,
                    remote_token=member.etag,
                    raw_record=member.raw,
                )
            )
            logger.warning(
                f"Conflict on {contact.display_name!r} ({member.href}): "
                f"changed locally and remotely"
            )
            return MemberResult(
                href=member.href,
                outcome=MemberOutcome.CONFLICT,
                contact_id=contact.id,
                conflict=conflict,
            )

        return MemberResult(href=member.href, outcome=outcome, contact_id=contact.id)

    # =========================================================================
    # Helpers
    # =========================================================================

    def mark_orphaned(self, contact_id: str) -> bool:
        """Mark one active contact orphaned. Hidden contacts are left alone."""
        marked = False

        def orphan(contact: Contact) -> bool:
            nonlocal marked
            if contact.state != ContactState.ACTIVE:
                return False
            contact.state = ContactState.ORPHANED
            contact.touch()
            marked = True
            return True

        self.store.update_contact(contact_id, orphan)
        return marked

    def _mark_orphans(self, source: str, present: set[str]) -> int:
        count = 0
        for contact in self.store.list_linked(source):
            ref = contact.source_ref(source)
            # Refs without an href are waiting for their first push
            if ref is None or ref.native_id is None or ref.native_id in present:
                continue
            if self.mark_orphaned(contact.id):
                logger.info(
                    f"Contact {contact.display_name!r} missing from {source}, "
                    f"marked orphaned"
                )
                count += 1
        return count

    @staticmethod
    def _dedupe(members: Sequence[RemoteMember]) -> list[RemoteMember]:
        seen: set[str] = set()
        unique = []
        for member in members:
            if member.href in seen:
                logger.warning(f"Duplicate member href in listing: {member.href}")
                continue
            seen.add(member.href)
            unique.append(member)
        return unique

    def __repr__(self) -> str:
        return f"PullReconciler(store={self.store!r}, max_workers={self.max_workers})"
