"""
Sync engine for CardDAV and social-profile contact synchronization.

Entry points for everything that changes the canonical store: pulls and
pushes per address book, scrape batch imports, local contact edits and
conflict resolution.

Only one run per connection at a time: a pull, push or import that would
overlap another run on the same connection is refused.
"""

import logging
import threading
from collections.abc import Generator, Iterable, Mapping
from contextlib import contextmanager
from typing import Optional

from contact_sync.api.carddav import CardDAVClient, NotAuthenticated
from contact_sync.storage.db import (
    STATUS_ERROR,
    STATUS_IDLE,
    STATUS_SYNCING,
    ContactStore,
)
from contact_sync.sync.conflict import (
    ConflictNotFoundError,
    ConflictResolver,
    PendingConflict,
    ResolutionStrategy,
)
from contact_sync.sync.contact import (
    CARDDAV,
    Contact,
    ContactField,
    ContactState,
    FieldKind,
    SourceRef,
    source_kind,
    utcnow,
)
from contact_sync.sync.importer import ImportMerger, MergeResult, ScrapedProfile
from contact_sync.sync.matcher import IdentityMatcher, MatchConfig
from contact_sync.sync.normalizer import ContactNormalizer
from contact_sync.sync.pull import DEFAULT_MAX_WORKERS, PullReconciler, PullResult
from contact_sync.sync.push import PushReconciler, PushResult

logger = logging.getLogger(__name__)


class UnknownConnectionError(Exception):
    """Raised when an operation names a connection that is not configured."""

    pass


class SyncInProgressError(Exception):
    """Raised when a run would overlap another run on the same connection."""

    pass


class ContactNotFoundError(Exception):
    """Raised when editing a contact that does not exist."""

    pass


class SyncEngine:
    """
    Contact sync engine.

    Features:
    - Pull of a CardDAV address book into the canonical store
    - Push of local edits with ETag-conditional writes
    - Merge of scraped LinkedIn profiles without duplicates
    - Pending conflict listing and resolution
    - Per-connection status in SQLite

    Usage:
        engine = SyncEngine(
            store=ContactStore('/path/to/contacts.db'),
            clients={"home": CardDAVClient(url, "jane", "secret")},
            import_connections=["linkedin-main"],
        )

        result = engine.pull("home")
        print(result.summary())

        contact = engine.create_contact("home", [ContactField(FieldKind.NAME, "Jane")])
        engine.push("home")
    """

    def __init__(
        self,
        store: ContactStore,
        clients: Mapping[str, CardDAVClient],
        import_connections: Iterable[str] = (),
        match_config: Optional[MatchConfig] = None,
        max_workers: int = DEFAULT_MAX_WORKERS,
    ):
        """
        Initialize the sync engine.

        Args:
            store: Initialized canonical store
            clients: CardDAV client per address book connection id
            import_connections: Ids of social-network connections that
                                deliver scrape batches
            match_config: Identity matcher settings
            max_workers: Worker pool size for per-record pull and push work
        """
        self.store = store
        self.clients = dict(clients)
        self.import_connections = set(import_connections)

        self.normalizer = ContactNormalizer()
        self.matcher = IdentityMatcher(match_config)
        self.puller = PullReconciler(store, self.normalizer, self.matcher, max_workers)
        self.pusher = PushReconciler(store, self.normalizer, self.puller, max_workers)
        self.merger = ImportMerger(store, self.matcher)
        self.resolver = ConflictResolver(store, self.normalizer)

        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    # =========================================================================
    # Sync runs
    # =========================================================================

    def pull(self, connection_id: str) -> PullResult:
        """
        Pull one address book into the store.

        Raises:
            UnknownConnectionError: If the connection is not configured
            SyncInProgressError: If the connection is already syncing
            NotAuthenticated: If the server rejects the credentials
        """
        client = self._client(connection_id)
        with self._run(connection_id):
            connection = self.store.get_connection_state(connection_id)
            self._set_status(connection_id, STATUS_SYNCING)
            try:
                result = self.puller.pull(connection, client)
            except NotAuthenticated:
                logger.error(f"Credentials rejected for {connection_id}")
                self._set_status(connection_id, STATUS_ERROR)
                raise
            except Exception:
                self._set_status(connection_id, STATUS_ERROR)
                raise
            status = STATUS_ERROR if result.aborted else STATUS_IDLE
            self._set_status(connection_id, status)
            return result

    def push(
        self, connection_id: str, contact_ids: Optional[Iterable[str]] = None
    ) -> PushResult:
        """
        Push dirty contacts of one address book.

        Raises:
            UnknownConnectionError: If the connection is not configured
            SyncInProgressError: If the connection is already syncing
            NotAuthenticated: If the server rejects the credentials
        """
        client = self._client(connection_id)
        with self._run(connection_id):
            connection = self.store.get_connection_state(connection_id)
            self._set_status(connection_id, STATUS_SYNCING)
            try:
                result = self.pusher.push(connection, client, contact_ids)
            except NotAuthenticated:
                logger.error(f"Credentials rejected for {connection_id}")
                self._set_status(connection_id, STATUS_ERROR)
                raise
            except Exception:
                self._set_status(connection_id, STATUS_ERROR)
                raise
            self._set_status(connection_id, STATUS_IDLE)
            return result

    def merge_import(
        self, batch: Iterable[ScrapedProfile], connection_id: str
    ) -> MergeResult:
        """
        Merge a scrape batch from a social-network connection.

        Raises:
            UnknownConnectionError: If the connection is not configured
            SyncInProgressError: If the connection is already importing
        """
        if connection_id not in self.import_connections:
            raise UnknownConnectionError(f"Unknown import connection: {connection_id}")

        with self._run(connection_id):
            profiles = list(batch)
            self._set_status(connection_id, STATUS_SYNCING)
            try:
                result = self.merger.merge(profiles, connection_id)
            except Exception:
                self._set_status(connection_id, STATUS_ERROR)
                raise

            connection = self.store.get_connection_state(connection_id)
            connection.last_pull_at = utcnow()
            connection.member_count = len(profiles)
            connection.status = STATUS_IDLE
            self.store.save_connection_state(connection)
            return result

    # =========================================================================
    # Local changes
    # =========================================================================

    def create_contact(
        self, connection_id: str, fields: Iterable[ContactField]
    ) -> Contact:
        """
        Create a local contact belonging to an address book.

        The contact is dirty and has no href yet; the next push creates it
        remotely.

        Raises:
            UnknownConnectionError: If the connection is not configured
            ValueError: If the contact has neither a name nor an email
        """
        self._client(connection_id)
        source = source_kind(CARDDAV, connection_id)

        contact = Contact.new()
        contact.fields = [
            ContactField(f.kind, f.value, f.label, source) for f in fields if f.value
        ]
        if not contact.is_valid():
            raise ValueError("A contact needs a name or an email address")

        contact.link(source, SourceRef(uid=contact.id))
        contact.dirty = True
        self.store.save_contact(contact)
        logger.info(f"Created contact {contact.display_name!r} in {connection_id}")
        return contact

    def edit_contact(
        self,
        contact_id: str,
        kind: FieldKind,
        values: Iterable[tuple[str, Optional[str]]],
    ) -> Contact:
        """
        Replace every value of one field kind with user-entered values.

        Raises:
            ContactNotFoundError: If the contact does not exist
        """
        values = list(values)
        contact = self.store.update_contact(
            contact_id, lambda c: c.set_local_values(kind, values)
        )
        if contact is None:
            raise ContactNotFoundError(f"No contact with id {contact_id}")
        logger.debug(f"Edited {kind.value} of {contact.display_name!r}")
        return contact

    def hide_contacts(self, contact_ids: Iterable[str]) -> int:
        """Hide contacts. Returns the number of contacts newly hidden."""
        count = self.store.set_state(contact_ids, ContactState.HIDDEN)
        logger.info(f"Hid {count} contacts")
        return count

    def unhide_contacts(self, contact_ids: Iterable[str]) -> int:
        """Make hidden contacts active again. Orphaned contacts stay orphaned."""
        count = 0
        for contact_id in contact_ids:
            unhidden = False

            def unhide(contact: Contact) -> bool:
                nonlocal unhidden
                if contact.state != ContactState.HIDDEN:
                    return False
                contact.state = ContactState.ACTIVE
                contact.touch()
                unhidden = True
                return True

            self.store.update_contact(contact_id, unhide)
            if unhidden:
                count += 1
        logger.info(f"Unhid {count} contacts")
        return count

    # =========================================================================
    # Conflicts and status
    # =========================================================================

    def list_conflicts(
        self, connection_id: Optional[str] = None
    ) -> list[PendingConflict]:
        if connection_id is not None:
            self._client(connection_id)
        return self.resolver.pending(connection_id)

    def resolve_conflict(
        self, conflict_id: int, strategy: ResolutionStrategy
    ) -> Contact:
        """
        Resolve a pending conflict.

        Raises:
            ConflictNotFoundError: If the conflict does not exist
            SyncInProgressError: If its connection is syncing
        """
        conflict = self.store.get_conflict(conflict_id)
        if conflict is None:
            raise ConflictNotFoundError(f"No pending conflict with id {conflict_id}")
        with self._run(conflict.connection_id):
            return self.resolver.resolve(conflict_id, strategy)

    def status(self) -> dict[str, object]:
        """
        Get current sync status information.

        Returns:
            Dictionary with contact counts and per-connection state
        """
        stored = {s.id: s for s in self.store.list_connection_states()}
        conflicts = self.store.list_conflicts()

        connections = []
        for connection_id in sorted(set(self.clients) | self.import_connections):
            state = stored.get(connection_id) or self.store.get_connection_state(
                connection_id
            )
            connections.append(
                {
                    "id": connection_id,
                    "type": "carddav" if connection_id in self.clients else "linkedin",
                    "status": state.status,
                    "last_pull_at": state.last_pull_at,
                    "last_push_at": state.last_push_at,
                    "member_count": state.member_count,
                    "pending_conflicts": sum(
                        1 for c in conflicts if c.connection_id == connection_id
                    ),
                }
            )

        return {"contacts": self.store.count_by_state(), "connections": connections}

    # =========================================================================
    # Helpers
    # =========================================================================

    def _client(self, connection_id: str) -> CardDAVClient:
        client = self.clients.get(connection_id)
        if client is None:
            raise UnknownConnectionError(f"Unknown connection: {connection_id}")
        return client

    @contextmanager
    def _run(self, connection_id: str) -> Generator[None, None, None]:
        with self._locks_guard:
            lock = self._locks.setdefault(connection_id, threading.Lock())
        if not lock.acquire(blocking=False):
            raise SyncInProgressError(f"A sync of {connection_id} is already running")
        try:
            yield
        finally:
            lock.release()

    def _set_status(self, connection_id: str, status: str) -> None:
        self.store.set_connection_status(connection_id, status)

    def __repr__(self) -> str:
        return (
            f"SyncEngine(connections={sorted(self.clients)!r}, "
            f"store={self.store.db_path!r})"
        )
