"""
SQLite canonical contact store.

Provides persistent storage for reconciled contacts, their per-source
references, per-connection sync state and pending sync conflicts.

Contacts are read and written as whole records. Read-modify-write of one
contact goes through update_contact(), which holds a per-contact lock and
runs inside a single transaction so concurrent workers cannot interleave
on the same contact id.
"""

import json
import logging
import sqlite3
import threading
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Iterable, Optional

from contact_sync.sync.conflict import PendingConflict
from contact_sync.sync.contact import (
    Contact,
    ContactField,
    ContactState,
    SourceRef,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS contacts (
    id TEXT PRIMARY KEY,
    state TEXT NOT NULL DEFAULT 'active',
    dirty INTEGER NOT NULL DEFAULT 0,
    fields TEXT NOT NULL DEFAULT '[]',
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS source_refs (
    id INTEGER PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    source_kind TEXT NOT NULL,
    native_id TEXT,
    token TEXT,
    uid TEXT,
    content_hash TEXT,
    UNIQUE(contact_id, source_kind),
    UNIQUE(source_kind, native_id)
);

CREATE INDEX IF NOT EXISTS idx_source_refs_kind ON source_refs(source_kind);
CREATE INDEX IF NOT EXISTS idx_contacts_state ON contacts(state);

CREATE TABLE IF NOT EXISTS sync_connections (
    id TEXT PRIMARY KEY,
    last_sync_token TEXT,
    last_pull_at TEXT,
    last_push_at TEXT,
    member_count INTEGER DEFAULT 0,
    status TEXT NOT NULL DEFAULT 'idle'
);

CREATE TABLE IF NOT EXISTS pending_conflicts (
    id INTEGER PRIMARY KEY,
    contact_id TEXT NOT NULL REFERENCES contacts(id) ON DELETE CASCADE,
    connection_id TEXT NOT NULL,
    native_id TEXT NOT NULL,
    remote_token TEXT,
    raw_record BLOB NOT NULL,
    detected_at TEXT NOT NULL,
    UNIQUE(contact_id, connection_id)
);

CREATE INDEX IF NOT EXISTS idx_conflicts_connection ON pending_conflicts(connection_id);
"""

# Connection status values
STATUS_IDLE = "idle"
STATUS_SYNCING = "syncing"
STATUS_ERROR = "error"


class StoreError(Exception):
    """Raised when a store operation violates an invariant or fails."""

    pass


@dataclass
class SyncConnection:
    """
    Persistent sync state of one configured remote address book.

    Credentials are not stored here; they come from configuration and are
    only seen by the CardDAV client.
    """

    id: str
    last_sync_token: Optional[str] = None
    last_pull_at: Optional[datetime] = None
    last_push_at: Optional[datetime] = None
    member_count: int = 0
    status: str = STATUS_IDLE


def _to_text(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _from_text(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class ContactStore:
    """
    SQLite store for canonical contacts and sync state.

    Usage:
        store = ContactStore('/path/to/contacts.db')
        store.initialize()

        # Or use in-memory for testing:
        store = ContactStore(':memory:')
        store.initialize()

        contact = store.find_by_source_ref("carddav:home", "/ab/jane.vcf")
        store.update_contact(contact.id, lambda c: c.touch())
    """

    def __init__(self, db_path: str):
        """
        Initialize the store.

        Args:
            db_path: Path to SQLite database file, or ':memory:' for in-memory database
        """
        self.db_path = db_path
        self._shared_connection: Optional[sqlite3.Connection] = None
        # Serializes use of the shared in-memory connection across threads
        self._shared_lock = threading.RLock()
        # Per-contact lock and the number of threads holding or waiting on it
        self._contact_locks: dict[str, tuple[threading.Lock, int]] = {}
        self._contact_locks_guard = threading.Lock()

    @property
    def _is_shared(self) -> bool:
        return self.db_path == ":memory:"

    def _get_connection(self) -> sqlite3.Connection:
        if self._is_shared:
            if self._shared_connection is None:
                self._shared_connection = sqlite3.connect(
                    ":memory:", check_same_thread=False
                )
                self._shared_connection.row_factory = sqlite3.Row
                self._shared_connection.execute("PRAGMA foreign_keys = ON")
            return self._shared_connection

        conn = sqlite3.connect(self.db_path, timeout=30.0)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        return conn

    @contextmanager
    def connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Context manager for one transaction.

        Commits on success, rolls back on any exception. Integrity
        violations are re-raised as StoreError.
        """
        if self._is_shared:
            self._shared_lock.acquire()
        conn = self._get_connection()
        try:
            yield conn
            conn.commit()
        except sqlite3.IntegrityError as e:
            conn.rollback()
            raise StoreError(f"Store integrity violation: {e}") from e
        except Exception:
            conn.rollback()
            raise
        finally:
            if self._is_shared:
                self._shared_lock.release()
            else:
                conn.close()

    def initialize(self) -> None:
        """Create the schema if it does not exist."""
        with self.connection() as conn:
            conn.executescript(SCHEMA)

    # =========================================================================
    # Contact Operations
    # =========================================================================

    def get_contact(self, contact_id: str) -> Optional[Contact]:
        with self.connection() as conn:
            return self._load(conn, contact_id)

    def save_contact(self, contact: Contact) -> None:
        """
        Insert or fully replace a contact and its source references.

        Raises:
            StoreError: If a source reference is already held by another contact
        """
        with self._contact_lock(contact.id):
            with self.connection() as conn:
                self._write(conn, contact)

    def update_contact(
        self, contact_id: str, mutate: Callable[[Contact], Optional[bool]]
    ) -> Optional[Contact]:
        """
        Atomically read, modify and write one contact.

        The mutator receives the current contact and changes it in place.
        Returning False skips the write; any other return value writes.
        An exception from the mutator rolls the transaction back.

        Args:
            contact_id: Id of the contact to update
            mutate: Callable applied to the loaded contact

        Returns:
            The contact after mutation, or None if it does not exist
        """
        with self._contact_lock(contact_id):
            with self.connection() as conn:
                contact = self._load(conn, contact_id)
                if contact is None:
                    return None
                if mutate(contact) is not False:
                    self._write(conn, contact)
                return contact

    def find_by_source_ref(self, source_kind: str, native_id: str) -> Optional[Contact]:
        """Look up the contact linked to a remote record."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT contact_id FROM source_refs "
                "WHERE source_kind = ? AND native_id = ?",
                (source_kind, native_id),
            ).fetchone()
            if row is None:
                return None
            return self._load(conn, row["contact_id"])

    def list_contacts(self, state: Optional[ContactState] = None) -> list[Contact]:
        """List contacts, optionally restricted to one state, oldest first."""
        query = "SELECT id FROM contacts"
        params: tuple[Any, ...] = ()
        if state is not None:
            query += " WHERE state = ?"
            params = (state.value,)
        query += " ORDER BY created_at, id"
        with self.connection() as conn:
            ids = [row["id"] for row in conn.execute(query, params).fetchall()]
            return self._load_many(conn, ids)

    def list_linked(self, source_kind: str) -> list[Contact]:
        """List contacts holding a reference for one source kind."""
        with self.connection() as conn:
            ids = [
                row["contact_id"]
                for row in conn.execute(
                    """
                    SELECT r.contact_id FROM source_refs r
                    JOIN contacts c ON c.id = r.contact_id
                    WHERE r.source_kind = ?
                    ORDER BY c.created_at, c.id
                    """,
                    (source_kind,),
                ).fetchall()
            ]
            return self._load_many(conn, ids)

    def list_linked_to_any(self) -> list[Contact]:
        """List contacts linked to at least one source."""
        with self.connection() as conn:
            ids = [
                row["id"]
                for row in conn.execute(
                    """
                    SELECT c.id FROM contacts c
                    WHERE EXISTS (SELECT 1 FROM source_refs r WHERE r.contact_id = c.id)
                    ORDER BY c.created_at, c.id
                    """
                ).fetchall()
            ]
            return self._load_many(conn, ids)

    def set_state(self, contact_ids: Iterable[str], state: ContactState) -> int:
        """
        Set the state of several contacts.

        Returns:
            Number of contacts updated
        """
        changed: list[str] = []

        def apply(contact: Contact) -> bool:
            if contact.state == state:
                return False
            contact.state = state
            contact.touch()
            changed.append(contact.id)
            return True

        for contact_id in contact_ids:
            self.update_contact(contact_id, apply)
        return len(changed)

    def count_by_state(self) -> dict[str, int]:
        with self.connection() as conn:
            rows = conn.execute(
                "SELECT state, COUNT(*) AS n FROM contacts GROUP BY state"
            ).fetchall()
            counts = {state.value: 0 for state in ContactState}
            counts.update({row["state"]: row["n"] for row in rows})
            counts["dirty"] = conn.execute(
                "SELECT COUNT(*) AS n FROM contacts WHERE dirty = 1"
            ).fetchone()["n"]
            return counts

    # =========================================================================
    # Connection State Operations
    # =========================================================================

    def get_connection_state(self, connection_id: str) -> SyncConnection:
        """Return stored sync state, or a fresh state for an unseen connection."""
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM sync_connections WHERE id = ?", (connection_id,)
            ).fetchone()
        if row is None:
            return SyncConnection(id=connection_id)
        return SyncConnection(
            id=row["id"],
            last_sync_token=row["last_sync_token"],
            last_pull_at=_from_text(row["last_pull_at"]),
            last_push_at=_from_text(row["last_push_at"]),
            member_count=row["member_count"] or 0,
            status=row["status"],
        )

    def save_connection_state(self, state: SyncConnection) -> None:
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO sync_connections (
                    id, last_sync_token, last_pull_at, last_push_at,
                    member_count, status
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    last_sync_token = excluded.last_sync_token,
                    last_pull_at = excluded.last_pull_at,
                    last_push_at = excluded.last_push_at,
                    member_count = excluded.member_count,
                    status = excluded.status
                """,
                (
                    state.id,
                    state.last_sync_token,
                    _to_text(state.last_pull_at),
                    _to_text(state.last_push_at),
                    state.member_count,
                    state.status,
                ),
            )

    def set_connection_status(self, connection_id: str, status: str) -> None:
        state = self.get_connection_state(connection_id)
        state.status = status
        self.save_connection_state(state)

    def list_connection_states(self) -> list[SyncConnection]:
        with self.connection() as conn:
            ids = [
                row["id"]
                for row in conn.execute(
                    "SELECT id FROM sync_connections ORDER BY id"
                ).fetchall()
            ]
        return [self.get_connection_state(connection_id) for connection_id in ids]

    # =========================================================================
    # Conflict Operations
    # =========================================================================

    def record_conflict(self, conflict: PendingConflict) -> PendingConflict:
        """
        Store a pending conflict, replacing an older one for the same
        contact and connection.

        Returns:
            The conflict with its id assigned
        """
        with self.connection() as conn:
            conn.execute(
                """
                INSERT INTO pending_conflicts (
                    contact_id, connection_id, native_id, remote_token,
                    raw_record, detected_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(contact_id, connection_id) DO UPDATE SET
                    native_id = excluded.native_id,
                    remote_token = excluded.remote_token,
                    raw_record = excluded.raw_record,
                    detected_at = excluded.detected_at
                """,
                (
                    conflict.contact_id,
                    conflict.connection_id,
                    conflict.native_id,
                    conflict.remote_token,
                    conflict.raw_record,
                    _to_text(conflict.detected_at),
                ),
            )
            row = conn.execute(
                "SELECT id FROM pending_conflicts "
                "WHERE contact_id = ? AND connection_id = ?",
                (conflict.contact_id, conflict.connection_id),
            ).fetchone()
        conflict.id = row["id"]
        return conflict

    def get_conflict(self, conflict_id: int) -> Optional[PendingConflict]:
        with self.connection() as conn:
            row = conn.execute(
                "SELECT * FROM pending_conflicts WHERE id = ?", (conflict_id,)
            ).fetchone()
        return self._conflict_from_row(row) if row else None

    def list_conflicts(self, connection_id: Optional[str] = None) -> list[PendingConflict]:
        query = "SELECT * FROM pending_conflicts"
        params: tuple[Any, ...] = ()
        if connection_id is not None:
            query += " WHERE connection_id = ?"
            params = (connection_id,)
        query += " ORDER BY detected_at, id"
        with self.connection() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._conflict_from_row(row) for row in rows]

    def delete_conflict(self, conflict_id: int) -> bool:
        with self.connection() as conn:
            cursor = conn.execute(
                "DELETE FROM pending_conflicts WHERE id = ?", (conflict_id,)
            )
            return cursor.rowcount > 0

    # =========================================================================
    # Internals
    # =========================================================================

    @contextmanager
    def _contact_lock(self, contact_id: str) -> Generator[None, None, None]:
        with self._contact_locks_guard:
            lock, users = self._contact_locks.get(contact_id, (threading.Lock(), 0))
            self._contact_locks[contact_id] = (lock, users + 1)
        try:
            with lock:
                yield
        finally:
            with self._contact_locks_guard:
                lock, users = self._contact_locks[contact_id]
                if users == 1:
                    del self._contact_locks[contact_id]
                else:
                    self._contact_locks[contact_id] = (lock, users - 1)

    def _load(self, conn: sqlite3.Connection, contact_id: str) -> Optional[Contact]:
        row = conn.execute(
            "SELECT * FROM contacts WHERE id = ?", (contact_id,)
        ).fetchone()
        if row is None:
            return None

        refs = conn.execute(
            "SELECT * FROM source_refs WHERE contact_id = ? ORDER BY id",
            (contact_id,),
        ).fetchall()

        return Contact(
            id=row["id"],
            source_refs={
                ref["source_kind"]: SourceRef(
                    native_id=ref["native_id"],
                    token=ref["token"],
                    uid=ref["uid"],
                    content_hash=ref["content_hash"],
                )
                for ref in refs
            },
            fields=[ContactField.from_dict(f) for f in json.loads(row["fields"])],
            state=ContactState(row["state"]),
            dirty=bool(row["dirty"]),
            updated_at=_from_text(row["updated_at"]) or utcnow(),
        )

    def _load_many(self, conn: sqlite3.Connection, ids: list[str]) -> list[Contact]:
        contacts = []
        for contact_id in ids:
            contact = self._load(conn, contact_id)
            if contact is not None:
                contacts.append(contact)
        return contacts

    def _write(self, conn: sqlite3.Connection, contact: Contact) -> None:
        fields_json = json.dumps([f.to_dict() for f in contact.fields])
        conn.execute(
            """
            INSERT INTO contacts (id, state, dirty, fields, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                state = excluded.state,
                dirty = excluded.dirty,
                fields = excluded.fields,
                updated_at = excluded.updated_at
            """,
            (
                contact.id,
                contact.state.value,
                int(contact.dirty),
                fields_json,
                _to_text(utcnow()),
                _to_text(contact.updated_at),
            ),
        )

        conn.execute("DELETE FROM source_refs WHERE contact_id = ?", (contact.id,))
        for kind, ref in contact.source_refs.items():
            conn.execute(
                """
                INSERT INTO source_refs (
                    contact_id, source_kind, native_id, token, uid, content_hash
                ) VALUES (?, ?, ?, ?, ?, ?)
                """,
                (contact.id, kind, ref.native_id, ref.token, ref.uid, ref.content_hash),
            )

    @staticmethod
    def _conflict_from_row(row: sqlite3.Row) -> PendingConflict:
        return PendingConflict(
            id=row["id"],
            contact_id=row["contact_id"],
            connection_id=row["connection_id"],
            native_id=row["native_id"],
            remote_token=row["remote_token"],
            raw_record=bytes(row["raw_record"]),
            detected_at=_from_text(row["detected_at"]) or utcnow(),
        )

    def __repr__(self) -> str:
        return f"ContactStore(db_path={self.db_path!r})"
