"""
Tests for conflict resolution.

Tests LOCAL_WINS and REMOTE_WINS resolution of conflicts recorded by a
pull, and how each interacts with the next push.
"""

import pytest
from conftest import make_vcard

from contact_sync.storage.db import SyncConnection
from contact_sync.sync.conflict import (
    ConflictNotFoundError,
    ConflictResolver,
    PendingConflict,
    ResolutionStrategy,
)
from contact_sync.sync.contact import ContactState, FieldKind
from contact_sync.sync.normalizer import ParseError
from contact_sync.sync.pull import PullReconciler
from contact_sync.sync.push import PushReconciler

HOME = "carddav:home"


@pytest.fixture
def connection():
    return SyncConnection(id="home")


@pytest.fixture
def resolver(store):
    return ConflictResolver(store)


@pytest.fixture
def conflicted(store, connection, populated_book):
    """Pull, edit Jane locally and remotely, pull again. Returns the conflict."""
    puller = PullReconciler(store, max_workers=1)
    puller.pull(connection, populated_book)
    jane = store.find_by_source_ref(HOME, "/ab/jane.vcf")
    store.update_contact(
        jane.id, lambda c: c.set_local_values(FieldKind.TITLE, [("CTO", None)])
    )
    populated_book.edit(
        "/ab/jane.vcf",
        make_vcard("uid-jane", "Jane Doe", email="jane@remote.example", org="Acme"),
    )
    result = puller.pull(connection, populated_book)
    assert len(result.conflicts) == 1
    return result.conflicts[0]


class TestResolutionStrategy:
    """Tests for ResolutionStrategy values."""

    def test_values(self):
        assert ResolutionStrategy("local") == ResolutionStrategy.LOCAL_WINS
        assert ResolutionStrategy("remote") == ResolutionStrategy.REMOTE_WINS


class TestRemoteWins:
    """Tests for taking the remote record."""

    def test_remote_fields_applied(self, store, resolver, conflicted):
        contact = resolver.resolve(conflicted.id, ResolutionStrategy.REMOTE_WINS)

        assert contact.emails == ["jane@remote.example"]
        assert contact.values(FieldKind.TITLE) == []
        assert not contact.dirty
        assert contact.source_ref(HOME).token == conflicted.remote_token

    def test_conflict_removed(self, store, resolver, conflicted):
        resolver.resolve(conflicted.id, ResolutionStrategy.REMOTE_WINS)
        assert resolver.pending("home") == []

    def test_next_push_writes_nothing(
        self, store, resolver, conflicted, connection, populated_book
    ):
        resolver.resolve(conflicted.id, ResolutionStrategy.REMOTE_WINS)

        result = PushReconciler(store).push(connection, populated_book)

        assert result.written == 0
        assert populated_book.writes == 0


class TestLocalWins:
    """Tests for keeping local edits."""

    def test_local_fields_kept(self, store, resolver, conflicted):
        contact = resolver.resolve(conflicted.id, ResolutionStrategy.LOCAL_WINS)

        assert contact.values(FieldKind.TITLE) == ["CTO"]
        assert contact.emails == ["jane@example.com"]
        assert contact.dirty
        assert contact.source_ref(HOME).token == conflicted.remote_token

    def test_next_push_overwrites_remote(
        self, store, resolver, conflicted, connection, populated_book
    ):
        resolver.resolve(conflicted.id, ResolutionStrategy.LOCAL_WINS)

        result = PushReconciler(store).push(connection, populated_book)

        assert result.updated == 1
        assert result.conflicts == []
        raw = populated_book.members["/ab/jane.vcf"].raw
        assert b"TITLE:CTO" in raw
        assert b"jane@remote.example" not in raw
        assert not store.get_contact(conflicted.contact_id).dirty


class TestResolveErrors:
    """Tests for resolution failures."""

    def test_unknown_conflict(self, resolver):
        with pytest.raises(ConflictNotFoundError):
            resolver.resolve(999, ResolutionStrategy.LOCAL_WINS)

    def test_unparseable_remote_record(self, store, resolver, conflicted):
        store.record_conflict(
            PendingConflict(
                contact_id=conflicted.contact_id,
                connection_id="home",
                native_id="/ab/jane.vcf",
                remote_token="e9",
                raw_record=b"BEGIN:VCARD\r\nVERSION:3.0\r\nEND:VCARD\r\n",
            )
        )
        with pytest.raises(ParseError):
            resolver.resolve(conflicted.id, ResolutionStrategy.REMOTE_WINS)
        assert len(resolver.pending()) == 1

    def test_orphaned_contact_reactivated(self, store, resolver, conflicted):
        store.set_state([conflicted.contact_id], ContactState.ORPHANED)
        contact = resolver.resolve(conflicted.id, ResolutionStrategy.LOCAL_WINS)
        assert contact.state == ContactState.ACTIVE
