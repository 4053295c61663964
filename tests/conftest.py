"""
Shared fixtures for the contact_sync test suite.

Provides an in-memory CardDAV address book that behaves like a server
(ETags, conditional writes, deletions) and in-memory stores.
"""

import itertools
import threading
from typing import Optional

import pytest

from contact_sync.api.carddav import (
    MemberNotFound,
    PreconditionFailed,
    RemoteMember,
)
from contact_sync.storage.db import ContactStore


def make_vcard(
    uid: str,
    fn: str,
    email: Optional[str] = None,
    tel: Optional[str] = None,
    org: Optional[str] = None,
    title: Optional[str] = None,
) -> bytes:
    """Build a minimal vCard 3.0 record."""
    words = fn.split()
    family = words[-1] if len(words) > 1 else ""
    given = " ".join(words[:-1]) if len(words) > 1 else fn
    lines = [
        "BEGIN:VCARD",
        "VERSION:3.0",
        f"UID:{uid}",
        f"FN:{fn}",
        f"N:{family};{given};;;",
    ]
    if email:
        lines.append(f"EMAIL;TYPE=INTERNET,WORK:{email}")
    if tel:
        lines.append(f"TEL;TYPE=CELL:{tel}")
    if org:
        lines.append(f"ORG:{org}")
    if title:
        lines.append(f"TITLE:{title}")
    lines.append("END:VCARD")
    return ("\r\n".join(lines) + "\r\n").encode("utf-8")


class FakeAddressBook:
    """
    In-memory replacement for CardDAVClient.

    Attributes:
        members: href -> RemoteMember currently on the "server"
        writes: Number of successful create/update calls
        list_error: Raised by list_members() when set
        write_errors: href -> exception raised by update_member()
        create_error: Raised by create_member() when set
    """

    def __init__(self):
        self.members: dict[str, RemoteMember] = {}
        self.writes = 0
        self.list_error: Optional[Exception] = None
        self.write_errors: dict[str, Exception] = {}
        self.create_error: Optional[Exception] = None
        self._counter = itertools.count(1)
        self._lock = threading.Lock()

    def _next(self) -> int:
        with self._lock:
            return next(self._counter)

    # Server-side changes, not counted as writes

    def add(self, href: str, raw: bytes, etag: Optional[str] = None) -> RemoteMember:
        member = RemoteMember(href=href, etag=etag or f"etag-{self._next()}", raw=raw)
        self.members[href] = member
        return member

    def edit(self, href: str, raw: bytes) -> RemoteMember:
        return self.add(href, raw)

    def remove(self, href: str) -> None:
        del self.members[href]

    # CardDAVClient interface

    def list_members(self) -> list[RemoteMember]:
        if self.list_error is not None:
            raise self.list_error
        return list(self.members.values())

    def get_member(self, href: str) -> RemoteMember:
        if href not in self.members:
            raise MemberNotFound(f"Member not found: {href}")
        return self.members[href]

    def create_member(self, raw: bytes) -> tuple[str, Optional[str]]:
        if self.create_error is not None:
            raise self.create_error
        n = self._next()
        href = f"/ab/new-{n}.vcf"
        member = RemoteMember(href=href, etag=f"etag-{n}", raw=raw)
        with self._lock:
            self.members[href] = member
            self.writes += 1
        return href, member.etag

    def update_member(
        self, href: str, raw: bytes, expected_etag: Optional[str]
    ) -> Optional[str]:
        if href in self.write_errors:
            raise self.write_errors[href]
        with self._lock:
            current = self.members.get(href)
            if current is None or (expected_etag and current.etag != expected_etag):
                raise PreconditionFailed(f"Member {href} changed on the server")
            etag = f"etag-{next(self._counter)}"
            self.members[href] = RemoteMember(href=href, etag=etag, raw=raw)
            self.writes += 1
        return etag


@pytest.fixture
def store():
    """Create an initialized in-memory store."""
    contact_store = ContactStore(":memory:")
    contact_store.initialize()
    return contact_store


@pytest.fixture
def book():
    """Create an empty fake address book."""
    return FakeAddressBook()


@pytest.fixture
def populated_book(book):
    """Create a fake address book with three members."""
    book.add(
        "/ab/jane.vcf",
        make_vcard("uid-jane", "Jane Doe", email="jane@example.com", org="Acme"),
    )
    book.add(
        "/ab/john.vcf",
        make_vcard("uid-john", "John Smith", tel="+61 412 345 678"),
    )
    book.add(
        "/ab/ann.vcf",
        make_vcard("uid-ann", "Ann Lee", email="ann@example.org"),
    )
    return book
