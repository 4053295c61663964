"""
Canonical contact model for CardDAV and social-profile synchronization.

Provides the source-independent Contact representation shared by the
pull and push reconcilers and the import merger, with helpers for:
- Source kinds (``carddav:<connection>``, ``linkedin:<connection>``)
- Per-source references carrying the remote identifier and ETag
- Typed, labelled, source-attributed field values
- Normalized identity keys used by the identity matcher
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, Optional

from contact_sync.utils.normalization import (
    DEFAULT_PHONE_REGION,
    normalize_email,
    normalize_phone,
    normalize_string,
)

CARDDAV = "carddav"
LINKEDIN = "linkedin"


def source_kind(source: str, connection_id: str) -> str:
    """Build a source kind key such as ``carddav:home``."""
    return f"{source}:{connection_id}"


def split_source_kind(kind: str) -> tuple[str, str]:
    """Split ``carddav:home`` into ``("carddav", "home")``."""
    source, _, connection_id = kind.partition(":")
    if not connection_id:
        raise ValueError(f"Invalid source kind: {kind!r}")
    return source, connection_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ContactState(str, Enum):
    """Lifecycle state of a canonical contact."""

    ACTIVE = "active"
    HIDDEN = "hidden"  # User soft-delete, terminal local override
    ORPHANED = "orphaned"  # Remote counterpart missing, pending review


class FieldKind(str, Enum):
    """Kinds of values a contact can hold."""

    NAME = "name"
    ORGANIZATION = "organization"
    TITLE = "title"
    PHONE = "phone"
    EMAIL = "email"
    ADDRESS = "address"
    URL = "url"
    PHOTO = "photo"
    BIRTHDAY = "birthday"
    NOTE = "note"


# Kinds that hold at most one value per source
SINGLE_VALUED_KINDS = frozenset(
    {
        FieldKind.NAME,
        FieldKind.ORGANIZATION,
        FieldKind.TITLE,
        FieldKind.PHOTO,
        FieldKind.BIRTHDAY,
        FieldKind.NOTE,
    }
)


@dataclass(frozen=True)
class ContactField:
    """
    One typed value of a contact.

    Attributes:
        kind: What the value is (name, phone, email, ...)
        value: The value as text. Addresses are the seven vCard ADR
               components joined with ";". Photos are a URL or a data: URI.
        label: Semantic label such as "work" or "cell"
        source: Source kind the value came from, or None for local values
    """

    kind: FieldKind
    value: str
    label: Optional[str] = None
    source: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "kind": self.kind.value,
            "value": self.value,
            "label": self.label,
            "source": self.source,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ContactField":
        return cls(
            kind=FieldKind(data["kind"]),
            value=data["value"],
            label=data.get("label"),
            source=data.get("source"),
        )


@dataclass
class SourceRef:
    """
    Link between a contact and one source.

    Attributes:
        native_id: Remote href (CardDAV) or profile identifier (LinkedIn).
                   None for a CardDAV link that has not been created remotely.
        token: Concurrency token (ETag) last seen for the remote record
        uid: vCard UID of the remote record
        content_hash: Hash of the serialized record last known to match remote
    """

    native_id: Optional[str] = None
    token: Optional[str] = None
    uid: Optional[str] = None
    content_hash: Optional[str] = None

    def to_dict(self) -> dict[str, Optional[str]]:
        return {
            "native_id": self.native_id,
            "token": self.token,
            "uid": self.uid,
            "content_hash": self.content_hash,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SourceRef":
        return cls(
            native_id=data.get("native_id"),
            token=data.get("token"),
            uid=data.get("uid"),
            content_hash=data.get("content_hash"),
        )


@dataclass
class Contact:
    """
    Canonical, source-independent contact record.

    Attributes:
        id: Stable local identifier, never reused
        source_refs: Source kind -> SourceRef, at most one entry per kind
        fields: Ordered list of typed values
        state: active, hidden or orphaned
        dirty: True when a local change has not been pushed to its
               CardDAV source yet
        updated_at: Last modification timestamp (UTC)

    Usage:
        contact = Contact.new()
        contact.add_field(FieldKind.EMAIL, "jane@example.com", label="work")
        contact.link("carddav:home", SourceRef(native_id="/ab/jane.vcf"))
    """

    id: str
    source_refs: dict[str, SourceRef] = field(default_factory=dict)
    fields: list[ContactField] = field(default_factory=list)
    state: ContactState = ContactState.ACTIVE
    dirty: bool = False
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(cls, fields: Optional[Iterable[ContactField]] = None) -> "Contact":
        """Create a contact with a freshly assigned id."""
        return cls(id=uuid.uuid4().hex, fields=list(fields or []))

    # =========================================================================
    # Field access
    # =========================================================================

    @property
    def display_name(self) -> str:
        return self.first_value(FieldKind.NAME) or ""

    @property
    def organization(self) -> str:
        return self.first_value(FieldKind.ORGANIZATION) or ""

    @property
    def emails(self) -> list[str]:
        return self.values(FieldKind.EMAIL)

    @property
    def phones(self) -> list[str]:
        return self.values(FieldKind.PHONE)

    @property
    def is_hidden(self) -> bool:
        return self.state == ContactState.HIDDEN

    @property
    def is_orphaned(self) -> bool:
        return self.state == ContactState.ORPHANED

    def values(self, kind: FieldKind) -> list[str]:
        return [f.value for f in self.fields if f.kind == kind]

    def first_value(self, kind: FieldKind) -> Optional[str]:
        for f in self.fields:
            if f.kind == kind and f.value:
                return f.value
        return None

    def has_kind(self, kind: FieldKind) -> bool:
        return any(f.kind == kind and f.value for f in self.fields)

    def fields_for_source(self, kind: str) -> list[ContactField]:
        """Fields attributable to a source: its own plus unattributed ones."""
        return [f for f in self.fields if f.source in (kind, None)]

    def add_field(
        self,
        kind: FieldKind,
        value: str,
        label: Optional[str] = None,
        source: Optional[str] = None,
    ) -> ContactField:
        contact_field = ContactField(kind=kind, value=value, label=label, source=source)
        self.fields.append(contact_field)
        return contact_field

    def replace_source_fields(
        self, kind: str, new_fields: Iterable[ContactField]
    ) -> bool:
        """
        Replace every field owned by a source with a new set.

        Fields from other sources and unattributed fields keep their place.
        The new fields are tagged with the source and take the position of
        the first field the source owned, or go at the end if it owned none.

        Returns:
            True if the contact's fields changed
        """
        incoming = [replace(f, source=kind) for f in new_fields]
        if [f for f in self.fields if f.source == kind] == incoming:
            return False

        position = next(
            (i for i, f in enumerate(self.fields) if f.source == kind), None
        )
        kept = [f for f in self.fields if f.source != kind]
        if position is None:
            position = len(kept)
        else:
            # Number of other-source fields ahead of the source's first field
            position = sum(1 for f in self.fields[:position] if f.source != kind)
        self.fields = kept[:position] + incoming + kept[position:]
        return True

    def set_local_values(
        self, kind: FieldKind, values: Iterable[tuple[str, Optional[str]]]
    ) -> None:
        """
        Apply a user edit replacing all values of one field kind.

        The new values are attributed to the contact's CardDAV source (if it
        is linked to one) so they are pushed upstream, and the contact is
        marked dirty.

        Args:
            kind: Field kind being edited
            values: (value, label) pairs
        """
        owner = self.carddav_source()
        position = next(
            (i for i, f in enumerate(self.fields) if f.kind == kind), len(self.fields)
        )
        remaining = [f for f in self.fields if f.kind != kind]
        edited = [
            ContactField(kind=kind, value=value, label=label, source=owner)
            for value, label in values
            if value
        ]
        position = min(position, len(remaining))
        self.fields = remaining[:position] + edited + remaining[position:]
        if owner is not None:
            self.dirty = True
        self.touch()

    # =========================================================================
    # Source references
    # =========================================================================

    def source_ref(self, kind: str) -> Optional[SourceRef]:
        return self.source_refs.get(kind)

    def link(self, kind: str, ref: SourceRef) -> None:
        """Add or replace the reference for a source kind."""
        self.source_refs[kind] = ref

    def apply_remote(self, kind: str, remote: "Contact", ref: SourceRef) -> bool:
        """
        Take a source's version of the contact as authoritative.

        Replaces the fields owned by ``kind`` with the remote record's
        fields and stores the new reference. Unattributed fields and fields
        from other sources are left alone.

        Returns:
            True if the fields changed
        """
        remote_ref = remote.source_ref(kind)
        if remote_ref is not None and ref.uid is None:
            ref.uid = remote_ref.uid
        changed = self.replace_source_fields(
            kind, [f for f in remote.fields if f.source == kind]
        )
        self.link(kind, ref)
        return changed

    def carddav_source(self) -> Optional[str]:
        """Return the first CardDAV source kind this contact is linked to."""
        for kind in self.source_refs:
            if kind.startswith(f"{CARDDAV}:"):
                return kind
        return None

    def touch(self) -> None:
        self.updated_at = utcnow()

    # =========================================================================
    # Identity keys
    # =========================================================================

    def email_keys(self) -> list[str]:
        """Normalized email addresses, in field order, without blanks."""
        return [k for k in (normalize_email(e) for e in self.emails) if k]

    def phone_keys(self, default_region: str = DEFAULT_PHONE_REGION) -> list[str]:
        """Normalized phone numbers, in field order, without unusable ones."""
        return [k for k in (normalize_phone(p, default_region) for p in self.phones) if k]

    def name_key(self) -> str:
        return normalize_string(self.display_name)

    def organization_key(self) -> str:
        return normalize_string(self.organization)

    def is_valid(self) -> bool:
        """A contact needs at least a name or an email to be useful."""
        return bool(self.display_name or self.emails)

    def __repr__(self) -> str:
        return (
            f"Contact(id={self.id!r}, "
            f"display_name={self.display_name!r}, "
            f"state={self.state.value!r}, dirty={self.dirty!r})"
        )
