"""
vCard normalizer for the canonical contact model.

Parses vCard records fetched from a CardDAV address book into Contact
values and serializes Contacts back into vCard 3.0 for a given source.

Serialization is scoped and deterministic:
- Only fields owned by the target source (or unattributed) are written
- The same contact and source always produce byte-identical output,
  so a push whose output hash is unchanged can be skipped
"""

import base64
import hashlib
import logging
import re
from typing import Iterable, Optional

import vobject

from contact_sync.sync.contact import (
    Contact,
    ContactField,
    FieldKind,
    SourceRef,
)

logger = logging.getLogger(__name__)

# vCard property name for each field kind
PROPERTY_FOR_KIND = {
    FieldKind.NAME: "fn",
    FieldKind.ORGANIZATION: "org",
    FieldKind.TITLE: "title",
    FieldKind.PHONE: "tel",
    FieldKind.EMAIL: "email",
    FieldKind.ADDRESS: "adr",
    FieldKind.URL: "url",
    FieldKind.PHOTO: "photo",
    FieldKind.BIRTHDAY: "bday",
    FieldKind.NOTE: "note",
}

# Order in which kinds appear in parsed contacts
KIND_ORDER = {kind: index for index, kind in enumerate(FieldKind)}

# ADR components in vCard order
ADDRESS_PARTS = ("box", "extended", "street", "city", "region", "code", "country")

# TYPE parameter values carrying no semantic label
IGNORED_TYPES = frozenset({"internet", "base64", "b"})

DATA_URI_PATTERN = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+);base64,(?P<data>.*)$")


class ParseError(Exception):
    """Raised when a wire record is not a usable vCard."""

    pass


def canonical_order(fields: Iterable[ContactField]) -> list[ContactField]:
    """Stable-sort fields by kind, keeping record order within a kind."""
    return sorted(fields, key=lambda f: KIND_ORDER[f.kind])


def content_hash(raw: bytes) -> str:
    """Hash of a serialized record, used to detect no-op pushes."""
    return hashlib.sha256(raw).hexdigest()


class ContactNormalizer:
    """
    Converts between vCard records and canonical Contacts.

    Usage:
        normalizer = ContactNormalizer()

        contact = normalizer.parse(raw_vcard, "carddav:home")
        raw = normalizer.serialize(contact, "carddav:home")
    """

    def parse(self, raw: bytes, source: str) -> Contact:
        """
        Parse a vCard into a new Contact attributed to a source.

        The returned contact has a fresh id and a SourceRef for ``source``
        holding the vCard UID. Callers that already know the contact
        reuse its fields rather than its id.

        Args:
            raw: vCard bytes as received from the remote source
            source: Source kind every parsed field is attributed to

        Returns:
            Contact populated from the record

        Raises:
            ParseError: If the bytes are not a vCard, or the UID or a
                        formatted name is missing
        """
        try:
            text = raw.decode("utf-8")
        except UnicodeDecodeError as e:
            raise ParseError(f"Record is not valid UTF-8: {e}") from e

        try:
            card = vobject.readOne(text)
        except StopIteration as e:
            raise ParseError("Record is empty") from e
        except (vobject.base.VObjectError, ValueError, AttributeError) as e:
            raise ParseError(f"Malformed vCard: {e}") from e

        if card.name.upper() != "VCARD":
            raise ParseError(f"Expected a VCARD, got {card.name}")

        uid = self._single_text(card, "uid")
        if not uid:
            raise ParseError("vCard has no UID")

        name = self._single_text(card, "fn") or self._name_from_n(card)
        if not name:
            raise ParseError(f"vCard {uid} has no formatted name")

        fields = [ContactField(FieldKind.NAME, name, source=source)]
        for kind in FieldKind:
            if kind == FieldKind.NAME:
                continue
            for line in card.contents.get(PROPERTY_FOR_KIND[kind], []):
                value = self._read_value(kind, line)
                if value:
                    fields.append(
                        ContactField(
                            kind=kind,
                            value=value,
                            label=self._read_label(kind, line),
                            source=source,
                        )
                    )

        contact = Contact.new(canonical_order(fields))
        contact.link(source, SourceRef(uid=uid))
        logger.debug(f"Parsed vCard {uid} ({name}) with {len(fields)} fields")
        return contact

    def serialize(self, contact: Contact, source: str) -> bytes:
        """
        Serialize the part of a contact owned by a source as vCard 3.0.

        Args:
            contact: Contact to serialize
            source: Source kind the record is written for

        Returns:
            UTF-8 vCard bytes, identical for identical input
        """
        card = vobject.vCard()

        ref = contact.source_ref(source)
        uid = ref.uid if ref and ref.uid else contact.id
        card.add("uid").value = uid

        fields = contact.fields_for_source(source)
        name = next((f.value for f in fields if f.kind == FieldKind.NAME), "")
        if not name:
            name = next((f.value for f in fields if f.kind == FieldKind.EMAIL), "")
        card.add("fn").value = name
        card.add("n").value = self._split_name(name)

        for contact_field in fields:
            # FN is single-valued and already written
            if contact_field.kind != FieldKind.NAME:
                self._write_field(card, contact_field)

        return card.serialize().encode("utf-8")

    def content_hash(self, contact: Contact, source: str) -> str:
        return content_hash(self.serialize(contact, source))

    # =========================================================================
    # Reading
    # =========================================================================

    def _single_text(self, card: vobject.base.Component, name: str) -> str:
        lines = card.contents.get(name)
        if not lines:
            return ""
        value = lines[0].value
        return value.strip() if isinstance(value, str) else ""

    def _name_from_n(self, card: vobject.base.Component) -> str:
        lines = card.contents.get("n")
        if not lines:
            return ""
        n = lines[0].value
        parts = [
            self._flatten(getattr(n, part, ""))
            for part in ("prefix", "given", "additional", "family", "suffix")
        ]
        return " ".join(p for p in parts if p)

    def _read_value(self, kind: FieldKind, line: vobject.base.ContentLine) -> str:
        value = line.value
        if kind == FieldKind.ADDRESS:
            return self._address_to_text(value)
        if kind == FieldKind.ORGANIZATION:
            if isinstance(value, (list, tuple)):
                return ", ".join(part for part in value if part)
            return str(value or "").strip()
        if kind == FieldKind.PHOTO:
            return self._photo_to_text(line)
        if isinstance(value, str):
            return value.strip()
        return str(value or "").strip()

    def _read_label(
        self, kind: FieldKind, line: vobject.base.ContentLine
    ) -> Optional[str]:
        if kind == FieldKind.PHOTO:
            return None
        types = list(line.params.get("TYPE", [])) + list(line.singletonparams)
        labels = []
        for entry in types:
            for value in entry.split(","):
                value = value.strip().lower()
                if value and value not in IGNORED_TYPES and value not in labels:
                    labels.append(value)
        return ",".join(labels) or None

    def _address_to_text(self, address: object) -> str:
        parts = [self._flatten(getattr(address, part, "")) for part in ADDRESS_PARTS]
        if not any(parts):
            return ""
        return ";".join(parts)

    def _photo_to_text(self, line: vobject.base.ContentLine) -> str:
        value = line.value
        if isinstance(value, bytes):
            subtype = (line.params.get("TYPE") or ["jpeg"])[0].lower()
            encoded = base64.b64encode(value).decode("ascii")
            return f"data:image/{subtype};base64,{encoded}"
        return str(value or "").strip()

    @staticmethod
    def _flatten(value: object) -> str:
        if isinstance(value, (list, tuple)):
            return ",".join(str(v) for v in value if v)
        return str(value or "").strip()

    # =========================================================================
    # Writing
    # =========================================================================

    def _write_field(
        self, card: vobject.base.Component, contact_field: ContactField
    ) -> None:
        kind = contact_field.kind
        item = card.add(PROPERTY_FOR_KIND[kind])

        if kind == FieldKind.ADDRESS:
            parts = (contact_field.value.split(";") + [""] * len(ADDRESS_PARTS))[
                : len(ADDRESS_PARTS)
            ]
            item.value = vobject.vcard.Address(**dict(zip(ADDRESS_PARTS, parts)))
        elif kind == FieldKind.ORGANIZATION:
            item.value = [contact_field.value]
        elif kind == FieldKind.PHOTO:
            match = DATA_URI_PATTERN.match(contact_field.value)
            if match:
                item.encoding_param = "b"
                item.type_param = match.group("mime").split("/", 1)[1].upper()
                item.value = base64.b64decode(match.group("data"))
            else:
                item.value_param = "uri"
                item.value = contact_field.value
            return
        else:
            item.value = contact_field.value

        if contact_field.label:
            item.params["TYPE"] = [
                label.upper() for label in contact_field.label.split(",")
            ]

    @staticmethod
    def _split_name(name: str) -> vobject.vcard.Name:
        words = name.split()
        if len(words) < 2:
            return vobject.vcard.Name(given=name)
        return vobject.vcard.Name(family=words[-1], given=" ".join(words[:-1]))
