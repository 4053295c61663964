"""
Tests for the vCard normalizer.

Tests parsing vCards into canonical contacts, scoped deterministic
serialization, and content hashing.
"""

import hashlib

import pytest
import vobject
from conftest import make_vcard

from contact_sync.sync.contact import Contact, ContactField, FieldKind, SourceRef
from contact_sync.sync.normalizer import (
    ContactNormalizer,
    ParseError,
    canonical_order,
    content_hash,
)

HOME = "carddav:home"


@pytest.fixture
def normalizer():
    return ContactNormalizer()


class TestParse:
    """Tests for ContactNormalizer.parse."""

    def test_parse_basic_card(self, normalizer):
        raw = make_vcard(
            "uid-1", "Jane Doe", email="jane@example.com", tel="0412 345 678", org="Acme"
        )
        contact = normalizer.parse(raw, HOME)

        assert contact.display_name == "Jane Doe"
        assert contact.emails == ["jane@example.com"]
        assert contact.phones == ["0412 345 678"]
        assert contact.organization == "Acme"
        assert contact.source_ref(HOME).uid == "uid-1"
        assert all(f.source == HOME for f in contact.fields)

    def test_parse_labels(self, normalizer):
        """TYPE parameters become labels; INTERNET carries no meaning."""
        contact = normalizer.parse(
            make_vcard("uid-1", "Jane Doe", email="jane@example.com", tel="5550100"),
            HOME,
        )
        email = next(f for f in contact.fields if f.kind == FieldKind.EMAIL)
        phone = next(f for f in contact.fields if f.kind == FieldKind.PHONE)
        assert email.label == "work"
        assert phone.label == "cell"

    def test_parse_address(self, normalizer):
        raw = (
            b"BEGIN:VCARD\r\nVERSION:3.0\r\nUID:uid-2\r\nFN:Ann Lee\r\n"
            b"ADR;TYPE=HOME:;;1 Main St;Sydney;NSW;2000;Australia\r\nEND:VCARD\r\n"
        )
        contact = normalizer.parse(raw, HOME)
        assert contact.values(FieldKind.ADDRESS) == [
            ";;1 Main St;Sydney;NSW;2000;Australia"
        ]

    def test_parse_name_from_n_when_fn_missing(self, normalizer):
        raw = b"BEGIN:VCARD\r\nVERSION:3.0\r\nUID:uid-3\r\nN:Lee;Ann;;;\r\nEND:VCARD\r\n"
        assert normalizer.parse(raw, HOME).display_name == "Ann Lee"

    def test_parse_fields_in_canonical_order(self, normalizer):
        raw = make_vcard("uid-1", "Jane Doe", email="j@example.com", tel="5550100")
        kinds = [f.kind for f in normalizer.parse(raw, HOME).fields]
        assert kinds == [FieldKind.NAME, FieldKind.PHONE, FieldKind.EMAIL]

    def test_missing_uid_raises(self, normalizer):
        raw = b"BEGIN:VCARD\r\nVERSION:3.0\r\nFN:No Uid\r\nEND:VCARD\r\n"
        with pytest.raises(ParseError, match="UID"):
            normalizer.parse(raw, HOME)

    def test_missing_name_raises(self, normalizer):
        raw = b"BEGIN:VCARD\r\nVERSION:3.0\r\nUID:uid-4\r\nEND:VCARD\r\n"
        with pytest.raises(ParseError, match="formatted name"):
            normalizer.parse(raw, HOME)

    def test_invalid_utf8_raises(self, normalizer):
        with pytest.raises(ParseError):
            normalizer.parse(b"\xff\xfe\x00garbage", HOME)

    def test_empty_record_raises(self, normalizer):
        with pytest.raises(ParseError):
            normalizer.parse(b"", HOME)

    def test_non_vcard_component_raises(self, normalizer):
        raw = b"BEGIN:VCALENDAR\r\nVERSION:2.0\r\nEND:VCALENDAR\r\n"
        with pytest.raises(ParseError):
            normalizer.parse(raw, HOME)


class TestSerialize:
    """Tests for ContactNormalizer.serialize."""

    def _contact(self):
        contact = Contact.new(
            [
                ContactField(FieldKind.NAME, "Jane Doe", source=HOME),
                ContactField(FieldKind.EMAIL, "jane@example.com", "work", HOME),
                ContactField(FieldKind.ORGANIZATION, "Acme", source=HOME),
                ContactField(FieldKind.TITLE, "Engineer", source="linkedin:main"),
            ]
        )
        contact.link(HOME, SourceRef(native_id="/ab/jane.vcf", uid="uid-jane"))
        return contact

    def test_serialize_is_deterministic(self, normalizer):
        contact = self._contact()
        assert normalizer.serialize(contact, HOME) == normalizer.serialize(
            contact, HOME
        )

    def test_serialize_uses_ref_uid(self, normalizer):
        card = vobject.readOne(normalizer.serialize(self._contact(), HOME).decode())
        assert card.uid.value == "uid-jane"
        assert card.fn.value == "Jane Doe"
        assert card.version.value == "3.0"

    def test_serialize_falls_back_to_contact_id(self, normalizer):
        contact = Contact.new([ContactField(FieldKind.NAME, "New Person")])
        card = vobject.readOne(normalizer.serialize(contact, HOME).decode())
        assert card.uid.value == contact.id

    def test_serialize_excludes_other_sources(self, normalizer):
        raw = normalizer.serialize(self._contact(), HOME)
        assert b"Engineer" not in raw
        assert b"TITLE" not in raw

    def test_serialize_writes_n(self, normalizer):
        card = vobject.readOne(normalizer.serialize(self._contact(), HOME).decode())
        assert card.n.value.family == "Doe"
        assert card.n.value.given == "Jane"

    def test_name_falls_back_to_email(self, normalizer):
        contact = Contact.new([ContactField(FieldKind.EMAIL, "solo@example.com")])
        card = vobject.readOne(normalizer.serialize(contact, HOME).decode())
        assert card.fn.value == "solo@example.com"

    def test_serialized_record_parses_back(self, normalizer):
        parsed = normalizer.parse(normalizer.serialize(self._contact(), HOME), HOME)
        assert parsed.display_name == "Jane Doe"
        assert parsed.emails == ["jane@example.com"]
        assert parsed.organization == "Acme"
        assert parsed.source_ref(HOME).uid == "uid-jane"

    def test_photo_uri(self, normalizer):
        contact = self._contact()
        contact.add_field(FieldKind.PHOTO, "https://img.example.com/jane.jpg")
        raw = normalizer.serialize(contact, HOME)
        parsed = normalizer.parse(raw, HOME)
        assert parsed.values(FieldKind.PHOTO) == ["https://img.example.com/jane.jpg"]


class TestContentHash:
    """Tests for content hashing."""

    def test_content_hash_is_sha256(self):
        assert content_hash(b"abc") == hashlib.sha256(b"abc").hexdigest()

    def test_hash_changes_with_owned_fields_only(self, normalizer):
        contact = Contact.new([ContactField(FieldKind.NAME, "Jane Doe", source=HOME)])
        before = normalizer.content_hash(contact, HOME)

        contact.add_field(FieldKind.TITLE, "CTO", source="linkedin:main")
        assert normalizer.content_hash(contact, HOME) == before

        contact.add_field(FieldKind.TITLE, "CTO", source=HOME)
        assert normalizer.content_hash(contact, HOME) != before


class TestCanonicalOrder:
    """Tests for canonical_order."""

    def test_stable_within_kind(self):
        fields = [
            ContactField(FieldKind.EMAIL, "b@x.com"),
            ContactField(FieldKind.NAME, "X"),
            ContactField(FieldKind.EMAIL, "a@x.com"),
        ]
        assert [f.value for f in canonical_order(fields)] == ["X", "b@x.com", "a@x.com"]
