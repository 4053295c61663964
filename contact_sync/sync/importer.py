"""
Merging of scraped social-network profiles into the canonical store.

A scrape batch is a list of LinkedIn connections. Each profile is either
attached to the contact it already belongs to, matched to an existing
contact by the identity matcher, or turned into a new contact.

Profiles only ever fill gaps: a value the contact already has is never
overwritten, and nothing the merger does marks a contact dirty, so
imported values are not pushed to any address book.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

from contact_sync.storage.db import ContactStore, StoreError
from contact_sync.sync.contact import (
    LINKEDIN,
    SINGLE_VALUED_KINDS,
    Contact,
    ContactField,
    FieldKind,
    SourceRef,
    source_kind,
)
from contact_sync.sync.matcher import IdentityMatcher
from contact_sync.sync.results import ItemError
from contact_sync.utils.normalization import (
    normalize_email,
    normalize_phone,
    normalize_string,
)

logger = logging.getLogger(__name__)

# Labels LinkedIn uses when it does not know the type
UNKNOWN_LABELS = frozenset({"", "unknown"})


def _label(value: Optional[str]) -> Optional[str]:
    label = (value or "").strip().lower()
    return None if label in UNKNOWN_LABELS else label


@dataclass
class ScrapedProfile:
    """
    One scraped LinkedIn connection.

    Attributes:
        profile_id: Public profile identifier, stable across scrapes
        emails, phones, websites: (value, label) pairs
        addresses: Free-text postal addresses
        birthday: ``--MM-DD`` (no year) or ``YYYY-MM-DD``
    """

    profile_id: str
    first_name: str = ""
    last_name: str = ""
    full_name: str = ""
    headline: str = ""
    organization: str = ""
    emails: list[tuple[str, Optional[str]]] = field(default_factory=list)
    phones: list[tuple[str, Optional[str]]] = field(default_factory=list)
    addresses: list[str] = field(default_factory=list)
    websites: list[tuple[str, Optional[str]]] = field(default_factory=list)
    photo_url: Optional[str] = None
    birthday: Optional[str] = None

    @property
    def name(self) -> str:
        if self.full_name.strip():
            return self.full_name.strip()
        return " ".join(p for p in (self.first_name.strip(), self.last_name.strip()) if p)

    @classmethod
    def from_linkedin_data(
        cls, element: dict[str, Any], profile: Optional[dict[str, Any]] = None
    ) -> "ScrapedProfile":
        """
        Build a profile from LinkedIn's connection list and profile JSON.

        Args:
            element: One entry of the connections listing
            profile: The matching profile lookup result, if it was fetched
        """
        member = element.get("connectedMemberResolutionResult") or {}
        profile = profile or {}

        phones = [
            (entry["phoneNumber"]["number"], _label(entry.get("type")))
            for entry in profile.get("phoneNumbers") or []
            if (entry.get("phoneNumber") or {}).get("number")
        ]

        emails = []
        email = profile.get("emailAddress") or {}
        if email.get("emailAddress"):
            emails.append((email["emailAddress"], _label(email.get("type"))))

        websites = [
            (entry["url"], _label(entry.get("category")))
            for entry in profile.get("websites") or []
            if entry.get("url")
        ]

        birthday = None
        born = profile.get("birthDateOn") or {}
        if born.get("month") and born.get("day"):
            birthday = f"--{int(born['month']):02d}-{int(born['day']):02d}"

        address = profile.get("address")

        return cls(
            profile_id=member.get("publicIdentifier") or "",
            first_name=member.get("firstName") or "",
            last_name=member.get("lastName") or "",
            headline=member.get("headline") or "",
            emails=emails,
            phones=phones,
            addresses=[address] if address else [],
            websites=websites,
            photo_url=cls._photo_url(member.get("profilePicture") or {}),
            birthday=birthday,
        )

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ScrapedProfile":
        """Build a profile from the flat JSON form used by import files."""

        def pairs(key: str, value_key: str) -> list[tuple[str, Optional[str]]]:
            result = []
            for entry in data.get(key) or []:
                if isinstance(entry, str):
                    result.append((entry, None))
                elif entry.get(value_key):
                    result.append((entry[value_key], _label(entry.get("type"))))
            return result

        return cls(
            profile_id=data.get("profile_id") or "",
            first_name=data.get("first_name") or "",
            last_name=data.get("last_name") or "",
            full_name=data.get("full_name") or "",
            headline=data.get("headline") or "",
            organization=data.get("organization") or "",
            emails=pairs("emails", "address"),
            phones=pairs("phones", "number"),
            addresses=list(data.get("addresses") or []),
            websites=pairs("websites", "url"),
            photo_url=data.get("photo_url"),
            birthday=data.get("birthday"),
        )

    @staticmethod
    def _photo_url(picture: dict[str, Any]) -> Optional[str]:
        image = (picture.get("displayImageReference") or {}).get("vectorImage") or {}
        artifacts = image.get("artifacts") or []
        root = image.get("rootUrl")
        if not artifacts or not root:
            return None
        largest = max(artifacts, key=lambda a: a.get("width") or 0)
        segment = largest.get("fileIdentifyingUrlPathSegment")
        return root + segment if segment else None

    def to_fields(self, source: str) -> list[ContactField]:
        """Contact fields for this profile, attributed to ``source``."""
        fields = []

        def add(kind: FieldKind, value: Optional[str], label: Optional[str] = None):
            if value and value.strip():
                fields.append(ContactField(kind, value.strip(), label, source))

        add(FieldKind.NAME, self.name)
        add(FieldKind.ORGANIZATION, self.organization)
        add(FieldKind.TITLE, self.headline)
        for value, label in self.phones:
            add(FieldKind.PHONE, value, label)
        for value, label in self.emails:
            add(FieldKind.EMAIL, value, label)
        for address in self.addresses:
            # Free text goes into the street component
            add(FieldKind.ADDRESS, f";;{address.strip()};;;;" if address.strip() else "")
        for value, label in self.websites:
            add(FieldKind.URL, value, label)
        add(FieldKind.PHOTO, self.photo_url)
        add(FieldKind.BIRTHDAY, self.birthday)
        return fields


@dataclass
class MergeResult:
    """Result of merging one scrape batch."""

    connection_id: str
    created: int = 0
    enriched: int = 0
    unchanged: int = 0
    errors: list[ItemError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        return (
            f"Import into {self.connection_id}: {self.created} created, "
            f"{self.enriched} enriched, {self.unchanged} unchanged, "
            f"{len(self.errors)} errors"
        )


class ImportMerger:
    """
    Reconciles scraped profiles against the canonical store.

    Profiles are processed one after another so that two profiles of the
    same person in one batch always end up on the same contact.

    Usage:
        merger = ImportMerger(store)
        result = merger.merge(profiles, "linkedin-main")
        print(result.summary())
    """

    def __init__(self, store: ContactStore, matcher: Optional[IdentityMatcher] = None):
        self.store = store
        self.matcher = matcher or IdentityMatcher()

    def merge(self, batch: Iterable[ScrapedProfile], connection_id: str) -> MergeResult:
        """
        Merge a batch of scraped profiles.

        Args:
            batch: Profiles in scrape order
            connection_id: Social-network connection the batch came from

        Returns:
            MergeResult with per-profile outcomes
        """
        result = MergeResult(connection_id=connection_id)
        source = source_kind(LINKEDIN, connection_id)

        # Kept current as the batch creates and enriches contacts
        pool = {c.id: c for c in self.store.list_linked_to_any()}

        for profile in batch:
            error = self._validate(profile)
            if error is not None:
                logger.warning(f"Skipping profile: {error}")
                result.errors.append(error)
                continue

            try:
                contact, outcome = self._merge_profile(profile, source, pool)
            except StoreError as e:
                logger.error(f"Could not store profile {profile.profile_id}: {e}")
                result.errors.append(
                    ItemError(ref=profile.profile_id, kind="store", message=str(e))
                )
                continue

            pool[contact.id] = contact
            if outcome == "created":
                result.created += 1
            elif outcome == "enriched":
                result.enriched += 1
            else:
                result.unchanged += 1

        logger.info(result.summary())
        return result

    def _merge_profile(
        self, profile: ScrapedProfile, source: str, pool: dict[str, Contact]
    ) -> tuple[Contact, str]:
        candidate = Contact.new(profile.to_fields(source))

        existing = self.store.find_by_source_ref(source, profile.profile_id)
        if existing is not None:
            target_id: Optional[str] = existing.id
        else:
            target_id = self.matcher.match(candidate, list(pool.values()))

        if target_id is not None:
            changed = False

            def enrich(contact: Contact) -> bool:
                nonlocal changed
                changed = self._enrich(contact, candidate, source, profile.profile_id)
                return changed

            contact = self.store.update_contact(target_id, enrich)
            if contact is not None:
                if changed:
                    logger.debug(
                        f"Enriched {contact.display_name!r} from {profile.profile_id}"
                    )
                return contact, "enriched" if changed else "unchanged"

        candidate.link(source, SourceRef(native_id=profile.profile_id))
        self.store.save_contact(candidate)
        logger.debug(f"Created {candidate.display_name!r} from {profile.profile_id}")
        return candidate, "created"

    def _enrich(
        self, contact: Contact, candidate: Contact, source: str, profile_id: str
    ) -> bool:
        """Fill values the contact lacks. Returns True if anything changed."""
        changed = False

        ref = contact.source_ref(source)
        # The first profile linked to a contact keeps the link
        if ref is None:
            contact.link(source, SourceRef(native_id=profile_id))
            changed = True

        for incoming in candidate.fields:
            if incoming.kind in SINGLE_VALUED_KINDS:
                if contact.has_kind(incoming.kind):
                    continue
            else:
                present = {
                    self._compare_key(incoming.kind, v)
                    for v in contact.values(incoming.kind)
                }
                if self._compare_key(incoming.kind, incoming.value) in present:
                    continue
            contact.fields.append(incoming)
            changed = True

        if changed:
            contact.touch()
        return changed

    def _compare_key(self, kind: FieldKind, value: str) -> str:
        if kind == FieldKind.EMAIL:
            return normalize_email(value)
        if kind == FieldKind.PHONE:
            region = self.matcher.config.default_region
            return normalize_phone(value, region) or value.strip()
        if kind == FieldKind.URL:
            return value.strip().rstrip("/").casefold()
        return normalize_string(value)

    @staticmethod
    def _validate(profile: ScrapedProfile) -> Optional[ItemError]:
        if not profile.profile_id:
            return ItemError(
                ref=profile.name or "<unknown>",
                kind="invalid",
                message="profile has no identifier",
            )
        if not profile.name:
            return ItemError(
                ref=profile.profile_id, kind="invalid", message="profile has no name"
            )
        return None

    def __repr__(self) -> str:
        return f"ImportMerger(store={self.store!r})"
