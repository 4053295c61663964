"""
Rule-based identity matching across contact sources.

Decides whether a contact from one source (a CardDAV member, a scraped
social profile) is the same person as a contact already in the canonical
store. Rules are tried in priority order and the first satisfied rule wins:

- Rule 1: exact normalized email address
- Rule 2: exact normalized phone number (country-code aware)
- Rule 3: exact normalized full name AND organization

There is no cross-rule scoring. An optional fourth rule, fuzzy full name
plus exact organization, is available but disabled unless a similarity
threshold is configured.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Sequence

from rapidfuzz import fuzz

from contact_sync.sync.contact import Contact
from contact_sync.utils.logging import get_matching_logger
from contact_sync.utils.normalization import DEFAULT_PHONE_REGION

logger = logging.getLogger(__name__)


class MatchRule(Enum):
    """Which rule established a match."""

    EXACT_EMAIL = "exact_email"
    EXACT_PHONE = "exact_phone"
    NAME_AND_ORGANIZATION = "name_and_organization"
    FUZZY_NAME_AND_ORGANIZATION = "fuzzy_name_and_organization"
    NO_MATCH = "no_match"


@dataclass
class MatchResult:
    """Result of matching one candidate against a pool."""

    contact_id: Optional[str]
    rule: MatchRule
    matched_on: list[str] = field(default_factory=list)

    @property
    def is_match(self) -> bool:
        return self.contact_id is not None


@dataclass
class MatchConfig:
    """Configuration for the identity matcher."""

    # Region assumed for phone numbers written without a country code
    default_region: str = DEFAULT_PHONE_REGION

    # Similarity (0.0 to 1.0) for the fuzzy name rule; None disables it
    fuzzy_name_threshold: Optional[float] = None


class IdentityMatcher:
    """
    Ordered, deterministic identity matcher.

    Usage:
        matcher = IdentityMatcher()

        contact_id = matcher.match(candidate, pool)
        if contact_id is None:
            # caller creates a new contact
            ...

        # Or with the rule that fired
        result = matcher.explain(candidate, pool)
    """

    def __init__(self, config: Optional[MatchConfig] = None):
        self.config = config or MatchConfig()
        self._match_log = get_matching_logger()

    def match(self, candidate: Contact, pool: Sequence[Contact]) -> Optional[str]:
        """
        Find the pool contact representing the same person as the candidate.

        Args:
            candidate: Contact to identify
            pool: Existing contacts to search, in priority order

        Returns:
            Id of the matched contact, or None if no rule fires
        """
        return self.explain(candidate, pool).contact_id

    def explain(self, candidate: Contact, pool: Sequence[Contact]) -> MatchResult:
        """Like match(), but also report which rule fired and on what."""
        others = [c for c in pool if c.id != candidate.id]

        for rule in self._rules():
            for existing in others:
                matched_on = self._check(rule, candidate, existing)
                if matched_on:
                    self._match_log.debug(
                        f"MATCH {candidate.display_name!r} -> {existing.id} "
                        f"({existing.display_name!r}) via {rule.value}: "
                        f"{', '.join(matched_on)}"
                    )
                    return MatchResult(
                        contact_id=existing.id, rule=rule, matched_on=matched_on
                    )

        self._match_log.debug(
            f"NO MATCH {candidate.display_name!r} against {len(others)} contacts"
        )
        return MatchResult(contact_id=None, rule=MatchRule.NO_MATCH)

    def _rules(self) -> list[MatchRule]:
        rules = [
            MatchRule.EXACT_EMAIL,
            MatchRule.EXACT_PHONE,
            MatchRule.NAME_AND_ORGANIZATION,
        ]
        if self.config.fuzzy_name_threshold is not None:
            rules.append(MatchRule.FUZZY_NAME_AND_ORGANIZATION)
        return rules

    def _check(self, rule: MatchRule, candidate: Contact, existing: Contact) -> list[str]:
        if rule == MatchRule.EXACT_EMAIL:
            return self._shared(candidate.email_keys(), existing.email_keys())
        if rule == MatchRule.EXACT_PHONE:
            region = self.config.default_region
            return self._shared(
                candidate.phone_keys(region), existing.phone_keys(region)
            )
        if rule == MatchRule.NAME_AND_ORGANIZATION:
            return self._name_and_organization(candidate, existing)
        if rule == MatchRule.FUZZY_NAME_AND_ORGANIZATION:
            return self._fuzzy_name_and_organization(candidate, existing)
        return []

    @staticmethod
    def _shared(keys1: list[str], keys2: list[str]) -> list[str]:
        # Keep candidate order so the reported identifier is deterministic
        other = set(keys2)
        return [key for key in dict.fromkeys(keys1) if key in other]

    @staticmethod
    def _name_and_organization(candidate: Contact, existing: Contact) -> list[str]:
        name = candidate.name_key()
        organization = candidate.organization_key()
        if not name or not organization:
            return []
        if name == existing.name_key() and organization == existing.organization_key():
            return [name, organization]
        return []

    def _fuzzy_name_and_organization(
        self, candidate: Contact, existing: Contact
    ) -> list[str]:
        organization = candidate.organization_key()
        if not organization or organization != existing.organization_key():
            return []

        name1 = candidate.display_name.lower()
        name2 = existing.display_name.lower()
        if not name1.strip() or not name2.strip():
            return []

        similarity = fuzz.token_sort_ratio(name1, name2) / 100.0
        threshold = self.config.fuzzy_name_threshold or 1.0
        if similarity >= threshold:
            logger.debug(
                f"Fuzzy name match {candidate.display_name!r} ~ "
                f"{existing.display_name!r} ({similarity:.0%})"
            )
            return [f"name~{similarity:.2f}", organization]
        return []

    def __repr__(self) -> str:
        return (
            f"IdentityMatcher(default_region={self.config.default_region!r}, "
            f"fuzzy_name_threshold={self.config.fuzzy_name_threshold!r})"
        )
