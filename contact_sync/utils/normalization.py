"""
String normalization utilities for contact identity matching.

Provides consistent normalization of names, organizations, email addresses
and phone numbers so that values coming from different sources (CardDAV
address books, scraped social profiles) can be compared exactly.
"""

from __future__ import annotations

import re
import unicodedata

import phonenumbers

# Default region used to interpret phone numbers written without a country code
DEFAULT_PHONE_REGION = "AU"

# Phone numbers with fewer digits are likely invalid or could cause false matches
# 7 digits = minimum for local numbers (e.g., 555-1234)
MIN_PHONE_LENGTH = 7


def normalize_string(
    value: str,
    sort_words: bool = False,
    allow_email_chars: bool = False,
    remove_spaces: bool = True,
    strip_punctuation: bool = True,
) -> str:
    """
    Normalize a string for matching key generation.

    Args:
        value: String to normalize
        sort_words: If True, sort words alphabetically before joining.
                   This handles name order variations like "Last, First"
                   vs "First Last".
        allow_email_chars: If True, preserve @ symbol for email normalization.
                          Only applies when strip_punctuation is True.
        remove_spaces: If True, remove all spaces from the result.
                      If False, multiple spaces are collapsed to single space.
        strip_punctuation: If True, remove non-alphanumeric characters.
                          If False, only normalize unicode and whitespace.

    Returns:
        Normalized lowercase string with special characters handled
    """
    if not value:
        return ""

    # Normalize unicode (decompose accents, etc.)
    normalized = unicodedata.normalize("NFKD", value)

    # Remove combining characters (accents)
    normalized = "".join(c for c in normalized if not unicodedata.combining(c))

    normalized = normalized.lower()

    if strip_punctuation:
        pattern = r"[^a-z0-9@\s]" if allow_email_chars else r"[^a-z0-9\s]"
        normalized = re.sub(pattern, "", normalized)

    normalized = re.sub(r"\s+", " ", normalized).strip()

    if sort_words:
        words = normalized.split()
        normalized = "".join(sorted(words))
    elif remove_spaces:
        normalized = normalized.replace(" ", "")

    return normalized


def normalize_email(value: str) -> str:
    """
    Normalize an email address for exact comparison.

    Strips surrounding whitespace and a leading ``mailto:`` scheme, then
    case-folds the whole address. Dots and plus-tags are kept: two addresses
    that differ there are treated as different mailboxes.
    """
    if not value:
        return ""
    normalized = value.strip()
    if normalized.lower().startswith("mailto:"):
        normalized = normalized[len("mailto:") :]
    return normalized.casefold()


def normalize_phone(value: str, default_region: str = DEFAULT_PHONE_REGION) -> str:
    """
    Normalize a phone number for exact comparison.

    Numbers that phonenumbers can parse as valid are returned in E.164 form,
    so "0412 345 678" and "+61 412 345 678" compare equal under the AU
    region. Anything else falls back to its digits only. Numbers shorter
    than MIN_PHONE_LENGTH digits normalize to an empty string and never match.

    Args:
        value: Phone number as written in the source record
        default_region: ISO region used when the number has no country code

    Returns:
        E.164 string, digit string, or "" when the number is unusable
    """
    if not value:
        return ""

    digits = re.sub(r"\D", "", value)
    if len(digits) < MIN_PHONE_LENGTH:
        return ""

    try:
        parsed = phonenumbers.parse(value, default_region)
    except phonenumbers.NumberParseException:
        return digits

    if phonenumbers.is_valid_number(parsed):
        return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)
    return digits
