"""Tests for string, email and phone normalization utilities."""

from contact_sync.utils.normalization import (
    MIN_PHONE_LENGTH,
    normalize_email,
    normalize_phone,
    normalize_string,
)


class TestNormalizeStringBasic:
    """Test basic normalization functionality."""

    def test_empty_string_returns_empty(self):
        """Empty string should return empty string."""
        assert normalize_string("") == ""

    def test_lowercase_conversion(self):
        """String should be converted to lowercase."""
        assert normalize_string("HELLO") == "hello"

    def test_unicode_normalization(self):
        """Accented characters compare equal to their plain form."""
        assert normalize_string("café") == "cafe"
        assert normalize_string("café") == "cafe"

    def test_punctuation_removed_by_default(self):
        assert normalize_string("hello, world!") == "helloworld"

    def test_spaces_preserved_when_disabled(self):
        assert normalize_string("hello   world", remove_spaces=False) == "hello world"

    def test_sort_words_handles_name_order_variations(self):
        """'Doe, Jane' and 'Jane Doe' normalize the same with sort_words."""
        assert normalize_string("Doe, Jane", sort_words=True) == normalize_string(
            "Jane Doe", sort_words=True
        )


class TestNormalizeStringContactScenarios:
    """Test normalization of names and organizations."""

    def test_name_with_accents_matches_without(self):
        assert normalize_string("Zoë García") == normalize_string("Zoe Garcia")

    def test_organization_suffix_punctuation(self):
        assert normalize_string("Acme, Inc.") == normalize_string("ACME Inc")


class TestNormalizeEmail:
    """Test email normalization."""

    def test_empty_email(self):
        assert normalize_email("") == ""

    def test_case_folded(self):
        assert normalize_email("Jane.Doe@Example.COM") == "jane.doe@example.com"

    def test_whitespace_stripped(self):
        assert normalize_email("  jane@example.com \n") == "jane@example.com"

    def test_mailto_prefix_removed(self):
        assert normalize_email("MAILTO:jane@example.com") == "jane@example.com"

    def test_plus_tags_and_dots_kept(self):
        """Plus tags and dots distinguish mailboxes."""
        assert normalize_email("jane+work@example.com") != normalize_email(
            "jane@example.com"
        )
        assert normalize_email("j.ane@example.com") != normalize_email(
            "jane@example.com"
        )


class TestNormalizePhone:
    """Test phone number normalization."""

    def test_empty_phone(self):
        assert normalize_phone("") == ""

    def test_national_and_international_forms_match(self):
        """A national number equals its international form in the default region."""
        national = normalize_phone("0412 345 678", "AU")
        international = normalize_phone("+61 412 345 678", "AU")
        assert national == international == "+61412345678"

    def test_formatting_characters_ignored(self):
        assert normalize_phone("(02) 9876-5432", "AU") == normalize_phone(
            "+61298765432", "AU"
        )

    def test_country_code_overrides_default_region(self):
        assert normalize_phone("+1 650 253 0000", "AU") == "+16502530000"

    def test_default_region_applies_to_national_numbers(self):
        assert normalize_phone("650 253 0000", "US") == "+16502530000"

    def test_short_numbers_never_match(self):
        """Numbers shorter than MIN_PHONE_LENGTH digits normalize to empty."""
        short = "1" * (MIN_PHONE_LENGTH - 1)
        assert normalize_phone(short) == ""
        assert normalize_phone("ext 12") == ""

    def test_invalid_number_falls_back_to_digits(self):
        assert normalize_phone("123-4567", "AU") == "1234567"
