"""Tests for identity key derivation: normalization and label parsing."""

import pytest

from app.services.key_derivation import (
    derive_from_category_and_name,
    derive_from_label,
    format_label,
    normalize_key,
    split_label,
)


class TestNormalizeKey:

    @pytest.mark.parametrize("text, expected", [
        ("% of Total Count", "of-total-count"),
        ("  Net  Sales  ", "net-sales"),
        ("Revenue (USD)", "revenue-usd"),
        ("ALREADY-normal", "already-normal"),
        ("a__b..c", "a-b-c"),
    ])
    def test_normalizes(self, text, expected):
        assert normalize_key(text) == expected

    @pytest.mark.parametrize("text", ["", "   ", "%%%", "—", None])
    def test_empty_or_punctuation_yields_empty(self, text):
        assert normalize_key(text) == ""

    def test_idempotent(self):
        once = normalize_key("[Nike] - % Sales Share")
        assert normalize_key(once) == once


class TestSplitLabel:

    def test_bracketed_category(self):
        assert split_label("[Adidas] - % of MCB Count") == ("Adidas", "% of MCB Count")

    def test_tolerates_spacing(self):
        assert split_label("  [Nike]-Sales ") == ("Nike", "Sales")

    def test_plain_label(self):
        assert split_label("Sales") == (None, "Sales")

    def test_none(self):
        assert split_label(None) == (None, "")


class TestDerivation:

    def test_legacy_and_explicit_paths_agree(self):
        legacy = derive_from_label("[Adidas] - % of MCB Count")
        explicit = derive_from_category_and_name("Adidas", "% of MCB Count")
        assert legacy == explicit == "adidas-of-mcb-count"

    def test_categories_keep_identities_apart(self):
        nike = derive_from_category_and_name("Nike", "Sales")
        adidas = derive_from_category_and_name("Adidas", "Sales")
        assert nike != adidas

    def test_missing_category_uses_name(self):
        assert derive_from_category_and_name(None, "Net Sales") == "net-sales"
        assert derive_from_category_and_name("", "Net Sales") == "net-sales"

    def test_plain_label_normalized_whole(self):
        assert derive_from_label("Net Sales") == "net-sales"

    def test_name_without_key_characters_falls_back_to_category(self):
        assert derive_from_category_and_name("Nike", "%%") == "nike"

    def test_all_empty(self):
        assert derive_from_category_and_name(None, "%") == ""
        assert derive_from_label("") == ""


class TestFormatLabel:

    def test_with_category(self):
        assert format_label("Nike", "Sales") == "[Nike] - Sales"

    def test_without_category(self):
        assert format_label(None, " Sales ") == "Sales"

    def test_round_trips_through_split(self):
        assert split_label(format_label("Nike", "Sales")) == ("Nike", "Sales")
