"""
Identity key derivation for metric and submetric definitions.

Definitions are addressed by keys derived from free-text labels, never by
the labels themselves. Two derivation paths exist and must agree:

    legacy   - category embedded in the label: "[Adidas] - % of MCB Count"
    explicit - category supplied separately:   ("Adidas", "% of MCB Count")

Both yield "adidas-of-mcb-count".

All functions here are pure.
"""

import re

__all__ = [
    "normalize_key",
    "split_label",
    "derive_from_label",
    "derive_from_category_and_name",
    "format_label",
]

_NON_ALNUM = re.compile(r"[^a-z0-9]+")
_LABEL_PATTERN = re.compile(r"^\[([^\]]+)\]\s*-\s*(.+)$")


def normalize_key(text) -> str:
    """Lowercase, collapse non-alphanumeric runs to one hyphen, trim hyphens.

    "% of Total Count" → "of-total-count". Empty or all-punctuation input
    yields "" which callers must reject as an identity.
    """
    if text is None:
        return ""
    return _NON_ALNUM.sub("-", str(text).lower()).strip("-")


def split_label(label: str) -> tuple[str | None, str]:
    """Split "[Category] - Name" into (category, name); (None, label) otherwise."""
    match = _LABEL_PATTERN.match((label or "").strip())
    if not match:
        return None, (label or "").strip()
    return match.group(1).strip(), match.group(2).strip()


def derive_from_category_and_name(category, name) -> str:
    """Composite submetric key from an explicit category and base name."""
    category_key = normalize_key(category)
    name_key = normalize_key(name)
    if not category_key:
        return name_key
    if not name_key:
        return category_key
    return f"{category_key}-{name_key}"


def derive_from_label(label) -> str:
    """Submetric key from a label that may embed its category."""
    category, name = split_label(label)
    if category is None:
        return normalize_key(label)
    return derive_from_category_and_name(category, name)


def format_label(category, name) -> str:
    """Display label for a submetric: "[Category] - Name" or "Name"."""
    name = (name or "").strip()
    category = (category or "").strip()
    return f"[{category}] - {name}" if category else name
