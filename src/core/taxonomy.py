#!/usr/bin/env python3
"""
Sustainability category taxonomy.

The fixed, versioned set of labels the classifier may assign. Bump
TAXONOMY_VERSION whenever the list changes; it is written into every artifact.
"""

from typing import Any, Tuple

TAXONOMY_VERSION = "2024.01"

CATEGORIES: Tuple[str, ...] = (
    'Art / Design / Culture',
    'Behaviour Change',
    'Blue Economy',
    'Biodiversity',
    'Biomimicry',
    'Bioregional',
    'Circular / Spiral Economy',
    'Climate & Carbon',
    'Conservation',
    'Cradle to Cradle',
    'Degrowth / Steady State',
    'Doughnut Economics',
    'Ecocide',
    'Ecological Footprint',
    'Ecology / Deep Ecology',
    'Indigenous',
    'Modern Slavery',
    'Nature',
    'Place-Based / Cities',
    'Planetary Boundaries',
    'Regenerative Thinking',
    'Social Justice & DEI',
    'Social Procurement',
    'Sustainability / ESG / Six Capitals',
    'Symbio(s)cene',
    'Systems Thinking',
    'Time Horizons',
)

_CATEGORY_SET = frozenset(CATEGORIES)


def all_categories() -> Tuple[str, ...]:
    """Get every valid label in display order."""
    return CATEGORIES


def canonical_category(label: Any) -> str:
    """Strip surrounding whitespace; non-strings become empty."""
    if not isinstance(label, str):
        return ""
    return label.strip()


def is_valid_category(label: Any) -> bool:
    """Check if a label is a member of the taxonomy."""
    return canonical_category(label) in _CATEGORY_SET
