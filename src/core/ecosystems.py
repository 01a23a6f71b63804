#!/usr/bin/env python3
"""
Ecosystem mapping.

Resolves validated classifications to ecosystem reference rows. Mapping is
enrichment only: categories without a row are simply absent from the mapped
result, and the classification list is never filtered.
"""

import json
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Protocol, Tuple

from .exceptions import EcosystemLookupError
from .models import Classification, EcosystemMapping
from .retry import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_ECOSYSTEM_MAPPINGS: Tuple[EcosystemMapping, ...] = (
    EcosystemMapping(0, 'Forest Conservation', 'Conservation'),
    EcosystemMapping(1, 'Marine Protection', 'Blue Economy'),
    EcosystemMapping(2, 'Urban Sustainability', 'Place-Based / Cities'),
    EcosystemMapping(3, 'Indigenous Stewardship', 'Indigenous'),
    EcosystemMapping(4, 'Renewable Energy', 'Climate & Carbon'),
    EcosystemMapping(5, 'Circular Systems', 'Circular / Spiral Economy'),
    EcosystemMapping(6, 'Social Equity', 'Social Justice & DEI'),
    EcosystemMapping(7, 'Nature-Based Solutions', 'Biomimicry'),
    EcosystemMapping(8, 'Regenerative Practices', 'Regenerative Thinking'),
    EcosystemMapping(9, 'Ecological Restoration', 'Ecology / Deep Ecology'),
)


class EcosystemLookupStore(Protocol):
    """Read-only lookup of zero-or-one ecosystem row per category."""

    async def find_by_category(self, category: str) -> Optional[EcosystemMapping]:
        ...


class StaticEcosystemStore:
    """In-memory lookup store over a fixed table."""

    def __init__(self, mappings: Optional[Iterable[EcosystemMapping]] = None):
        rows = DEFAULT_ECOSYSTEM_MAPPINGS if mappings is None else tuple(mappings)
        self._by_category: Dict[str, EcosystemMapping] = {}
        for mapping in rows:
            # First row wins, matching a lookup that returns the lowest index
            self._by_category.setdefault(mapping.category, mapping)

    @classmethod
    def from_file(cls, path: str) -> 'StaticEcosystemStore':
        """Load rows from a JSON list of ``{index, ecosystem, category}`` objects."""
        with open(Path(path), 'r', encoding='utf-8') as f:
            rows = json.load(f)
        return cls(EcosystemMapping.from_row(row) for row in rows)

    async def find_by_category(self, category: str) -> Optional[EcosystemMapping]:
        return self._by_category.get(category)


class EcosystemMapper:
    """Maps classifications to ecosystems with retry and a per-run cache."""

    def __init__(self, store: EcosystemLookupStore, retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize mapper.

        Args:
            store: Lookup store
            retry_policy: Short backoff for transient lookup failures
        """
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy(max_retries=2, base_delay=0.5, max_delay=2.0, max_elapsed=10.0)
        # The reference table is static for a run, so results are cached
        self._cache: Dict[str, Optional[EcosystemMapping]] = {}

    async def lookup(self, category: str) -> Optional[EcosystemMapping]:
        """
        Look up one category.

        Raises:
            EcosystemLookupError: Store kept failing
            ReferenceMisconfigured: Reference table is unusable
        """
        if category in self._cache:
            return self._cache[category]

        try:
            mapping = await self.retry_policy.run(
                lambda: self.store.find_by_category(category),
                description=f"ecosystem lookup {category!r}"
            )
        except RetryExhausted as e:
            raise EcosystemLookupError(category, e.last_error) from e

        self._cache[category] = mapping
        return mapping

    async def map_to_ecosystems(self, classifications: Iterable[Classification]) -> Tuple[EcosystemMapping, ...]:
        """
        Resolve classifications to ecosystem rows.

        Args:
            classifications: Validated classifications

        Returns:
            Matching rows in classification order, one per ecosystem index
        """
        mapped: List[EcosystemMapping] = []
        seen_indexes = set()
        for classification in classifications:
            mapping = await self.lookup(classification.category)
            if mapping is None:
                logger.debug(f"No ecosystem mapped for {classification.category!r}")
                continue
            if mapping.index in seen_indexes:
                continue
            seen_indexes.add(mapping.index)
            mapped.append(mapping)
        return tuple(mapped)

    def clear_cache(self) -> None:
        self._cache.clear()
