#!/usr/bin/env python3
"""
Source persistence.

Sources and their dedup cursors are kept in a small JSON document. The
in-memory store backs tests and one-off runs.
"""

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from ..models import Source

logger = logging.getLogger(__name__)

DEFAULT_SOURCES = [
    ('grist', 'Grist', 'https://grist.org/feed/'),
    ('earth-org', 'Earth.Org', 'https://earth.org/feed/'),
    ('inside-climate-news', 'Inside Climate News', 'https://insideclimatenews.org/feed/'),
]


def default_sources() -> List[Source]:
    """Sources seeded on first use."""
    return [Source(id=source_id, display_name=name, feed_url=url) for source_id, name, url in DEFAULT_SOURCES]


class SourceStore(Protocol):
    def load(self) -> List[Source]:
        ...

    def save(self, sources: List[Source]) -> None:
        ...


class InMemorySourceStore:
    """Keeps sources in memory only."""

    def __init__(self, sources: Optional[List[Source]] = None):
        self._sources = list(sources) if sources is not None else default_sources()

    def load(self) -> List[Source]:
        return list(self._sources)

    def save(self, sources: List[Source]) -> None:
        self._sources = list(sources)


class JsonSourceStore:
    """JSON file source store."""

    def __init__(self, path: str, seed_defaults: bool = True):
        """
        Initialize store.

        Args:
            path: JSON file location
            seed_defaults: Seed the default sources when the file does not exist
        """
        self.path = Path(path)
        self.seed_defaults = seed_defaults

    def load(self) -> List[Source]:
        if not self.path.exists():
            if not self.seed_defaults:
                return []
            logger.info(f"No sources file at {self.path}, seeding defaults")
            sources = default_sources()
            self.save(sources)
            return sources

        with open(self.path, 'r', encoding='utf-8') as f:
            data = json.load(f)
        return [Source.from_dict(item) for item in data.get('sources', [])]

    def save(self, sources: List[Source]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload: Dict[str, list] = {'sources': [source.to_dict() for source in sources]}
        tmp_path = self.path.with_suffix(self.path.suffix + '.tmp')
        with open(tmp_path, 'w', encoding='utf-8') as f:
            json.dump(payload, f, ensure_ascii=False, indent=2)
        tmp_path.replace(self.path)
