#!/usr/bin/env python3
"""
Feed source registry.

Provides registration, lookup and deactivation of feed sources. Sources are
data, not code: adding a feed never requires a new class.
"""

import logging
import re
import unicodedata
import urllib.parse
from typing import Dict, List, Optional

from ..exceptions import RegistrationError, SourceNotFound
from ..models import FeedCursor, Source
from .store import InMemorySourceStore, SourceStore

logger = logging.getLogger(__name__)

MAX_URL_LENGTH = 2048
ALLOWED_SCHEMES = {'http', 'https'}


def slugify(name: str) -> str:
    """Lowercase ASCII slug of a display name."""
    ascii_name = unicodedata.normalize('NFKD', name).encode('ascii', 'ignore').decode('ascii')
    slug = re.sub(r'[^a-z0-9]+', '-', ascii_name.lower()).strip('-')
    return slug or 'source'


def is_valid_feed_url(url: str) -> bool:
    """Well-formed http(s) URL with a host, within the length limit."""
    if not url or len(url) > MAX_URL_LENGTH:
        return False
    try:
        parsed = urllib.parse.urlparse(url)
    except ValueError:
        return False
    if parsed.scheme.lower() not in ALLOWED_SCHEMES or not parsed.hostname:
        return False
    try:
        parsed.hostname.encode('idna')
    except UnicodeError:
        return False
    return True


class SourceRegistry:
    """Registry of feed sources with write-through persistence."""

    def __init__(self, store: Optional[SourceStore] = None):
        """
        Initialize registry.

        Args:
            store: Persistence backend (in-memory with default sources if None)
        """
        self.store = store or InMemorySourceStore()
        self._sources: Dict[str, Source] = {source.id: source for source in self.store.load()}
        logger.debug(f"Loaded {len(self._sources)} sources")

    def _persist(self) -> None:
        self.store.save(list(self._sources.values()))

    def register_source(self, display_name: str, feed_url: str) -> Source:
        """
        Register a feed.

        Args:
            display_name: Human-readable name
            feed_url: RSS/Atom URL

        Returns:
            The new source, or the existing one if the URL is already registered

        Raises:
            RegistrationError: Listing every validation problem
        """
        display_name = (display_name or '').strip()
        feed_url = (feed_url or '').strip()

        errors = []
        if not display_name:
            errors.append("News site name is required")
        if not is_valid_feed_url(feed_url):
            errors.append("Valid feed URL is required")
        if errors:
            raise RegistrationError(errors)

        existing = self.find_by_url(feed_url)
        if existing is not None:
            if not existing.active:
                existing.active = True
                self._persist()
                logger.info(f"Reactivated source {existing.id}")
            return existing

        base_id = slugify(display_name)
        source_id = base_id
        suffix = 2
        while source_id in self._sources:
            source_id = f"{base_id}-{suffix}"
            suffix += 1

        source = Source(id=source_id, display_name=display_name, feed_url=feed_url)
        self._sources[source_id] = source
        self._persist()
        logger.info(f"Registered source {source_id}: {feed_url}")
        return source

    def find_by_url(self, feed_url: str) -> Optional[Source]:
        for source in self._sources.values():
            if source.feed_url == feed_url:
                return source
        return None

    def get(self, source_id: str) -> Source:
        """
        Get a source by id.

        Raises:
            SourceNotFound: If no such source is registered
        """
        try:
            return self._sources[source_id]
        except KeyError:
            raise SourceNotFound(source_id) from None

    def deactivate(self, source_id: str) -> Source:
        source = self.get(source_id)
        if source.active:
            source.active = False
            self._persist()
            logger.info(f"Deactivated source {source_id}")
        return source

    def list_sources(self) -> List[Source]:
        return list(self._sources.values())

    def list_active(self) -> List[Source]:
        return [source for source in self._sources.values() if source.active]

    def update_cursor(self, source_id: str, cursor: FeedCursor) -> None:
        """Replace a source's dedup cursor and persist it."""
        self.get(source_id).cursor = cursor
        self._persist()
