#!/usr/bin/env python3
"""
Article data model.

Represents one feed item as fetched from a source. Articles are immutable;
normalization produces a new instance carrying the normalized content.
"""

import dataclasses
import hashlib
from datetime import datetime
from typing import Dict, Any, Optional
from dataclasses import dataclass


def synthetic_guid(link: str, title: str, source_id: str) -> str:
    """
    Generate a stable identity for feed items that carry no guid/id.

    Args:
        link: Article URL
        title: Article title
        source_id: Owning source id

    Returns:
        ``sha256:`` prefixed hex digest
    """
    composite = f"{link.strip()}|{title.strip()}|{source_id}"
    return "sha256:" + hashlib.sha256(composite.encode('utf-8')).hexdigest()


@dataclass(frozen=True)
class Article:
    """A single feed item. Identity is ``(source_id, guid)``."""
    source_id: str
    guid: str
    title: str
    link: str
    published_at: Optional[datetime] = None
    raw_content: str = ""
    normalized_content: str = ""

    # Index of the item in the feed document, used to keep feed order
    position: int = 0
    # False when ``guid`` was synthesized because the feed had none
    has_feed_guid: bool = True

    @property
    def identity(self) -> tuple:
        return (self.source_id, self.guid)

    def with_normalized(self, normalized_content: str) -> 'Article':
        """Copy of this article carrying normalized content."""
        return dataclasses.replace(self, normalized_content=normalized_content)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            'source_id': self.source_id,
            'guid': self.guid,
            'title': self.title,
            'link': self.link,
            'published_at': self.published_at.isoformat() if self.published_at else None,
            'normalized_content': self.normalized_content,
            'position': self.position,
            'has_feed_guid': self.has_feed_guid,
        }

    def __repr__(self):
        return f"Article(guid='{self.guid}', title='{self.title[:50]}', source='{self.source_id}')"
