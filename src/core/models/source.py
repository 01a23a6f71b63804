#!/usr/bin/env python3
"""
Feed source and dedup cursor models.
"""

from datetime import datetime, timezone
from typing import Dict, Any, Iterable, Optional, Tuple
from dataclasses import dataclass, field

from dateutil import parser as date_parser

DEFAULT_SEEN_WINDOW = 500


def _parse_datetime_safe(value: Any) -> Optional[datetime]:
    """Parse a stored timestamp; values without an offset are taken as UTC."""
    if not value:
        return None
    if not isinstance(value, datetime):
        try:
            value = date_parser.parse(value)
        except (ValueError, OverflowError):
            return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class FeedCursor:
    """
    Per-source dedup state carried between runs.

    ``seen_guids`` is ordered oldest first and never holds more than the
    window size it was advanced with.
    """
    last_published: Optional[datetime] = None
    seen_guids: Tuple[str, ...] = ()

    @property
    def is_initial(self) -> bool:
        return self.last_published is None and not self.seen_guids

    def has_seen(self, guid: str) -> bool:
        return guid in self.seen_guids

    def advance(self, guids: Iterable[str], published: Iterable[Optional[datetime]],
                window: int = DEFAULT_SEEN_WINDOW) -> 'FeedCursor':
        """
        Build the cursor that follows this one.

        Args:
            guids: Guids observed in the poll, in feed order
            published: Publish timestamps observed in the poll
            window: Maximum number of guids retained

        Returns:
            New cursor; this one is left untouched
        """
        retained = list(self.seen_guids)
        known = set(retained)
        for guid in guids:
            if guid in known:
                # Refresh position so recently re-seen guids survive eviction
                retained.remove(guid)
            retained.append(guid)
            known.add(guid)
        retained = retained[-window:] if window > 0 else []

        latest = self.last_published
        for timestamp in published:
            if timestamp is not None and (latest is None or timestamp > latest):
                latest = timestamp

        return FeedCursor(last_published=latest, seen_guids=tuple(retained))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'last_published': self.last_published.isoformat() if self.last_published else None,
            'seen_guids': list(self.seen_guids),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'FeedCursor':
        data = data or {}
        return cls(
            last_published=_parse_datetime_safe(data.get('last_published')),
            seen_guids=tuple(data.get('seen_guids') or ()),
        )


@dataclass
class Source:
    """A registered feed. Never deleted, only deactivated."""
    id: str
    display_name: str
    feed_url: str
    active: bool = True
    cursor: FeedCursor = field(default_factory=FeedCursor)
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'display_name': self.display_name,
            'feed_url': self.feed_url,
            'active': self.active,
            'cursor': self.cursor.to_dict(),
            'created_at': self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Source':
        return cls(
            id=data['id'],
            display_name=data.get('display_name', data['id']),
            feed_url=data['feed_url'],
            active=bool(data.get('active', True)),
            cursor=FeedCursor.from_dict(data.get('cursor')),
            created_at=_parse_datetime_safe(data.get('created_at')) or datetime.now(timezone.utc),
        )
