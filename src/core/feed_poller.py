#!/usr/bin/env python3
"""
Async RSS/Atom feed poller.

Fetches a source's feed with aiohttp, parses it with feedparser and yields the
articles that are new relative to the source's dedup cursor. The updated
cursor is returned as a candidate; it is only written back once the run for
that source has completed.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, List, Optional, TYPE_CHECKING

import aiohttp
import feedparser
import pytz
from dateutil import parser as date_parser

from .exceptions import FetchError, ParseError
from .models import Article, FeedCursor, Source, synthetic_guid
from .models.source import DEFAULT_SEEN_WINDOW
from .retry import RetryPolicy

if TYPE_CHECKING:
    from .sources.registry import SourceRegistry

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = 'Mozilla/5.0 (compatible; SustainabilityFeedPipeline/1.0)'


@dataclass
class PollResult:
    """New articles from one poll plus the cursor to commit afterwards."""
    source_id: str
    articles: List[Article] = field(default_factory=list)
    cursor: FeedCursor = field(default_factory=FeedCursor)
    total_entries: int = 0


class FeedPoller:
    """Feed poller with retry and cursor-based deduplication."""

    def __init__(self,
                 timeout: int = 10,
                 user_agent: str = DEFAULT_USER_AGENT,
                 seen_window: int = DEFAULT_SEEN_WINDOW,
                 retry_policy: Optional[RetryPolicy] = None,
                 registry: Optional['SourceRegistry'] = None):
        """
        Initialize feed poller.

        Args:
            timeout: Request timeout in seconds
            user_agent: User-Agent header sent to feed hosts
            seen_window: Number of guids retained in each cursor
            retry_policy: Backoff for FetchError/ParseError
            registry: Where committed cursors are persisted
        """
        self.timeout = timeout
        self.user_agent = user_agent
        self.seen_window = seen_window
        self.retry_policy = retry_policy or RetryPolicy(max_retries=3, base_delay=2.0)
        self.registry = registry
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self):
        """Async context manager entry."""
        self._session = aiohttp.ClientSession(
            timeout=aiohttp.ClientTimeout(total=self.timeout),
            headers={'User-Agent': self.user_agent}
        )
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        if self._session:
            await self._session.close()
            self._session = None

    async def fetch_feed(self, url: str) -> bytes:
        """
        Fetch raw feed bytes.

        Raises:
            FetchError: On network/DNS failure, timeout or non-2xx status
        """
        if not self._session:
            raise RuntimeError("FeedPoller must be used as async context manager")

        try:
            logger.info(f"Fetching feed from: {url}")
            async with self._session.get(url) as response:
                if not 200 <= response.status < 300:
                    raise FetchError(url, f"HTTP {response.status} {response.reason or ''}".strip(),
                                     status=response.status)
                return await response.read()
        except asyncio.TimeoutError:
            raise FetchError(url, f"timed out after {self.timeout}s")
        except aiohttp.ClientError as e:
            raise FetchError(url, str(e) or e.__class__.__name__)
        except ValueError as e:
            # Unusable URL, e.g. a host label that fails IDNA encoding
            raise FetchError(url, f"invalid feed URL: {e}")

    def parse_feed(self, content: bytes, url: str) -> feedparser.FeedParserDict:
        """
        Parse feed bytes.

        Raises:
            ParseError: If the body is malformed and no items could be recovered
        """
        feed = feedparser.parse(content)
        if feed.bozo and not feed.entries:
            exception = feed.get('bozo_exception')
            if not isinstance(exception, feedparser.CharacterEncodingOverride):
                raise ParseError(url, str(exception) or 'unparsable feed')
        elif feed.bozo:
            logger.warning(f"Feed parsing warning for {url}: {feed.get('bozo_exception')}")
        return feed

    async def fetch_and_parse(self, url: str) -> List[Any]:
        """Fetch and parse one feed, returning its raw entries."""
        content = await self.fetch_feed(url)
        if not content or not content.strip():
            logger.info(f"Empty feed body from {url}")
            return []
        return list(self.parse_feed(content, url).entries)

    def parse_entries(self, entries: List[Any], source: Source) -> List[Article]:
        """
        Convert feed entries into articles, keeping feed order.

        Duplicate guids within one document are only yielded once.
        """
        articles = []
        seen_in_document = set()

        for position, entry in enumerate(entries):
            title = (entry.get('title') or '').strip()
            link = (entry.get('link') or '').strip()
            feed_guid = (entry.get('id') or entry.get('guid') or '').strip()
            guid = feed_guid or synthetic_guid(link, title, source.id)
            if guid in seen_in_document:
                logger.debug(f"Skipping duplicate guid {guid} within {source.id} feed")
                continue
            seen_in_document.add(guid)

            articles.append(Article(
                source_id=source.id,
                guid=guid,
                title=title or 'No Title',
                link=link,
                published_at=self.parse_published_date(entry),
                raw_content=self._extract_content(entry),
                position=position,
                has_feed_guid=bool(feed_guid),
            ))

        logger.debug(f"Parsed {len(articles)} entries from {source.id} feed")
        return articles

    def select_new(self, articles: List[Article], cursor: FeedCursor) -> List[Article]:
        """
        Filter articles down to those not delivered by a previous poll.

        An article with a feed guid is new iff the guid is outside the seen
        window. A guid-less article is new iff its timestamp is strictly after
        the cursor's; without a timestamp it is only new on the first poll.
        """
        new_articles = []
        for article in articles:
            if article.has_feed_guid:
                is_new = not cursor.has_seen(article.guid)
            elif article.published_at is not None and cursor.last_published is not None:
                is_new = article.published_at > cursor.last_published
            else:
                is_new = cursor.is_initial
            if is_new:
                new_articles.append(article)
        return new_articles

    async def poll(self, source: Source) -> PollResult:
        """
        Poll a source for new articles.

        Args:
            source: Source to poll; its cursor is read, not modified

        Returns:
            PollResult with new articles and the candidate cursor

        Raises:
            RetryExhausted: If fetch/parse kept failing
        """
        entries = await self.retry_policy.run(
            lambda: self.fetch_and_parse(source.feed_url),
            description=f"poll {source.id}"
        )
        articles = self.parse_entries(entries, source)
        new_articles = self.select_new(articles, source.cursor)

        cursor = source.cursor.advance(
            (article.guid for article in articles),
            (article.published_at for article in articles),
            window=self.seen_window,
        )

        logger.info(f"Found {len(new_articles)} new of {len(articles)} articles from {source.id}")
        return PollResult(source_id=source.id, articles=new_articles, cursor=cursor,
                          total_entries=len(articles))

    def commit_cursor(self, source: Source, cursor: FeedCursor) -> None:
        """Persist the cursor after the source's run has completed."""
        if self.registry is not None:
            self.registry.update_cursor(source.id, cursor)
        else:
            source.cursor = cursor
        logger.debug(f"Committed cursor for {source.id}: {len(cursor.seen_guids)} guids")

    def parse_published_date(self, entry: Any) -> Optional[datetime]:
        """Parse published date from feed entry, normalized to UTC."""
        for field_name in ('published', 'updated', 'created'):
            date_str = entry.get(field_name)
            if not date_str:
                continue
            try:
                dt = date_parser.parse(date_str)
            except (ValueError, OverflowError) as e:
                logger.debug(f"Failed to parse date '{date_str}': {e}")
                continue
            if dt.tzinfo is None:
                # Assume UTC if no timezone info
                dt = pytz.utc.localize(dt)
            return dt.astimezone(pytz.utc)

        parsed = entry.get('published_parsed') or entry.get('updated_parsed')
        if parsed:
            return pytz.utc.localize(datetime(*parsed[:6]))
        return None

    @staticmethod
    def _extract_content(entry: Any) -> str:
        """content:encoded first, then summary/description."""
        contents = entry.get('content') or []
        for item in contents:
            value = item.get('value') if hasattr(item, 'get') else None
            if value:
                return value
        return entry.get('summary') or entry.get('description') or ''
