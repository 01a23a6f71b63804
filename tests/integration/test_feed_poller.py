from datetime import datetime, timezone
from typing import Dict, Optional

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import fast_policy, make_registry, rss_document, sample_items
from core.exceptions import FetchError, ParseError
from core.feed_poller import FeedPoller
from core.models import Article, FeedCursor, Source
from core.retry import RetryExhausted

MALFORMED_FEED = b"<?xml version='1.0'?><rss><channel><title>Broken & unclosed"


class FeedApp:
    """Serves a mutable feed body on /feed."""

    def __init__(self, body: bytes = b"", status: int = 200):
        self.body = body
        self.status = status
        self.hits = 0

    async def handle(self, request: web.Request) -> web.Response:
        self.hits += 1
        return web.Response(body=self.body, status=self.status, content_type="application/rss+xml")

    def app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/feed", self.handle)
        return app


def make_source(url: str) -> Source:
    return Source(id="grist", display_name="Grist", feed_url=url)


@pytest.mark.asyncio
async def test_poll_parses_valid_feed_in_order():
    items = sample_items(3)
    items[0]["content"] = "<p>Full <b>body</b> text</p>"
    feed = FeedApp(rss_document(items))

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            result = await poller.poll(source)

    assert [a.guid for a in result.articles] == ["item-1", "item-2", "item-3"]
    assert [a.position for a in result.articles] == [0, 1, 2]
    first = result.articles[0]
    assert first.raw_content == "<p>Full <b>body</b> text</p>"
    assert first.published_at == datetime(2024, 1, 10, 1, 0, tzinfo=timezone.utc)
    assert result.articles[1].raw_content == "<p>Forest restoration story number 2.</p>"
    assert set(result.cursor.seen_guids) == {"item-1", "item-2", "item-3"}
    # Polling does not commit the cursor
    assert source.cursor.is_initial


@pytest.mark.asyncio
async def test_empty_body_is_an_empty_feed():
    feed = FeedApp(b"")

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            result = await poller.poll(source)

    assert result.articles == []
    assert feed.hits == 1


@pytest.mark.asyncio
async def test_channel_without_items_is_an_empty_feed():
    feed = FeedApp(rss_document([]))

    async with TestServer(feed.app()) as server:
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            result = await poller.poll(make_source(str(server.make_url("/feed"))))

    assert result.articles == []
    assert result.total_entries == 0


@pytest.mark.asyncio
async def test_malformed_feed_raises_parse_error():
    feed = FeedApp(MALFORMED_FEED)

    async with TestServer(feed.app()) as server:
        url = str(server.make_url("/feed"))
        async with FeedPoller(retry_policy=fast_policy(max_retries=1)) as poller:
            with pytest.raises(ParseError):
                await poller.fetch_and_parse(url)
            with pytest.raises(RetryExhausted) as exc_info:
                await poller.poll(make_source(url))

    assert isinstance(exc_info.value.last_error, ParseError)


@pytest.mark.asyncio
async def test_http_error_status_raises_fetch_error():
    feed = FeedApp(b"not here", status=404)

    async with TestServer(feed.app()) as server:
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            with pytest.raises(FetchError) as exc_info:
                await poller.fetch_feed(str(server.make_url("/feed")))

    assert exc_info.value.context["status"] == 404


@pytest.mark.asyncio
async def test_unreachable_host_is_retried_then_gives_up():
    sleeps = []
    async with FeedPoller(timeout=2, retry_policy=fast_policy(max_retries=2, sleeps=sleeps)) as poller:
        with pytest.raises(RetryExhausted) as exc_info:
            await poller.poll(make_source("http://127.0.0.1:1/feed"))

    assert isinstance(exc_info.value.last_error, FetchError)
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
async def test_committed_cursor_suppresses_already_seen_items():
    feed = FeedApp(rss_document(sample_items(2)))

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        registry = make_registry(source)
        async with FeedPoller(retry_policy=fast_policy(), registry=registry) as poller:
            first = await poller.poll(source)
            poller.commit_cursor(source, first.cursor)

            second = await poller.poll(source)

            feed.body = rss_document(sample_items(3))
            third = await poller.poll(source)

    assert len(first.articles) == 2
    assert second.articles == []
    assert [a.guid for a in third.articles] == ["item-3"]
    assert registry.get("grist").cursor == first.cursor


@pytest.mark.asyncio
async def test_duplicate_guid_within_document_is_yielded_once():
    items = sample_items(2)
    items[1]["guid"] = items[0]["guid"]
    feed = FeedApp(rss_document(items))

    async with TestServer(feed.app()) as server:
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            result = await poller.poll(make_source(str(server.make_url("/feed"))))

    assert [a.title for a in result.articles] == ["Story 1"]


@pytest.mark.asyncio
async def test_items_without_guid_get_stable_synthetic_ids():
    items = [{"title": "No guid", "link": "https://example.org/no-guid", "description": "x"}]
    feed = FeedApp(rss_document(items))

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            first = await poller.poll(source)
            poller.commit_cursor(source, first.cursor)
            second = await poller.poll(source)

    assert len(first.articles) == 1
    assert first.articles[0].guid.startswith("sha256:")
    assert first.articles[0].has_feed_guid is False
    assert second.articles == []


@pytest.mark.asyncio
async def test_fetch_outside_context_manager_is_an_error():
    poller = FeedPoller()

    with pytest.raises(RuntimeError):
        await poller.fetch_feed("http://127.0.0.1:1/feed")


def guidless_item(title: str, pub_date: Optional[str] = None) -> Dict[str, str]:
    item = {"title": title, "link": f"https://example.org/{title.lower().replace(' ', '-')}",
            "description": f"{title} body"}
    if pub_date:
        item["pubDate"] = pub_date
    return item


@pytest.mark.asyncio
async def test_items_without_guid_are_new_only_when_strictly_newer():
    feed = FeedApp(rss_document([guidless_item("Peat bogs", "Wed, 10 Jan 2024 01:00:00 GMT")]))

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            first = await poller.poll(source)
            poller.commit_cursor(source, first.cursor)

            feed.body = rss_document([
                guidless_item("Peat bogs", "Wed, 10 Jan 2024 01:00:00 GMT"),
                guidless_item("Same hour", "Wed, 10 Jan 2024 01:00:00 GMT"),
                guidless_item("Kelp forests", "Wed, 10 Jan 2024 02:00:00 GMT"),
                guidless_item("Undated"),
            ])
            second = await poller.poll(source)

    assert [a.title for a in first.articles] == ["Peat bogs"]
    assert source.cursor.last_published == datetime(2024, 1, 10, 1, 0, tzinfo=timezone.utc)
    assert [a.title for a in second.articles] == ["Kelp forests"]
    assert second.cursor.last_published == datetime(2024, 1, 10, 2, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_undated_item_without_guid_is_only_new_on_first_poll():
    feed = FeedApp(rss_document([guidless_item("Undated")]))

    async with TestServer(feed.app()) as server:
        source = make_source(str(server.make_url("/feed")))
        async with FeedPoller(retry_policy=fast_policy()) as poller:
            first = await poller.poll(source)
            poller.commit_cursor(source, first.cursor)

            feed.body = rss_document([guidless_item("Another undated")])
            second = await poller.poll(source)

    assert [a.title for a in first.articles] == ["Undated"]
    assert second.articles == []


def test_select_new_compares_against_cursor_timestamp():
    poller = FeedPoller()
    cursor = FeedCursor(last_published=datetime(2024, 1, 10, 1, 0, tzinfo=timezone.utc), seen_guids=("x",))

    def article(guid, published_at):
        return Article(source_id="grist", guid=guid, title=guid, link=f"https://grist.org/{guid}",
                       published_at=published_at, has_feed_guid=False)

    articles = [
        article("older", datetime(2024, 1, 10, 0, 30, tzinfo=timezone.utc)),
        article("equal", datetime(2024, 1, 10, 1, 0, tzinfo=timezone.utc)),
        article("newer", datetime(2024, 1, 10, 1, 0, 1, tzinfo=timezone.utc)),
        article("undated", None),
    ]

    assert [a.guid for a in poller.select_new(articles, cursor)] == ["newer"]


@pytest.mark.asyncio
async def test_unencodable_host_is_a_fetch_error():
    async with FeedPoller(retry_policy=fast_policy()) as poller:
        with pytest.raises(FetchError):
            await poller.fetch_feed("http://a..b/feed")
