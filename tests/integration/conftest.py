import asyncio
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Union
from xml.sax.saxutils import escape

import httpx
import pytest
from openai import AsyncOpenAI

PROJECT_ROOT = Path(__file__).resolve().parents[2]
SRC_PATH = PROJECT_ROOT / "src"
if str(SRC_PATH) not in sys.path:
    sys.path.insert(0, str(SRC_PATH))

# Also add the project root to handle absolute imports
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from core.artifacts import ArtifactWriter  # noqa: E402
from core.ecosystems import EcosystemMapper, StaticEcosystemStore  # noqa: E402
from core.feed_poller import FeedPoller  # noqa: E402
from core.models import Classification, Source  # noqa: E402
from core.orchestrator import PipelineOrchestrator  # noqa: E402
from core.retry import RetryPolicy  # noqa: E402
from core.sources import InMemorySourceStore, SourceRegistry  # noqa: E402
from integrations.openai_client import OpenAIClassifier  # noqa: E402

RUN_TIME = datetime(2024, 1, 10, 10, 0, 0, tzinfo=timezone.utc)


def rss_document(items: Sequence[Dict[str, str]], title: str = "Test Feed") -> bytes:
    """Build an RSS 2.0 document from item dicts (title, link, guid, pubDate, description, content)."""
    parts = [
        '<?xml version="1.0" encoding="UTF-8"?>',
        '<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/">',
        f"<channel><title>{escape(title)}</title><link>https://example.org</link>",
    ]
    for item in items:
        parts.append("<item>")
        for tag in ("title", "link", "guid", "pubDate", "description"):
            if tag in item:
                parts.append(f"<{tag}>{escape(item[tag])}</{tag}>")
        if "content" in item:
            parts.append(f"<content:encoded><![CDATA[{item['content']}]]></content:encoded>")
        parts.append("</item>")
    parts.append("</channel></rss>")
    return "".join(parts).encode("utf-8")


def sample_items(count: int = 3, prefix: str = "item") -> List[Dict[str, str]]:
    return [
        {
            "title": f"Story {i}",
            "link": f"https://example.org/{prefix}-{i}",
            "guid": f"{prefix}-{i}",
            "pubDate": f"Wed, 10 Jan 2024 0{i}:00:00 GMT",
            "description": f"<p>Forest restoration story number {i}.</p>",
        }
        for i in range(1, count + 1)
    ]


def fast_policy(max_retries: int = 3, sleeps: Optional[List[float]] = None) -> RetryPolicy:
    """Retry policy that records delays instead of sleeping."""
    async def record_sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    return RetryPolicy(max_retries=max_retries, base_delay=1.0, max_delay=30.0, max_elapsed=None,
                       sleep=record_sleep)


Response = Union[Sequence[Classification], Exception]


class FakeClassifier:
    """Classifier returning scripted results, keyed by a substring of the content."""

    def __init__(self, default: Optional[Response] = None,
                 by_content: Optional[Dict[str, Response]] = None,
                 delay: float = 0.0) -> None:
        self.default = default if default is not None else (
            Classification("Conservation", 0.9, "About forests."),
        )
        self.by_content = by_content or {}
        self.delay = delay
        self.calls: List[str] = []

    async def classify(self, normalized_content: str):
        self.calls.append(normalized_content)
        if self.delay:
            await asyncio.sleep(self.delay)
        response = self.default
        for marker, scripted in self.by_content.items():
            if marker in normalized_content:
                response = scripted
                break
        if isinstance(response, Exception):
            raise response
        return tuple(response)


class FakeArtifactStore:
    """Artifact store that keeps objects in a dict."""

    def __init__(self, errors: Optional[List[Exception]] = None) -> None:
        self.objects: Dict[str, bytes] = {}
        self.puts: List[str] = []
        self.errors = list(errors or [])

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> str:
        self.puts.append(key)
        if self.errors:
            raise self.errors.pop(0)
        self.objects[key] = body
        return f"memory://{key}"


class FakeFeedPoller(FeedPoller):
    """Feed poller serving scripted bodies instead of making HTTP requests."""

    def __init__(self, feeds: Dict[str, Any], **kwargs) -> None:
        kwargs.setdefault("retry_policy", fast_policy(max_retries=1))
        super().__init__(**kwargs)
        self.feeds = feeds
        self.requests: List[str] = []

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    async def fetch_feed(self, url: str) -> bytes:
        self.requests.append(url)
        body = self.feeds[url]
        if callable(body):
            body = body()
        if isinstance(body, Exception):
            raise body
        return body


def make_registry(*sources: Source) -> SourceRegistry:
    return SourceRegistry(InMemorySourceStore(list(sources)))


@pytest.fixture
def grist_source() -> Source:
    return Source(id="grist", display_name="Grist", feed_url="https://grist.org/feed/")


@pytest.fixture
def artifact_store() -> FakeArtifactStore:
    return FakeArtifactStore()


@pytest.fixture
def build_orchestrator(artifact_store) -> Callable[..., PipelineOrchestrator]:
    """Factory wiring an orchestrator from fakes; keyword arguments override the parts."""

    def factory(registry: SourceRegistry, feeds: Dict[str, Any], classifier: Any = None,
                mapper: Optional[EcosystemMapper] = None, store: Any = None, **kwargs) -> PipelineOrchestrator:
        poller = FakeFeedPoller(feeds, registry=registry)
        writer = ArtifactWriter(store or artifact_store, prefix="rss-feeds", retry_policy=fast_policy(max_retries=2))
        kwargs.setdefault("clock", lambda: RUN_TIME)
        return PipelineOrchestrator(
            registry=registry,
            poller=poller,
            classifier=classifier or FakeClassifier(),
            mapper=mapper or EcosystemMapper(StaticEcosystemStore(), retry_policy=fast_policy(max_retries=1)),
            writer=writer,
            **kwargs,
        )

    return factory


def completion(content: Optional[str], finish_reason: str = "stop") -> Dict[str, Any]:
    """Chat completion body as returned by the OpenAI API."""
    return {
        "id": "chatcmpl-test",
        "object": "chat.completion",
        "created": 1704880800,
        "model": "gpt-4o-mini",
        "choices": [{
            "index": 0,
            "message": {"role": "assistant", "content": content},
            "finish_reason": finish_reason,
            "logprobs": None,
        }],
        "usage": {"prompt_tokens": 120, "completion_tokens": 30, "total_tokens": 150},
    }


class ScriptedTransport:
    """Serves scripted httpx responses in order and records requests."""

    def __init__(self, responses: Sequence[httpx.Response]) -> None:
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responses.pop(0)


def openai_classifier(responses: Sequence[httpx.Response], sleeps: Optional[List[float]] = None,
                      max_retries: int = 3):
    """OpenAIClassifier talking to a scripted transport instead of the API."""
    transport = ScriptedTransport(responses)
    client = AsyncOpenAI(
        api_key="sk-test",
        base_url="https://api.openai.test/v1",
        max_retries=0,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(transport)),
    )
    classifier = OpenAIClassifier(client=client, retry_policy=fast_policy(max_retries=max_retries, sleeps=sleeps))
    return classifier, transport
