import asyncio
import json

import httpx
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from conftest import (
    RUN_TIME, FakeArtifactStore, FakeClassifier, completion, fast_policy, make_registry,
    openai_classifier, rss_document, sample_items,
)
from core.artifacts import ArtifactWriter
from core.ecosystems import EcosystemMapper, StaticEcosystemStore
from core.exceptions import (
    ArtifactAccessDenied, ClassificationFailed, EcosystemLookupError, FetchError, MalformedResponse,
    RateLimited, ReferenceMisconfigured, SourceNotFound,
)
from core.feed_poller import FeedPoller
from core.models import Classification, Source
from core.orchestrator import PipelineOrchestrator, RunAborted, failure_kind
from core.retry import RetryExhausted

GRIST_URL = "https://grist.org/feed/"
EARTH_URL = "https://earth.org/feed/"
GRIST_KEY = "rss-feeds/grist/data-grist-2024-01-10T10-00-00.json"
EARTH_KEY = "rss-feeds/earth-org/data-earth-org-2024-01-10T10-00-00.json"


def earth_source() -> Source:
    return Source(id="earth-org", display_name="Earth.Org", feed_url=EARTH_URL)


def artifact(store: FakeArtifactStore, key: str = GRIST_KEY) -> dict:
    return json.loads(store.objects[key])


def classifications_json(*entries):
    return json.dumps({"classifications": list(entries)})


class ConcurrencyProbe:
    """Classifier that records how many calls overlap."""

    def __init__(self, delay: float = 0.02):
        self.delay = delay
        self.in_flight = 0
        self.peak = 0

    async def classify(self, normalized_content):
        self.in_flight += 1
        self.peak = max(self.peak, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
        finally:
            self.in_flight -= 1
        return (Classification("Nature", 0.8, "Wildlife."),)


class SlowFirstClassifier:
    """Finishes the first feed item last."""

    async def classify(self, normalized_content):
        await asyncio.sleep(0.05 if "number 1" in normalized_content else 0)
        return (Classification("Conservation", 0.9, "Forests."),)


class FailingLookupStore:
    def __init__(self, error_factory):
        self.error_factory = error_factory

    async def find_by_category(self, category):
        raise self.error_factory(category)


@pytest.mark.asyncio
async def test_confident_articles_are_processed_and_written(build_orchestrator, artifact_store, grist_source):
    registry = make_registry(grist_source)
    orchestrator = build_orchestrator(registry, {GRIST_URL: rss_document(sample_items(3))})

    summary = await orchestrator.run()

    assert summary.success
    assert (summary.processed, summary.failed) == (3, 0)
    assert summary.sources[0].artifact_location == f"memory://{GRIST_KEY}"
    data = artifact(artifact_store)
    assert data["counts"] == {"total": 3, "processed": 3, "failed": 0, "unclassified": 0, "unmapped": 0}
    assert [entry["outcome"] for entry in data["entries"]] == ["success"] * 3
    assert data["entries"][0]["ecosystems"] == [
        {"index": 0, "ecosystem": "Forest Conservation", "category": "Conservation"},
    ]
    assert set(registry.get("grist").cursor.seen_guids) == {"item-1", "item-2", "item-3"}


@pytest.mark.asyncio
async def test_rate_limited_article_is_aggregated_after_two_retries(build_orchestrator, artifact_store,
                                                                    grist_source):
    rate_limited = {"error": {"message": "Rate limit reached", "type": "rate_limit_error",
                              "code": "rate_limit_exceeded"}}
    content = classifications_json({"category": "Nature", "confidence": 0.85, "explanation": "Wildlife."})
    sleeps = []
    classifier, transport = openai_classifier([
        httpx.Response(429, json=rate_limited),
        httpx.Response(429, json=rate_limited),
        httpx.Response(200, json=completion(content)),
    ], sleeps=sleeps)
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      classifier=classifier)

    summary = await orchestrator.run()

    assert summary.success
    assert len(transport.requests) == 3
    assert len(sleeps) == 2
    entry = artifact(artifact_store)["entries"][0]
    assert entry["outcome"] == "success"
    assert [c["category"] for c in entry["classifications"]] == ["Nature"]


@pytest.mark.asyncio
async def test_invalid_credential_aborts_the_run(build_orchestrator, artifact_store, grist_source):
    invalid_key = {"error": {"message": "Incorrect API key provided", "type": "invalid_request_error",
                             "code": "invalid_api_key"}}
    classifier, transport = openai_classifier([httpx.Response(401, json=invalid_key)])
    registry = make_registry(grist_source)
    orchestrator = build_orchestrator(registry, {GRIST_URL: rss_document(sample_items(3))},
                                      classifier=classifier, classification_window=1)

    summary = await orchestrator.run()

    assert len(transport.requests) == 1
    assert summary.global_failure["kind"] == "AuthError"
    assert summary.global_failure["severity"] == "permanent_global"
    assert not summary.success
    assert artifact_store.puts == []
    assert registry.get("grist").cursor.is_initial
    kinds = sorted(failure["kind"] for failure in summary.sources[0].failures)
    assert kinds == ["Aborted", "Aborted", "AuthError"]


@pytest.mark.asyncio
async def test_unknown_category_is_dropped_and_article_succeeds(build_orchestrator, artifact_store,
                                                                grist_source):
    content = classifications_json(
        {"category": "Conservation", "confidence": 0.8, "explanation": "Forests."},
        {"category": "Space Weather", "confidence": 0.95, "explanation": "Not a label."},
    )
    classifier, _ = openai_classifier([httpx.Response(200, json=completion(content))])
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      classifier=classifier)

    await orchestrator.run()

    entry = artifact(artifact_store)["entries"][0]
    assert [c["category"] for c in entry["classifications"]] == ["Conservation"]
    assert entry["outcome"] == "success"


@pytest.mark.asyncio
async def test_empty_feed_still_writes_an_empty_artifact(build_orchestrator, artifact_store, grist_source):
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document([])})

    summary = await orchestrator.run()

    assert summary.success
    assert (summary.processed, summary.failed) == (0, 0)
    data = artifact(artifact_store)
    assert data["entries"] == []
    assert data["counts"]["total"] == 0


@pytest.mark.asyncio
async def test_malformed_response_fails_only_that_article(build_orchestrator, artifact_store, grist_source):
    classifier = FakeClassifier(by_content={
        "number 2": MalformedResponse("no JSON object found", raw_payload="I think this is about forests"),
    })
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(3))},
                                      classifier=classifier)

    summary = await orchestrator.run()

    assert summary.success
    assert (summary.processed, summary.failed) == (2, 1)
    entries = artifact(artifact_store)["entries"]
    assert [entry["outcome"] for entry in entries] == ["success", "failed", "success"]
    failure = entries[1]["failure"]
    assert failure["kind"] == "MalformedResponse"
    assert failure["stage"] == "normalized"
    assert failure["payload"] == "I think this is about forests"


@pytest.mark.asyncio
async def test_failing_source_does_not_affect_others(build_orchestrator, artifact_store, grist_source):
    registry = make_registry(grist_source, earth_source())
    orchestrator = build_orchestrator(registry, {
        GRIST_URL: FetchError(GRIST_URL, "Connection refused"),
        EARTH_URL: rss_document(sample_items(2, prefix="earth")),
    })

    summary = await orchestrator.run()

    by_id = {result.source_id: result for result in summary.sources}
    assert by_id["grist"].error["kind"] == "FetchError"
    assert by_id["grist"].artifact_location is None
    assert by_id["earth-org"].error is None
    assert by_id["earth-org"].processed == 2
    assert summary.global_failure is None
    assert not summary.success
    assert list(artifact_store.objects) == [EARTH_KEY]
    assert registry.get("grist").cursor.is_initial


@pytest.mark.asyncio
async def test_run_timeout_fails_in_flight_articles(build_orchestrator, artifact_store, grist_source):
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(2))},
                                      classifier=FakeClassifier(delay=5.0))

    summary = await orchestrator.run(timeout=0.2)

    assert summary.timed_out
    assert summary.failed == 2
    assert {failure["kind"] for failure in summary.sources[0].failures} == {"Timeout"}
    # Articles that timed out are still reported in the artifact
    assert artifact(artifact_store)["counts"]["failed"] == 2


@pytest.mark.asyncio
async def test_access_denied_on_write_aborts_remaining_sources(build_orchestrator, grist_source):
    store = FakeArtifactStore(errors=[ArtifactAccessDenied(GRIST_KEY)])
    registry = make_registry(grist_source, earth_source())
    orchestrator = build_orchestrator(registry, {
        GRIST_URL: rss_document(sample_items(1)),
        EARTH_URL: rss_document(sample_items(1, prefix="earth")),
    }, store=store, max_concurrent_sources=1)

    summary = await orchestrator.run()

    assert summary.global_failure["kind"] == "StorageError"
    assert summary.global_failure["error_code"] == "AccessDenied"
    assert store.puts == [GRIST_KEY]
    assert summary.sources[1].error["kind"] == "Aborted"
    assert registry.get("grist").cursor.is_initial
    assert registry.get("earth-org").cursor.is_initial


@pytest.mark.asyncio
async def test_lookup_failure_leaves_article_unmapped(build_orchestrator, artifact_store, grist_source):
    mapper = EcosystemMapper(
        FailingLookupStore(lambda category: EcosystemLookupError(category, ConnectionError("reset"))),
        retry_policy=fast_policy(max_retries=1),
    )
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      mapper=mapper)

    summary = await orchestrator.run()

    assert summary.success
    data = artifact(artifact_store)
    assert data["counts"]["unmapped"] == 1
    assert data["counts"]["processed"] == 1
    entry = data["entries"][0]
    assert entry["outcome"] == "unmapped"
    assert entry["ecosystems"] == []
    assert entry["mapping_error"]


@pytest.mark.asyncio
async def test_misconfigured_reference_table_aborts_the_run(build_orchestrator, artifact_store, grist_source):
    mapper = EcosystemMapper(
        FailingLookupStore(lambda category: ReferenceMisconfigured("Ecosystem Mapping", RuntimeError("42P01"))),
        retry_policy=fast_policy(max_retries=1),
    )
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      mapper=mapper)

    summary = await orchestrator.run()

    assert summary.global_failure["kind"] == "LookupFailed"
    assert summary.sources[0].failures[0]["kind"] == "LookupFailed"
    assert artifact_store.puts == []


@pytest.mark.asyncio
async def test_article_with_no_category_is_unclassified(build_orchestrator, artifact_store, grist_source):
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      classifier=FakeClassifier(default=()))

    summary = await orchestrator.run()

    assert summary.success
    data = artifact(artifact_store)
    assert data["counts"]["unclassified"] == 1
    assert data["entries"][0]["outcome"] == "unclassified"


@pytest.mark.asyncio
async def test_title_is_classified_when_item_has_no_body(build_orchestrator, grist_source):
    items = [{"title": "Wolves return to the Alps", "link": "https://grist.org/wolves", "guid": "wolves"}]
    classifier = FakeClassifier()
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(items)},
                                      classifier=classifier)

    await orchestrator.run()

    assert classifier.calls == ["Wolves return to the Alps"]


@pytest.mark.asyncio
async def test_artifact_keeps_feed_order_regardless_of_completion_order(build_orchestrator, artifact_store,
                                                                        grist_source):
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(3))},
                                      classifier=SlowFirstClassifier())

    await orchestrator.run()

    assert [entry["article"]["guid"] for entry in artifact(artifact_store)["entries"]] == \
        ["item-1", "item-2", "item-3"]


@pytest.mark.asyncio
async def test_classification_gate_is_shared_across_sources(build_orchestrator, grist_source):
    probe = ConcurrencyProbe()
    orchestrator = build_orchestrator(make_registry(grist_source, earth_source()), {
        GRIST_URL: rss_document(sample_items(4)),
        EARTH_URL: rss_document(sample_items(4, prefix="earth")),
    }, classifier=probe, classification_window=2)

    summary = await orchestrator.run()

    assert summary.processed == 8
    assert probe.peak == 2


@pytest.mark.asyncio
async def test_second_run_only_processes_new_items(build_orchestrator, artifact_store, grist_source):
    feeds = {GRIST_URL: rss_document(sample_items(3))}
    classifier = FakeClassifier()
    orchestrator = build_orchestrator(make_registry(grist_source), feeds, classifier=classifier)

    first = await orchestrator.run()
    second = await orchestrator.run()
    feeds[GRIST_URL] = rss_document(sample_items(4))
    third = await orchestrator.run()

    assert (first.processed, second.processed, third.processed) == (3, 0, 1)
    assert len(classifier.calls) == 4
    assert len(artifact_store.puts) == 3


@pytest.mark.asyncio
async def test_explicit_source_selection(build_orchestrator, artifact_store, grist_source):
    registry = make_registry(grist_source, earth_source())
    orchestrator = build_orchestrator(registry, {
        GRIST_URL: rss_document(sample_items(1)),
        EARTH_URL: rss_document(sample_items(1, prefix="earth")),
    })

    summary = await orchestrator.run(source_ids=["earth-org"])

    assert [result.source_id for result in summary.sources] == ["earth-org"]
    assert list(artifact_store.objects) == [EARTH_KEY]

    with pytest.raises(SourceNotFound):
        await orchestrator.run(source_ids=["missing"])


@pytest.mark.parametrize("error,kind", [
    (FetchError(GRIST_URL, "refused"), "FetchError"),
    (RetryExhausted(3, FetchError(GRIST_URL, "refused")), "FetchError"),
    (ArtifactAccessDenied("k"), "StorageError"),
    (ClassificationFailed(3, RateLimited("slow down")), "ClassificationFailed"),
    (RateLimited("slow down"), "RateLimited"),
    (asyncio.TimeoutError(), "Timeout"),
    (RunAborted("stop"), "Aborted"),
    (KeyError("boom"), "Unexpected"),
])
def test_failure_kind(error, kind):
    assert failure_kind(error) == kind


@pytest.mark.asyncio
async def test_unreachable_host_fails_only_its_source(artifact_store):
    good = Source(id="good", display_name="Good", feed_url="")
    bad = Source(id="bad", display_name="Bad", feed_url="http://a..b/feed")
    app = web.Application()

    async def handle(request):
        return web.Response(body=rss_document(sample_items(2)), content_type="application/rss+xml")

    app.router.add_get("/feed", handle)

    async with TestServer(app) as server:
        good.feed_url = str(server.make_url("/feed"))
        registry = make_registry(good, bad)
        orchestrator = PipelineOrchestrator(
            registry=registry,
            poller=FeedPoller(retry_policy=fast_policy(max_retries=1), registry=registry),
            classifier=FakeClassifier(),
            mapper=EcosystemMapper(StaticEcosystemStore(), retry_policy=fast_policy(max_retries=1)),
            writer=ArtifactWriter(artifact_store, retry_policy=fast_policy(max_retries=1)),
            clock=lambda: RUN_TIME,
        )
        summary = await orchestrator.run()

    by_id = {result.source_id: result for result in summary.sources}
    assert by_id["bad"].error["kind"] == "FetchError"
    assert by_id["good"].error is None
    assert by_id["good"].processed == 2
    assert "rss-feeds/good/data-good-2024-01-10T10-00-00.json" in artifact_store.objects


@pytest.mark.asyncio
async def test_unexpected_poll_error_is_recorded_per_source(build_orchestrator, artifact_store, grist_source):
    orchestrator = build_orchestrator(make_registry(grist_source, earth_source()), {
        GRIST_URL: RuntimeError("feed handler crashed"),
        EARTH_URL: rss_document(sample_items(1, prefix="earth")),
    })

    summary = await orchestrator.run()

    by_id = {result.source_id: result for result in summary.sources}
    assert by_id["grist"].error["kind"] == "Unexpected"
    assert "feed handler crashed" in by_id["grist"].error["message"]
    assert by_id["earth-org"].processed == 1
    assert list(artifact_store.objects) == [EARTH_KEY]


@pytest.mark.asyncio
async def test_stored_cursor_without_offset_still_deduplicates(build_orchestrator, artifact_store):
    source = Source.from_dict({
        "id": "grist",
        "display_name": "Grist",
        "feed_url": GRIST_URL,
        "cursor": {"last_published": "2024-01-10T01:00:00", "seen_guids": ["older"]},
    })
    items = [
        {"title": "Old news", "link": "https://grist.org/old", "pubDate": "Wed, 10 Jan 2024 00:30:00 GMT"},
        {"title": "Fresh news", "link": "https://grist.org/fresh", "pubDate": "Wed, 10 Jan 2024 03:00:00 GMT"},
    ]
    orchestrator = build_orchestrator(make_registry(source), {GRIST_URL: rss_document(items)})

    summary = await orchestrator.run()

    assert summary.success
    assert [entry["article"]["title"] for entry in artifact(artifact_store)["entries"]] == ["Fresh news"]


@pytest.mark.asyncio
async def test_exhausted_rate_limit_retries_fail_article_as_classification_failed(build_orchestrator,
                                                                                  artifact_store, grist_source):
    rate_limited = {"error": {"message": "Rate limit reached", "type": "rate_limit_error",
                              "code": "rate_limit_exceeded"}}
    classifier, transport = openai_classifier([httpx.Response(429, json=rate_limited)] * 2, max_retries=1)
    orchestrator = build_orchestrator(make_registry(grist_source), {GRIST_URL: rss_document(sample_items(1))},
                                      classifier=classifier)

    summary = await orchestrator.run()

    assert len(transport.requests) == 2
    assert summary.global_failure is None
    failure = artifact(artifact_store)["entries"][0]["failure"]
    assert failure["kind"] == "ClassificationFailed"
    assert "Rate limit reached" in failure["message"]
