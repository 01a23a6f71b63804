#!/usr/bin/env python3
"""
Pipeline orchestrator.

Drives one polling pass over the active sources:

    poll -> normalize -> classify -> map -> aggregate -> write artifact -> commit cursor

Sources run as concurrent workers bounded by a semaphore. Classification is
admitted through one run-wide gate shared by every source, so a single busy
feed cannot exhaust the classifier's rate budget for the others. Each article
fails independently; only errors marked permanent-global abort the run.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, Iterable, Optional, TypeVar

import pytz

from .aggregator import BatchAggregator
from .artifacts import ArtifactWriter
from .ecosystems import EcosystemMapper
from .exceptions import (
    AuthError, ClassificationError, EcosystemLookupError, FetchError,
    MalformedResponse, ParseError, PipelineError, RateLimited, ReferenceMisconfigured,
    StorageError, is_global_error,
)
from .feed_poller import FeedPoller, PollResult
from .models import ArticleState, ProcessingRecord, RunSummary, Source, SourceRunResult
from .retry import RetryExhausted
from .sources.registry import SourceRegistry
from .text_sanitizer import DEFAULT_MAX_CHARS, normalize_content

logger = logging.getLogger(__name__)

T = TypeVar('T')

DEFAULT_RUN_TIMEOUT = 600.0


class RunAborted(Exception):
    """Raised inside a worker when another worker hit a permanent-global error."""


def failure_kind(error: BaseException) -> str:
    """Name of the failure kind recorded for ``error``."""
    # Exhausted classifier retries stay ClassificationFailed; other wrappers are unwrapped
    while isinstance(error, RetryExhausted):
        inner = error.last_error
        if inner is None or inner is error:
            break
        error = inner

    if isinstance(error, FetchError):
        return 'FetchError'
    if isinstance(error, ParseError):
        return 'ParseError'
    if isinstance(error, RateLimited):
        return 'RateLimited'
    if isinstance(error, AuthError):
        return 'AuthError'
    if isinstance(error, MalformedResponse):
        return 'MalformedResponse'
    if isinstance(error, ClassificationError):
        return 'ClassificationFailed'
    if isinstance(error, (EcosystemLookupError, ReferenceMisconfigured)):
        return 'LookupFailed'
    if isinstance(error, StorageError):
        return 'StorageError'
    if isinstance(error, asyncio.TimeoutError):
        return 'Timeout'
    if isinstance(error, RunAborted):
        return 'Aborted'
    return 'Unexpected'


def _error_dict(kind: str, error: BaseException) -> Dict[str, Any]:
    details = {'kind': kind, 'message': str(error) or error.__class__.__name__}
    if isinstance(error, PipelineError):
        details['severity'] = error.severity
        if error.error_code:
            details['error_code'] = error.error_code
    return details


@dataclass
class _RunContext:
    """State shared by the workers of one run."""
    run_timestamp: datetime
    deadline: float
    source_gate: asyncio.Semaphore
    classification_gate: asyncio.Semaphore
    abort: asyncio.Event = field(default_factory=asyncio.Event)
    global_failure: Optional[Dict[str, Any]] = None
    timed_out: bool = False

    def remaining(self) -> float:
        return max(0.0, self.deadline - asyncio.get_running_loop().time())

    def fail_globally(self, error: BaseException) -> None:
        if self.global_failure is None:
            self.global_failure = _error_dict(failure_kind(error), error)
            logger.error(f"Aborting run: {self.global_failure['kind']}: {self.global_failure['message']}")
        self.abort.set()


class PipelineOrchestrator:
    """Runs the feed pipeline across all active sources."""

    def __init__(self,
                 registry: SourceRegistry,
                 poller: FeedPoller,
                 classifier: Any,
                 mapper: EcosystemMapper,
                 writer: ArtifactWriter,
                 aggregator: Optional[BatchAggregator] = None,
                 max_concurrent_sources: int = 3,
                 classification_window: int = 4,
                 max_content_chars: int = DEFAULT_MAX_CHARS,
                 run_timeout: float = DEFAULT_RUN_TIMEOUT,
                 clock: Optional[Callable[[], datetime]] = None):
        """
        Initialize orchestrator.

        Args:
            registry: Source registry
            poller: Feed poller (entered as an async context manager per run)
            classifier: Object with ``async classify(text)``
            mapper: Ecosystem mapper
            writer: Artifact writer
            aggregator: Batch aggregator
            max_concurrent_sources: Sources processed at the same time
            classification_window: Classification calls in flight across the run
            max_content_chars: Normalized content limit
            run_timeout: Wall-clock budget of one run in seconds
            clock: Source of the run timestamp (UTC)
        """
        if max_concurrent_sources < 1:
            raise ValueError("max_concurrent_sources must be at least 1")
        if classification_window < 1:
            raise ValueError("classification_window must be at least 1")

        self.registry = registry
        self.poller = poller
        self.classifier = classifier
        self.mapper = mapper
        self.writer = writer
        self.aggregator = aggregator or BatchAggregator()
        self.max_concurrent_sources = max_concurrent_sources
        self.classification_window = classification_window
        self.max_content_chars = max_content_chars
        self.run_timeout = run_timeout
        self.clock = clock or (lambda: datetime.now(pytz.UTC))

    async def run(self, source_ids: Optional[Iterable[str]] = None,
                  timeout: Optional[float] = None) -> RunSummary:
        """
        Run one polling pass.

        Args:
            source_ids: Restrict the run to these sources (default: all active)
            timeout: Override the configured run timeout

        Returns:
            Summary of the run, produced even when nothing succeeded

        Raises:
            SourceNotFound: If ``source_ids`` names an unknown source
        """
        if source_ids:
            sources = [self.registry.get(source_id) for source_id in source_ids]
        else:
            sources = self.registry.list_active()

        started_at = self.clock()
        summary = RunSummary(run_id=uuid.uuid4().hex[:12], started_at=started_at)
        budget = self.run_timeout if timeout is None else timeout
        ctx = _RunContext(
            run_timestamp=started_at.replace(microsecond=0),
            deadline=asyncio.get_running_loop().time() + budget,
            source_gate=asyncio.Semaphore(self.max_concurrent_sources),
            classification_gate=asyncio.Semaphore(self.classification_window),
        )
        # Ecosystem lookups are cached per run
        self.mapper.clear_cache()

        logger.info(f"Starting run {summary.run_id} over {len(sources)} sources (timeout {budget}s)")
        async with self.poller:
            results = await asyncio.gather(*(self._run_source(ctx, source) for source in sources))

        summary.sources = list(results)
        summary.global_failure = ctx.global_failure
        summary.timed_out = ctx.timed_out
        summary.finished_at = self.clock()
        logger.info(f"Run {summary.run_id} finished: processed={summary.processed} failed={summary.failed} "
                    f"sources={len(summary.sources)} success={summary.success}")
        return summary

    async def _until_aborted(self, ctx: _RunContext, operation: Awaitable[T]) -> T:
        """Await ``operation`` unless the run is aborted first."""
        task = asyncio.ensure_future(operation)
        waiter = asyncio.ensure_future(ctx.abort.wait())
        try:
            await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task.done():
            return task.result()
        task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        raise RunAborted("run aborted")

    async def _run_source(self, ctx: _RunContext, source: Source) -> SourceRunResult:
        result = SourceRunResult(source_id=source.id)

        async with ctx.source_gate:
            if ctx.abort.is_set():
                result.error = {'kind': 'Aborted', 'message': 'Skipped: run aborted'}
                return result
            if ctx.remaining() <= 0:
                ctx.timed_out = True
                result.error = {'kind': 'Timeout', 'message': 'Skipped: run timeout elapsed'}
                return result

            try:
                poll = await asyncio.wait_for(self._until_aborted(ctx, self.poller.poll(source)),
                                              timeout=ctx.remaining())
            except asyncio.TimeoutError as e:
                ctx.timed_out = True
                result.error = _error_dict('Timeout', e)
                logger.warning(f"Polling {source.id} timed out")
                return result
            except RunAborted as e:
                result.error = _error_dict('Aborted', e)
                return result
            except (RetryExhausted, PipelineError) as e:
                result.error = _error_dict(failure_kind(e), e)
                logger.warning(f"Polling {source.id} failed: {e}")
                return result
            except Exception as e:
                result.error = _error_dict('Unexpected', e)
                logger.exception(f"Unexpected error polling {source.id}: {e}")
                return result

            return await self._process_source(ctx, source, poll, result)

    async def _process_source(self, ctx: _RunContext, source: Source, poll: PollResult,
                              result: SourceRunResult) -> SourceRunResult:
        records = [ProcessingRecord(article=article) for article in poll.articles]
        tasks = [asyncio.create_task(self._process_article(ctx, record)) for record in records]
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=ctx.remaining())
            if pending:
                ctx.timed_out = True
                logger.warning(f"Run timeout: {len(pending)} articles from {source.id} still in flight")
                for task in pending:
                    task.cancel()
                await asyncio.gather(*pending, return_exceptions=True)

        for record in records:
            if not record.is_terminal and record.state != ArticleState.MAPPED:
                if ctx.abort.is_set():
                    record.fail('Aborted', 'run aborted before the article completed')
                else:
                    record.fail('Timeout', 'run timeout elapsed before the article completed')

        result.processed = sum(1 for record in records if record.state != ArticleState.FAILED)
        result.failed = len(records) - result.processed
        result.failures = [
            {'guid': record.article.guid, 'title': record.article.title, **record.failure.to_dict()}
            for record in records if record.failure is not None
        ]

        if ctx.abort.is_set():
            result.error = {'kind': 'Aborted', 'message': 'No artifact written: run aborted'}
            return result

        try:
            aggregate = self.aggregator.aggregate(source, ctx.run_timestamp, records)
            # The upload is not cancelled even if the run is
            result.artifact_location = await asyncio.shield(self.writer.write(aggregate))
        except StorageError as e:
            if is_global_error(e):
                ctx.fail_globally(e)
            result.error = _error_dict(failure_kind(e), e)
            logger.error(f"Artifact write for {source.id} failed: {e}")
            return result
        except Exception as e:
            result.error = _error_dict('Unexpected', e)
            logger.exception(f"Could not write artifact for {source.id}: {e}")
            return result

        if ctx.abort.is_set():
            logger.warning(f"Not committing cursor for {source.id}: run aborted")
            return result

        try:
            self.poller.commit_cursor(source, poll.cursor)
        except Exception as e:
            result.error = _error_dict('Unexpected', e)
            logger.exception(f"Could not commit cursor for {source.id}: {e}")
        return result

    async def _process_article(self, ctx: _RunContext, record: ProcessingRecord) -> None:
        """Move one article to ``Mapped`` or ``Failed``. Never raises except on cancellation."""
        article = record.article
        try:
            content = normalize_content(article.raw_content, self.max_content_chars)
            if not content:
                content = normalize_content(article.title, self.max_content_chars)
            record.normalized(article.with_normalized(content))

            classifications = await self._classify(ctx, record)
            if classifications is None:
                return
            record.classified(classifications)

            if not classifications:
                record.mapped(())
                return

            try:
                ecosystems = await self._until_aborted(ctx, self.mapper.map_to_ecosystems(classifications))
            except EcosystemLookupError as e:
                logger.warning(f"Ecosystem lookup failed for {article.guid}, keeping it unmapped: {e}")
                record.mapped((), mapping_error=str(e))
                return
            record.mapped(ecosystems)

        except RunAborted:
            record.fail('Aborted', 'run aborted')
        except PipelineError as e:
            if is_global_error(e):
                ctx.fail_globally(e)
            kind = failure_kind(e)
            logger.warning(f"Article {article.guid} failed at {record.state.value}: {kind}: {e}")
            record.fail(kind, str(e))
        except Exception as e:
            logger.exception(f"Unexpected error processing {article.guid}: {e}")
            record.fail('Unexpected', f"{e.__class__.__name__}: {e}")

    async def _classify(self, ctx: _RunContext, record: ProcessingRecord):
        """Classify under the shared gate. Returns None when the record was failed."""
        if ctx.abort.is_set():
            record.fail('Aborted', 'run aborted before classification')
            return None

        async with ctx.classification_gate:
            if ctx.abort.is_set():
                record.fail('Aborted', 'run aborted before classification')
                return None
            try:
                return await self._until_aborted(ctx, self.classifier.classify(record.article.normalized_content))
            except MalformedResponse as e:
                logger.warning(f"Malformed classifier response for {record.article.guid}: "
                               f"{(e.raw_payload or '')[:200]!r}")
                record.fail('MalformedResponse', str(e), payload=e.raw_payload)
                return None
