#!/usr/bin/env python3
"""
Artifact writer.

Serializes a RunAggregate to JSON and uploads it under a key derived only
from ``(source_id, run_timestamp)``, so re-running a write overwrites the same
object instead of creating a second one.
"""

import asyncio
import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

import pytz

from .exceptions import StorageError
from .models import RunAggregate
from .retry import RetryExhausted, RetryPolicy

logger = logging.getLogger(__name__)

ARTIFACT_SCHEMA_VERSION = "1"
DEFAULT_PREFIX = "rss-feeds"
KEY_TIMESTAMP_FORMAT = "%Y-%m-%dT%H-%M-%S"


class ArtifactStore(Protocol):
    """Object store accepting a PUT by key."""

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> str:
        """Store ``body`` under ``key`` and return its location."""
        ...


def build_artifact_key(source_id: str, run_timestamp: datetime, prefix: str = DEFAULT_PREFIX) -> str:
    """
    Build the deterministic artifact key.

    Args:
        source_id: Source id
        run_timestamp: Run timestamp (naive values are taken as UTC)
        prefix: Key prefix, may be empty

    Returns:
        ``{prefix}/{source_id}/data-{source_id}-{YYYY-MM-DDTHH-MM-SS}.json``
    """
    if run_timestamp.tzinfo is None:
        run_timestamp = pytz.UTC.localize(run_timestamp)
    stamp = run_timestamp.astimezone(pytz.UTC).strftime(KEY_TIMESTAMP_FORMAT)
    key = f"{source_id}/data-{source_id}-{stamp}.json"
    prefix = prefix.strip('/')
    return f"{prefix}/{key}" if prefix else key


def serialize_aggregate(aggregate: RunAggregate) -> Dict[str, Any]:
    """JSON-ready representation of an aggregate."""
    return {
        'schema_version': ARTIFACT_SCHEMA_VERSION,
        'taxonomy_version': aggregate.taxonomy_version,
        'source': {'id': aggregate.source_id, 'name': aggregate.source_name},
        'run_timestamp': aggregate.run_timestamp.isoformat(),
        'counts': aggregate.counts(),
        'entries': [entry.to_dict() for entry in aggregate.entries],
    }


class LocalArtifactStore:
    """Filesystem artifact store for development runs."""

    def __init__(self, root: str):
        self.root = Path(root)

    def _write(self, key: str, body: bytes) -> str:
        path = self.root / key
        path.parent.mkdir(parents=True, exist_ok=True)
        # Write then rename so readers never see a half-written artifact
        tmp_path = path.with_suffix(path.suffix + '.tmp')
        tmp_path.write_bytes(body)
        tmp_path.replace(path)
        return str(path)

    async def put(self, key: str, body: bytes, content_type: str = "application/json") -> str:
        try:
            return await asyncio.to_thread(self._write, key, body)
        except OSError as e:
            raise StorageError(key, type(e).__name__, str(e), retryable=False) from e


class ArtifactWriter:
    """Writes run aggregates to an artifact store."""

    def __init__(self, store: ArtifactStore, prefix: str = DEFAULT_PREFIX,
                 retry_policy: Optional[RetryPolicy] = None):
        """
        Initialize writer.

        Args:
            store: Destination store
            prefix: Key prefix
            retry_policy: Backoff for retryable store errors
        """
        self.store = store
        self.prefix = prefix
        self.retry_policy = retry_policy or RetryPolicy(max_retries=3, base_delay=1.0, max_delay=10.0, max_elapsed=60.0)

    def key_for(self, aggregate: RunAggregate) -> str:
        return build_artifact_key(aggregate.source_id, aggregate.run_timestamp, self.prefix)

    async def write(self, aggregate: RunAggregate) -> str:
        """
        Upload one aggregate.

        Returns:
            Location reported by the store

        Raises:
            StorageError: Upload failed (fatal subclasses are never retried)
        """
        key = self.key_for(aggregate)
        body = json.dumps(serialize_aggregate(aggregate), ensure_ascii=False, indent=2).encode('utf-8')

        try:
            location = await self.retry_policy.run(
                lambda: self.store.put(key, body, "application/json"),
                description=f"artifact upload {key}"
            )
        except RetryExhausted as e:
            raise e.last_error from e

        logger.info(f"Wrote artifact for {aggregate.source_id} ({aggregate.total} entries) to {location}")
        return location
