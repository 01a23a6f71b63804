#!/usr/bin/env python3
"""
Run-scoped data models.

ProcessingRecord is the per-article state machine the orchestrator drives:

    Fetched -> Normalized -> Classified -> Mapped -> Aggregated
        \\__________\\____________\\__________\\-----> Failed(reason)

RunAggregate is the frozen per-source result handed to the artifact writer,
RunSummary the per-run report produced even when nothing succeeded.
"""

from datetime import datetime
from enum import Enum
from typing import Dict, Any, List, Optional, Tuple
from dataclasses import dataclass, field

from ..exceptions import InvalidTransition
from .article import Article
from .classification import Classification, EcosystemMapping


class ArticleState(str, Enum):
    FETCHED = 'fetched'
    NORMALIZED = 'normalized'
    CLASSIFIED = 'classified'
    MAPPED = 'mapped'
    AGGREGATED = 'aggregated'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (ArticleState.AGGREGATED, ArticleState.FAILED)


_NEXT_STATE = {
    ArticleState.FETCHED: ArticleState.NORMALIZED,
    ArticleState.NORMALIZED: ArticleState.CLASSIFIED,
    ArticleState.CLASSIFIED: ArticleState.MAPPED,
    ArticleState.MAPPED: ArticleState.AGGREGATED,
}


class Outcome(str, Enum):
    SUCCESS = 'success'
    UNCLASSIFIED = 'unclassified'
    UNMAPPED = 'unmapped'
    FAILED = 'failed'


@dataclass(frozen=True)
class FailureReason:
    """Why an article ended in ``Failed``."""
    stage: str
    kind: str
    message: str
    payload: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {'stage': self.stage, 'kind': self.kind, 'message': self.message, 'payload': self.payload}


@dataclass
class ProcessingRecord:
    """Progress of one article through a run."""
    article: Article
    state: ArticleState = ArticleState.FETCHED
    classifications: Tuple[Classification, ...] = ()
    ecosystems: Tuple[EcosystemMapping, ...] = ()
    failure: Optional[FailureReason] = None
    mapping_error: Optional[str] = None
    history: List[ArticleState] = field(default_factory=lambda: [ArticleState.FETCHED])

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def advance(self, target: ArticleState) -> None:
        """Move one step along the success path."""
        if _NEXT_STATE.get(self.state) != target:
            raise InvalidTransition(self.state.value, target.value)
        self.state = target
        self.history.append(target)

    def normalized(self, article: Article) -> None:
        self.article = article
        self.advance(ArticleState.NORMALIZED)

    def classified(self, classifications: Tuple[Classification, ...]) -> None:
        self.classifications = tuple(classifications)
        self.advance(ArticleState.CLASSIFIED)

    def mapped(self, ecosystems: Tuple[EcosystemMapping, ...], mapping_error: Optional[str] = None) -> None:
        self.ecosystems = tuple(ecosystems)
        self.mapping_error = mapping_error
        self.advance(ArticleState.MAPPED)

    def fail(self, kind: str, message: str, payload: Optional[str] = None) -> None:
        """Route the article to ``Failed``, recording the stage it failed in."""
        if self.is_terminal:
            raise InvalidTransition(self.state.value, ArticleState.FAILED.value)
        self.failure = FailureReason(stage=self.state.value, kind=kind, message=message, payload=payload)
        self.state = ArticleState.FAILED
        self.history.append(ArticleState.FAILED)

    @property
    def outcome(self) -> Outcome:
        if self.state == ArticleState.FAILED:
            return Outcome.FAILED
        if not self.classifications:
            return Outcome.UNCLASSIFIED
        if self.mapping_error is not None:
            return Outcome.UNMAPPED
        return Outcome.SUCCESS


@dataclass(frozen=True)
class AggregateEntry:
    """Frozen per-article line of a run aggregate."""
    article: Article
    outcome: Outcome
    classifications: Tuple[Classification, ...] = ()
    ecosystems: Tuple[EcosystemMapping, ...] = ()
    failure: Optional[FailureReason] = None
    mapping_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'article': self.article.to_dict(),
            'outcome': self.outcome.value,
            'classifications': [c.to_dict() for c in self.classifications],
            'ecosystems': [e.to_dict() for e in self.ecosystems],
            'failure': self.failure.to_dict() if self.failure else None,
            'mapping_error': self.mapping_error,
        }


@dataclass(frozen=True)
class RunAggregate:
    """Everything one source produced in one run."""
    source_id: str
    source_name: str
    run_timestamp: datetime
    taxonomy_version: str
    entries: Tuple[AggregateEntry, ...] = ()
    processed: int = 0
    failed: int = 0
    unclassified: int = 0
    unmapped: int = 0

    @property
    def total(self) -> int:
        return len(self.entries)

    def counts(self) -> Dict[str, int]:
        return {
            'total': self.total,
            'processed': self.processed,
            'failed': self.failed,
            'unclassified': self.unclassified,
            'unmapped': self.unmapped,
        }


@dataclass
class SourceRunResult:
    """Per-source line of a run summary."""
    source_id: str
    processed: int = 0
    failed: int = 0
    artifact_location: Optional[str] = None
    error: Optional[Dict[str, Any]] = None
    failures: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'source_id': self.source_id,
            'processed': self.processed,
            'failed': self.failed,
            'artifact_location': self.artifact_location,
            'error': self.error,
            'failures': list(self.failures),
        }


@dataclass
class RunSummary:
    """Outcome of one polling pass across all active sources."""
    run_id: str
    started_at: datetime
    finished_at: Optional[datetime] = None
    sources: List[SourceRunResult] = field(default_factory=list)
    global_failure: Optional[Dict[str, Any]] = None
    timed_out: bool = False

    @property
    def processed(self) -> int:
        return sum(result.processed for result in self.sources)

    @property
    def failed(self) -> int:
        return sum(result.failed for result in self.sources)

    @property
    def success(self) -> bool:
        return self.global_failure is None and all(result.succeeded for result in self.sources)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'run_id': self.run_id,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'processed': self.processed,
            'failed': self.failed,
            'timed_out': self.timed_out,
            'global_failure': self.global_failure,
            'sources': [result.to_dict() for result in self.sources],
        }
