#!/usr/bin/env python3
"""
Batch aggregation.

Folds the processing records of one source's run into a frozen RunAggregate,
in feed order regardless of the order classification finished in.
"""

import logging
from datetime import datetime
from typing import Iterable, List

from .exceptions import InvalidTransition
from .models import AggregateEntry, ArticleState, Outcome, ProcessingRecord, RunAggregate, Source
from .taxonomy import TAXONOMY_VERSION

logger = logging.getLogger(__name__)


class BatchAggregator:
    """Assembles per-source run aggregates."""

    def __init__(self, taxonomy_version: str = TAXONOMY_VERSION):
        self.taxonomy_version = taxonomy_version

    def aggregate(self, source: Source, run_timestamp: datetime,
                  records: Iterable[ProcessingRecord]) -> RunAggregate:
        """
        Build the aggregate for one source.

        Mapped records move to ``Aggregated``; failed records are carried
        with their reason.

        Args:
            source: Source the records belong to
            run_timestamp: Timestamp of the run
            records: Records in ``Mapped`` or ``Failed`` state

        Returns:
            Immutable aggregate

        Raises:
            InvalidTransition: A record is still mid-pipeline
        """
        ordered = sorted(records, key=lambda record: record.article.position)
        entries: List[AggregateEntry] = []
        counts = {outcome: 0 for outcome in Outcome}

        for record in ordered:
            if record.state == ArticleState.MAPPED:
                record.advance(ArticleState.AGGREGATED)
            elif record.state not in (ArticleState.FAILED, ArticleState.AGGREGATED):
                raise InvalidTransition(record.state.value, ArticleState.AGGREGATED.value)

            outcome = record.outcome
            counts[outcome] += 1
            entries.append(AggregateEntry(
                article=record.article,
                outcome=outcome,
                classifications=record.classifications,
                ecosystems=record.ecosystems,
                failure=record.failure,
                mapping_error=record.mapping_error,
            ))

        failed = counts[Outcome.FAILED]
        aggregate = RunAggregate(
            source_id=source.id,
            source_name=source.display_name,
            run_timestamp=run_timestamp,
            taxonomy_version=self.taxonomy_version,
            entries=tuple(entries),
            processed=len(entries) - failed,
            failed=failed,
            unclassified=counts[Outcome.UNCLASSIFIED],
            unmapped=counts[Outcome.UNMAPPED],
        )
        logger.info(f"Aggregated {source.id}: {aggregate.counts()}")
        return aggregate
