#!/usr/bin/env python3
"""
Core data models for the feed pipeline.

Contains all data structures used throughout the application.
"""

from .article import Article, synthetic_guid
from .classification import Classification, EcosystemMapping
from .source import Source, FeedCursor
from .run import (
    ArticleState, Outcome, FailureReason, ProcessingRecord,
    AggregateEntry, RunAggregate, SourceRunResult, RunSummary,
)

__all__ = [
    'Article', 'synthetic_guid', 'Classification', 'EcosystemMapping', 'Source', 'FeedCursor',
    'ArticleState', 'Outcome', 'FailureReason', 'ProcessingRecord',
    'AggregateEntry', 'RunAggregate', 'SourceRunResult', 'RunSummary',
]
