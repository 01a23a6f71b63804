#!/usr/bin/env python3
"""
Feed source registration and persistence.
"""

from .registry import SourceRegistry, slugify, is_valid_feed_url
from .store import JsonSourceStore, InMemorySourceStore, default_sources

__all__ = [
    'SourceRegistry', 'slugify', 'is_valid_feed_url',
    'JsonSourceStore', 'InMemorySourceStore', 'default_sources',
]
