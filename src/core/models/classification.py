#!/usr/bin/env python3
"""
Classification and ecosystem reference models.
"""

from dataclasses import dataclass
from typing import Dict, Any


@dataclass(frozen=True)
class Classification:
    """One taxonomy label assigned to an article."""
    category: str
    confidence: float
    explanation: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            'category': self.category,
            'confidence': self.confidence,
            'explanation': self.explanation,
        }


@dataclass(frozen=True)
class EcosystemMapping:
    """Reference row correlating a category with a named ecosystem."""
    index: int
    ecosystem: str
    category: str

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> 'EcosystemMapping':
        """Build from a lookup-store row (``index``, ``ecosystem``, ``category``)."""
        return cls(index=int(row['index']), ecosystem=str(row['ecosystem']), category=str(row['category']))

    def to_dict(self) -> Dict[str, Any]:
        return {'index': self.index, 'ecosystem': self.ecosystem, 'category': self.category}
