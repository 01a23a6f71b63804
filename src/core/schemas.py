#!/usr/bin/env python3
"""
Centralized JSON schemas for OpenAI structured outputs.

The classification schema is built from the taxonomy so the allowed labels
travel with every request.
"""

from typing import Dict, Any, Iterable, Optional

from .taxonomy import all_categories


def build_classification_schema(categories: Optional[Iterable[str]] = None) -> Dict[str, Any]:
    """
    Build the response schema for article classification.

    Args:
        categories: Allowed labels (defaults to the full taxonomy)

    Returns:
        JSON schema dictionary
    """
    labels = list(categories) if categories is not None else list(all_categories())
    return {
        "type": "object",
        "properties": {
            "classifications": {
                "type": "array",
                "description": "Every taxonomy category the article substantively addresses",
                "items": {
                    "type": "object",
                    "properties": {
                        "category": {
                            "type": "string",
                            "enum": labels,
                            "description": "One label from the allowed taxonomy"
                        },
                        "confidence": {
                            "type": "number",
                            "description": "Confidence between 0 and 1"
                        },
                        "explanation": {
                            "type": "string",
                            "description": "One sentence justifying the label"
                        }
                    },
                    "required": ["category", "confidence", "explanation"],
                    "additionalProperties": False
                }
            }
        },
        "required": ["classifications"],
        "additionalProperties": False
    }


CLASSIFICATION_SCHEMA = build_classification_schema()


def get_schema_by_type(analysis_type: str) -> Dict[str, Any]:
    """
    Get JSON schema by analysis type.

    Raises:
        ValueError: If analysis_type is not recognized
    """
    schemas = {
        "classification": CLASSIFICATION_SCHEMA,
    }

    if analysis_type not in schemas:
        raise ValueError(f"Unknown analysis type: {analysis_type}")

    return schemas[analysis_type]
