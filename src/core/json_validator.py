#!/usr/bin/env python3
"""
JSON validation for classifier output.

Parses the model's JSON payload and reconciles it with the taxonomy: entries
with unknown labels or unusable confidence are dropped individually, while a
payload that cannot be read at all is a MalformedResponse.
"""

import json
import logging
import math
from typing import Any, Dict, List, Tuple

from .exceptions import InvalidCategory, MalformedResponse
from .models import Classification
from .taxonomy import canonical_category, is_valid_category

logger = logging.getLogger(__name__)

_PREVIEW_CHARS = 300


class ClassificationValidator:
    """Validates classification JSON output against the taxonomy."""

    @staticmethod
    def validate_and_parse(raw_output: str) -> Tuple[Classification, ...]:
        """
        Parse and validate raw model output.

        Args:
            raw_output: Message content returned by the model

        Returns:
            Valid classifications, confidence descending. May be empty, which
            means the article is unclassified.

        Raises:
            MalformedResponse: If the payload is not the expected structure
        """
        data = ClassificationValidator.parse_payload(raw_output)
        entries = data.get('classifications')
        if not isinstance(entries, list):
            raise MalformedResponse("'classifications' is missing or not a list", raw_payload=raw_output)
        return ClassificationValidator.reconcile(entries)

    @staticmethod
    def parse_payload(raw_output: Any) -> Dict[str, Any]:
        """Decode the JSON object, tolerating Markdown code fences around it."""
        if not isinstance(raw_output, str) or not raw_output.strip():
            raise MalformedResponse("empty response", raw_payload=raw_output if isinstance(raw_output, str) else None)

        try:
            data = json.loads(raw_output.strip())
        except json.JSONDecodeError:
            json_str = ClassificationValidator._extract_json(raw_output)
            try:
                data = json.loads(json_str)
                logger.info("Parsed classification JSON extracted from mixed output")
            except json.JSONDecodeError as e:
                logger.error(f"JSON parsing failed: {e}")
                logger.error(f"First {_PREVIEW_CHARS} chars: {raw_output[:_PREVIEW_CHARS]!r}")
                raise MalformedResponse(f"invalid JSON ({e.msg} at position {e.pos})", raw_payload=raw_output) from e

        if not isinstance(data, dict):
            raise MalformedResponse(f"expected a JSON object, got {type(data).__name__}", raw_payload=raw_output)
        return data

    @staticmethod
    def _extract_json(raw_output: str) -> str:
        """Extract the outermost JSON object from mixed text output."""
        cleaned = raw_output.replace('```json', '').replace('```', '')
        start_idx = cleaned.find('{')
        end_idx = cleaned.rfind('}')
        if start_idx == -1 or end_idx <= start_idx:
            return cleaned.strip()
        return cleaned[start_idx:end_idx + 1]

    @staticmethod
    def reconcile(entries: List[Any]) -> Tuple[Classification, ...]:
        """
        Turn raw entries into validated classifications.

        Unknown categories and out-of-range or non-numeric confidences drop
        the entry only. Duplicate categories keep the highest confidence.
        """
        best: Dict[str, Classification] = {}
        order: List[str] = []

        for entry in entries:
            if not isinstance(entry, dict):
                logger.warning(f"Dropping non-object classification entry: {entry!r}")
                continue

            category = entry.get('category')
            if not is_valid_category(category):
                logger.warning(f"Dropping classification entry: {InvalidCategory(category).message}")
                continue
            category = canonical_category(category)

            confidence = entry.get('confidence')
            if not ClassificationValidator._is_valid_confidence(confidence):
                logger.warning(f"Dropping {category!r}: confidence {confidence!r} is not a number in [0, 1]")
                continue

            explanation = entry.get('explanation')
            classification = Classification(
                category=category,
                confidence=float(confidence),
                explanation=explanation.strip() if isinstance(explanation, str) else "",
            )

            current = best.get(category)
            if current is None:
                order.append(category)
                best[category] = classification
            elif classification.confidence > current.confidence:
                logger.debug(f"Duplicate category {category!r}: keeping confidence {classification.confidence}")
                best[category] = classification

        # sorted() is stable, so ties keep the model's ordering
        return tuple(sorted((best[category] for category in order), key=lambda c: c.confidence, reverse=True))

    @staticmethod
    def _is_valid_confidence(value: Any) -> bool:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        return not math.isnan(value) and 0.0 <= value <= 1.0
