#!/usr/bin/env python3
"""
Prompt templates for sustainability classification.
"""

from typing import Iterable, List, Dict, Optional

from .taxonomy import all_categories


class ClassificationPrompts:
    """Collection of prompts for article classification."""

    SYSTEM_PROMPT = (
        "You are an editor for a sustainability news desk. "
        "Classify each article into the categories of a fixed sustainability taxonomy. "
        "Only use labels from the allowed list, spelled exactly as given. "
        "An article may fit several categories; return every category it substantively addresses "
        "with a confidence between 0 and 1, and an explanation of one sentence starting with a capital letter. "
        "If the article does not relate to sustainability, return an empty list. Return valid JSON only."
    )

    USER_TEMPLATE = """Allowed categories:
{categories}

Article:
{content}

Return JSON in the form:
{{"classifications": [{{"category": "<label>", "confidence": 0.0, "explanation": "<why>"}}]}}"""

    @classmethod
    def get_classification_prompt(cls, content: str, categories: Optional[Iterable[str]] = None) -> str:
        """Build the user prompt for one article."""
        labels = list(categories) if categories is not None else list(all_categories())
        category_lines = "\n".join(f"- {label}" for label in labels)
        return cls.USER_TEMPLATE.format(categories=category_lines, content=content)

    @classmethod
    def build_messages(cls, content: str, categories: Optional[Iterable[str]] = None) -> List[Dict[str, str]]:
        return [
            {"role": "system", "content": cls.SYSTEM_PROMPT},
            {"role": "user", "content": cls.get_classification_prompt(content, categories)},
        ]
