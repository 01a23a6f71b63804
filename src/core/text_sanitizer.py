#!/usr/bin/env python3
"""
Content normalization for feed items.

Turns raw feed markup into plain text sized for the classifier prompt. The
character budget is a proxy for the model's token limit.
"""

import html
import re
import logging

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 4000

_SCRIPT_STYLE_RE = re.compile(r'<(script|style)\b[^>]*>.*?</\1\s*>', re.IGNORECASE | re.DOTALL)
_COMMENT_RE = re.compile(r'<!--.*?-->', re.DOTALL)
_BLOCK_TAG_RE = re.compile(
    r'</?(?:p|div|br|hr|li|ul|ol|h[1-6]|tr|td|th|table|blockquote|section|article|header|footer|figure|figcaption)\b[^>]*>',
    re.IGNORECASE,
)
_TAG_RE = re.compile(r'</?[A-Za-z!][^<>]*>')
_WHITESPACE_RE = re.compile(r'\s+')

def strip_markup(text: str) -> str:
    """
    Remove tags, comments, scripts and entities from text.

    Block-level tags become spaces so paragraphs don't run together; inline
    tags are removed outright so punctuation stays attached to words.
    """
    if not text:
        return ""

    # Every round that changes the text shortens it, so this reaches a fixed point
    while True:
        previous = text
        text = _SCRIPT_STYLE_RE.sub(' ', text)
        text = _COMMENT_RE.sub(' ', text)
        text = _BLOCK_TAG_RE.sub(' ', text)
        text = _TAG_RE.sub('', text)
        text = html.unescape(text)
        if text == previous:
            break
    return text


def collapse_whitespace(text: str) -> str:
    """Collapse runs of whitespace (including NBSP) to single spaces."""
    return _WHITESPACE_RE.sub(' ', text.replace('\xa0', ' ')).strip()


def truncate_at_word(text: str, max_chars: int) -> str:
    """
    Truncate text to at most ``max_chars`` without splitting a word.

    Falls back to a hard cut when the window contains no word boundary.
    """
    if max_chars <= 0:
        return ""
    if len(text) <= max_chars:
        return text

    window = text[:max_chars]
    if text[max_chars].isspace():
        return window.rstrip()

    boundary = window.rfind(' ')
    if boundary <= 0:
        return window
    return window[:boundary].rstrip()


def normalize_content(raw_content: str, max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """
    Normalize raw feed content for classification.

    Deterministic and idempotent: normalizing already-normalized text returns
    it unchanged.

    Args:
        raw_content: Feed content, possibly HTML
        max_chars: Character budget

    Returns:
        Plain text, whitespace collapsed, at most ``max_chars`` long
    """
    if not raw_content:
        return ""

    text = collapse_whitespace(strip_markup(raw_content))
    truncated = truncate_at_word(text, max_chars)
    if len(truncated) < len(text):
        logger.debug(f"Truncated content from {len(text)} to {len(truncated)} characters")
    return truncated
