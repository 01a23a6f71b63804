#!/usr/bin/env python3
"""
OpenAI integration for sustainability classification.

Sends normalized article text plus the full taxonomy to the chat completions
API with a strict JSON schema, and translates the SDK's failures into the
pipeline's error taxonomy:

- 429 / rate_limit_exceeded -> RateLimited (retried with backoff)
- 5xx, timeouts, connection errors -> ClassifierUnavailable (retried)
- 401 / invalid_api_key -> AuthError (aborts the run)
- unreadable or truncated body -> MalformedResponse (fails the article)
"""

import json
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

import openai
from openai import AsyncOpenAI

from core.exceptions import (
    AuthError, ClassificationError, ClassificationFailed, ClassifierUnavailable,
    MalformedResponse, RateLimited,
)
from core.json_validator import ClassificationValidator
from core.models import Classification
from core.prompts import ClassificationPrompts
from core.retry import RetryExhausted, RetryPolicy
from core.schemas import get_schema_by_type

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o-mini"

RATE_LIMIT_CODES = {'rate_limit_exceeded'}
RATE_LIMIT_TYPES = {'rate_limit_error', 'requests', 'tokens'}
AUTH_CODES = {'invalid_api_key', 'invalid_authentication', 'account_deactivated'}
AUTH_TYPES = {'authentication_error'}


def _retry_after(headers: Any) -> Optional[float]:
    if headers is None:
        return None
    value = headers.get('retry-after')
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def translate_error_envelope(status: Optional[int], message: str, error_type: Optional[str],
                             code: Optional[str], headers: Any = None) -> ClassificationError:
    """
    Map an HTTP status and ``{error: {message, type, code}}`` envelope to a pipeline error.

    Args:
        status: HTTP status, None when the envelope arrived in a 2xx body
        message: Envelope message
        error_type: Envelope ``type``
        code: Envelope ``code``
        headers: Response headers (for Retry-After)

    Returns:
        The exception to raise
    """
    if status == 429 or code in RATE_LIMIT_CODES or error_type in RATE_LIMIT_TYPES:
        return RateLimited(message, retry_after=_retry_after(headers))
    if status in (401, 403) or code in AUTH_CODES or error_type in AUTH_TYPES:
        return AuthError(message, status=status)
    if status is not None and status >= 500:
        return ClassifierUnavailable(message, status=status)
    return ClassificationError(message, error_code=code or error_type, context={'status': status})


class OpenAIClassifier:
    """Classifier client for the OpenAI API with structured outputs and retries."""

    def __init__(self,
                 api_key: Optional[str] = None,
                 model: str = DEFAULT_MODEL,
                 client: Optional[AsyncOpenAI] = None,
                 retry_policy: Optional[RetryPolicy] = None,
                 request_timeout: float = 60.0):
        """
        Initialize classifier.

        Args:
            api_key: OpenAI API key. If None, tries to get from environment.
            model: Chat model name
            client: Pre-built AsyncOpenAI client (tests inject one)
            retry_policy: Backoff for rate limits and transient failures
            request_timeout: Per-request timeout in seconds
        """
        if client is None:
            api_key = api_key or os.getenv('OPENAI_API_KEY')
            if not api_key:
                raise ValueError("OpenAI API key not provided and not found in OPENAI_API_KEY environment variable")
            # Retries belong to the pipeline's policy, not the SDK
            client = AsyncOpenAI(api_key=api_key, max_retries=0, timeout=request_timeout)

        self.client = client
        self.model = model
        self.max_tokens = 800
        self.temperature = 0.0
        self.retry_policy = retry_policy or RetryPolicy(max_retries=5, base_delay=1.0, max_delay=30.0, max_elapsed=120.0)
        self.schema = get_schema_by_type("classification")

    async def classify(self, normalized_content: str) -> Tuple[Classification, ...]:
        """
        Classify one article.

        Args:
            normalized_content: Output of the content normalizer

        Returns:
            Valid classifications ordered by confidence descending; empty
            when nothing in the taxonomy applies

        Raises:
            AuthError: Credential rejected (fatal for the run)
            ClassificationFailed: Retries exhausted
            MalformedResponse: Response could not be read
        """
        if not normalized_content or not normalized_content.strip():
            logger.info("Skipping classification of empty content")
            return ()

        messages = ClassificationPrompts.build_messages(normalized_content)
        try:
            raw_output = await self.retry_policy.run(
                lambda: self._make_structured_request(messages),
                description="classification request"
            )
        except RetryExhausted as e:
            raise ClassificationFailed(e.attempts, e.last_error) from e

        return ClassificationValidator.validate_and_parse(raw_output)

    async def _make_structured_request(self, messages: List[Dict[str, str]]) -> str:
        """Make one structured request, returning the raw message content."""
        logger.debug(f"Making OpenAI classification call ({len(messages[-1]['content'])} chars)")

        try:
            response = await self.client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=self.max_tokens,
                temperature=self.temperature,
                response_format={
                    "type": "json_schema",
                    "json_schema": {
                        "name": "classification_response",
                        "schema": self.schema,
                        "strict": True
                    }
                }
            )
        except openai.APIStatusError as e:
            raise translate_error_envelope(e.status_code, e.message, getattr(e, 'type', None),
                                           getattr(e, 'code', None), e.response.headers) from e
        except openai.APIConnectionError as e:
            # Also covers APITimeoutError
            raise ClassifierUnavailable(f"Could not reach OpenAI: {e}") from e
        except openai.APIResponseValidationError as e:
            raise MalformedResponse(f"response failed SDK validation: {e}", raw_payload=self._body_text(e)) from e
        except json.JSONDecodeError as e:
            raise MalformedResponse(f"response body is not JSON: {e}", raw_payload=e.doc) from e

        return self._extract_content(response)

    def _extract_content(self, response: Any) -> str:
        """Pull the message content out of a completion, rejecting unusable ones."""
        choices = getattr(response, 'choices', None)
        if not choices:
            extra = getattr(response, 'model_extra', None) or {}
            envelope = extra.get('error')
            if isinstance(envelope, dict):
                raise translate_error_envelope(None, envelope.get('message', 'OpenAI error'),
                                               envelope.get('type'), envelope.get('code'))
            raise MalformedResponse("completion has no choices", raw_payload=self._dump(response))

        choice = choices[0]
        content = getattr(choice.message, 'content', None)
        if getattr(choice, 'finish_reason', None) == "length":
            logger.error(f"OpenAI response truncated at max_tokens={self.max_tokens}")
            raise MalformedResponse("response truncated (finish_reason=length)", raw_payload=content)

        refusal = getattr(choice.message, 'refusal', None)
        if refusal:
            raise MalformedResponse(f"model refused: {refusal}", raw_payload=refusal)
        if content is None:
            raise MalformedResponse("completion message has no content", raw_payload=self._dump(response))

        usage = getattr(response, 'usage', None)
        if usage is not None:
            logger.info(f"OpenAI API call successful - tokens: {usage.prompt_tokens} prompt + "
                        f"{usage.completion_tokens} completion = {usage.total_tokens} total")
        return content

    @staticmethod
    def _dump(response: Any) -> Optional[str]:
        if hasattr(response, 'model_dump_json'):
            return response.model_dump_json()
        return None if response is None else str(response)

    @staticmethod
    def _body_text(error: openai.APIResponseValidationError) -> Optional[str]:
        try:
            return error.response.text
        except (AttributeError, UnicodeDecodeError):
            return None
