#!/usr/bin/env python3
"""
Standardized exception hierarchy for the feed pipeline.

Every error carries a severity that tells the orchestrator what to do with it:

- transient: retried with backoff (network timeouts, 429, 5xx)
- permanent_local: fails only the affected article or source
- permanent_global: aborts the remaining work of the current run
"""

from typing import Optional, Dict, Any, List

TRANSIENT = 'transient'
PERMANENT_LOCAL = 'permanent_local'
PERMANENT_GLOBAL = 'permanent_global'


class PipelineError(Exception):
    """Base exception for all pipeline errors."""

    severity = PERMANENT_LOCAL

    def __init__(self, message: str, error_code: Optional[str] = None, context: Optional[Dict[str, Any]] = None):
        """
        Initialize base exception.

        Args:
            message: Human-readable error message
            error_code: Machine-readable error code
            context: Additional error context
        """
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.context = context or {}

    @property
    def retryable(self) -> bool:
        return self.severity == TRANSIENT

    @property
    def is_global(self) -> bool:
        return self.severity == PERMANENT_GLOBAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for logging/serialization."""
        return {
            'error_type': self.__class__.__name__,
            'error_code': self.error_code,
            'severity': self.severity,
            'message': self.message,
            'context': self.context
        }


# Feed-related exceptions
class FeedError(PipelineError):
    """Base exception for feed polling errors."""
    severity = TRANSIENT


class FetchError(FeedError):
    """Network, DNS, timeout or non-2xx failure while fetching a feed."""

    def __init__(self, url: str, reason: str, status: Optional[int] = None):
        message = f"Failed to fetch feed {url}: {reason}"
        context = {'url': url, 'reason': reason, 'status': status}
        super().__init__(message, context=context)
        self.url = url
        self.status = status


class ParseError(FeedError):
    """Feed body could not be parsed into items."""

    def __init__(self, url: str, reason: str):
        message = f"Failed to parse feed {url}: {reason}"
        super().__init__(message, context={'url': url, 'reason': reason})
        self.url = url


# Classification-related exceptions
class ClassificationError(PipelineError):
    """Base exception for classifier errors."""


class RateLimited(ClassificationError):
    """Classification API rejected the call because of rate limiting."""
    severity = TRANSIENT

    def __init__(self, message: str, retry_after: Optional[float] = None):
        super().__init__(message, error_code='rate_limit_exceeded', context={'retry_after': retry_after})
        self.retry_after = retry_after


class ClassifierUnavailable(ClassificationError):
    """Server error, timeout or connection failure talking to the classifier."""
    severity = TRANSIENT

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, context={'status': status})
        self.status = status


class AuthError(ClassificationError):
    """Invalid credential: the classifier is unusable for every call in the run."""
    severity = PERMANENT_GLOBAL

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message, error_code='invalid_api_key', context={'status': status})


class MalformedResponse(ClassificationError):
    """Classifier response did not match the expected structure."""

    def __init__(self, reason: str, raw_payload: Optional[str] = None):
        super().__init__(f"Malformed classification response: {reason}",
                         context={'reason': reason, 'raw_payload': raw_payload})
        self.raw_payload = raw_payload


class InvalidCategory(ClassificationError):
    """A returned label is not part of the taxonomy."""

    def __init__(self, category: Any):
        super().__init__(f"Category not in taxonomy: {category!r}", context={'category': category})
        self.category = category


class ClassificationFailed(ClassificationError):
    """Retries against the classifier were exhausted for one article."""

    def __init__(self, attempts: int, last_error: Exception):
        super().__init__(f"Classification failed after {attempts} attempts: {last_error}",
                         context={'attempts': attempts, 'last_error': str(last_error)})
        self.attempts = attempts
        self.last_error = last_error


# Ecosystem lookup exceptions
class EcosystemLookupError(PipelineError):
    """Ecosystem lookup store unreachable or failing."""
    severity = TRANSIENT

    def __init__(self, category: str, original_error: Exception):
        super().__init__(f"Ecosystem lookup failed for {category!r}: {original_error}",
                         context={'category': category, 'original_error': str(original_error)})


class ReferenceMisconfigured(PipelineError):
    """The ecosystem reference table is missing or misconfigured."""
    severity = PERMANENT_GLOBAL

    def __init__(self, table: str, original_error: Exception):
        super().__init__(f"Ecosystem reference table {table!r} is unusable: {original_error}",
                         context={'table': table, 'original_error': str(original_error)})


# Artifact storage exceptions
class StorageError(PipelineError):
    """Artifact upload failed. ``retryable`` comes from the store."""

    def __init__(self, key: str, code: str, message: str, retryable: bool):
        super().__init__(f"Artifact upload failed for {key} ({code}): {message}",
                         error_code=code,
                         context={'key': key, 'code': code, 'retryable': retryable})
        self.key = key
        self.code = code
        self._retryable = retryable

    @property
    def severity(self) -> str:
        return TRANSIENT if self._retryable else PERMANENT_LOCAL


class ArtifactAccessDenied(StorageError):
    """Credentials are not allowed to write the artifact bucket."""
    severity = PERMANENT_GLOBAL

    def __init__(self, key: str, message: str = 'Access Denied'):
        super().__init__(key, 'AccessDenied', message, retryable=False)


class BucketNotFound(StorageError):
    """The configured artifact bucket does not exist."""
    severity = PERMANENT_GLOBAL

    def __init__(self, key: str, message: str = 'The specified bucket does not exist'):
        super().__init__(key, 'NoSuchBucket', message, retryable=False)


# Orchestration exceptions
class InvalidTransition(PipelineError):
    """Processing record was asked to move along an edge the state machine lacks."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal transition {current} -> {target}",
                         context={'current': current, 'target': target})


# Registration and configuration exceptions
class RegistrationError(PipelineError):
    """Source registration input was rejected."""

    def __init__(self, errors: List[str]):
        super().__init__(f"Validation failed: {'; '.join(errors)}", context={'details': list(errors)})
        self.errors = list(errors)


class SourceNotFound(PipelineError):
    """No source with the requested id."""

    def __init__(self, source_id: str):
        super().__init__(f"Source '{source_id}' not found", context={'source_id': source_id})


class ConfigurationError(PipelineError):
    """Configuration is invalid or missing."""

    def __init__(self, config_key: str, issue: str):
        super().__init__(f"Configuration error for {config_key}: {issue}",
                         context={'config_key': config_key, 'issue': issue})


def severity_of(error: BaseException) -> str:
    """Severity of any exception; foreign exceptions count as local failures."""
    if isinstance(error, PipelineError):
        return error.severity
    return PERMANENT_LOCAL


def is_retryable_error(error: BaseException) -> bool:
    """Check if an error is worth another attempt."""
    return severity_of(error) == TRANSIENT


def is_global_error(error: BaseException) -> bool:
    """Check if an error must abort the whole run."""
    return severity_of(error) == PERMANENT_GLOBAL
