#!/usr/bin/env python3
"""
Centralized Configuration Manager

Provides a single source of truth for all application configuration,
including environment variables, defaults, and validation.
"""

import os
import logging
from dataclasses import dataclass, field
from typing import Optional, List

from .env_loader import load_env_file
from .retry import RetryPolicy

logger = logging.getLogger(__name__)

DEFAULT_USER_AGENT = "Mozilla/5.0 (compatible; SustainabilityFeedPipeline/1.0)"


@dataclass
class RetrySettings:
    """Backoff settings for one kind of external call."""
    max_retries: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0
    max_elapsed: float = 120.0

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.max_retries,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            max_elapsed=self.max_elapsed,
        )


@dataclass
class IntegrationConfig:
    """External integration configuration."""
    openai_api_key: Optional[str] = None
    openai_model: str = "gpt-4o-mini"

    # Ecosystem reference table
    supabase_url: Optional[str] = None
    supabase_service_key: Optional[str] = None
    supabase_anon_key: Optional[str] = None
    ecosystem_table: str = "Ecosystem Mapping"
    # JSON rows used instead of the built-in table when Supabase is not configured
    ecosystem_file: Optional[str] = None

    # Artifact bucket
    s3_bucket_name: Optional[str] = None
    aws_region: Optional[str] = None


@dataclass
class ApplicationConfig:
    """Core application configuration."""
    # RSS feed settings
    feed_timeout: int = 10
    feed_user_agent: str = DEFAULT_USER_AGENT
    seen_guid_window: int = 500

    # Concurrency
    max_concurrent_sources: int = 3
    classification_window: int = 4
    run_timeout_seconds: float = 600.0

    # Processing settings
    max_content_chars: int = 4000

    # Storage
    sources_file: str = "data/sources.json"
    artifact_prefix: str = "rss-feeds"
    artifact_dir: Optional[str] = None

    # Logging
    log_level: str = "INFO"
    verbose_logging: bool = False


@dataclass
class Config:
    """Master configuration container."""
    integrations: IntegrationConfig
    app: ApplicationConfig
    feed_retry: RetrySettings = field(default_factory=lambda: RetrySettings(max_retries=3, base_delay=2.0))
    classifier_retry: RetrySettings = field(default_factory=lambda: RetrySettings(max_retries=5))
    lookup_retry: RetrySettings = field(default_factory=lambda: RetrySettings(max_retries=2, base_delay=0.5,
                                                                              max_delay=2.0, max_elapsed=10.0))
    storage_retry: RetrySettings = field(default_factory=lambda: RetrySettings(max_retries=3, max_delay=10.0,
                                                                               max_elapsed=60.0))

    def has_openai(self) -> bool:
        """Check if OpenAI integration is available."""
        return bool(self.integrations.openai_api_key)

    def has_supabase(self) -> bool:
        """Check if the Supabase ecosystem table is reachable in principle."""
        integrations = self.integrations
        return bool(integrations.supabase_url and (integrations.supabase_service_key or integrations.supabase_anon_key))

    def has_s3(self) -> bool:
        return bool(self.integrations.s3_bucket_name)


class ConfigManager:
    """Manages application configuration with validation and environment loading."""

    def __init__(self, env_file_path: str = ".env"):
        """
        Initialize configuration manager.

        Args:
            env_file_path: Path to .env file relative to project root
        """
        self._config: Optional[Config] = None
        self._env_file_path = env_file_path
        load_env_file(env_file_path)

    def get_config(self, force_reload: bool = False) -> Config:
        """
        Get application configuration.

        Args:
            force_reload: Force reloading configuration from environment

        Returns:
            Complete configuration object
        """
        if self._config is None or force_reload:
            self._config = self._build_config()
        return self._config

    def _build_config(self) -> Config:
        """Build configuration from environment variables."""
        errors: List[str] = []

        def env_int(key: str, default: int) -> int:
            raw = os.getenv(key)
            if raw is None or raw == '':
                return default
            try:
                return int(raw)
            except ValueError:
                errors.append(f"{key} must be an integer, got {raw!r}")
                return default

        def env_float(key: str, default: float) -> float:
            raw = os.getenv(key)
            if raw is None or raw == '':
                return default
            try:
                return float(raw)
            except ValueError:
                errors.append(f"{key} must be a number, got {raw!r}")
                return default

        def retry_settings(prefix: str, defaults: RetrySettings) -> RetrySettings:
            return RetrySettings(
                max_retries=env_int(f'{prefix}_MAX_RETRIES', defaults.max_retries),
                base_delay=env_float(f'{prefix}_BASE_DELAY', defaults.base_delay),
                max_delay=env_float(f'{prefix}_MAX_DELAY', defaults.max_delay),
                max_elapsed=env_float(f'{prefix}_MAX_ELAPSED', defaults.max_elapsed),
            )

        integration_config = IntegrationConfig(
            openai_api_key=os.getenv('OPENAI_API_KEY'),
            openai_model=os.getenv('OPENAI_MODEL', 'gpt-4o-mini'),
            supabase_url=os.getenv('SUPABASE_URL'),
            supabase_service_key=os.getenv('SUPABASE_SERVICE_KEY'),
            supabase_anon_key=os.getenv('SUPABASE_ANON_KEY'),
            ecosystem_table=os.getenv('ECOSYSTEM_TABLE', 'Ecosystem Mapping'),
            ecosystem_file=os.getenv('ECOSYSTEM_FILE') or None,
            s3_bucket_name=os.getenv('S3_BUCKET_NAME'),
            aws_region=os.getenv('AWS_REGION'),
        )

        app_config = ApplicationConfig(
            feed_timeout=env_int('FEED_TIMEOUT', 10),
            feed_user_agent=os.getenv('FEED_USER_AGENT', DEFAULT_USER_AGENT),
            seen_guid_window=env_int('SEEN_GUID_WINDOW', 500),
            max_concurrent_sources=env_int('MAX_CONCURRENT_SOURCES', 3),
            classification_window=env_int('CLASSIFICATION_WINDOW', 4),
            run_timeout_seconds=env_float('RUN_TIMEOUT_SECONDS', 600.0),
            max_content_chars=env_int('MAX_CONTENT_CHARS', 4000),
            sources_file=os.getenv('SOURCES_FILE', 'data/sources.json'),
            artifact_prefix=os.getenv('ARTIFACT_PREFIX', 'rss-feeds'),
            artifact_dir=os.getenv('ARTIFACT_DIR') or None,
            log_level=os.getenv('LOG_LEVEL', 'INFO').upper(),
            verbose_logging=os.getenv('VERBOSE_LOGGING', 'false').lower() == 'true'
        )

        defaults = Config(integrations=integration_config, app=app_config)
        config = Config(
            integrations=integration_config,
            app=app_config,
            feed_retry=retry_settings('FEED', defaults.feed_retry),
            classifier_retry=retry_settings('CLASSIFIER', defaults.classifier_retry),
            lookup_retry=retry_settings('LOOKUP', defaults.lookup_retry),
            storage_retry=retry_settings('STORAGE', defaults.storage_retry),
        )

        self._validate_config(config, errors)
        return config

    def _validate_config(self, config: Config, errors: List[str]) -> None:
        """Validate configuration values."""
        if config.integrations.supabase_url and not config.integrations.supabase_url.startswith('https://'):
            errors.append("SUPABASE_URL must start with https://")

        # Validate numeric ranges
        if config.app.feed_timeout < 1:
            errors.append("FEED_TIMEOUT must be at least 1 second")

        if config.app.max_concurrent_sources < 1 or config.app.max_concurrent_sources > 20:
            errors.append("MAX_CONCURRENT_SOURCES must be between 1 and 20")

        if config.app.classification_window < 1:
            errors.append("CLASSIFICATION_WINDOW must be at least 1")

        if config.app.run_timeout_seconds <= 0:
            errors.append("RUN_TIMEOUT_SECONDS must be positive")

        if config.app.max_content_chars < 1:
            errors.append("MAX_CONTENT_CHARS must be at least 1")

        if config.app.seen_guid_window < 1:
            errors.append("SEEN_GUID_WINDOW must be at least 1")

        for prefix, settings in (('FEED', config.feed_retry), ('CLASSIFIER', config.classifier_retry),
                                 ('LOOKUP', config.lookup_retry), ('STORAGE', config.storage_retry)):
            if settings.max_retries < 0:
                errors.append(f"{prefix}_MAX_RETRIES must not be negative")
            if settings.base_delay < 0 or settings.max_delay < 0:
                errors.append(f"{prefix} retry delays must not be negative")

        # Validate log level
        valid_log_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']
        if config.app.log_level not in valid_log_levels:
            errors.append(f"LOG_LEVEL must be one of: {', '.join(valid_log_levels)}")

        if errors:
            raise ValueError(f"Configuration validation failed: {'; '.join(errors)}")

        logger.debug("Configuration validation passed")

    def update_logging(self) -> None:
        """Configure logging based on current configuration."""
        config = self.get_config()

        # Set log level
        numeric_level = getattr(logging, config.app.log_level)
        logging.getLogger().setLevel(numeric_level)

        # Configure format
        if config.app.verbose_logging:
            format_str = '%(asctime)s - %(name)s - %(levelname)s - %(filename)s:%(lineno)d - %(message)s'
        else:
            format_str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

        # Update existing handlers
        for handler in logging.getLogger().handlers:
            handler.setLevel(numeric_level)
            formatter = logging.Formatter(format_str, datefmt='%Y-%m-%d %H:%M:%S')
            handler.setFormatter(formatter)


# Global configuration manager instance
_config_manager: Optional[ConfigManager] = None


def get_config_manager() -> ConfigManager:
    """Get global configuration manager instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager()
    return _config_manager


def get_config() -> Config:
    """Get application configuration."""
    return get_config_manager().get_config()


def reset_config() -> None:
    """Reset configuration manager (useful for testing)."""
    global _config_manager
    _config_manager = None
