#!/usr/bin/env python3
"""
Dependency Injection Container

Provides a centralized way to manage dependencies and avoid scattered
instantiation throughout the codebase. Supports singleton and factory patterns.
"""

import logging
from typing import Any, Dict, Callable, TypeVar, Optional
from functools import wraps
import threading

logger = logging.getLogger(__name__)

T = TypeVar('T')


class Container:
    """Simple dependency injection container with lifecycle management."""

    def __init__(self):
        """Initialize empty container."""
        self._factories: Dict[str, Callable] = {}
        self._singletons: Dict[str, Any] = {}
        self._lock = threading.RLock()

    def register_singleton(self, service_name: str, factory: Callable[[], T]) -> None:
        """
        Register a service as singleton (created once, reused).

        Args:
            service_name: Unique name for the service
            factory: Function that creates the service instance
        """
        with self._lock:
            self._factories[service_name] = singleton(factory)
            # Remove any existing instance to force recreation
            self._singletons.pop(service_name, None)

    def register_factory(self, service_name: str, factory: Callable[[], T]) -> None:
        """
        Register a service as factory (new instance each time).

        Args:
            service_name: Unique name for the service
            factory: Function that creates service instances
        """
        with self._lock:
            self._factories[service_name] = factory
            self._singletons.pop(service_name, None)

    def register_instance(self, service_name: str, instance: T) -> None:
        """
        Register an existing instance as singleton.

        Args:
            service_name: Unique name for the service
            instance: Pre-created service instance
        """
        with self._lock:
            self._singletons[service_name] = instance

    def get(self, service_name: str) -> Any:
        """
        Get service instance by name.

        Args:
            service_name: Name of the service to retrieve

        Returns:
            Service instance

        Raises:
            KeyError: If service is not registered
        """
        # Check for existing singleton first
        if service_name in self._singletons:
            return self._singletons[service_name]

        # Check if factory is registered
        if service_name not in self._factories:
            raise KeyError(f"Service '{service_name}' not registered")

        # Reentrant: factories resolve their own dependencies through get()
        with self._lock:
            factory = self._factories[service_name]

            if getattr(factory, '_is_singleton', False):
                # Double-check pattern for thread safety
                if service_name not in self._singletons:
                    self._singletons[service_name] = factory()
                    logger.debug(f"Created singleton instance for '{service_name}'")
                return self._singletons[service_name]

            instance = factory()
            logger.debug(f"Created new instance for '{service_name}'")
            return instance


def singleton(factory_func: Callable[[], T]) -> Callable[[], T]:
    """
    Decorator to mark a factory function as singleton.

    Usage:
        @singleton
        def create_registry():
            return SourceRegistry()
    """
    if getattr(factory_func, '_is_singleton', False):
        return factory_func

    @wraps(factory_func)
    def wrapper():
        return factory_func()

    wrapper._is_singleton = True
    return wrapper


# Global container instance
_container: Optional[Container] = None
_container_lock = threading.Lock()


def get_container() -> Container:
    """Get global container instance (thread-safe singleton)."""
    global _container
    if _container is None:
        with _container_lock:
            if _container is None:
                _container = Container()
                _setup_default_services(_container)
    return _container


def _setup_default_services(container: Container) -> None:
    """Set up default service registrations with configuration injection."""

    def create_config():
        from core.config import get_config
        return get_config()

    def create_source_registry():
        from core.sources import JsonSourceStore, SourceRegistry
        config = container.get('config')
        return SourceRegistry(JsonSourceStore(config.app.sources_file))

    def create_feed_poller():
        from core.feed_poller import FeedPoller
        config = container.get('config')
        return FeedPoller(
            timeout=config.app.feed_timeout,
            user_agent=config.app.feed_user_agent,
            seen_window=config.app.seen_guid_window,
            retry_policy=config.feed_retry.to_policy(),
            registry=container.get('source_registry'),
        )

    def create_classifier():
        from integrations.openai_client import OpenAIClassifier
        config = container.get('config')
        if not config.has_openai():
            raise ValueError("OpenAI API key not configured")
        return OpenAIClassifier(
            api_key=config.integrations.openai_api_key,
            model=config.integrations.openai_model,
            retry_policy=config.classifier_retry.to_policy(),
        )

    def create_ecosystem_store():
        config = container.get('config')
        if config.has_supabase():
            from integrations.supabase_store import SupabaseEcosystemStore
            return SupabaseEcosystemStore(table=config.integrations.ecosystem_table)

        from core.ecosystems import StaticEcosystemStore
        if config.integrations.ecosystem_file:
            logger.info(f"Loading ecosystem mappings from {config.integrations.ecosystem_file}")
            return StaticEcosystemStore.from_file(config.integrations.ecosystem_file)
        logger.warning("Supabase not configured, using the built-in ecosystem mapping table")
        return StaticEcosystemStore()

    def create_ecosystem_mapper():
        from core.ecosystems import EcosystemMapper
        config = container.get('config')
        return EcosystemMapper(container.get('ecosystem_store'), retry_policy=config.lookup_retry.to_policy())

    def create_artifact_store():
        from core.exceptions import ConfigurationError
        config = container.get('config')
        if config.app.artifact_dir:
            from core.artifacts import LocalArtifactStore
            return LocalArtifactStore(config.app.artifact_dir)
        if config.has_s3():
            from integrations.s3_store import S3ArtifactStore
            return S3ArtifactStore(config.integrations.s3_bucket_name, region_name=config.integrations.aws_region)
        raise ConfigurationError('S3_BUCKET_NAME', "set a bucket or ARTIFACT_DIR for local artifacts")

    def create_artifact_writer():
        from core.artifacts import ArtifactWriter
        config = container.get('config')
        return ArtifactWriter(
            container.get('artifact_store'),
            prefix=config.app.artifact_prefix,
            retry_policy=config.storage_retry.to_policy(),
        )

    def create_orchestrator():
        from core.orchestrator import PipelineOrchestrator
        config = container.get('config')
        return PipelineOrchestrator(
            registry=container.get('source_registry'),
            poller=container.get('feed_poller'),
            classifier=container.get('classifier'),
            mapper=container.get('ecosystem_mapper'),
            writer=container.get('artifact_writer'),
            max_concurrent_sources=config.app.max_concurrent_sources,
            classification_window=config.app.classification_window,
            max_content_chars=config.app.max_content_chars,
            run_timeout=config.app.run_timeout_seconds,
        )

    # Register services
    container.register_singleton('config', create_config)
    container.register_singleton('source_registry', create_source_registry)
    container.register_singleton('ecosystem_store', create_ecosystem_store)
    container.register_singleton('artifact_store', create_artifact_store)

    # Non-singletons
    container.register_factory('feed_poller', create_feed_poller)
    container.register_factory('classifier', create_classifier)
    container.register_factory('ecosystem_mapper', create_ecosystem_mapper)
    container.register_factory('artifact_writer', create_artifact_writer)
    container.register_factory('orchestrator', create_orchestrator)

    logger.debug("Default services registered in container")

