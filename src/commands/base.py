#!/usr/bin/env python3
"""
Base command class for the modular command architecture.

Provides common functionality and interface that all commands inherit.
Uses dependency injection for better testability and maintainability.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional
from argparse import Namespace

from core.container import get_container
from core.exceptions import PipelineError

logger = logging.getLogger(__name__)


class BaseCommand(ABC):
    """
    Base class for all command endpoints.

    Provides the container-backed services and error handling every command
    uses.
    """

    def __init__(self, container=None):
        """
        Initialize base command with dependency injection container.

        Args:
            container: Optional container instance. If None, uses global container.
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        self._container = container or get_container()

    @property
    def config(self):
        """Get configuration from container."""
        return self._container.get('config')

    @property
    def source_registry(self):
        """Get source registry from container."""
        return self._container.get('source_registry')

    def create_orchestrator(self):
        """Create new pipeline orchestrator instance."""
        return self._container.get('orchestrator')

    @abstractmethod
    def execute(self, subcommand: str, args: Namespace) -> int:
        """
        Execute the command with given subcommand and arguments.

        Args:
            subcommand: The specific action to perform
            args: Parsed command line arguments

        Returns:
            Exit code (0 for success, non-zero for error)
        """
        pass

    def get_available_subcommands(self) -> List[str]:
        """
        Get list of available subcommands for this command.

        Returns:
            List of subcommand names
        """
        methods = []
        for attr_name in dir(self):
            if attr_name.startswith('_') or not callable(getattr(type(self), attr_name, None)):
                continue
            # Skip inherited helpers from the base class
            if attr_name in ['execute', 'get_available_subcommands', 'handle_error', 'create_orchestrator',
                             'unknown_subcommand']:
                continue
            methods.append(attr_name)
        return methods

    def handle_error(self, error: BaseException, context: str = "") -> int:
        """
        Standard error handling for commands.

        Args:
            error: The exception that occurred
            context: Additional context about where the error occurred

        Returns:
            Appropriate exit code
        """
        if isinstance(error, KeyboardInterrupt):
            self.logger.info("Command interrupted by user")
            return 130

        error_msg = f"{context}: {error}" if context else str(error)
        # Expected failures carry their own message; only surprises need a traceback
        self.logger.error(error_msg, exc_info=not isinstance(error, (PipelineError, ValueError)))
        return 1

    def unknown_subcommand(self, subcommand: Optional[str]) -> int:
        available = ", ".join(self.get_available_subcommands())
        self.logger.error(f"Unknown subcommand '{subcommand}'. Available: {available}")
        return 1
