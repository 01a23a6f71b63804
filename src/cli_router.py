#!/usr/bin/env python3
"""
CLI Router for the Sustainability Feed Pipeline.

Modular command architecture: each top-level command maps to a command class.
"""

import argparse
import logging
import sys
from typing import Optional, List

# Load environment variables first
import core.env_loader  # noqa: F401  Auto-loads .env file

from core.config import get_config_manager
from commands import get_command, COMMANDS

logger = logging.getLogger(__name__)


class CLIRouter:
    """
    CLI router for pipeline commands.

    Command structure:
    - python run.py pipeline run --timeout 300 --verbose
    - python run.py sources register --name "Grist" --url https://grist.org/feed/
    - python run.py taxonomy list
    """

    def __init__(self):
        """Initialize CLI router."""
        self.parser = self._create_parser()

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create the main argument parser."""
        parser = argparse.ArgumentParser(
            description="Sustainability news feed ingestion and classification pipeline",
            formatter_class=argparse.RawDescriptionHelpFormatter,
            epilog=self._get_examples_text()
        )

        subparsers = parser.add_subparsers(
            dest='command',
            help='Available commands',
            metavar='{command}'
        )

        self._add_pipeline_parser(subparsers)
        self._add_sources_parser(subparsers)
        self._add_taxonomy_parser(subparsers)

        return parser

    def _add_pipeline_parser(self, subparsers):
        """Add pipeline command parser."""
        pipeline_parser = subparsers.add_parser(
            'pipeline',
            help='Run the feed pipeline'
        )

        pipeline_subparsers = pipeline_parser.add_subparsers(
            dest='subcommand',
            help='Pipeline operations',
            metavar='{run}'
        )

        run_parser = pipeline_subparsers.add_parser('run', help='Poll sources, classify new articles and write artifacts')
        run_parser.add_argument('--sources', nargs='+', default=None, help='Source ids to run (default: all active)')
        run_parser.add_argument('--timeout', type=float, default=None, help='Run timeout in seconds (default: RUN_TIMEOUT_SECONDS)')
        run_parser.add_argument('--local-artifacts', dest='local_artifacts', default=None, metavar='DIR',
                                help='Write artifacts to a local directory instead of S3')
        run_parser.add_argument('--json', action='store_true', help='Print the run summary as JSON')
        run_parser.add_argument('--verbose', action='store_true', help='Verbose output')

    def _add_sources_parser(self, subparsers):
        """Add sources command parser."""
        sources_parser = subparsers.add_parser(
            'sources',
            help='Feed source management'
        )

        sources_subparsers = sources_parser.add_subparsers(
            dest='subcommand',
            help='Source operations',
            metavar='{list,register,deactivate}'
        )

        list_parser = sources_subparsers.add_parser('list', help='List registered sources')
        list_parser.add_argument('--all', action='store_true', help='Include inactive sources')

        register_parser = sources_subparsers.add_parser('register', help='Register a new feed')
        register_parser.add_argument('--name', required=True, help='News site name')
        register_parser.add_argument('--url', required=True, help='RSS/Atom feed URL')

        deactivate_parser = sources_subparsers.add_parser('deactivate', help='Stop polling a feed')
        deactivate_parser.add_argument('source_id', help='Source id')

    def _add_taxonomy_parser(self, subparsers):
        """Add taxonomy command parser."""
        taxonomy_parser = subparsers.add_parser(
            'taxonomy',
            help='Classification taxonomy'
        )

        taxonomy_subparsers = taxonomy_parser.add_subparsers(
            dest='subcommand',
            help='Taxonomy operations',
            metavar='{list}'
        )
        taxonomy_subparsers.add_parser('list', help='List taxonomy categories')

    def _get_examples_text(self) -> str:
        """Get examples text for help."""
        return """
Examples:
  # Scheduled run (S3 artifacts)
  python run.py pipeline run

  # Local testing
  python run.py pipeline run --local-artifacts ./artifacts --verbose
  python run.py pipeline run --sources grist --timeout 120

  # Sources
  python run.py sources list --all
  python run.py sources register --name "Mongabay" --url https://news.mongabay.com/feed/
  python run.py sources deactivate earth-org

  python run.py taxonomy list
"""

    def route_command(self, args: Optional[List[str]] = None) -> int:
        """
        Route command to appropriate handler.

        Args:
            args: Command line arguments (uses sys.argv if None)

        Returns:
            Exit code
        """
        try:
            if args is None:
                args = sys.argv[1:]

            parsed_args = self.parser.parse_args(args)

            if not parsed_args.command:
                self.parser.print_help()
                return 1

            return self._handle_command(parsed_args)

        except SystemExit as e:
            # argparse calls sys.exit() on error or help
            return e.code if e.code is not None else 0
        except KeyboardInterrupt:
            logger.info("Interrupted by user")
            return 130
        except Exception as e:
            logger.error(f"CLI routing error: {e}", exc_info=True)
            return 1

    def _handle_command(self, args: argparse.Namespace) -> int:
        """Handle command structure."""
        logger.debug(f"Handling command: {args.command}")

        if args.command not in COMMANDS:
            available = ', '.join(COMMANDS.keys())
            logger.error(f"Unknown command '{args.command}'. Available: {available}")
            return 1

        subcommand = getattr(args, 'subcommand', None)
        if not subcommand:
            logger.error(f"No subcommand specified for '{args.command}'")
            self.parser.parse_args([args.command, '--help'])  # Show help
            return 1

        command = get_command(args.command)
        return command.execute(subcommand, args)


def main(args: Optional[List[str]] = None) -> int:
    """
    Main CLI entry point.

    Args:
        args: Command line arguments (uses sys.argv if None)

    Returns:
        Exit code
    """
    # Set up logging
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # Apply LOG_LEVEL / VERBOSE_LOGGING from configuration
    try:
        get_config_manager().update_logging()
    except ValueError as e:
        logger.error(str(e))
        return 1

    router = CLIRouter()
    return router.route_command(args)


if __name__ == '__main__':
    exit_code = main()
    sys.exit(exit_code)
