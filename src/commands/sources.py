#!/usr/bin/env python3
"""
Source command endpoints for managing registered feeds.
"""

import logging
from argparse import Namespace

from .base import BaseCommand
from core.exceptions import RegistrationError

logger = logging.getLogger(__name__)


class SourcesCommand(BaseCommand):
    """Handle feed source registration and listing."""

    def execute(self, subcommand: str, args: Namespace) -> int:
        """Execute sources subcommand."""
        try:
            if subcommand == "list":
                return self.list(args)
            elif subcommand == "register":
                return self.register(args)
            elif subcommand == "deactivate":
                return self.deactivate(args)
            return self.unknown_subcommand(subcommand)
        except Exception as e:
            return self.handle_error(e, f"sources {subcommand}")

    def list(self, args: Namespace) -> int:
        """Show registered sources."""
        sources = self.source_registry.list_sources()
        if not getattr(args, 'all', False):
            sources = [source for source in sources if source.active]

        print(f"\n=== Sources ({len(sources)}) ===")
        for source in sources:
            marker = "✅" if source.active else "⏸️ "
            last_seen = source.cursor.last_published.isoformat() if source.cursor.last_published else "never"
            print(f"{marker} {source.id}: {source.display_name} <{source.feed_url}> (latest item: {last_seen})")
        return 0

    def register(self, args: Namespace) -> int:
        """Register a new feed."""
        try:
            source = self.source_registry.register_source(args.name, args.url)
        except RegistrationError as e:
            for message in e.errors:
                print(f"❌ {message}")
            return 1

        print(f"✅ Registered {source.id}: {source.display_name} <{source.feed_url}>")
        return 0

    def deactivate(self, args: Namespace) -> int:
        """Stop polling a feed."""
        source = self.source_registry.deactivate(args.source_id)
        print(f"⏸️  Deactivated {source.id}")
        return 0
