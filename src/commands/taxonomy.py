#!/usr/bin/env python3
"""
Taxonomy command endpoints.
"""

from argparse import Namespace

from .base import BaseCommand
from core.taxonomy import TAXONOMY_VERSION, all_categories


class TaxonomyCommand(BaseCommand):
    """Show the classification taxonomy."""

    def execute(self, subcommand: str, args: Namespace) -> int:
        if subcommand == "list":
            return self.list(args)
        return self.unknown_subcommand(subcommand)

    def list(self, args: Namespace) -> int:
        categories = all_categories()
        print(f"\n=== Taxonomy {TAXONOMY_VERSION} ({len(categories)} categories) ===")
        for label in categories:
            print(f"  • {label}")
        return 0
