#!/usr/bin/env python3
"""
Pipeline command endpoints: run the ingestion and classification pass.
"""

import asyncio
import json
import logging
from argparse import Namespace

from .base import BaseCommand
from core.artifacts import LocalArtifactStore
from core.models import RunSummary

logger = logging.getLogger(__name__)


class PipelineCommand(BaseCommand):
    """Run the feed pipeline."""

    def execute(self, subcommand: str, args: Namespace) -> int:
        """Execute pipeline subcommand."""
        try:
            if subcommand == "run":
                return self.run(args)
            return self.unknown_subcommand(subcommand)
        except KeyboardInterrupt as e:
            return self.handle_error(e)
        except Exception as e:
            return self.handle_error(e, f"pipeline {subcommand}")

    def run(self, args: Namespace) -> int:
        """Poll every active source once, classify new articles and write artifacts."""
        if getattr(args, 'verbose', False):
            logging.getLogger().setLevel(logging.DEBUG)

        local_dir = getattr(args, 'local_artifacts', None)
        if local_dir:
            self._container.register_instance('artifact_store', LocalArtifactStore(local_dir))
            self.logger.info(f"Writing artifacts to local directory {local_dir}")

        orchestrator = self.create_orchestrator()
        summary = asyncio.run(orchestrator.run(
            source_ids=getattr(args, 'sources', None),
            timeout=getattr(args, 'timeout', None),
        ))

        self._print_summary(summary)
        if getattr(args, 'json', False):
            print(json.dumps(summary.to_dict(), ensure_ascii=False, indent=2))
        return 0 if summary.success else 1

    def _print_summary(self, summary: RunSummary) -> None:
        print(f"\n=== Run {summary.run_id} ===")
        print(f"📊 Processed: {summary.processed}  Failed: {summary.failed}")
        if summary.timed_out:
            print("⏱️  Run timeout elapsed before every article finished")
        if summary.global_failure:
            print(f"❌ Run aborted: {summary.global_failure['kind']}: {summary.global_failure['message']}")

        for result in summary.sources:
            status = "✅" if result.succeeded else "❌"
            line = f"{status} {result.source_id}: processed={result.processed} failed={result.failed}"
            if result.artifact_location:
                line += f" -> {result.artifact_location}"
            if result.error:
                line += f" ({result.error['kind']}: {result.error['message']})"
            print(line)
            for failure in result.failures:
                print(f"   • [{failure['kind']}] {failure['title'][:60]}: {failure['message']}")
