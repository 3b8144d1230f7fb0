"""
Script to enrich records from the command line

Usage:
    python scripts/run_enrichment.py 12 15 42
    python scripts/run_enrichment.py --pending 20 --lookups
"""

import argparse
import asyncio
import sys
import os
import logging

# Add current directory to path to allow imports from core, models, etc.
sys.path.append(os.getcwd())

from core.database import create_engine, create_session_factory
from core.exceptions import EnrichmentException
from core.logging import setup_logging
from enrichment.bulk import BulkEnrichmentOrchestrator
from enrichment.consensus import ConsensusAggregator
from enrichment.providers.http import registry_from_settings
from enrichment.quota import QuotaLedger
from enrichment.review import FieldReviewLedger
from enrichment.runner import EnrichmentRunner
from enrichment.stages.external_lookup import ExternalLookupStage, lookups_from_settings
from enrichment.stages.url_verification import UrlVerifier
from enrichment.stores.sqlalchemy_store import SQLAlchemyQuotaStore, SQLAlchemyRunStore

logger = logging.getLogger(__name__)


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Enrich records through the bulk orchestrator")
    parser.add_argument("record_ids", nargs="*", type=int, help="Record ids to enrich")
    parser.add_argument("--pending", type=int, metavar="N", help="Enrich up to N never-enriched records")
    parser.add_argument("--full", action="store_true", help="Full mode (all providers) instead of quick mode")
    parser.add_argument("--lookups", action="store_true", help="Run quota-gated external lookups")
    parser.add_argument("--no-ai", action="store_true", help="Skip providers, run lookups only")
    parser.add_argument("--provider", help="Quick mode: use only this provider")
    args = parser.parse_args(argv)
    if not args.record_ids and not args.pending:
        parser.error("give record ids or --pending N")
    return args


def log_progress(progress):
    if progress["current_id"] is not None:
        logger.info(
            f"[{progress['completed']}/{progress['total']}] enriching record {progress['current_id']} "
            f"(ok={progress['successful']}, failed={progress['failed']})"
        )


async def run_enrichment(args):
    """Enrich the selected records"""

    engine = create_engine()
    AsyncSessionLocal = create_session_factory(engine)

    quota = QuotaLedger(SQLAlchemyQuotaStore(AsyncSessionLocal))
    aggregator = ConsensusAggregator(
        registry_from_settings(),
        url_verifier=UrlVerifier(),
        lookups=ExternalLookupStage(quota, lookups_from_settings()),
    )
    runner = EnrichmentRunner(aggregator, FieldReviewLedger(SQLAlchemyRunStore(AsyncSessionLocal)))
    orchestrator = BulkEnrichmentOrchestrator(runner)

    try:
        record_ids = list(args.record_ids)
        if args.pending:
            record_ids += await orchestrator.records_needing_enrichment(args.pending)

        if not record_ids:
            logger.warning("No records to enrich.")
            return 0

        summary = await orchestrator.enrich_many(
            record_ids,
            include_ai=not args.no_ai,
            include_external_lookups=args.lookups or args.no_ai,
            provider=args.provider,
            quick=not args.full,
            on_progress=log_progress,
        )

        for item in summary["results"]:
            if not item["success"]:
                logger.warning(f"Record {item['record_id']} failed: {item['error']}")
        logger.info(
            f"Enrichment completed: total={summary['total']}, "
            f"successful={summary['successful']}, failed={summary['failed']}"
        )
        return 0 if summary["failed"] == 0 else 2

    except EnrichmentException as e:
        logger.error(f"Enrichment error: {e}", extra={"error_context": e.to_dict()})
        return 1
    finally:
        await engine.dispose()


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run_enrichment(parse_args())))
