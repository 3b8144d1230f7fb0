import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.config import settings
from core.exceptions import EnrichmentException
from enrichment.bulk import BulkEnrichmentOrchestrator

logger = logging.getLogger(__name__)


class EnrichmentScheduler:
    """Periodically bulk-enriches records that were never enriched."""

    def __init__(
        self,
        orchestrator: BulkEnrichmentOrchestrator,
        interval_minutes: Optional[int] = None,
        batch_size: Optional[int] = None,
    ):
        self.orchestrator = orchestrator
        self.interval_minutes = interval_minutes or settings.SCHEDULER_INTERVAL_MINUTES
        self.batch_size = batch_size or orchestrator.max_bulk_size
        self.scheduler = AsyncIOScheduler()

    async def run_enrichment_job(self):
        """Job to enrich one batch of pending records"""
        logger.info("Scheduler: Starting enrichment job")
        try:
            record_ids = await self.orchestrator.records_needing_enrichment(self.batch_size)
            if not record_ids:
                logger.info("Scheduler: No records need enrichment")
                return None

            summary = await self.orchestrator.enrich_many(record_ids)
            logger.info(
                f"Scheduler: Enriched {summary['successful']}/{summary['total']} records "
                f"({summary['failed']} failed)"
            )
            return summary
        except EnrichmentException as e:
            logger.error(f"Scheduler: Enrichment job failed - {e}", extra={"error_context": e.to_dict()})
        except Exception as e:
            logger.error(f"Scheduler: Enrichment job failed - {e}")
        return None

    def start(self):
        """Start the scheduler"""
        self.scheduler.add_job(
            self.run_enrichment_job,
            trigger=IntervalTrigger(minutes=self.interval_minutes),
            id="enrichment_job",
            replace_existing=True,
            max_instances=1,
        )
        self.scheduler.start()
        logger.info(f"Enrichment scheduler started (every {self.interval_minutes} minutes)")

    def stop(self):
        self.scheduler.shutdown()
        logger.info("Enrichment scheduler stopped")
