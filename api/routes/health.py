"""
Health check endpoint with database, provider and quota status
"""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession
from core.database import is_connected
from api.dependencies import get_bulk_orchestrator, get_db, get_provider_registry, get_quota_ledger
from schemas.health import HealthCheckResponse
from schemas.quota import QuotaAlertResponse
from enrichment.bulk import BulkEnrichmentOrchestrator
from enrichment.providers.base import ProviderRegistry
from enrichment.quota import QuotaLedger
from core.exceptions import EnrichmentException
from dataclasses import asdict
from datetime import datetime
import logging

logger = logging.getLogger(__name__)
router = APIRouter(tags=["Health"])


@router.get("/health", response_model=HealthCheckResponse)
async def health_check(
    db: AsyncSession = Depends(get_db),
    registry: ProviderRegistry = Depends(get_provider_registry),
    quota: QuotaLedger = Depends(get_quota_ledger),
    orchestrator: BulkEnrichmentOrchestrator = Depends(get_bulk_orchestrator),
):
    """
    Health check endpoint.

    Returns:
    - Database connectivity status
    - Configured providers
    - Quota alerts and enrichment totals
    """

    db_connected = await is_connected(db)

    quota_alerts = []
    enrichment_stats = {}

    if db_connected:
        try:
            quota_alerts = [QuotaAlertResponse(**asdict(alert)) for alert in await quota.check_alerts()]
            enrichment_stats = await orchestrator.stats()
        except EnrichmentException as e:
            logger.error(f"Failed to collect enrichment status: {e.message}", extra={"error_context": e.to_dict()})

    return HealthCheckResponse(
        timestamp=datetime.utcnow(),
        database_connected=db_connected,
        providers=registry.names,
        quota_alerts=quota_alerts,
        enrichment_stats=enrichment_stats,
    )
