"""
FastAPI dependencies: database session and enrichment services.

Services are wired through ``Depends`` so tests can swap any layer with
``app.dependency_overrides``. Objects that hold state across requests
(provider circuit breakers, stores) are cached per process.
"""

from functools import lru_cache
from typing import AsyncGenerator

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession

from core.database import async_session_maker
from enrichment.bulk import BulkEnrichmentOrchestrator
from enrichment.consensus import ConsensusAggregator
from enrichment.providers.base import ProviderRegistry
from enrichment.providers.http import registry_from_settings
from enrichment.quota import QuotaLedger
from enrichment.review import FieldReviewLedger
from enrichment.runner import EnrichmentRunner
from enrichment.stages.external_lookup import ExternalLookupStage, lookups_from_settings
from enrichment.stages.url_verification import UrlVerifier
from enrichment.stores.base import RunStore
from enrichment.stores.sqlalchemy_store import SQLAlchemyQuotaStore, SQLAlchemyRunStore


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Database session for the request"""
    async with async_session_maker() as session:
        yield session


@lru_cache()
def get_run_store() -> RunStore:
    return SQLAlchemyRunStore(async_session_maker)


@lru_cache()
def get_quota_ledger() -> QuotaLedger:
    return QuotaLedger(SQLAlchemyQuotaStore(async_session_maker))


@lru_cache()
def get_provider_registry() -> ProviderRegistry:
    return registry_from_settings()


def get_aggregator(
    registry: ProviderRegistry = Depends(get_provider_registry),
    quota: QuotaLedger = Depends(get_quota_ledger),
) -> ConsensusAggregator:
    return ConsensusAggregator(
        registry,
        url_verifier=UrlVerifier(),
        lookups=ExternalLookupStage(quota, lookups_from_settings()),
    )


def get_review_ledger(store: RunStore = Depends(get_run_store)) -> FieldReviewLedger:
    return FieldReviewLedger(store)


def get_runner(
    aggregator: ConsensusAggregator = Depends(get_aggregator),
    ledger: FieldReviewLedger = Depends(get_review_ledger),
) -> EnrichmentRunner:
    return EnrichmentRunner(aggregator, ledger)


def get_bulk_orchestrator(runner: EnrichmentRunner = Depends(get_runner)) -> BulkEnrichmentOrchestrator:
    return BulkEnrichmentOrchestrator(runner)


def build_bulk_orchestrator() -> BulkEnrichmentOrchestrator:
    """Same wiring as the request dependencies, for the scheduler and scripts."""
    aggregator = get_aggregator(get_provider_registry(), get_quota_ledger())
    runner = get_runner(aggregator, get_review_ledger(get_run_store()))
    return get_bulk_orchestrator(runner)
