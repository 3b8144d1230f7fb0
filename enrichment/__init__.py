"""
Enrichment engine: multi-provider consensus, field review and quotas.

Modules:
    concurrency: Bounded executor that preserves input order
    rate_limiter: Token-bucket rate limiter with pluggable state store
    quota: Daily quota ledger with alerts and per-day history
    consensus: Field merging and the consensus aggregator
    review: Field review ledger (append-only runs, per-field review state)
    runner: Single-record enrichment orchestration
    bulk: Bulk enrichment and bulk review
    scheduler: APScheduler job that enriches never-enriched records
    types: Data classes passed between stages

Subpackages:
    providers: Provider adapter contract, registry and HTTP JSON provider
    stages: Post-merge stages (URL verification, quota-gated lookups)
    stores: Run and quota stores (in-memory and SQLAlchemy)

Architecture:
    Enrichment of one record goes through four phases:

    1. Load - Read the record and build the provider context
    2. Aggregate - Ask every provider concurrently and merge per field
    3. Post-process - Verify the website, run quota-gated lookups
    4. Persist - Append a run whose fields start PENDING review

    Provider failures never abort a run: they are collected in the result.

Usage:
    from enrichment.consensus import ConsensusAggregator
    from enrichment.review import FieldReviewLedger
    from enrichment.runner import EnrichmentRunner

Example:
    aggregator = ConsensusAggregator(registry_from_settings())
    ledger = FieldReviewLedger(SQLAlchemyRunStore(async_session_maker))
    runner = EnrichmentRunner(aggregator, ledger)

    outcome = await runner.run(record_id=42)
    print(f"Found {outcome.fields_found} fields, run {outcome.run.id}")
"""

__all__ = [
    "map_bounded",
    "TokenBucketLimiter",
    "QuotaLedger",
    "FieldMerger",
    "ConsensusAggregator",
    "FieldReviewLedger",
    "EnrichmentRunner",
    "BulkEnrichmentOrchestrator",
    "EnrichmentScheduler",
]
