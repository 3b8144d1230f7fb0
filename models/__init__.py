"""
SQLAlchemy ORM models for database tables.

Models:
    base: Base declarative class and shared enums (ReviewableField,
          FieldReviewStatus, RunStatus, RecordEnrichmentStatus)
    record: Customer records being enriched
    enrichment_run: Append-only log of enrichment attempts with review state
    quota: Daily quota counters and per-day usage history

Usage:
    from models.record import Record
    from models.enrichment_run import EnrichmentRun
    from models.base import ReviewableField, FieldReviewStatus

Relationships:
    - Record → EnrichmentRun (one-to-many, ordered by enriched_at)
"""

__all__ = [
    "Base",
    "ReviewableField",
    "FieldReviewStatus",
    "RunStatus",
    "RecordEnrichmentStatus",
    "Record",
    "EnrichmentRun",
    "QuotaCounter",
    "QuotaHistory",
]
