from sqlalchemy import Column, Integer, String, Enum, DateTime, Float, Text, Index, ForeignKey
from datetime import datetime
from models.base import Base, JSONType, RunStatus


class EnrichmentRun(Base):
    """
    One enrichment attempt for a record.

    Purpose:
    - Append-only audit trail of every AI suggestion
    - Per-field review state (field_statuses)
    - Provider failures and skipped stages kept next to the values

    Only field_statuses, status, reviewed_at and reviewed_by change after
    creation (plus the suggested value of a field edited during review), and
    each such write bumps ``version``.
    """
    __tablename__ = "enrichment_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    record_id = Column(Integer, ForeignKey("records.id", ondelete="CASCADE"), nullable=False, index=True)
    enriched_at = Column(DateTime, nullable=False, default=datetime.utcnow, index=True)

    # Suggested values and confidences
    website = Column(String(500), nullable=True)
    website_score = Column(Float, nullable=True)
    industry = Column(String(200), nullable=True)
    industry_score = Column(Float, nullable=True)
    description = Column(Text, nullable=True)
    description_score = Column(Float, nullable=True)
    company_size = Column(String(100), nullable=True)
    company_size_score = Column(Float, nullable=True)
    address = Column(Text, nullable=True)
    address_score = Column(Float, nullable=True)
    emails = Column(JSONType, nullable=True)
    emails_score = Column(Float, nullable=True)
    phones = Column(JSONType, nullable=True)
    phones_score = Column(Float, nullable=True)
    social_profiles = Column(JSONType, nullable=True)
    social_profiles_score = Column(Float, nullable=True)

    # Provenance
    providers_used = Column(JSONType, nullable=True)
    provider_errors = Column(JSONType, nullable=True)
    skipped_stages = Column(JSONType, nullable=True)
    external_data_used = Column(JSONType, nullable=True)
    mode = Column(String(20), nullable=False, default="full")

    # Review
    field_statuses = Column(JSONType, nullable=False, default=dict)
    status = Column(Enum(RunStatus), default=RunStatus.PENDING, nullable=False, index=True)
    reviewed_at = Column(DateTime, nullable=True)
    reviewed_by = Column(String(255), nullable=True)
    review_notes = Column(Text, nullable=True)
    # Bumped on every write after creation; review writes compare-and-set on it
    version = Column(Integer, nullable=False, default=1)

    __table_args__ = (
        Index("idx_run_record_enriched", "record_id", "enriched_at"),
    )
