from sqlalchemy import Column, Integer, String, Enum, DateTime, Text, Index
from datetime import datetime
from models.base import Base, RecordEnrichmentStatus


class Record(Base):
    """
    Customer record being enriched.

    The enrichment columns are written only through review actions
    (confirm / edit). ``enrichment_status`` caches the aggregate of the
    latest run's field statuses.
    """
    __tablename__ = "records"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String(255), nullable=False, index=True)
    city = Column(String(120), nullable=True)

    # Enrichable attributes
    website = Column(String(500), nullable=True)
    industry = Column(String(200), nullable=True)
    notes = Column(Text, nullable=True)
    company_size = Column(String(100), nullable=True)
    address = Column(Text, nullable=True)
    email = Column(String(255), nullable=True)
    phone = Column(String(50), nullable=True)

    # Social networks
    facebook = Column(String(500), nullable=True)
    instagram = Column(String(500), nullable=True)
    linkedin = Column(String(500), nullable=True)
    twitter = Column(String(500), nullable=True)
    whatsapp = Column(String(100), nullable=True)

    # Enrichment tracking
    enrichment_status = Column(
        Enum(RecordEnrichmentStatus),
        default=RecordEnrichmentStatus.NONE,
        nullable=False,
        index=True,
    )
    last_enriched_at = Column(DateTime, nullable=True)
    # Every enrichment attempt, including ones that found nothing
    last_attempted_at = Column(DateTime, nullable=True, index=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("idx_record_status_created", "enrichment_status", "created_at"),
    )
