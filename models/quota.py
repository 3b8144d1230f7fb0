from sqlalchemy import Column, Integer, String, Date, DateTime, Float, Text, Index
from datetime import datetime
from models.base import Base


class QuotaCounter(Base):
    """
    Daily usage counter for one external service.

    Design:
    - One row per service
    - ``used`` is reset lazily the first time the row is touched on a new day
    - ``used <= limit`` is enforced by a conditional UPDATE
    """
    __tablename__ = "quota_counters"

    service = Column(String(50), primary_key=True)
    used = Column(Integer, nullable=False, default=0)
    limit = Column("daily_limit", Integer, nullable=False)
    last_reset_date = Column(Date, nullable=False)
    alert_threshold = Column(Float, nullable=False, default=80.0)
    last_error = Column(Text, nullable=True)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)


class QuotaHistory(Base):
    """Per service, per day usage. Rows are only ever added or incremented."""
    __tablename__ = "quota_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    service = Column(String(50), nullable=False)
    date = Column(Date, nullable=False)
    used = Column(Integer, nullable=False, default=0)
    success_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)

    __table_args__ = (
        Index("idx_quota_history_service_date", "service", "date", unique=True),
    )
