"""
Pydantic schemas for quota endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict


class QuotaInfoResponse(BaseModel):
    service: str
    used: int
    limit: int
    available: int
    percentage: float
    reset_in: str
    alert_threshold: float


class QuotaAlertResponse(BaseModel):
    service: str
    percentage: float
    threshold: float
    used: int
    limit: int


class QuotaStatusResponse(BaseModel):
    """All counters with current alerts"""
    quotas: List[QuotaInfoResponse]
    alerts: List[QuotaAlertResponse] = Field(default_factory=list)


class QuotaResetRequest(BaseModel):
    """Reset one service, or every service when omitted"""
    service: Optional[str] = None


class QuotaHistoryEntry(BaseModel):
    date: str
    used: int
    success_count: int
    error_count: int


class QuotaHistoryResponse(BaseModel):
    days: int
    history: Dict[str, List[QuotaHistoryEntry]]
    error_rates: Dict[str, float] = Field(default_factory=dict)


class AlertThresholdRequest(BaseModel):
    """Set the alert threshold (percent of the daily limit) for one service"""
    service: str
    threshold: float = Field(..., description="Percentage in (0, 100]")

    @validator("threshold")
    def validate_threshold(cls, v):
        if v <= 0 or v > 100:
            raise ValueError("threshold must be greater than 0 and at most 100")
        return v

    class Config:
        json_schema_extra = {
            "example": {"service": "hunter", "threshold": 75}
        }
