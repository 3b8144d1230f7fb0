"""
Pydantic schemas for the health endpoint
"""

from pydantic import BaseModel, Field, validator
from typing import List, Dict
from datetime import datetime

from schemas.quota import QuotaAlertResponse


class HealthCheckResponse(BaseModel):
    """Health check response model"""
    timestamp: datetime = Field(default_factory=datetime.utcnow)
    database_connected: bool
    providers: List[str] = Field(default_factory=list)
    quota_alerts: List[QuotaAlertResponse] = Field(default_factory=list)
    enrichment_stats: Dict[str, int] = Field(default_factory=dict)
    # Derived from the fields above, so declared last
    status: str = Field("healthy", description="Overall system status: healthy, degraded, unhealthy")

    @validator("status", pre=True, always=True)
    def determine_status(cls, v, values):
        """Determine overall health status"""
        if not values.get("database_connected", False):
            return "unhealthy"
        if not values.get("providers"):
            return "degraded"  # Nothing can be enriched
        return "healthy"

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "timestamp": "2024-01-15T10:30:00Z",
                "database_connected": True,
                "providers": ["alpha", "beta"],
                "quota_alerts": [],
                "enrichment_stats": {
                    "total_records": 120,
                    "enriched_records": 80,
                    "pending_enrichment": 40,
                    "pending_review": 25,
                    "complete": 55
                }
            }
        }
