"""
Pydantic schemas for enrichment and review endpoints
"""

from pydantic import BaseModel, Field, validator
from typing import Optional, List, Dict, Any
from datetime import datetime


REVIEW_ACTIONS = ("confirm", "reject", "edit")
BULK_REVIEW_ACTIONS = ("confirm", "reject")


def _require_fields(v):
    if not v:
        raise ValueError("fields must contain at least one field name")
    return v


# ============================================================================
# Single-record Enrichment Schemas
# ============================================================================

class EnrichRequest(BaseModel):
    """Options for enriching one record"""
    quick: bool = Field(default=False, description="Quick mode: one provider at a time, fewer fields")
    include_ai: bool = Field(default=True, description="Ask the configured providers")
    include_external_lookups: bool = Field(default=False, description="Run quota-gated lookups")
    provider: Optional[str] = Field(None, description="Quick mode only: use this provider alone")
    fields: Optional[List[str]] = Field(None, description="Full mode only: restrict requested fields")

    @validator("fields")
    def validate_fields(cls, v):
        if v is not None:
            return _require_fields(v)
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "quick": False,
                "include_ai": True,
                "include_external_lookups": True
            }
        }


class EnrichResponse(BaseModel):
    """Result of one enrichment"""
    record_id: int
    run_id: Optional[int]
    run_status: Optional[str]
    field_statuses: Dict[str, str] = Field(default_factory=dict)
    result: Dict[str, Any]
    cooldown_warning: bool = False
    hours_since_last_enrichment: Optional[float] = None


class HistoryEntry(BaseModel):
    """One run in a record's enrichment history"""
    run_id: int
    enriched_at: datetime
    mode: Optional[str]
    providers_used: List[str] = Field(default_factory=list)
    fields_found: int
    fields_confirmed: int
    fields_rejected: int
    status: str
    reviewed_at: Optional[datetime]
    reviewed_by: Optional[str]


class EnrichmentStateResponse(BaseModel):
    """Current enrichment state of a record"""
    record_id: int
    enrichment_status: str
    last_enriched_at: Optional[datetime]
    latest_run: Optional[Dict[str, Any]]
    history: List[HistoryEntry] = Field(default_factory=list)


# ============================================================================
# Review Schemas
# ============================================================================

class ReviewRequest(BaseModel):
    """Review action on fields of one run"""
    action: str = Field(..., description="confirm, reject or edit")
    fields: List[str] = Field(..., description="Field names (legacy aliases accepted)")
    edited_values: Optional[Dict[str, Any]] = Field(None, description="Required for edit: field -> value")
    run_id: Optional[int] = Field(None, description="Target run; defaults to the latest pending run")
    reviewer: Optional[str] = Field(None, max_length=255)

    @validator("action")
    def validate_action(cls, v):
        if v.lower() not in REVIEW_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(REVIEW_ACTIONS)}")
        return v.lower()

    @validator("fields")
    def validate_fields(cls, v):
        return _require_fields(v)

    @validator("edited_values", always=True)
    def validate_edited_values(cls, v, values):
        if values.get("action") == "edit" and not v:
            raise ValueError("edited_values is required for edit")
        return v

    class Config:
        json_schema_extra = {
            "example": {
                "action": "confirm",
                "fields": ["website", "industry"],
                "reviewer": "ops@example.com"
            }
        }


class ReviewResponse(BaseModel):
    """Outcome of a review action"""
    record_id: int
    run_id: int
    action: str
    updated_fields: List[str]
    skipped_fields: List[str] = Field(default_factory=list)
    field_statuses: Dict[str, str]
    run_status: str
    run_completed: bool
    record_status: str


# ============================================================================
# Bulk Schemas
# ============================================================================

class BulkEnrichRequest(BaseModel):
    """Enrich several records"""
    record_ids: List[int] = Field(..., description="Record ids (at most MAX_BULK_SIZE)")
    quick: bool = True
    include_ai: bool = True
    include_external_lookups: bool = False
    provider: Optional[str] = None

    @validator("record_ids")
    def validate_record_ids(cls, v):
        if not v:
            raise ValueError("record_ids must not be empty")
        return v


class BulkEnrichResponse(BaseModel):
    total: int
    successful: int
    failed: int
    results: List[Dict[str, Any]]


class BulkReviewItem(BaseModel):
    record_id: int
    fields: List[str]
    run_id: Optional[int] = None

    @validator("fields")
    def validate_fields(cls, v):
        return _require_fields(v)


class BulkReviewRequest(BaseModel):
    """Confirm or reject fields across records"""
    action: str
    items: List[BulkReviewItem]
    reviewer: Optional[str] = Field(None, max_length=255)

    @validator("action")
    def validate_action(cls, v):
        if v.lower() not in BULK_REVIEW_ACTIONS:
            raise ValueError(f"action must be one of: {', '.join(BULK_REVIEW_ACTIONS)}")
        return v.lower()

    @validator("items")
    def validate_items(cls, v):
        if not v:
            raise ValueError("items must not be empty")
        return v


class BulkReviewResponse(BaseModel):
    confirmed: Optional[int] = None
    rejected: Optional[int] = None
    errors: List[Dict[str, Any]] = Field(default_factory=list)
    results: List[Dict[str, Any]] = Field(default_factory=list)


class PendingRecordsResponse(BaseModel):
    record_ids: List[int]
    stats: Dict[str, int]
