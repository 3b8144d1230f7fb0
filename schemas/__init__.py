"""
Pydantic schemas for API request/response validation.

Schemas:
    enrichment: Enrichment, review and bulk request/response models
    quota: Quota status, history and threshold models
    health: Health check response

Features:
    - Request validation before any enrichment work starts
    - OpenAPI schema generation for FastAPI

Usage:
    from schemas.enrichment import EnrichRequest, ReviewRequest
    from schemas.quota import AlertThresholdRequest

Example:
    # Edit requires a value for the edited fields
    review = ReviewRequest(
        action="edit",
        fields=["website"],
        edited_values={"website": "https://acme.example"}
    )
    assert review.action == "edit"

Validation:
    Field names are checked (and legacy aliases resolved) by the review
    ledger, so unknown names surface as 400 responses rather than 422.
"""

__all__ = [
    "EnrichRequest",
    "EnrichResponse",
    "ReviewRequest",
    "ReviewResponse",
    "BulkEnrichRequest",
    "BulkReviewRequest",
    "QuotaStatusResponse",
    "AlertThresholdRequest",
    "HealthCheckResponse",
]
