"""
Bulk enrichment and bulk review endpoints
"""

from fastapi import APIRouter, Depends, Query, Request
from api.dependencies import get_bulk_orchestrator
from schemas.enrichment import (
    BulkEnrichRequest,
    BulkEnrichResponse,
    BulkReviewRequest,
    BulkReviewResponse,
    PendingRecordsResponse,
)
from enrichment.bulk import BulkEnrichmentOrchestrator
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/bulk", tags=["Bulk"])


@router.post("/enrich", response_model=BulkEnrichResponse)
async def bulk_enrich(
    payload: BulkEnrichRequest,
    request: Request,
    orchestrator: BulkEnrichmentOrchestrator = Depends(get_bulk_orchestrator),
):
    """
    Enrich up to MAX_BULK_SIZE records.

    Each record succeeds or fails on its own; the response lists both.
    """
    start_time = time.time()
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] POST /bulk/enrich - {len(payload.record_ids)} records")

    summary = await orchestrator.enrich_many(
        payload.record_ids,
        include_ai=payload.include_ai,
        include_external_lookups=payload.include_external_lookups,
        provider=payload.provider,
        quick=payload.quick,
    )

    logger.info(
        f"[{request_id}] Bulk enrichment: {summary['successful']}/{summary['total']} succeeded "
        f"(total: {(time.time() - start_time) * 1000:.2f}ms)"
    )
    return BulkEnrichResponse(**summary)


@router.post("/review", response_model=BulkReviewResponse, response_model_exclude_none=True)
async def bulk_review(
    payload: BulkReviewRequest,
    request: Request,
    orchestrator: BulkEnrichmentOrchestrator = Depends(get_bulk_orchestrator),
):
    """Confirm or reject fields across several records"""
    request_id = getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")
    logger.info(f"[{request_id}] POST /bulk/review - {payload.action} on {len(payload.items)} records")

    summary = await orchestrator.review_many(
        [item.dict() for item in payload.items],
        payload.action,
        reviewer=payload.reviewer,
    )
    return BulkReviewResponse(**summary)


@router.get("/pending", response_model=PendingRecordsResponse)
async def pending_records(
    limit: int = Query(50, ge=1, le=500, description="Maximum ids returned"),
    orchestrator: BulkEnrichmentOrchestrator = Depends(get_bulk_orchestrator),
):
    """Records never enriched, oldest first, with status totals"""
    return PendingRecordsResponse(
        record_ids=await orchestrator.records_needing_enrichment(limit),
        stats=await orchestrator.stats(),
    )
