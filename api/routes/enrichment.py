"""
Single-record enrichment and review endpoints
"""

from fastapi import APIRouter, Depends, Request
from api.dependencies import get_review_ledger, get_runner
from schemas.enrichment import (
    EnrichRequest,
    EnrichResponse,
    EnrichmentStateResponse,
    ReviewRequest,
    ReviewResponse,
)
from enrichment.review import FieldReviewLedger, parse_fields
from enrichment.runner import EnrichmentRunner
from models.base import RecordEnrichmentStatus, ReviewableField, RunStatus
from core.exceptions import RecordNotFoundError
from typing import Any, Dict, Optional
import time
import uuid
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/records", tags=["Enrichment"])


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", f"req_{uuid.uuid4().hex[:12]}")


def serialize_run(run) -> Optional[Dict[str, Any]]:
    """Run with per-field value, confidence and review status"""
    if run is None:
        return None
    statuses = run.field_statuses or {}
    return {
        "run_id": run.id,
        "enriched_at": run.enriched_at,
        "mode": run.mode,
        "status": RunStatus(run.status).value,
        "fields": {
            name.value: {
                "value": getattr(run, name.value),
                "confidence": getattr(run, f"{name.value}_score"),
                "status": statuses.get(name.value),
            }
            for name in ReviewableField
            if name.value in statuses
        },
        "providers_used": run.providers_used or [],
        "provider_errors": run.provider_errors or [],
        "skipped_stages": run.skipped_stages or [],
        "external_data_used": run.external_data_used or [],
        "reviewed_at": run.reviewed_at,
        "reviewed_by": run.reviewed_by,
    }


@router.post("/{record_id}/enrich", response_model=EnrichResponse)
async def enrich_record(
    record_id: int,
    payload: EnrichRequest,
    request: Request,
    runner: EnrichmentRunner = Depends(get_runner),
):
    """
    Enrich one record.

    Features:
    - Full mode (all providers, merged per field) or quick mode
    - Optional quota-gated external lookups
    - Cooldown warning when the record was enriched recently
    """
    start_time = time.time()
    request_id = _request_id(request)
    logger.info(
        f"[{request_id}] POST /records/{record_id}/enrich - quick={payload.quick}, "
        f"include_ai={payload.include_ai}, lookups={payload.include_external_lookups}"
    )

    outcome = await runner.run(
        record_id,
        quick=payload.quick,
        include_ai=payload.include_ai,
        include_external_lookups=payload.include_external_lookups,
        provider=payload.provider,
        fields=parse_fields(payload.fields) if payload.fields else None,
    )

    logger.info(
        f"[{request_id}] Record {record_id}: {outcome.fields_found} fields found "
        f"(total: {(time.time() - start_time) * 1000:.2f}ms)"
    )
    return EnrichResponse(**outcome.to_dict())


@router.get("/{record_id}/enrich", response_model=EnrichmentStateResponse)
async def get_enrichment(
    record_id: int,
    ledger: FieldReviewLedger = Depends(get_review_ledger),
):
    """Latest run, run history and cached status of a record"""
    record = await ledger.store.find_record(record_id)
    if record is None:
        raise RecordNotFoundError(f"Record {record_id} not found", context={"record_id": record_id})

    latest = await ledger.store.find_latest_run(record_id)
    return EnrichmentStateResponse(
        record_id=record_id,
        enrichment_status=RecordEnrichmentStatus(record.enrichment_status).value,
        last_enriched_at=record.last_enriched_at,
        latest_run=serialize_run(latest),
        history=await ledger.history(record_id),
    )


@router.patch("/{record_id}/enrich", response_model=ReviewResponse)
async def review_enrichment(
    record_id: int,
    payload: ReviewRequest,
    request: Request,
    ledger: FieldReviewLedger = Depends(get_review_ledger),
):
    """
    Confirm, reject or edit suggested fields.

    Targets ``run_id`` when given, otherwise the latest pending run.
    """
    request_id = _request_id(request)
    logger.info(f"[{request_id}] PATCH /records/{record_id}/enrich - {payload.action} {payload.fields}")

    outcome = await ledger.apply(
        record_id,
        payload.action,
        payload.fields,
        reviewer=payload.reviewer,
        run_id=payload.run_id,
        edited_values=payload.edited_values,
    )
    run = outcome.run
    return ReviewResponse(
        record_id=record_id,
        run_id=run.id,
        action=outcome.action,
        updated_fields=[name.value for name in outcome.updated_fields],
        skipped_fields=[name.value for name in outcome.skipped_fields],
        field_statuses=run.field_statuses,
        run_status=RunStatus(run.status).value,
        run_completed=outcome.run_completed,
        record_status=outcome.record_status.value,
    )
