"""
Quota status, history and administration endpoints
"""

from fastapi import APIRouter, Depends, Query
from api.dependencies import get_quota_ledger
from schemas.quota import (
    AlertThresholdRequest,
    QuotaAlertResponse,
    QuotaHistoryResponse,
    QuotaInfoResponse,
    QuotaResetRequest,
    QuotaStatusResponse,
)
from enrichment.quota import QuotaLedger
from core.config import settings
from dataclasses import asdict
import logging

logger = logging.getLogger(__name__)
router = APIRouter(prefix="/quotas", tags=["Quotas"])


@router.get("", response_model=QuotaStatusResponse)
async def get_quotas(quota: QuotaLedger = Depends(get_quota_ledger)):
    """Today's usage for every service, plus services over their alert threshold"""
    infos = await quota.get_all_info()
    alerts = await quota.check_alerts()
    return QuotaStatusResponse(
        quotas=[QuotaInfoResponse(**info.to_dict()) for info in infos],
        alerts=[QuotaAlertResponse(**asdict(alert)) for alert in alerts],
    )


@router.post("/reset", response_model=QuotaStatusResponse)
async def reset_quotas(
    payload: QuotaResetRequest,
    quota: QuotaLedger = Depends(get_quota_ledger),
):
    """Reset one service (or all) to zero usage"""
    if payload.service:
        await quota.reset(payload.service)
    else:
        await quota.reset_all()
    logger.info(f"Quota reset requested for {payload.service or 'all services'}")
    return await get_quotas(quota)


@router.get("/history", response_model=QuotaHistoryResponse)
async def get_quota_history(
    days: int = Query(7, ge=1, le=settings.QUOTA_HISTORY_MAX_DAYS, description="Trailing days"),
    quota: QuotaLedger = Depends(get_quota_ledger),
):
    """Per-day usage and call outcomes for every service"""
    history = await quota.get_all_history(days)
    error_rates = {service: await quota.error_rate(service, days) for service in quota.services}
    return QuotaHistoryResponse(days=days, history=history, error_rates=error_rates)


@router.put("/history", response_model=QuotaInfoResponse)
async def set_alert_threshold(
    payload: AlertThresholdRequest,
    quota: QuotaLedger = Depends(get_quota_ledger),
):
    """Set the alert threshold of one service"""
    await quota.set_alert_threshold(payload.service, payload.threshold)
    info = await quota.get_info(payload.service)
    return QuotaInfoResponse(**info.to_dict())
