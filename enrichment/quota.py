"""
Daily quota ledger for scarce external-API allowances.

Free tiers are sold per month; the ledger spreads them evenly per day
(monthly cap // 30, at least 1) unless a daily limit is configured
explicitly. Counters reset lazily on the first access of a new calendar day.

Call-site pattern::

    if await ledger.has_quota("hunter"):
        result = await call_hunter(...)
        await ledger.consume("hunter")
    else:
        skipped.append({"stage": "email_verification", "reason": "quota exhausted"})
"""

import logging
from dataclasses import dataclass, asdict
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

from core.config import settings
from core.exceptions import QuotaExhaustedError, ValidationError
from enrichment.stores.base import QuotaStore
from enrichment.stores.memory import InMemoryQuotaStore
from models.quota import QuotaCounter

logger = logging.getLogger(__name__)


@dataclass
class QuotaInfo:
    service: str
    used: int
    limit: int
    available: int
    percentage: float
    reset_in: str
    alert_threshold: float

    def to_dict(self):
        return asdict(self)


@dataclass
class QuotaAlert:
    service: str
    percentage: float
    threshold: float
    used: int
    limit: int


def daily_limits_from_settings() -> Dict[str, int]:
    """Daily limit per service: explicit override, else monthly cap // 30."""
    limits = {
        service: max(1, monthly // 30)
        for service, monthly in settings.QUOTA_MONTHLY_CAPS.items()
    }
    limits.update(settings.QUOTA_DAILY_LIMITS)
    return limits


def _format_reset_in(now: datetime) -> str:
    midnight = datetime.combine(now.date() + timedelta(days=1), datetime.min.time())
    remaining = midnight - now
    hours, rest = divmod(int(remaining.total_seconds()), 3600)
    return f"{hours}h {rest // 60}m"


class QuotaLedger:
    """
    Per-service daily budget with history and alerting.

    Attributes:
        store: Backing QuotaStore (in-memory by default)
        limits: service -> daily limit
        clock: Returns the current local datetime; the calendar day drives resets
    """

    def __init__(
        self,
        store: Optional[QuotaStore] = None,
        limits: Optional[Dict[str, int]] = None,
        alert_threshold: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store or InMemoryQuotaStore()
        self.limits = dict(limits) if limits is not None else daily_limits_from_settings()
        self.default_threshold = (
            alert_threshold if alert_threshold is not None else settings.QUOTA_ALERT_THRESHOLD
        )
        self.clock = clock

    @property
    def services(self) -> List[str]:
        return sorted(self.limits)

    def _today(self) -> date:
        return self.clock().date()

    def _limit_for(self, service: str) -> int:
        try:
            return self.limits[service]
        except KeyError:
            raise ValidationError(
                f"Unknown quota service: {service}",
                context={"field_name": "service", "field_value": service}
            )

    async def _counter(self, service: str) -> QuotaCounter:
        limit = self._limit_for(service)
        return await self.store.ensure_counter(
            service, limit, self._today(), self.default_threshold
        )

    # ------------------------------------------------------------------
    # Budget checks
    # ------------------------------------------------------------------

    async def has_quota(self, service: str) -> bool:
        counter = await self._counter(service)
        return counter.used < counter.limit

    async def require(self, service: str) -> None:
        """Raise QuotaExhaustedError when ``service`` has no allowance left today."""
        if not await self.has_quota(service):
            raise QuotaExhaustedError(
                f"Daily quota exhausted for {service}",
                service=service,
                context={"limit": self.limits[service]}
            )

    async def consume(self, service: str, amount: int = 1) -> bool:
        """
        Take ``amount`` units of today's allowance.

        Returns:
            False, without changing anything, when the call would exceed the limit
        """
        if amount < 1:
            raise ValidationError(
                "Quota amount must be at least 1",
                context={"field_name": "amount", "field_value": amount}
            )

        counter = await self._counter(service)
        used = counter.used + amount
        if not await self.store.try_consume(service, amount):
            logger.warning(
                f"Quota denied for {service}: {counter.used}/{counter.limit} used, requested {amount}"
            )
            return False

        await self.store.add_history(service, self._today(), used=amount)

        percentage = used / counter.limit * 100
        if percentage >= counter.alert_threshold:
            logger.warning(
                f"Quota for {service} at {percentage:.1f}% ({used}/{counter.limit})"
            )
        return True

    async def record_outcome(self, service: str, success: bool, error: Optional[str] = None) -> None:
        """Count a call result in today's history row."""
        await self._counter(service)
        if success:
            await self.store.add_history(service, self._today(), success_count=1)
        else:
            await self.store.add_history(service, self._today(), error_count=1)
            await self.store.set_last_error(service, error)

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def get_info(self, service: str) -> QuotaInfo:
        counter = await self._counter(service)
        return QuotaInfo(
            service=service,
            used=counter.used,
            limit=counter.limit,
            available=max(0, counter.limit - counter.used),
            percentage=round(counter.used / counter.limit * 100, 2),
            reset_in=_format_reset_in(self.clock()),
            alert_threshold=counter.alert_threshold,
        )

    async def get_all_info(self) -> List[QuotaInfo]:
        return [await self.get_info(service) for service in self.services]

    async def check_alerts(self) -> List[QuotaAlert]:
        """Services at or above their alert threshold."""
        alerts = []
        for service in self.services:
            info = await self.get_info(service)
            if info.percentage >= info.alert_threshold:
                alerts.append(QuotaAlert(
                    service=service,
                    percentage=info.percentage,
                    threshold=info.alert_threshold,
                    used=info.used,
                    limit=info.limit,
                ))
        return alerts

    async def get_history(self, service: str, days: int = 7) -> List[Dict]:
        """Daily rows for the trailing ``days`` (1-30), oldest first."""
        if not 1 <= days <= settings.QUOTA_HISTORY_MAX_DAYS:
            raise ValidationError(
                f"History window must be between 1 and {settings.QUOTA_HISTORY_MAX_DAYS} days",
                context={"field_name": "days", "field_value": days}
            )
        self._limit_for(service)

        since = self._today() - timedelta(days=days - 1)
        rows = await self.store.history(service, since)
        return [
            {
                "date": row.date.isoformat(),
                "used": row.used,
                "success_count": row.success_count,
                "error_count": row.error_count,
            }
            for row in rows
        ]

    async def get_all_history(self, days: int = 7) -> Dict[str, List[Dict]]:
        return {service: await self.get_history(service, days) for service in self.services}

    async def error_rate(self, service: str, days: int = 7) -> float:
        """errors / (successes + errors) over the window, 0.0 when nothing was recorded."""
        rows = await self.get_history(service, days)
        successes = sum(row["success_count"] for row in rows)
        errors = sum(row["error_count"] for row in rows)
        total = successes + errors
        return round(errors / total, 4) if total else 0.0

    # ------------------------------------------------------------------
    # Administration
    # ------------------------------------------------------------------

    async def set_alert_threshold(self, service: str, threshold: float) -> None:
        if not 0 < threshold <= 100:
            raise ValidationError(
                "Alert threshold must be in (0, 100]",
                context={"field_name": "threshold", "field_value": threshold}
            )
        await self._counter(service)
        await self.store.set_alert_threshold(service, threshold)
        logger.info(f"Alert threshold for {service} set to {threshold}%")

    async def reset(self, service: str) -> None:
        await self._counter(service)
        await self.store.reset(service, self._today())
        logger.info(f"Quota for {service} reset manually")

    async def reset_all(self) -> None:
        for service in self.services:
            await self.reset(service)
