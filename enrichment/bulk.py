"""
Bulk enrichment and bulk review.

Both operations validate the whole request first, then process items through
the bounded executor. Every item is isolated: its failure becomes a result
entry and the batch carries on. Only validation and store unavailability
abort the call.
"""

import logging
from datetime import timedelta
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional

from core.config import settings
from core.exceptions import (
    BatchTooLargeError,
    EnrichmentException,
    PersistenceError,
    ValidationError,
)
from enrichment.concurrency import capture, map_bounded
from enrichment.review import CONFIRM, REJECT, FieldReviewLedger, parse_fields
from enrichment.runner import EnrichmentRunner, RunOutcome
from models.base import RecordEnrichmentStatus

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Dict[str, Any]], None]


@dataclass
class BulkItemResult:
    record_id: int
    success: bool
    run_id: Optional[int] = None
    fields_found: int = 0
    provider_errors: List[Dict[str, str]] = field(default_factory=list)
    skipped_stages: List[Dict[str, Any]] = field(default_factory=list)
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "record_id": self.record_id,
            "success": self.success,
            "run_id": self.run_id,
            "fields_found": self.fields_found,
            "provider_errors": self.provider_errors,
            "skipped_stages": self.skipped_stages,
            "error": self.error,
            "error_type": self.error_type,
        }


def _check_batch_size(size: int, max_size: int) -> None:
    if size > max_size:
        raise BatchTooLargeError(
            f"Maximum {max_size} records per bulk operation",
            context={"requested": size, "max_bulk_size": max_size}
        )


def _error_message(error: BaseException) -> str:
    return error.message if isinstance(error, EnrichmentException) else str(error)


class BulkEnrichmentOrchestrator:
    """
    Batch front-end for the runner and the review ledger.

    Attributes:
        max_bulk_size: Maximum ids per call (default 50)
        concurrency: Records processed at once (at most 3)
    """

    def __init__(
        self,
        runner: EnrichmentRunner,
        ledger: Optional[FieldReviewLedger] = None,
        max_bulk_size: Optional[int] = None,
        concurrency: Optional[int] = None,
    ):
        self.runner = runner
        self.ledger = ledger or runner.ledger
        self.max_bulk_size = max_bulk_size or settings.MAX_BULK_SIZE
        self.concurrency = min(3, concurrency or settings.BULK_CONCURRENCY)

    # ------------------------------------------------------------------
    # Enrichment
    # ------------------------------------------------------------------

    async def enrich_many(
        self,
        record_ids: List[int],
        include_ai: bool = True,
        include_external_lookups: bool = False,
        provider: Optional[str] = None,
        quick: bool = True,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Dict[str, Any]:
        """
        Enrich up to ``max_bulk_size`` records.

        Returns:
            ``{"total", "successful", "failed", "results"}`` with one entry per
            distinct id, in request order

        Raises:
            BatchTooLargeError: Too many ids (nothing is processed)
            ValidationError: Nothing enabled
            PersistenceError: Store unavailable
        """
        ids = list(dict.fromkeys(record_ids))
        _check_batch_size(len(ids), self.max_bulk_size)
        if not include_ai and not include_external_lookups:
            raise ValidationError(
                "Nothing to do: enable AI enrichment or external lookups",
                context={"include_ai": include_ai, "include_external_lookups": include_external_lookups}
            )
        if not ids:
            return {"total": 0, "successful": 0, "failed": 0, "results": []}

        logger.info(f"Bulk enrichment of {len(ids)} records (concurrency {self.concurrency})")
        progress = {"total": len(ids), "completed": 0, "successful": 0, "failed": 0}

        def report(current_id: Optional[int] = None) -> None:
            if on_progress is not None:
                on_progress({**progress, "current_id": current_id})

        async def enrich_one(record_id: int) -> RunOutcome:
            report(record_id)
            return await self.runner.run(
                record_id,
                quick=quick,
                include_ai=include_ai,
                include_external_lookups=include_external_lookups,
                provider=provider,
            )

        captured = capture(enrich_one)

        async def worker(record_id: int) -> BulkItemResult:
            outcome = await captured(record_id)
            item = self._item_result(record_id, outcome)
            progress["completed"] += 1
            progress["successful" if item.success else "failed"] += 1
            return item

        results: List[BulkItemResult] = await map_bounded(ids, self.concurrency, worker)

        # Store outages abort the batch
        for item, record_id in zip(results, ids):
            if item.error_type == PersistenceError.__name__:
                raise PersistenceError(
                    "Store unavailable during bulk enrichment",
                    context={"record_id": record_id, "error": item.error}
                )

        report()
        summary = {
            "total": len(ids),
            "successful": progress["successful"],
            "failed": progress["failed"],
            "results": [item.to_dict() for item in results],
        }
        logger.info(
            f"Bulk enrichment completed: total={summary['total']}, "
            f"successful={summary['successful']}, failed={summary['failed']}"
        )
        return summary

    def _item_result(self, record_id: int, outcome) -> BulkItemResult:
        if not outcome.ok:
            error = outcome.error
            logger.error(
                f"Bulk enrichment failed for record {record_id}: {_error_message(error)}",
                extra={"error_context": error.to_dict() if isinstance(error, EnrichmentException) else {}}
            )
            return BulkItemResult(
                record_id=record_id,
                success=False,
                error=_error_message(error),
                error_type=type(error).__name__,
            )

        run_outcome: RunOutcome = outcome.value
        result = run_outcome.result
        item = BulkItemResult(
            record_id=record_id,
            success=result.has_data,
            run_id=run_outcome.run.id if run_outcome.run else None,
            fields_found=len(result.fields),
            provider_errors=[failure.to_dict() for failure in result.provider_errors],
            skipped_stages=[skip.to_dict() for skip in result.skipped_stages],
        )
        if not item.success:
            if result.provider_errors:
                item.error = "; ".join(f"{f.provider}: {f.error}" for f in result.provider_errors)
            else:
                item.error = "No enrichment data obtained"
        return item

    async def records_needing_enrichment(self, limit: Optional[int] = None) -> List[int]:
        """
        Ids of records never enriched, never-attempted ones first.

        Records attempted inside the cooldown window are left out, so records
        that keep yielding nothing cannot fill every scheduled batch.
        """
        retry_before = self.ledger.clock() - timedelta(hours=self.ledger.cooldown_hours)
        records = await self.ledger.store.find_records_by_status(
            RecordEnrichmentStatus.NONE, limit or self.max_bulk_size, attempted_before=retry_before
        )
        return [record.id for record in records]

    async def stats(self) -> Dict[str, int]:
        counts = await self.ledger.store.count_records_by_status()
        total = sum(counts.values())
        return {
            "total_records": total,
            "enriched_records": total - counts[RecordEnrichmentStatus.NONE.value],
            "pending_enrichment": counts[RecordEnrichmentStatus.NONE.value],
            "pending_review": counts[RecordEnrichmentStatus.PENDING.value] + counts[RecordEnrichmentStatus.PARTIAL.value],
            "complete": counts[RecordEnrichmentStatus.COMPLETE.value],
        }

    # ------------------------------------------------------------------
    # Review
    # ------------------------------------------------------------------

    async def review_many(
        self,
        items: List[Dict[str, Any]],
        action: str,
        reviewer: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Confirm or reject fields across records.

        Args:
            items: ``[{"record_id": int, "fields": [...], "run_id": optional}]``
            action: "confirm" or "reject"

        Returns:
            ``{"confirmed" | "rejected": fields changed, "errors": [...], "results": [...]}``
        """
        if action not in (CONFIRM, REJECT):
            raise ValidationError(
                f"Bulk review supports confirm or reject, got {action}",
                context={"field_name": "action", "field_value": action}
            )
        _check_batch_size(len(items), self.max_bulk_size)
        for item in items:
            if "record_id" not in item:
                raise ValidationError("Each item needs a record_id", context={"item": item})
            parse_fields(item.get("fields") or [])

        async def review_one(item: Dict[str, Any]):
            return await self.ledger.apply(
                item["record_id"],
                action,
                item["fields"],
                reviewer=reviewer,
                run_id=item.get("run_id"),
            )

        outcomes = await map_bounded(items, self.concurrency, capture(review_one))

        changed = 0
        errors: List[Dict[str, Any]] = []
        results: List[Dict[str, Any]] = []
        for item, outcome in zip(items, outcomes):
            if outcome.ok:
                review = outcome.value
                changed += len(review.updated_fields)
                results.append({
                    "record_id": item["record_id"],
                    "success": True,
                    "run_id": review.run.id,
                    "fields": [name.value for name in review.updated_fields],
                    "record_status": review.record_status.value,
                })
            else:
                if isinstance(outcome.error, PersistenceError):
                    raise outcome.error
                errors.append({
                    "record_id": item["record_id"],
                    "error": _error_message(outcome.error),
                    "error_type": type(outcome.error).__name__,
                })
                results.append({"record_id": item["record_id"], "success": False})

        key = "confirmed" if action == CONFIRM else "rejected"
        logger.info(f"Bulk review ({action}): {changed} fields, {len(errors)} errors")
        return {key: changed, "errors": errors, "results": results}
