"""
Field review ledger: per-run human approval of suggested values.

State machine per field::

    PENDING --confirm/edit--> CONFIRMED
    PENDING --reject------->  REJECTED

A run is created PENDING and becomes CONFIRMED once every field is
terminal. The record's ``enrichment_status`` is always recomputed from the
latest run with :func:`derive_enrichment_status`; it is never edited directly.

The PENDING check and the status write form one compare-and-set on the run
version: of two racing reviews of the same field, the second finds the field
terminal and fails with ConflictError.
"""

import asyncio
import logging
import weakref
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from core.config import settings
from core.exceptions import (
    ConflictError,
    RecordNotFoundError,
    RunNotFoundError,
    ValidationError,
)
from enrichment.providers.base import SOCIAL_NETWORKS
from enrichment.stores.base import RunStore
from enrichment.types import EnrichmentResult
from models.base import (
    FieldReviewStatus,
    RecordEnrichmentStatus,
    ReviewableField,
    RunStatus,
)
from models.enrichment_run import EnrichmentRun

logger = logging.getLogger(__name__)

CONFIRM = "confirm"
REJECT = "reject"
EDIT = "edit"
ACTIONS = (CONFIRM, REJECT, EDIT)

# Passes over a run that another writer keeps changing before giving up
REVIEW_ATTEMPTS = 3

# Reviews of one record run one at a time in this process. Writers in other
# processes are caught by the run version check in RunStore.update_run.
_record_locks: "weakref.WeakValueDictionary[int, asyncio.Lock]" = weakref.WeakValueDictionary()


def _record_lock(record_id: int) -> asyncio.Lock:
    lock = _record_locks.get(record_id)
    if lock is None:
        lock = asyncio.Lock()
        _record_locks[record_id] = lock
    return lock


# ============================================================================
# Pure helpers
# ============================================================================

def derive_enrichment_status(field_statuses: Optional[Dict[str, str]]) -> RecordEnrichmentStatus:
    """
    Aggregate of one run's field statuses.

    ``None`` means the record has no run at all.
    """
    if field_statuses is None:
        return RecordEnrichmentStatus.NONE
    statuses = list(field_statuses.values())
    terminal = sum(1 for s in statuses if s != FieldReviewStatus.PENDING.value)
    if terminal == len(statuses):
        return RecordEnrichmentStatus.COMPLETE
    if terminal > 0:
        return RecordEnrichmentStatus.PARTIAL
    return RecordEnrichmentStatus.PENDING


def build_field_statuses(result: EnrichmentResult) -> Dict[str, str]:
    """Open review only for fields that carry a suggestion."""
    return {
        name.value: FieldReviewStatus.PENDING.value
        for name, merged in result.fields.items()
        if merged.value not in (None, "", [], {})
    }


def record_patch_for(name: ReviewableField, value: Any) -> Dict[str, Any]:
    """Record columns written when ``name`` is accepted with ``value``."""
    if name == ReviewableField.DESCRIPTION:
        return {"notes": value}
    if name == ReviewableField.EMAILS:
        return {"email": value[0]} if value else {}
    if name == ReviewableField.PHONES:
        return {"phone": value[0]} if value else {}
    if name == ReviewableField.SOCIAL_PROFILES:
        return {network: url for network, url in (value or {}).items() if network in SOCIAL_NETWORKS}
    return {name.value: value}


def parse_fields(fields: Iterable[str]) -> List[ReviewableField]:
    parsed: List[ReviewableField] = []
    for raw in fields:
        try:
            name = ReviewableField(raw)
        except ValueError:
            raise ValidationError(
                f"Unknown field: {raw}",
                context={"field_name": "fields", "field_value": raw}
            )
        if name not in parsed:
            parsed.append(name)
    if not parsed:
        raise ValidationError("At least one field is required", context={"field_name": "fields"})
    return parsed


def _coerce_edited(name: ReviewableField, value: Any) -> Any:
    if name.is_list:
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, list) or not value or not all(isinstance(v, str) and v.strip() for v in value):
            raise ValidationError(
                f"Edited value for {name.value} must be a non-empty list of strings",
                context={"field_name": name.value}
            )
        return [v.strip() for v in value]
    if name == ReviewableField.SOCIAL_PROFILES:
        if not isinstance(value, dict) or not value:
            raise ValidationError(
                "Edited value for social_profiles must be a non-empty object",
                context={"field_name": name.value}
            )
        return {str(k).lower(): str(v) for k, v in value.items()}
    if not isinstance(value, str) or not value.strip():
        raise ValidationError(
            f"Edited value for {name.value} must be a non-empty string",
            context={"field_name": name.value}
        )
    return value.strip()


def run_from_result(result: EnrichmentResult, enriched_at: datetime) -> EnrichmentRun:
    statuses = build_field_statuses(result)
    run = EnrichmentRun(
        record_id=result.record_id,
        enriched_at=enriched_at,
        providers_used=list(result.providers_used),
        provider_errors=[failure.to_dict() for failure in result.provider_errors],
        skipped_stages=[skip.to_dict() for skip in result.skipped_stages],
        external_data_used=list(result.external_data_used),
        mode=result.mode,
        field_statuses=statuses,
        status=RunStatus.PENDING if statuses else RunStatus.CONFIRMED,
        reviewed_at=None if statuses else enriched_at,
        version=1,
    )
    for name in ReviewableField:
        merged = result.fields.get(name)
        setattr(run, name.value, merged.value if merged else None)
        setattr(run, f"{name.value}_score", round(merged.confidence, 4) if merged else None)
    return run


# ============================================================================
# Ledger
# ============================================================================

@dataclass
class CooldownInfo:
    should_warn: bool
    last_enriched_at: Optional[datetime] = None
    hours_ago: Optional[float] = None


@dataclass
class ReviewOutcome:
    run: EnrichmentRun
    action: str
    updated_fields: List[ReviewableField] = field(default_factory=list)
    skipped_fields: List[ReviewableField] = field(default_factory=list)
    record_status: RecordEnrichmentStatus = RecordEnrichmentStatus.PENDING
    run_completed: bool = False


class FieldReviewLedger:
    """
    Creates runs and applies review actions.

    Attributes:
        store: RunStore holding records and runs
        cooldown_hours: Re-enrichment inside this window only produces a warning
    """

    def __init__(
        self,
        store: RunStore,
        cooldown_hours: Optional[float] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self.store = store
        self.cooldown_hours = cooldown_hours if cooldown_hours is not None else settings.COOLDOWN_HOURS
        self.clock = clock

    async def _require_record(self, record_id: int):
        record = await self.store.find_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found", context={"record_id": record_id})
        return record

    async def check_cooldown(self, record_id: int) -> CooldownInfo:
        """Advisory only: enrichment goes ahead either way."""
        latest = await self.store.find_latest_run(record_id)
        if latest is None:
            return CooldownInfo(should_warn=False)

        hours_ago = (self.clock() - latest.enriched_at).total_seconds() / 3600
        return CooldownInfo(
            should_warn=hours_ago < self.cooldown_hours,
            last_enriched_at=latest.enriched_at,
            hours_ago=round(hours_ago, 1),
        )

    async def create_run(self, record_id: int, result: EnrichmentResult) -> EnrichmentRun:
        """Append a run for ``result`` and refresh the record's cached status."""
        await self._require_record(record_id)
        now = self.clock()

        run = await self.store.create_run(run_from_result(result, now))
        status = derive_enrichment_status(run.field_statuses)
        await self.store.update_record(record_id, {
            "enrichment_status": status,
            "last_enriched_at": now,
        })

        logger.info(
            f"Created enrichment run {run.id} for record {record_id} "
            f"({len(run.field_statuses)} fields to review, status={status.value})"
        )
        return run

    # ------------------------------------------------------------------
    # Review actions
    # ------------------------------------------------------------------

    async def confirm(self, record_id, fields, reviewer=None, run_id=None) -> ReviewOutcome:
        return await self.apply(record_id, CONFIRM, fields, reviewer=reviewer, run_id=run_id)

    async def reject(self, record_id, fields, reviewer=None, run_id=None) -> ReviewOutcome:
        return await self.apply(record_id, REJECT, fields, reviewer=reviewer, run_id=run_id)

    async def edit(self, record_id, fields, edited_values, reviewer=None, run_id=None) -> ReviewOutcome:
        return await self.apply(
            record_id, EDIT, fields, reviewer=reviewer, run_id=run_id, edited_values=edited_values
        )

    async def _find_target_run(self, record_id: int, run_id: Optional[int]) -> EnrichmentRun:
        if run_id is not None:
            run = await self.store.find_run(run_id)
            if run is not None and run.record_id != record_id:
                run = None
        else:
            run = await self.store.find_latest_pending_run(record_id)

        if run is None:
            raise RunNotFoundError(
                "No enrichment run to review",
                context={"record_id": record_id, "run_id": run_id}
            )
        return run

    async def apply(
        self,
        record_id: int,
        action: str,
        fields: Iterable,
        reviewer: Optional[str] = None,
        run_id: Optional[int] = None,
        edited_values: Optional[Dict[str, Any]] = None,
    ) -> ReviewOutcome:
        """
        Apply one review action.

        Raises:
            ValidationError: Unknown action or field, missing edited values
            RecordNotFoundError: Record does not exist
            RunNotFoundError: No matching run
            ConflictError: Run not PENDING, or none of ``fields`` is PENDING
        """
        if action not in ACTIONS:
            raise ValidationError(
                f"Unknown review action: {action}",
                context={"field_name": "action", "field_value": action}
            )
        requested = parse_fields(fields)

        edits: Dict[ReviewableField, Any] = {}
        if action == EDIT:
            if not edited_values:
                raise ValidationError("edited_values is required for edit", context={"field_name": "edited_values"})
            by_field = {ReviewableField(k): v for k, v in parse_edited_keys(edited_values).items()}
            missing = [name.value for name in requested if name not in by_field]
            if missing:
                raise ValidationError(
                    "Every edited field needs a value",
                    context={"field_name": "edited_values", "missing": missing}
                )
            edits = {name: _coerce_edited(name, by_field[name]) for name in requested}

        await self._require_record(record_id)

        async with _record_lock(record_id):
            for attempt in range(1, REVIEW_ATTEMPTS + 1):
                outcome = await self._apply_once(record_id, action, requested, edits, reviewer, run_id)
                if outcome is not None:
                    return outcome
                logger.info(f"Run for record {record_id} changed during review, retrying ({attempt}/{REVIEW_ATTEMPTS})")

        raise ConflictError(
            "Enrichment run kept changing during review",
            context={"record_id": record_id, "run_id": run_id, "attempts": REVIEW_ATTEMPTS}
        )

    async def _apply_once(
        self,
        record_id: int,
        action: str,
        requested: List[ReviewableField],
        edits: Dict[ReviewableField, Any],
        reviewer: Optional[str],
        run_id: Optional[int],
    ) -> Optional[ReviewOutcome]:
        """One read-check-write pass. None when another writer got to the run first."""
        run = await self._find_target_run(record_id, run_id)
        expected_version = run.version

        if run.status != RunStatus.PENDING:
            raise ConflictError(
                f"Run {run.id} is already {RunStatus(run.status).value}",
                context={"record_id": record_id, "run_id": run.id, "run_status": RunStatus(run.status).value}
            )

        statuses = dict(run.field_statuses or {})
        pending = [name for name in requested if statuses.get(name.value) == FieldReviewStatus.PENDING.value]
        if not pending:
            raise ConflictError(
                "None of the requested fields is pending review",
                context={
                    "record_id": record_id,
                    "run_id": run.id,
                    "fields": [name.value for name in requested],
                    "field_statuses": statuses,
                }
            )

        new_status = FieldReviewStatus.REJECTED if action == REJECT else FieldReviewStatus.CONFIRMED
        run_patch: Dict[str, Any] = {}
        record_patch: Dict[str, Any] = {}
        for name in pending:
            statuses[name.value] = new_status.value
            if action == EDIT:
                run_patch[name.value] = edits[name]
                record_patch.update(record_patch_for(name, edits[name]))
            elif action == CONFIRM:
                record_patch.update(record_patch_for(name, getattr(run, name.value)))

        run_patch["field_statuses"] = statuses
        run_completed = all(s != FieldReviewStatus.PENDING.value for s in statuses.values())
        if run_completed:
            run_patch["status"] = RunStatus.CONFIRMED
            run_patch["reviewed_at"] = self.clock()
            run_patch["reviewed_by"] = reviewer

        # The record is written only after the run transition wins
        updated = await self.store.update_run(run.id, run_patch, expected_version=expected_version)
        if updated is None:
            return None

        latest = await self.store.find_latest_run(record_id)
        record_status = derive_enrichment_status(latest.field_statuses if latest else None)
        record_patch["enrichment_status"] = record_status
        await self.store.update_record(record_id, record_patch)

        skipped = [name for name in requested if name not in pending]
        logger.info(
            f"Review {action} on run {updated.id} (record {record_id}): "
            f"{[n.value for n in pending]} -> {new_status.value}, record now {record_status.value}"
        )
        return ReviewOutcome(
            run=updated,
            action=action,
            updated_fields=pending,
            skipped_fields=skipped,
            record_status=record_status,
            run_completed=run_completed,
        )

    # ------------------------------------------------------------------
    # Views
    # ------------------------------------------------------------------

    async def history(self, record_id: int) -> List[Dict[str, Any]]:
        """One summary entry per run, newest first."""
        entries = []
        for run in await self.store.find_runs_for(record_id):
            statuses = (run.field_statuses or {}).values()
            entries.append({
                "run_id": run.id,
                "enriched_at": run.enriched_at,
                "mode": run.mode,
                "providers_used": run.providers_used or [],
                "fields_found": len(run.field_statuses or {}),
                "fields_confirmed": sum(1 for s in statuses if s == FieldReviewStatus.CONFIRMED.value),
                "fields_rejected": sum(1 for s in statuses if s == FieldReviewStatus.REJECTED.value),
                "status": RunStatus(run.status).value,
                "reviewed_at": run.reviewed_at,
                "reviewed_by": run.reviewed_by,
            })
        return entries


def parse_edited_keys(edited_values: Dict[str, Any]) -> Dict[str, Any]:
    """Resolve aliases in edited value keys to canonical field names."""
    resolved = {}
    for key, value in edited_values.items():
        try:
            resolved[ReviewableField(key).value] = value
        except ValueError:
            raise ValidationError(
                f"Unknown field in edited_values: {key}",
                context={"field_name": "edited_values", "field_value": key}
            )
    return resolved
