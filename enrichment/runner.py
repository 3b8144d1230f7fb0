# ============================================================================
# File: enrichment/runner.py
# Description: Single-record enrichment orchestration
# ============================================================================
"""
Enrichment Runner - enriches one record end to end.

Phases:
1. Load the record
2. Cooldown check (advisory)
3. Consensus aggregation (full or quick mode, post-processing included)
4. Persist a new run through the review ledger (skipped when nothing was found)

Provider failures and skipped stages travel with the result; only
validation, missing records and store failures raise.
"""

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from core.exceptions import (
    EnrichmentException,
    PersistenceError,
    RecordNotFoundError,
    ValidationError,
)
from enrichment.consensus import ConsensusAggregator
from enrichment.review import CooldownInfo, FieldReviewLedger
from enrichment.types import EnrichmentContext, EnrichmentResult
from models.base import ReviewableField, RunStatus
from models.enrichment_run import EnrichmentRun

logger = logging.getLogger(__name__)


@dataclass
class RunOutcome:
    record_id: int
    run: Optional[EnrichmentRun]
    result: EnrichmentResult
    cooldown: CooldownInfo

    @property
    def fields_found(self) -> int:
        return len(self.result.fields)

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "record_id": self.record_id,
            "run_id": self.run.id if self.run else None,
            "run_status": RunStatus(self.run.status).value if self.run else None,
            "field_statuses": self.run.field_statuses if self.run else {},
            "result": self.result.to_dict(),
            "cooldown_warning": self.cooldown.should_warn,
        }
        if self.cooldown.should_warn:
            data["hours_since_last_enrichment"] = self.cooldown.hours_ago
        return data


class EnrichmentRunner:
    """
    Orchestrates aggregator and ledger for one record.

    Responsibilities:
    - Build the provider context from the stored record
    - Warn (never block) on re-enrichment inside the cooldown window
    - Record every enrichment as a new, append-only run
    """

    def __init__(self, aggregator: ConsensusAggregator, ledger: FieldReviewLedger):
        self.aggregator = aggregator
        self.ledger = ledger

    @property
    def store(self):
        return self.ledger.store

    async def run(
        self,
        record_id: int,
        quick: bool = False,
        include_ai: bool = True,
        include_external_lookups: bool = False,
        provider: Optional[str] = None,
        fields: Optional[List[ReviewableField]] = None,
    ) -> RunOutcome:
        """
        Enrich ``record_id`` and store the run.

        Args:
            record_id: Record to enrich
            quick: Quick mode (one provider at a time, fewer fields)
            include_ai: Ask providers at all; when False only external lookups run
            include_external_lookups: Run quota-gated lookups after the merge
            provider: Quick mode only, restrict to this provider
            fields: Full mode only, restrict the requested fields

        Raises:
            RecordNotFoundError: Unknown record
            AllProvidersFailedError: Quick mode and every provider failed
            PersistenceError: Store failure while loading or writing
        """
        # --------------------------------------------------
        # PHASE 1: LOAD RECORD
        # --------------------------------------------------
        if not include_ai and not include_external_lookups:
            raise ValidationError(
                "Nothing to do: enable AI enrichment or external lookups",
                context={"record_id": record_id}
            )

        record = await self.store.find_record(record_id)
        if record is None:
            raise RecordNotFoundError(f"Record {record_id} not found", context={"record_id": record_id})
        context = EnrichmentContext.from_record(record)
        # Every attempt is stamped, including ones that store no run
        await self.store.update_record(record_id, {"last_attempted_at": self.ledger.clock()})

        # --------------------------------------------------
        # PHASE 2: COOLDOWN CHECK
        # --------------------------------------------------
        cooldown = await self.ledger.check_cooldown(record_id)
        if cooldown.should_warn:
            logger.warning(
                f"Record {record_id} was enriched {cooldown.hours_ago}h ago, "
                f"inside the {self.ledger.cooldown_hours}h cooldown"
            )

        # --------------------------------------------------
        # PHASE 3: AGGREGATION
        # --------------------------------------------------
        if not include_ai:
            result = await self.aggregator.lookup_only(context)
        elif quick:
            result = await self.aggregator.quick_enrich(
                context,
                provider=provider,
                include_external_lookups=include_external_lookups,
            )
        else:
            result = await self.aggregator.enrich_record(
                context,
                requested_fields=fields,
                include_external_lookups=include_external_lookups,
            )

        # --------------------------------------------------
        # PHASE 4: PERSIST RUN
        # --------------------------------------------------
        if not result.has_data:
            logger.warning(
                f"No enrichment data obtained for record {record_id}; no run stored "
                f"({len(result.provider_errors)} provider errors)"
            )
            return RunOutcome(record_id=record_id, run=None, result=result, cooldown=cooldown)

        try:
            run = await self.ledger.create_run(record_id, result)
        except EnrichmentException as e:
            logger.error(
                f"Failed to store enrichment run for record {record_id}: {e.message}",
                extra={"error_context": e.to_dict()}
            )
            raise
        except Exception as e:
            logger.exception(f"Unexpected error storing run for record {record_id}")
            raise PersistenceError(
                "Unexpected error storing enrichment run",
                context={"record_id": record_id, "fields_found": len(result.fields)},
                original_exception=e
            )

        return RunOutcome(record_id=record_id, run=run, result=result, cooldown=cooldown)
